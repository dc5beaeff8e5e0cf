from flask import Flask, Response, render_template_string, request, redirect, url_for, jsonify, flash, session, g
import json
import logging
import os

from auth import AccountError, current_state, login_required, resolve_session_state, sign_in, sign_up
from comments import CommentThread, can_delete, find_public_task, get_comment, load_task_page
from store import MemoryDocumentStore, PostgresDocumentStore, StoreError
from tasks import TaskListSynchronizer, ValidationError, list_tasks, register_task, remove_task, task_payload

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get('FLASK_SECRET_KEY', 'tarefas-plus-dev-secret-key')

# --- Configuration ---
app.config['DATABASE_URL'] = os.environ.get('DATABASE_URL')
app.config['PUBLIC_URL'] = os.environ.get('PUBLIC_URL', 'http://localhost:5000').rstrip('/')
app.config['STREAM_KEEPALIVE_SECONDS'] = 15
app.config['DOCUMENT_STORE'] = None


def setup_logging(level=None):
  level = level or os.environ.get('LOG_LEVEL', 'INFO')
  logging.basicConfig(
    level=getattr(logging, str(level).upper(), logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
  )


# --- Document Store ---
def get_store():
  store = app.extensions.get('document_store')
  if store is None:
    store = app.config.get('DOCUMENT_STORE')
    if store is None:
      if app.config['DATABASE_URL']:
        store = PostgresDocumentStore(app.config['DATABASE_URL'])
      else:
        logger.warning("DATABASE_URL is not set; using the in-memory document store")
        store = MemoryDocumentStore()
    app.extensions['document_store'] = store
  return store


def init_database():
  logger.info("🚀 Initializing database...")
  try:
    get_store().init_schema()
  except StoreError:
    logger.exception("❌ Database initialization error")
    return
  logger.info("✅ Database schema initialized successfully.")


def wants_json():
  return request.is_json or request.accept_mimetypes.best == 'application/json'


def json_body():
  payload = request.get_json(silent=True)
  return payload if isinstance(payload, dict) else {}


def text_field(value):
  return value if isinstance(value, str) else ''


@app.before_request
def load_session_state():
  g.auth = resolve_session_state(session)


@app.context_processor
def inject_session_state():
  return {'auth': current_state()}


# --- HTML Templates (as string variables) ---
HEAD = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{% block title %}{% endblock %}</title>
<link href="https://fonts.googleapis.com/css2?family=Inter:wght@300;400;500;600;700&display=swap" rel="stylesheet">
<style>
  :root {
      --primary: #3182ff;
      --danger: #ea3140;
      --success: #16a34a;
      --bg-primary: #0f0f0f;
      --bg-secondary: #1a1a1a;
      --text-primary: #ffffff;
      --text-muted: #9ca3af;
      --border: #374151;
      --radius: 0.5rem;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: 'Inter', -apple-system, BlinkMacSystemFont, sans-serif; background: var(--bg-primary); color: var(--text-primary); }
  header { background: var(--bg-secondary); border-bottom: 1px solid var(--border); }
  header .content { max-width: 1024px; margin: 0 auto; padding: 1rem; display: flex; justify-content: space-between; align-items: center; }
  header nav { display: flex; align-items: center; gap: 1.5rem; }
  .logo { color: var(--text-primary); text-decoration: none; font-size: 1.5rem; font-weight: 700; }
  .logo span { color: var(--danger); }
  .link, .login-button { color: var(--text-primary); text-decoration: none; border: 1px solid var(--text-primary); border-radius: 2rem; padding: 0.25rem 1rem; background: transparent; cursor: pointer; display: inline-flex; align-items: center; gap: 0.5rem; }
  .avatar { border-radius: 50%; }
  main, section.container { max-width: 1024px; margin: 0 auto; padding: 2rem 1rem; }
  .form-input, textarea { width: 100%; padding: 0.75rem; border-radius: var(--radius); border: 1px solid var(--border); background: #fff; color: #000; font: inherit; }
  textarea { min-height: 120px; resize: none; }
  .btn { padding: 0.75rem 1.25rem; border: 0; border-radius: var(--radius); background: var(--primary); color: #fff; font-weight: 600; cursor: pointer; width: 100%; margin-top: 1rem; }
  .btn:disabled { opacity: 0.5; cursor: not-allowed; }
  .icon-button { background: transparent; border: 0; cursor: pointer; color: var(--danger); }
  .task, .comment { border: 1px solid var(--border); border-radius: var(--radius); padding: 1rem; margin-top: 1rem; }
  .task-content, .comment-head { display: flex; justify-content: space-between; align-items: center; gap: 1rem; }
  .task-content a { color: var(--text-primary); }
  .tag { background: var(--primary); border-radius: 0.25rem; padding: 0.1rem 0.5rem; font-size: 0.75rem; }
  .muted { color: var(--text-muted); }
  #toasts { position: fixed; top: 1rem; right: 1rem; display: flex; flex-direction: column; gap: 0.5rem; z-index: 100; }
  .toast { background: #333; color: #fff; padding: 0.75rem 1rem; border-radius: var(--radius); box-shadow: 0 2px 5px rgba(0,0,0,0.9); }
  .toast-success { background: var(--success); }
  .toast-error { background: var(--danger); }
  .modal-overlay { position: fixed; inset: 0; background: rgba(0,0,0,0.6); display: none; align-items: center; justify-content: center; }
  .modal-overlay.open { display: flex; }
  .modal { background: var(--bg-secondary); border-radius: var(--radius); padding: 2rem; min-width: 300px; display: flex; flex-direction: column; gap: 0.75rem; }
  .modal button { padding: 0.5rem; border-radius: var(--radius); border: 1px solid var(--border); background: transparent; color: var(--text-primary); cursor: pointer; }
</style>
</head>
<body>
<header>
  <section class="content">
      <nav>
          <a href="{{ url_for('index') }}" class="logo">Tasks<span>+</span></a>
          {% if auth.is_signed_in %}
              <a href="{{ url_for('dashboard') }}" class="link">My Board</a>
          {% endif %}
      </nav>
      {% if auth.status.value == 'pending' %}
      {% elif auth.is_signed_in %}
          <a href="{{ url_for('logout') }}" class="login-button">
              {% if auth.identity.avatar_url %}
                  <img src="{{ auth.identity.avatar_url }}" alt="Profile picture" width="30" height="30" class="avatar">
              {% endif %}
              Hello, {{ auth.identity.display_name }}
          </a>
      {% else %}
          <a href="{{ url_for('login') }}" class="login-button">Sign in</a>
      {% endif %}
  </section>
</header>
<div id="toasts"></div>
<script>
  function toast(message, category) {
      const el = document.createElement('div');
      el.className = 'toast toast-' + (category || 'warning');
      el.textContent = (category === 'warning' ? '⚠️ ' : '') + message;
      document.getElementById('toasts').appendChild(el);
      setTimeout(() => el.remove(), 2000);
  }
  document.addEventListener('DOMContentLoaded', () => {
      {% with messages = get_flashed_messages(with_categories=true) %}
          {% for category, message in messages %}
              toast({{ message|tojson }}, {{ category|tojson }});
          {% endfor %}
      {% endwith %}
  });
  async function postJSON(url, body) {
      return fetch(url, {
          method: 'POST',
          headers: {'Content-Type': 'application/json', 'Accept': 'application/json'},
          body: JSON.stringify(body || {})
      });
  }
</script>
"""

FOOT = """
</body>
</html>
"""

HOME_TEMPLATE = HEAD.replace('{% block title %}{% endblock %}', 'Tasks+ | Organize your tasks the easy way') + """
<main>
  <h1>Organize your tasks the easy way</h1>
  <p class="muted">Create tasks, make them public, share the link and collect comments.</p>
  {% if not auth.is_signed_in %}
      <a href="{{ url_for('signup') }}" class="login-button" style="margin-top: 1rem;">Create an account</a>
  {% endif %}
</main>
""" + FOOT

LOGIN_TEMPLATE = HEAD.replace('{% block title %}{% endblock %}', 'Sign in - Tasks+') + """
<main>
  <h1>Welcome Back</h1>
  <form method="POST">
      <label for="email">Email Address</label>
      <input type="email" id="email" name="email" class="form-input" placeholder="Enter your email" required>
      <label for="password">Password</label>
      <input type="password" id="password" name="password" class="form-input" placeholder="Enter your password" required>
      <button type="submit" class="btn">Sign In</button>
  </form>
  <p class="muted">Don't have an account? <a href="{{ url_for('signup') }}">Sign up here</a></p>
</main>
""" + FOOT

SIGNUP_TEMPLATE = HEAD.replace('{% block title %}{% endblock %}', 'Sign up - Tasks+') + """
<main>
  <h1>Create Account</h1>
  <form method="POST">
      <label for="full_name">Full Name</label>
      <input type="text" id="full_name" name="full_name" class="form-input" required>
      <label for="email">Email Address</label>
      <input type="email" id="email" name="email" class="form-input" required>
      <label for="avatar_url">Avatar URL (optional)</label>
      <input type="url" id="avatar_url" name="avatar_url" class="form-input">
      <label for="password">Password</label>
      <input type="password" id="password" name="password" class="form-input" required>
      <label for="confirm_password">Confirm Password</label>
      <input type="password" id="confirm_password" name="confirm_password" class="form-input" required>
      <button type="submit" class="btn">Sign Up</button>
  </form>
  <p class="muted">Already have an account? <a href="{{ url_for('login') }}">Sign in here</a></p>
</main>
""" + FOOT

DASHBOARD_TEMPLATE = HEAD.replace('{% block title %}{% endblock %}', 'My task board') + """
<main>
  <h1>What is your task?</h1>
  <form id="task-form" method="POST" action="{{ url_for('create_task') }}">
      <textarea id="task-text" name="text" placeholder="Type your task..."></textarea>
      <label><input type="checkbox" id="task-public" name="public" value="true"> Make task public</label>
      <button type="submit" class="btn">Register</button>
  </form>
</main>
<section class="container">
  <h1>My Tasks</h1>
  <div id="task-list">
      {% for task in tasks %}
          <article class="task">
              {% if task.public %}<span class="tag">PUBLIC</span>{% endif %}
              <div class="task-content">
                  {% if task.public %}
                      <a href="{{ url_for('task_detail', task_id=task.id) }}"><p>{{ task.text }}</p></a>
                  {% else %}
                      <p>{{ task.text }}</p>
                  {% endif %}
                  <form method="POST" action="{{ url_for('delete_task', task_id=task.id) }}">
                      <button type="submit" class="icon-button">Delete</button>
                  </form>
              </div>
          </article>
      {% endfor %}
  </div>
</section>

<div class="modal-overlay" id="share-modal">
  <div class="modal" onclick="event.stopPropagation()">
      <h2>Share task</h2>
      <button data-channel="email">Email</button>
      <button data-channel="native">Share</button>
      <button data-channel="whatsapp">WhatsApp</button>
      <button data-channel="clipboard">Copy link</button>
      <button data-close>Close</button>
  </div>
</div>

<script>
  let tasks = {{ tasks|tojson }};
  let shareTask = null;
  const list = document.getElementById('task-list');
  const modal = document.getElementById('share-modal');

  function renderTasks() {
      list.replaceChildren(...tasks.map((task) => {
          const article = document.createElement('article');
          article.className = 'task';
          if (task.public) {
              const tag = document.createElement('span');
              tag.className = 'tag';
              tag.textContent = 'PUBLIC';
              const share = document.createElement('button');
              share.className = 'icon-button';
              share.textContent = 'Share';
              share.onclick = () => openShare(task);
              article.append(tag, share);
          }
          const content = document.createElement('div');
          content.className = 'task-content';
          const text = document.createElement('p');
          text.textContent = task.text;
          if (task.public) {
              const link = document.createElement('a');
              link.href = '/task/' + task.id;
              link.appendChild(text);
              content.appendChild(link);
          } else {
              content.appendChild(text);
          }
          const trash = document.createElement('button');
          trash.className = 'icon-button';
          trash.textContent = 'Delete';
          trash.onclick = () => deleteTask(task.id);
          content.appendChild(trash);
          article.appendChild(content);
          return article;
      }));
  }

  // The stream is the only thing that changes the list.
  const source = new EventSource({{ url_for('dashboard_stream')|tojson }});
  source.addEventListener('snapshot', (event) => {
      tasks = JSON.parse(event.data);
      renderTasks();
  });
  window.addEventListener('pagehide', () => source.close());

  document.getElementById('task-form').addEventListener('submit', async (event) => {
      event.preventDefault();
      const input = document.getElementById('task-text');
      const checkbox = document.getElementById('task-public');
      if (input.value === '') {
          toast('Heads up! The task field must be filled in.', 'warning');
          return;
      }
      try {
          const response = await postJSON({{ url_for('create_task')|tojson }}, {text: input.value, public: checkbox.checked});
          const data = await response.json();
          if (data.warning) {
              toast(data.warning, 'warning');
              return;
          }
          toast('Task added successfully!', 'success');
          input.value = '';
          checkbox.checked = false;
      } catch (err) {
          console.log(err);
      }
  });

  async function deleteTask(id) {
      try {
          await postJSON('/tasks/' + id + '/delete');
          toast('Task deleted successfully!', 'success');
      } catch (err) {
          console.log(err);
      }
  }

  function openShare(task) {
      shareTask = task;
      modal.classList.add('open');
  }

  function closeShare() {
      shareTask = null;
      modal.classList.remove('open');
  }

  async function runShare(action) {
      if (action.kind === 'native-share') {
          if (navigator.share) {
              await navigator.share({title: action.title, text: action.text, url: action.url});
          }
      } else if (action.kind === 'open-window') {
          window.open(action.href, '_blank');
      } else if (action.kind === 'copy') {
          await navigator.clipboard.writeText(action.text);
          toast(action.notice, 'success');
      } else if (action.kind === 'navigate') {
          window.location.href = action.href;
      }
  }

  modal.addEventListener('click', closeShare);
  modal.querySelector('[data-close]').addEventListener('click', closeShare);
  modal.querySelectorAll('[data-channel]').forEach((button) => {
      button.addEventListener('click', () => {
          if (shareTask) {
              runShare(shareTask.share[button.dataset.channel]).catch((err) => console.log(err));
          }
      });
  });
  window.addEventListener('keydown', (event) => {
      if (event.key === 'Escape' && shareTask) {
          closeShare();
      }
  });
  renderTasks();
</script>
""" + FOOT

TASK_TEMPLATE = HEAD.replace('{% block title %}{% endblock %}', 'Task details') + """
<main>
  <h1>Task</h1>
  <article class="task">
      <p>{{ page.task.text }}</p>
      <p class="muted">Created {{ page.created }}</p>
  </article>
</main>
<section class="container">
  <h2>Leave a comment.</h2>
  <form id="comment-form" method="POST" action="{{ url_for('add_comment', task_id=page.task.id) }}">
      <textarea id="comment-text" name="text" placeholder="Type your comment..."></textarea>
      <button type="submit" class="btn" {% if not auth.is_signed_in %}disabled{% endif %}>Send comment</button>
  </form>
</section>
<section class="container">
  <h2>Comments:</h2>
  <span class="muted" id="no-comments" {% if page.comments %}hidden{% endif %}>No comments were found...</span>
  <div id="comment-list">
      {% for comment in page.comments %}
          <article class="comment" data-id="{{ comment.id }}">
              <div class="comment-head">
                  <div>
                      {% if comment.author_avatar %}
                          <img src="{{ comment.author_avatar }}" alt="Profile picture" width="40" height="40" class="avatar">
                      {% endif %}
                      <label>{{ comment.author_name }}</label>
                  </div>
                  {% if can_delete(comment, auth.identity) %}
                      <form method="POST" action="{{ url_for('delete_comment', comment_id=comment.id) }}" class="delete-comment">
                          <button type="submit" class="icon-button">Delete</button>
                      </form>
                  {% endif %}
              </div>
              <p>{{ comment.text }}</p>
          </article>
      {% endfor %}
  </div>
</section>
<script>
  const commentList = document.getElementById('comment-list');
  const emptyNotice = document.getElementById('no-comments');

  function syncEmptyNotice() {
      emptyNotice.hidden = commentList.children.length > 0;
  }

  function bindDelete(form) {
      form.addEventListener('submit', async (event) => {
          event.preventDefault();
          try {
              const response = await postJSON(form.action);
              if (!response.ok) {
                  console.log('comment delete failed', response.status);
                  return;
              }
              form.closest('.comment').remove();
              syncEmptyNotice();
              toast('Comment deleted successfully!', 'success');
          } catch (err) {
              console.log(err);
          }
      });
  }

  function appendComment(comment) {
      const article = document.createElement('article');
      article.className = 'comment';
      article.dataset.id = comment.id;
      const head = document.createElement('div');
      head.className = 'comment-head';
      const author = document.createElement('div');
      if (comment.author_avatar) {
          const img = document.createElement('img');
          img.src = comment.author_avatar;
          img.width = 40;
          img.height = 40;
          img.className = 'avatar';
          author.appendChild(img);
      }
      const name = document.createElement('label');
      name.textContent = comment.author_name;
      author.appendChild(name);
      head.appendChild(author);
      const form = document.createElement('form');
      form.method = 'POST';
      form.action = '/comments/' + comment.id + '/delete';
      form.className = 'delete-comment';
      form.innerHTML = '<button type="submit" class="icon-button">Delete</button>';
      bindDelete(form);
      head.appendChild(form);
      const text = document.createElement('p');
      text.textContent = comment.text;
      article.append(head, text);
      commentList.appendChild(article);
      syncEmptyNotice();
  }

  document.querySelectorAll('.delete-comment').forEach(bindDelete);

  document.getElementById('comment-form').addEventListener('submit', async (event) => {
      event.preventDefault();
      const input = document.getElementById('comment-text');
      if (input.value === '') {
          toast('Heads up! The comment field must be filled in.', 'warning');
          return;
      }
      try {
          const response = await postJSON(event.target.action, {text: input.value});
          if (response.status === 400) {
              toast((await response.json()).warning, 'warning');
              return;
          }
          if (response.status !== 201) {
              console.log('comment was not saved', response.status);
              return;
          }
          appendComment(await response.json());
          toast('Comment posted successfully!', 'success');
          input.value = '';
      } catch (err) {
          console.log(err);
      }
  });
</script>
""" + FOOT


# --- Flask Routes ---
@app.route('/')
def index():
  return render_template_string(HOME_TEMPLATE)

@app.route('/login', methods=['GET', 'POST'])
def login():
  if g.auth.is_signed_in:
    return redirect(url_for('dashboard'))

  if request.method == 'POST':
    try:
      identity = sign_in(get_store(), request.form.get('email'), request.form.get('password'))
    except AccountError as e:
      flash(str(e), 'error')
    except StoreError:
      logger.exception("Sign-in lookup failed")
      flash('Sign-in is unavailable right now.', 'error')
    else:
      session['user'] = identity.to_session()
      return redirect(url_for('dashboard'))
  return render_template_string(LOGIN_TEMPLATE)

@app.route('/signup', methods=['GET', 'POST'])
def signup():
  if g.auth.is_signed_in:
    return redirect(url_for('dashboard'))

  if request.method == 'POST':
    try:
      sign_up(
        get_store(),
        request.form.get('full_name'),
        request.form.get('email'),
        request.form.get('password', ''),
        request.form.get('confirm_password', ''),
        request.form.get('avatar_url'),
      )
    except AccountError as e:
      flash(str(e), 'error')
    except StoreError:
      logger.exception("Sign-up failed")
      flash('Sign-up is unavailable right now.', 'error')
    else:
      flash('Account created successfully! Please log in.', 'success')
      return redirect(url_for('login'))
  return render_template_string(SIGNUP_TEMPLATE)

@app.route('/logout')
def logout():
  session.pop('user', None)
  flash('You have been logged out.', 'success')
  return redirect(url_for('index'))

@app.route('/dashboard')
@login_required
def dashboard(identity):
  base_url = app.config['PUBLIC_URL']
  try:
    tasks = list_tasks(get_store(), identity.email)
  except StoreError:
    logger.exception("Initial task list failed owner=%s", identity.email)
    tasks = []
  return render_template_string(DASHBOARD_TEMPLATE, tasks=[task_payload(t, base_url) for t in tasks])

@app.route('/dashboard/stream')
@login_required
def dashboard_stream(identity):
  synchronizer = TaskListSynchronizer(get_store(), identity.email)
  base_url = app.config['PUBLIC_URL']
  keepalive = app.config['STREAM_KEEPALIVE_SECONDS']

  def generate():
    try:
      with synchronizer.activate():
        for tasks in synchronizer.snapshots(timeout=keepalive):
          if tasks is None:
            yield ": keep-alive\n\n"
            continue
          data = json.dumps([task_payload(t, base_url) for t in tasks])
          yield f"event: snapshot\ndata: {data}\n\n"
    except StoreError:
      logger.exception("Task stream failed owner=%s", identity.email)

  return Response(generate(), mimetype='text/event-stream',
                  headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})

@app.route('/tasks', methods=['POST'])
@login_required
def create_task(identity):
  if request.is_json:
    payload = json_body()
    text, is_public = text_field(payload.get('text')), bool(payload.get('public'))
  else:
    text, is_public = request.form.get('text', ''), request.form.get('public') == 'true'

  try:
    task_id = register_task(get_store(), identity.email, text, is_public)
  except ValidationError as e:
    if wants_json():
      return jsonify({'warning': str(e)}), 400
    flash(str(e), 'warning')
    return redirect(url_for('dashboard'))

  if wants_json():
    return jsonify({'id': task_id}), 202
  if task_id:
    flash('Task added successfully!', 'success')
  return redirect(url_for('dashboard'))

@app.route('/tasks/<task_id>/delete', methods=['POST'])
@login_required
def delete_task(identity, task_id):
  removed = remove_task(get_store(), identity.email, task_id)
  if wants_json():
    return jsonify({'removed': removed}), 202
  if removed:
    flash('Task deleted successfully!', 'success')
  return redirect(url_for('dashboard'))

@app.route('/task/<task_id>')
def task_detail(task_id):
  try:
    page = load_task_page(get_store(), task_id)
  except StoreError:
    logger.exception("Task page load failed id=%s", task_id)
    page = None
  if page is None:
    return redirect(url_for('dashboard'))
  return render_template_string(TASK_TEMPLATE, page=page, can_delete=can_delete)

@app.route('/task/<task_id>/comments', methods=['POST'])
def add_comment(task_id):
  store = get_store()
  try:
    task = find_public_task(store, task_id)
  except StoreError:
    logger.exception("Task lookup failed id=%s", task_id)
    task = None
  if task is None:
    if wants_json():
      return jsonify({'error': 'Task not found.'}), 404
    return redirect(url_for('dashboard'))

  if request.is_json:
    text = text_field(json_body().get('text'))
  else:
    text = request.form.get('text', '')

  thread = CommentThread(store, task.id)
  try:
    comment = thread.add(g.auth.identity, text)
  except ValidationError as e:
    if wants_json():
      return jsonify({'warning': str(e)}), 400
    flash(str(e), 'warning')
    return redirect(url_for('task_detail', task_id=task.id))

  if wants_json():
    if comment is None:
      return '', 204
    return jsonify(comment.to_dict()), 201
  if comment is not None:
    flash('Comment posted successfully!', 'success')
  return redirect(url_for('task_detail', task_id=task.id))

@app.route('/comments/<comment_id>/delete', methods=['POST'])
@login_required
def delete_comment(identity, comment_id):
  store = get_store()
  try:
    comment = get_comment(store, comment_id)
  except StoreError:
    logger.exception("Comment lookup failed id=%s", comment_id)
    comment = None
  if comment is None or not can_delete(comment, identity):
    if wants_json():
      return jsonify({'removed': False}), 403
    return redirect(url_for('dashboard'))

  thread = CommentThread(store, comment.task_id, [comment])
  removed = thread.remove(comment.id)
  if wants_json():
    return jsonify({'removed': removed}), 200 if removed else 502
  if removed:
    flash('Comment deleted successfully!', 'success')
  return redirect(url_for('task_detail', task_id=comment.task_id))


if __name__ == '__main__':
  setup_logging()
  init_database()
  app.run(debug=True, threaded=True)
