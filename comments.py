import logging
from dataclasses import asdict, dataclass

from store import SERVER_TIMESTAMP, Query, StoreError
from tasks import TASKS, Task, ValidationError

logger = logging.getLogger(__name__)

COMMENTS = 'comments'
DATE_FORMAT = '%x'


@dataclass(frozen=True)
class Comment:
  id: str
  text: str
  task_id: str
  author: str
  author_name: str
  author_avatar: str = None

  @classmethod
  def from_document(cls, doc):
    return cls(
      id=doc.id,
      text=doc.get('text', ''),
      task_id=doc.get('task_id'),
      author=doc.get('author'),
      author_name=doc.get('author_name'),
      author_avatar=doc.get('author_avatar'),
    )

  def to_dict(self):
    return asdict(self)


@dataclass(frozen=True)
class TaskPage:
  task: Task
  created: str
  comments: list


def find_public_task(store, task_id):
  doc = store.get(TASKS, task_id)
  if doc is None or not doc.get('public'):
    return None
  return Task.from_document(doc)


def load_task_page(store, task_id):
  """
  One-shot fetch of a task and its comments. Returns None when the task
  does not exist or is not public, whoever is asking.
  """
  task = find_public_task(store, task_id)
  if task is None:
    return None
  comments = [Comment.from_document(c) for c in store.query(Query(COMMENTS).where('task_id', task_id))]
  created = task.created_at.strftime(DATE_FORMAT) if task.created_at else ''
  return TaskPage(task=task, created=created, comments=comments)


def can_delete(comment, identity):
  return identity is not None and comment.author == identity.email


class CommentThread:
  """
  Local comment list for one task. Writes go to the store and are then
  applied to `comments` right away; nothing re-reads the store afterwards,
  so a failed remote call after a local change leaves the two apart until
  the page is loaded again.
  """

  def __init__(self, store, task_id, comments=()):
    self.store = store
    self.task_id = task_id
    self.comments = list(comments)

  def add(self, identity, text):
    if not isinstance(text, str) or not text.strip():
      raise ValidationError('Heads up! The comment field must be filled in.')
    if identity is None or not identity.email or not identity.display_name:
      logger.warning("Comment skipped: no complete identity for task=%s", self.task_id)
      return None
    try:
      comment_id = self.store.create(COMMENTS, {
        'text': text,
        'task_id': self.task_id,
        'author': identity.email,
        'author_name': identity.display_name,
        'author_avatar': identity.avatar_url,
        'created_at': SERVER_TIMESTAMP,
      })
    except StoreError:
      logger.exception("Comment create failed task=%s", self.task_id)
      return None
    comment = Comment(comment_id, text, self.task_id, identity.email,
                      identity.display_name, identity.avatar_url)
    self.comments.append(comment)
    return comment

  def remove(self, comment_id):
    try:
      self.store.delete(COMMENTS, comment_id)
    except StoreError:
      logger.exception("Comment delete failed id=%s", comment_id)
      return False
    self.comments = [c for c in self.comments if c.id != comment_id]
    return True


def get_comment(store, comment_id):
  doc = store.get(COMMENTS, comment_id)
  return Comment.from_document(doc) if doc else None
