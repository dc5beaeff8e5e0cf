import json

import pytest

from app import app
from store import SERVER_TIMESTAMP, Document, Query, StoreError
from tasks import TaskListSynchronizer, ValidationError, list_tasks, register_task, remove_task, task_payload

from .fakes import FailingStore, ScriptedStore, flashes


def _doc(doc_id, text, created_at):
  return Document(doc_id, {'text': text, 'created_at': created_at, 'owner': 'ana@example.com', 'public': False})


def test_register_task_rejects_empty_text(store):
  for text in ('', '   '):
    with pytest.raises(ValidationError):
      register_task(store, 'ana@example.com', text, True)
  assert store.calls == []


def test_register_task_single_create(store):
  task_id = register_task(store, 'ana@example.com', 'Buy milk', True)

  assert store.calls == [('create', 'tasks', {
    'text': 'Buy milk',
    'created_at': SERVER_TIMESTAMP,
    'owner': 'ana@example.com',
    'public': True,
  })]
  assert store.get('tasks', task_id).get('public') is True


def test_register_task_store_failure_is_logged(caplog):
  assert register_task(FailingStore(), 'ana@example.com', 'Buy milk', False) is None
  assert 'Task create failed' in caplog.text


def test_list_tasks_newest_first(store):
  register_task(store, 'ana@example.com', 'first', False)
  register_task(store, 'bob@example.com', 'not mine', True)
  register_task(store, 'ana@example.com', 'second', True)

  assert [t.text for t in list_tasks(store, 'ana@example.com')] == ['second', 'first']


def test_remove_task_only_for_owner(store):
  task_id = register_task(store, 'ana@example.com', 'Buy milk', False)
  store.create('comments', {'task_id': task_id, 'text': 'hi'})

  assert remove_task(store, 'bob@example.com', task_id) is False
  assert store.get('tasks', task_id) is not None

  assert remove_task(store, 'ana@example.com', task_id) is True
  assert store.get('tasks', task_id) is None
  # Comments are not cascaded.
  assert len(store.query(Query('comments'))) == 1


def test_task_payload_includes_share_for_public_only(store):
  register_task(store, 'ana@example.com', 'public one', True)
  register_task(store, 'ana@example.com', 'private one', False)
  public, private = sorted(list_tasks(store, 'ana@example.com'), key=lambda t: not t.is_public)

  assert task_payload(public, 'https://example.com')['share']['clipboard']['url'] == \
    f'https://example.com/task/{public.id}'
  assert 'share' not in task_payload(private, 'https://example.com')


def test_synchronizer_replaces_list_on_every_snapshot():
  snapshots = [
    [_doc('a', 'A', '2024-01-01T00:00:00+00:00')],
    [_doc('b', 'B', '2024-01-02T00:00:00+00:00'), _doc('a', 'A', '2024-01-01T00:00:00+00:00')],
    [_doc('c', 'C', '2024-01-03T00:00:00+00:00')],
    [],
  ]
  store = ScriptedStore([list(s) for s in snapshots])
  synchronizer = TaskListSynchronizer(store, 'ana@example.com')

  seen = []
  with synchronizer.activate():
    for tasks in synchronizer.snapshots():
      if tasks is not None:
        seen.append([t.id for t in synchronizer.tasks])

  assert seen == [['a'], ['b', 'a'], ['c'], []]
  assert len(store.subscriptions) == 1
  assert store.subscriptions[0].released == 1
  assert not synchronizer.active


def test_synchronizer_query_is_owner_ordered_desc():
  store = ScriptedStore([])
  synchronizer = TaskListSynchronizer(store, 'ana@example.com')
  with synchronizer.activate():
    query = store.subscriptions[0].query
  assert query.collection == 'tasks'
  assert query.filters == (('owner', 'ana@example.com'),)
  assert query.order_by == 'created_at' and query.descending


def test_synchronizer_releases_on_error(store):
  synchronizer = TaskListSynchronizer(store, 'ana@example.com')
  with pytest.raises(KeyError):
    with synchronizer.activate():
      synchronizer.poll(timeout=0)
      raise KeyError('boom')
  assert store.open_subscriptions == set()


def test_synchronizer_sees_mutations_through_subscription(store):
  synchronizer = TaskListSynchronizer(store, 'ana@example.com')
  with synchronizer.activate():
    assert synchronizer.poll() == []
    task_id = register_task(store, 'ana@example.com', 'Buy milk', False)
    assert synchronizer.tasks == []
    assert [t.id for t in synchronizer.poll(timeout=1)] == [task_id]
    remove_task(store, 'ana@example.com', task_id)
    assert synchronizer.poll(timeout=1) == []


def test_create_route_empty_text_warns_once(signed_in, store):
  response = signed_in.post('/tasks', data={'text': '', 'public': 'true'})
  assert response.status_code == 302
  assert store.calls == []
  assert [c for c, _ in flashes(signed_in)] == ['warning']


def test_create_route_json_empty_text(signed_in, store):
  response = signed_in.post('/tasks', json={'text': ''})
  assert response.status_code == 400
  assert 'warning' in response.get_json()
  assert store.calls == []


@pytest.mark.parametrize('body', [['Buy milk'], 'Buy milk', {'text': 5}, {'text': ['Buy milk']}])
def test_create_route_rejects_malformed_json(signed_in, store, body):
  response = signed_in.post('/tasks', json=body)
  assert response.status_code == 400
  assert 'warning' in response.get_json()
  assert store.calls == []


def test_register_task_rejects_non_string_text(store):
  with pytest.raises(ValidationError):
    register_task(store, 'ana@example.com', 5, False)
  assert store.calls == []


@pytest.mark.parametrize('form, expected', [
  ({'text': 'Buy milk', 'public': 'true'}, True),
  ({'text': 'Buy milk'}, False),
])
def test_create_route_uses_checkbox_state(signed_in, store, form, expected):
  signed_in.post('/tasks', data=form)
  creates = store.writes('tasks')
  assert len(creates) == 1
  assert creates[0][2]['public'] is expected
  assert creates[0][2]['owner'] == 'ana@example.com'


def test_create_route_json_is_fire_and_forget(signed_in, store):
  response = signed_in.post('/tasks', json={'text': 'Buy milk', 'public': False})
  assert response.status_code == 202
  assert store.get('tasks', response.get_json()['id']) is not None


def test_delete_route(signed_in, store):
  task_id = register_task(store, 'ana@example.com', 'Buy milk', False)
  response = signed_in.post(f'/tasks/{task_id}/delete', json={})
  assert response.status_code == 202
  assert response.get_json() == {'removed': True}
  assert store.get('tasks', task_id) is None


def test_dashboard_lists_only_own_tasks(signed_in, store):
  register_task(store, 'ana@example.com', 'mine', False)
  register_task(store, 'bob@example.com', 'theirs', True)
  response = signed_in.get('/dashboard')
  assert b'mine' in response.data
  assert b'theirs' not in response.data


def test_dashboard_stream_sends_snapshot_and_releases(signed_in, store):
  register_task(store, 'ana@example.com', 'Buy milk', True)

  response = signed_in.get('/dashboard/stream', buffered=False)
  assert response.mimetype == 'text/event-stream'
  chunk = next(iter(response.response)).decode()
  assert chunk.startswith('event: snapshot\n')
  payload = json.loads(chunk.split('data: ', 1)[1])
  assert [t['text'] for t in payload] == ['Buy milk']
  assert payload[0]['share']['native']['title'] == 'Shared task'

  response.close()
  assert store.open_subscriptions == set()


def test_dashboard_stream_logs_store_failure_and_releases(signed_in, caplog):
  scripted = ScriptedStore([[], StoreError('server closed the connection')])
  app.extensions['document_store'] = scripted

  response = signed_in.get('/dashboard/stream', buffered=False)
  body = b''.join(response.response).decode()
  response.close()

  assert body == 'event: snapshot\ndata: []\n\n'
  assert 'Task stream failed owner=ana@example.com' in caplog.text
  assert scripted.subscriptions[0].released == 1
