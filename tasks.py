import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from share import share_actions
from store import SERVER_TIMESTAMP, Query, StoreError

logger = logging.getLogger(__name__)

TASKS = 'tasks'


class ValidationError(ValueError):
  """A required text field was left empty."""


def parse_timestamp(value):
  if isinstance(value, datetime) or value is None:
    return value
  return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


@dataclass(frozen=True)
class Task:
  id: str
  text: str
  created_at: datetime
  owner: str
  is_public: bool

  @classmethod
  def from_document(cls, doc):
    return cls(
      id=doc.id,
      text=doc.get('text', ''),
      created_at=parse_timestamp(doc.get('created_at')),
      owner=doc.get('owner'),
      is_public=bool(doc.get('public', False)),
    )


def owner_tasks_query(owner):
  return Query(TASKS).where('owner', owner).ordered('created_at', descending=True)


def register_task(store, owner, text, is_public):
  """
  Create one task for `owner`. Empty text raises ValidationError before
  the store is touched. Returns the new id, or None if the store call failed.
  """
  if not isinstance(text, str) or not text.strip():
    raise ValidationError('Heads up! The task field must be filled in.')
  try:
    task_id = store.create(TASKS, {
      'text': text,
      'created_at': SERVER_TIMESTAMP,
      'owner': owner,
      'public': bool(is_public),
    })
  except StoreError:
    logger.exception("Task create failed owner=%s", owner)
    return None
  logger.info("Task created id=%s owner=%s public=%s", task_id, owner, bool(is_public))
  return task_id


def remove_task(store, owner, task_id):
  # Comments on the task are left in place.
  try:
    doc = store.get(TASKS, task_id)
    if doc is None or doc.get('owner') != owner:
      return False
    store.delete(TASKS, task_id)
  except StoreError:
    logger.exception("Task delete failed id=%s", task_id)
    return False
  logger.info("Task deleted id=%s", task_id)
  return True


def list_tasks(store, owner):
  return [Task.from_document(doc) for doc in store.query(owner_tasks_query(owner))]


def task_payload(task, base_url):
  payload = {
    'id': task.id,
    'text': task.text,
    'created_at': task.created_at.isoformat() if task.created_at else None,
    'owner': task.owner,
    'public': task.is_public,
  }
  if task.is_public:
    payload['share'] = share_actions(task, base_url)
  return payload


class TaskListSynchronizer:
  """
  Keeps `tasks` equal to the latest snapshot of the owner's live task query.
  Each snapshot replaces the whole list; nothing is merged. Mutations are
  not applied here, they come back through the subscription.
  """

  def __init__(self, store, owner):
    self.store = store
    self.owner = owner
    self.tasks = []
    self._subscription = None

  @property
  def active(self):
    return self._subscription is not None

  @contextmanager
  def activate(self):
    if self._subscription is not None:
      raise RuntimeError('synchronizer is already active')
    self._subscription = self.store.subscribe(owner_tasks_query(self.owner))
    try:
      with self._subscription:
        yield self
    finally:
      self._subscription = None

  def apply(self, snapshot):
    self.tasks = [Task.from_document(doc) for doc in snapshot]
    return self.tasks

  def poll(self, timeout=None):
    """Wait for the next snapshot; returns the new list or None on timeout."""
    if self._subscription is None:
      raise RuntimeError('synchronizer is not active')
    snapshot = self._subscription.next_snapshot(timeout)
    if snapshot is None:
      return None
    return self.apply(snapshot)

  def snapshots(self, timeout=None):
    """Yield the task list after every snapshot, and None after each idle timeout."""
    while self._subscription is not None and not self._subscription.closed:
      yield self.poll(timeout)
