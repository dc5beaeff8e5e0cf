import psycopg2

from store import MemoryDocumentStore, StoreError, Subscription


class RecordingStore(MemoryDocumentStore):
  """Memory store that keeps a log of every write call."""

  def __init__(self):
    super().__init__()
    self.calls = []

  def create(self, collection, fields):
    self.calls.append(('create', collection, dict(fields)))
    return super().create(collection, fields)

  def delete(self, collection, doc_id):
    self.calls.append(('delete', collection, doc_id))
    return super().delete(collection, doc_id)

  def writes(self, collection):
    return [call for call in self.calls if call[1] == collection]


class FailingStore(RecordingStore):
  """Reads work; every write raises StoreError after being recorded."""

  def create(self, collection, fields):
    self.calls.append(('create', collection, dict(fields)))
    raise StoreError('connection refused')

  def delete(self, collection, doc_id):
    self.calls.append(('delete', collection, doc_id))
    raise StoreError('connection refused')


class ScriptedSubscription(Subscription):
  """Hands out a fixed list of snapshots, then closes itself. Exceptions in the list are raised."""

  def __init__(self, query, snapshots):
    super().__init__(query)
    self._snapshots = list(snapshots)
    self.released = 0

  def next_snapshot(self, timeout=None):
    if not self._snapshots:
      self.close()
      return None
    snapshot = self._snapshots.pop(0)
    if isinstance(snapshot, Exception):
      raise snapshot
    return snapshot

  def _release(self):
    self.released += 1


class ScriptedStore(MemoryDocumentStore):
  def __init__(self, snapshots):
    super().__init__()
    self.snapshots = snapshots
    self.subscriptions = []

  def subscribe(self, query):
    subscription = ScriptedSubscription(query, self.snapshots)
    self.subscriptions.append(subscription)
    return subscription


def flashes(client):
  with client.session_transaction() as sess:
    return list(sess.get('_flashes', []))


class FakePostgres:
  """
  Stands in for psycopg2.connect. Every connection shares one log of
  executed (sql, params) pairs and one queue of results; each fetchone()
  or fetchall() pops the next queued result.
  """

  def __init__(self):
    self.executed = []
    self.results = []
    self.connections = []
    self.fail_on = None

  def connect(self, dsn):
    conn = FakeConnection(self)
    self.connections.append(conn)
    return conn

  def statements(self, prefix):
    return [(sql, params) for sql, params in self.executed if sql.startswith(prefix)]


class FakeConnection:
  def __init__(self, db):
    self.db = db
    self.notifies = []
    self.closed = False
    self.isolation_level = None

  def __enter__(self):
    return self

  def __exit__(self, exc_type, exc, tb):
    return False

  def cursor(self, cursor_factory=None):
    return FakeCursor(self.db)

  def set_isolation_level(self, level):
    self.isolation_level = level

  def poll(self):
    return

  def close(self):
    self.closed = True


class FakeCursor:
  def __init__(self, db):
    self.db = db

  def __enter__(self):
    return self

  def __exit__(self, exc_type, exc, tb):
    return False

  def execute(self, sql, params=()):
    sql = ' '.join(sql.split())
    self.db.executed.append((sql, tuple(params)))
    if self.db.fail_on and self.db.fail_on in sql:
      raise psycopg2.OperationalError('server closed the connection unexpectedly')

  def fetchone(self):
    return self.db.results.pop(0) if self.db.results else None

  def fetchall(self):
    return self.db.results.pop(0) if self.db.results else []
