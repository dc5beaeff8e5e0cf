import logging
import select
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

import psycopg2
import psycopg2.extensions
import psycopg2.extras

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = 'documents'

# Placeholder value replaced by the store's clock when a document is created.
SERVER_TIMESTAMP = object()


class StoreError(RuntimeError):
  """Raised when the document store cannot complete a call."""


@dataclass(frozen=True)
class Document:
  id: str
  data: dict

  def get(self, key, default=None):
    return self.data.get(key, default)


@dataclass(frozen=True)
class Query:
  """Equality filters plus an optional single-field ordering."""
  collection: str
  filters: tuple = ()
  order_by: str = None
  descending: bool = False

  def where(self, field, value):
    return replace(self, filters=self.filters + ((field, value),))

  def ordered(self, field, descending=False):
    return replace(self, order_by=field, descending=descending)

  def matches(self, data):
    return all(data.get(field) == value for field, value in self.filters)


class Subscription:
  """
  Live query handle. Use it as a context manager so the underlying
  listener is released on every exit path. The first call to
  next_snapshot() always returns the initial result set; later calls
  return a fresh full snapshot after each change, or None when the
  timeout elapses first.
  """

  def __init__(self, query):
    self.query = query
    self.closed = False

  def __enter__(self):
    return self

  def __exit__(self, exc_type, exc, tb):
    self.close()

  def __iter__(self):
    while not self.closed:
      snapshot = self.next_snapshot()
      if snapshot is not None:
        yield snapshot

  def next_snapshot(self, timeout=None):
    raise NotImplementedError

  def close(self):
    if self.closed:
      return
    self.closed = True
    self._release()
    logger.debug("Subscription released collection=%s", self.query.collection)

  def _release(self):
    pass


def _stamp(fields):
  now = datetime.now(timezone.utc).isoformat()
  return {key: (now if value is SERVER_TIMESTAMP else value) for key, value in fields.items()}


# --- In-process backend ---
class MemoryDocumentStore:
  """Thread-safe in-process store with the same contract as the PostgreSQL one."""

  def __init__(self):
    self._collections = {}
    self._versions = {}
    self._changed = threading.Condition(threading.RLock())
    self.open_subscriptions = set()

  def init_schema(self):
    return

  def create(self, collection, fields):
    doc_id = str(uuid.uuid4())
    with self._changed:
      self._collections.setdefault(collection, {})[doc_id] = _stamp(fields)
      self._bump(collection)
    return doc_id

  def delete(self, collection, doc_id):
    with self._changed:
      if self._collections.get(collection, {}).pop(doc_id, None) is not None:
        self._bump(collection)

  def get(self, collection, doc_id):
    with self._changed:
      data = self._collections.get(collection, {}).get(doc_id)
      return Document(doc_id, dict(data)) if data is not None else None

  def query(self, query):
    with self._changed:
      docs = [Document(doc_id, dict(data))
              for doc_id, data in self._collections.get(query.collection, {}).items()
              if query.matches(data)]
    if query.order_by:
      # Insertion order breaks ties between equal timestamps.
      ranked = sorted(enumerate(docs), key=lambda pair: (pair[1].get(query.order_by), pair[0]),
                      reverse=query.descending)
      docs = [doc for _, doc in ranked]
    return docs

  def subscribe(self, query):
    subscription = MemorySubscription(self, query)
    with self._changed:
      self.open_subscriptions.add(subscription)
    return subscription

  def version(self, collection):
    with self._changed:
      return self._versions.get(collection, 0)

  def _bump(self, collection):
    self._versions[collection] = self._versions.get(collection, 0) + 1
    self._changed.notify_all()


class MemorySubscription(Subscription):
  def __init__(self, store, query):
    super().__init__(query)
    self._store = store
    self._seen = None

  def next_snapshot(self, timeout=None):
    store = self._store
    collection = self.query.collection
    with store._changed:
      if self.closed:
        return None
      if self._seen is not None:
        changed = store._changed.wait_for(
          lambda: self.closed or store.version(collection) != self._seen, timeout)
        if not changed or self.closed:
          return None
      self._seen = store.version(collection)
      return store.query(self.query)

  def _release(self):
    with self._store._changed:
      self._store.open_subscriptions.discard(self)
      self._store._changed.notify_all()


# --- PostgreSQL backend ---
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    collection VARCHAR(100) NOT NULL,
    data JSONB NOT NULL,
    created_at TIMESTAMPTZ DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection);
CREATE INDEX IF NOT EXISTS idx_documents_data ON documents USING GIN (data);
"""


def _is_uuid(value):
  try:
    uuid.UUID(str(value))
  except ValueError:
    return False
  return True


class PostgresDocumentStore:
  """
  Documents live in a single JSONB table keyed by collection. Every write
  sends NOTIFY on the 'documents' channel with the collection name as the
  payload; subscriptions LISTEN on a dedicated connection and re-run their
  query whenever their collection changes.
  """

  def __init__(self, dsn):
    self.dsn = dsn

  def _connect(self):
    try:
      return psycopg2.connect(self.dsn)
    except psycopg2.Error as e:
      raise StoreError(f"Database connection error: {e}") from e

  def _execute(self, sql, params=(), fetch=None):
    conn = self._connect()
    try:
      with conn:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
          cur.execute(sql, params)
          if fetch == 'one':
            return cur.fetchone()
          if fetch == 'all':
            return cur.fetchall()
          return None
    except psycopg2.Error as e:
      raise StoreError(str(e)) from e
    finally:
      conn.close()

  def init_schema(self):
    self._execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    self._execute(SCHEMA_SQL)

  def create(self, collection, fields):
    plain = {k: v for k, v in fields.items() if v is not SERVER_TIMESTAMP}
    stamped = [k for k, v in fields.items() if v is SERVER_TIMESTAMP]
    data_sql = "%s::jsonb" + "".join(" || jsonb_build_object(%s, now())" for _ in stamped)
    row = self._execute(
      f"""
      WITH inserted AS (
          INSERT INTO documents (collection, data) VALUES (%s, {data_sql}) RETURNING id
      )
      SELECT id, pg_notify(%s, %s) FROM inserted
      """,
      (collection, psycopg2.extras.Json(plain), *stamped, NOTIFY_CHANNEL, collection),
      fetch='one')
    return str(row['id'])

  def delete(self, collection, doc_id):
    if not _is_uuid(doc_id):
      return
    self._execute(
      """
      WITH deleted AS (
          DELETE FROM documents WHERE collection = %s AND id = %s RETURNING id
      )
      SELECT pg_notify(%s, %s) FROM deleted
      """,
      (collection, doc_id, NOTIFY_CHANNEL, collection))

  def get(self, collection, doc_id):
    if not _is_uuid(doc_id):
      return None
    row = self._execute(
      "SELECT id, data FROM documents WHERE collection = %s AND id = %s",
      (collection, doc_id), fetch='one')
    return Document(str(row['id']), row['data']) if row else None

  def query(self, query):
    sql = "SELECT id, data FROM documents WHERE collection = %s"
    params = [query.collection]
    if query.filters:
      sql += " AND data @> %s::jsonb"
      params.append(psycopg2.extras.Json(dict(query.filters)))
    if query.order_by:
      sql += " ORDER BY data -> %s " + ("DESC" if query.descending else "ASC") + ", created_at"
      params.append(query.order_by)
    else:
      sql += " ORDER BY created_at"
    rows = self._execute(sql, tuple(params), fetch='all')
    return [Document(str(row['id']), row['data']) for row in rows]

  def subscribe(self, query):
    return PostgresSubscription(self, query)


class PostgresSubscription(Subscription):
  def __init__(self, store, query):
    super().__init__(query)
    self._store = store
    self._initial = True
    self._conn = store._connect()
    try:
      self._conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
      with self._conn.cursor() as cur:
        cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
    except psycopg2.Error as e:
      self._conn.close()
      raise StoreError(str(e)) from e

  def next_snapshot(self, timeout=None):
    if self.closed:
      return None
    if self._initial:
      self._initial = False
      return self._store.query(self.query)
    if select.select([self._conn], [], [], timeout) == ([], [], []):
      return None
    try:
      self._conn.poll()
    except psycopg2.Error as e:
      raise StoreError(str(e)) from e
    relevant = False
    while self._conn.notifies:
      notify = self._conn.notifies.pop(0)
      if notify.payload == self.query.collection:
        relevant = True
    return self._store.query(self.query) if relevant else None

  def _release(self):
    try:
      with self._conn.cursor() as cur:
        cur.execute(f"UNLISTEN {NOTIFY_CHANNEL};")
    except psycopg2.Error:
      logger.warning("UNLISTEN failed; closing connection anyway")
    finally:
      self._conn.close()
