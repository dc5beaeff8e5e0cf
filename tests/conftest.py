import pytest

from app import app
from auth import Identity

from .fakes import RecordingStore


@pytest.fixture()
def store():
  return RecordingStore()


@pytest.fixture()
def client(store):
  app.config['TESTING'] = True
  app.config['PUBLIC_URL'] = 'https://example.com'
  app.extensions['document_store'] = store
  with app.test_client() as client:
    yield client
  app.extensions.pop('document_store', None)


@pytest.fixture()
def identity():
  return Identity('ana@example.com', 'Ana Souza', 'https://example.com/ana.png')


@pytest.fixture()
def signed_in(client, identity):
  with client.session_transaction() as sess:
    sess['user'] = identity.to_session()
  return client
