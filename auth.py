import enum
import logging
from dataclasses import dataclass
from functools import wraps

from flask import g, redirect, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from store import SERVER_TIMESTAMP, Query

logger = logging.getLogger(__name__)

USERS = 'users'
MIN_PASSWORD_LENGTH = 6


class AccountError(ValueError):
  """Sign-up or sign-in input that cannot be accepted."""


@dataclass(frozen=True)
class Identity:
  email: str
  display_name: str
  avatar_url: str = None

  def to_session(self):
    return {'email': self.email, 'name': self.display_name, 'image': self.avatar_url}


class SessionStatus(enum.Enum):
  PENDING = 'pending'
  SIGNED_IN = 'signed_in'
  SIGNED_OUT = 'signed_out'


@dataclass(frozen=True)
class SessionState:
  status: SessionStatus
  identity: Identity = None

  @classmethod
  def pending(cls):
    return cls(SessionStatus.PENDING)

  @classmethod
  def signed_in(cls, identity):
    return cls(SessionStatus.SIGNED_IN, identity)

  @classmethod
  def signed_out(cls):
    return cls(SessionStatus.SIGNED_OUT)

  @property
  def is_signed_in(self):
    return self.status is SessionStatus.SIGNED_IN


def resolve_identity(session_data):
  """Return the Identity stored in a session mapping, or None."""
  user = session_data.get('user')
  if not user or not user.get('email'):
    return None
  return Identity(user['email'], user.get('name') or '', user.get('image'))


def resolve_session_state(session_data):
  identity = resolve_identity(session_data)
  return SessionState.signed_in(identity) if identity else SessionState.signed_out()


def current_state():
  return getattr(g, 'auth', None) or SessionState.pending()


def login_required(f):
  """
  Session gate. Signed-out requests are redirected (302) to the root page
  before the view runs; signed-in requests get the Identity as `identity`.
  """
  @wraps(f)
  def decorated_function(*args, **kwargs):
    state = current_state()
    if state.status is SessionStatus.PENDING:
      state = g.auth = resolve_session_state(session)
    if not state.is_signed_in:
      return redirect(url_for('index'))
    return f(*args, identity=state.identity, **kwargs)
  return decorated_function


# --- Accounts ---
def find_user(store, email):
  users = store.query(Query(USERS).where('email', email))
  return users[0] if users else None


def sign_up(store, full_name, email, password, confirm_password, avatar_url=None):
  full_name = (full_name or '').strip()
  email = (email or '').strip().lower()
  if not full_name or not email:
    raise AccountError('Name and email are required.')
  if password != confirm_password:
    raise AccountError('Passwords do not match.')
  if len(password or '') < MIN_PASSWORD_LENGTH:
    raise AccountError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters long.')
  if find_user(store, email):
    raise AccountError('An account with this email already exists.')
  store.create(USERS, {
    'email': email,
    'name': full_name,
    'image': (avatar_url or '').strip() or None,
    'password': generate_password_hash(password),
    'created_at': SERVER_TIMESTAMP,
  })
  logger.info("Account created email=%s", email)
  return Identity(email, full_name, (avatar_url or '').strip() or None)


def sign_in(store, email, password):
  email = (email or '').strip().lower()
  user = find_user(store, email)
  if not user or not check_password_hash(user.get('password', ''), password or ''):
    raise AccountError('Invalid email or password.')
  return Identity(user.get('email'), user.get('name') or '', user.get('image'))
