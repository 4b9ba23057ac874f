"""
auth/tokens.py -- Operator JWTs, password hashing, and API key utilities.

  JWT: python-jose with HS256, signed with SECRET_KEY. Tokens carry
       operator_id, username, role, and expiry. Verification returns None on
       any failure; the route layer turns that into a 401. Device tokens are a
       separate concern with their own key (credentials/tokens.py), so an
       operator token can never pass as a device token or vice versa.

  Passwords: bcrypt, used directly. _DUMMY_HASH equalizes timing in
       authenticate_operator() so response time does not reveal whether a
       username exists.

  API keys: fp_<64 hex chars>, stored as HMAC-SHA256(SECRET_KEY, raw_key) so
       lookup is a single indexed query.

Layer rule: may import from core/ only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Operator
    from auth.store import OperatorStore

logger = logging.getLogger("fleetprov.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API caps passwords at 255
    characters so inputs stay in a sane range.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or a password bcrypt refuses outright.
        return False


_DUMMY_HASH: str = hash_password("fleetprov_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(operator_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed operator JWT.

    expire_seconds of 0 means Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "operator_id": operator_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an operator JWT. Returns the payload or None."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "operator_id" not in payload or "role" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Operator authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_operator(store: OperatorStore, username: str, password: str) -> Operator | None:
    """Check a username/password pair. Returns the Operator or None.

    bcrypt runs whether or not the username exists.
    """
    operator = store.get_by_username(username)
    if operator is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, operator.hashed_password):
        return None
    if not operator.is_active:
        return None
    return operator


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    return f"fp_{secrets.token_hex(32)}"


def hash_api_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()
