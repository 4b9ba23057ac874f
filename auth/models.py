"""
auth/models.py -- Domain dataclasses for operator authentication.

Pure data containers, same approach as registry/models.py: dataclasses own
the shape, stores and routes do the work.

Layer rule: no imports from api/, registry/, throttle/, credentials/, or
provisioning/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Operator:
    """A human account allowed to approve devices.

    role is "admin" (may approve/revoke) or "viewer" (read-only device list).
    """

    username: str
    role: str  # "admin", "viewer"
    hashed_password: str
    id: int | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass
class ApiKey:
    """A long-lived operator credential for scripts and automation.

    key_hash is HMAC-SHA256(SECRET_KEY, raw_key); the raw key is shown once at
    creation and never stored. key_prefix (first 12 chars) is display only.
    """

    operator_id: int
    name: str
    key_hash: str
    key_prefix: str
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None
    is_active: bool = True
