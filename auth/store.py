"""
auth/store.py -- SQLAlchemy Core persistence for operator accounts and API keys.

Pattern: Repository + Data Mapper (same as registry/store.py).
OperatorStore is the repository; _row_to_operator / _row_to_api_key are the
mappers. Route and dependency code never touches SQL directly.

Operators are the humans (and their scripts) who approve devices. Devices
themselves never have rows here; they authenticate with device tokens issued
by credentials/tokens.py.

Security: all queries use bound parameters. No f-strings in SQL.

DB path: auth/fleetprov_auth.db unless AUTH_DATABASE_URL says otherwise.

Layer rule: no imports from api/, registry/, throttle/, credentials/, or
provisioning/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import ApiKey, Operator

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'fleetprov_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_operators = Table(
    "operators",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="operator"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("operator_id", Integer, nullable=False),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("created_at", String(32), nullable=False),
    Column("last_used", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class OperatorStore:
    """Repository for Operator and ApiKey entities.

    Usage:
        store = OperatorStore()
        store.create_operator(Operator(username="admin", role="admin", hashed_password=hash_password("secret")))
        operator = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def has_operators(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_operators)).scalar()
        return (result or 0) > 0

    def create_operator(self, operator: Operator) -> int:
        """Insert a new operator and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _operators.insert().values(
                    username=operator.username,
                    hashed_password=operator.hashed_password,
                    role=operator.role,
                    created_at=_now_iso(),
                    is_active=1 if operator.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> Operator | None:
        """Look up an operator by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_operators.select().where(_operators.c.username == username)).fetchone()
        return _row_to_operator(row) if row is not None else None

    def get_by_id(self, operator_id: int) -> Operator | None:
        with self.engine.connect() as conn:
            row = conn.execute(_operators.select().where(_operators.c.id == operator_id)).fetchone()
        return _row_to_operator(row) if row is not None else None

    def update_last_login(self, operator_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_operators.update().where(_operators.c.id == operator_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def get_api_keys(self, operator_id: int) -> list[ApiKey]:
        """Return all active API keys for an operator (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where((_api_keys.c.operator_id == operator_id) & (_api_keys.c.is_active == 1))
                .order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def create_api_key(self, api_key: ApiKey) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    operator_id=api_key.operator_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    created_at=_now_iso(),
                    is_active=1,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up an active API key by its HMAC hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.key_hash == key_hash) & (_api_keys.c.is_active == 1))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def update_api_key_last_used(self, key_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=_now_iso()))
            conn.commit()

    def revoke_api_key(self, key_id: int, operator_id: int) -> bool:
        """Deactivate a key. operator_id must match, so one operator cannot
        revoke another's key by guessing ids.

        Returns True if a key was revoked, False if not found, already revoked,
        or owned by someone else.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where(
                    (_api_keys.c.id == key_id)
                    & (_api_keys.c.operator_id == operator_id)
                    & (_api_keys.c.is_active == 1)
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_operator(row) -> Operator:
    return Operator(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=row.role,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        operator_id=row.operator_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=row.created_at,
        last_used=row.last_used,
        is_active=bool(row.is_active),
    )
