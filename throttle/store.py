"""
throttle/store.py -- Database-backed minimum-interval rate limiter.

Each key (a sanitized source IP or a device id) maps to the timestamp of the
last request that was let through. A request is allowed when at least
interval_seconds have passed since then.

The check and the update are ONE statement:

    INSERT INTO rate_limits (key, last_accepted) VALUES (:key, :now)
    ON CONFLICT (key) DO UPDATE SET last_accepted = :now
    WHERE rate_limits.last_accepted <= :now - :interval

If the statement touched a row, this request made the claim and is allowed.
Two concurrent requests cannot both observe "not limited": the second one's
WHERE clause sees the first one's timestamp.

Entries older than the longest interval in use are useless; purge_expired()
removes them and is called periodically from the API lifespan.

Usage:
    limiter = RateLimiter()
    decision = limiter.check(ip_key("203.0.113.7"), 5)
    if not decision.allowed:
        wait(decision.retry_after)
    limiter.purge_expired(max_age_seconds=60)
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Column, Float, MetaData, String, Table, create_engine, event, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

logger = logging.getLogger("fleetprov.throttle")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'fleetprov_throttle.db'}"

# Characters that are awkward in storage keys (and were invalid in the
# original key-value store paths). IPv6 colons are folded too.
_KEY_UNSAFE = str.maketrans({c: "-" for c in ".#$[]/:"})

_metadata = MetaData()

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("last_accepted", Float, nullable=False),  # epoch seconds
)


@dataclass(frozen=True)
class RateDecision:
    """Result of RateLimiter.check(). retry_after is 0 when allowed."""

    allowed: bool
    retry_after: int = 0


def sanitize_ip_key(ip: str | None) -> str:
    """Turn a client address into a storage-safe key fragment."""
    if not ip:
        logger.warning("sanitize_ip_key called without an address")
        return "unknown-ip"
    return str(ip).translate(_KEY_UNSAFE)


def ip_key(ip: str | None) -> str:
    return f"ip:{sanitize_ip_key(ip)}"


def device_key(device_id: str) -> str:
    return f"device:{device_id}"


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class RateLimiter:
    """Minimum-interval limiter with atomic test-and-set per key."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], float] = time.time) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._clock = clock
        self._dialect = self.engine.dialect.name
        if self._dialect not in ("sqlite", "postgresql"):
            raise ValueError(f"RateLimiter needs an upsert-capable database, got {self._dialect!r}")

    def _upsert(self, key: str, now: float, interval_seconds: float):
        insert = sqlite.insert if self._dialect == "sqlite" else postgresql.insert
        stmt = insert(_rate_limits).values(key=key, last_accepted=now)
        return stmt.on_conflict_do_update(
            index_elements=[_rate_limits.c.key],
            set_={"last_accepted": now},
            where=_rate_limits.c.last_accepted <= now - interval_seconds,
        )

    def check(self, key: str, interval_seconds: float) -> RateDecision:
        """Allow and record this request, or deny it with a retry hint.

        An interval of 0 always allows (the limiter is effectively disabled).
        """
        now = self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(self._upsert(key, now, interval_seconds))
            conn.commit()
            if result.rowcount == 1:
                return RateDecision(allowed=True)
            last = conn.execute(select(_rate_limits.c.last_accepted).where(_rate_limits.c.key == key)).scalar()

        if last is None:
            # Purged between the two statements; the caller can retry at once.
            retry_after = 1
        else:
            retry_after = max(1, math.ceil(interval_seconds - (now - last)))
        logger.info("Rate limit hit for %s (retry after %ds)", key, retry_after)
        return RateDecision(allowed=False, retry_after=retry_after)

    def purge_expired(self, max_age_seconds: float) -> int:
        """Delete entries older than max_age_seconds. Returns number of rows removed."""
        cutoff = self._clock() - max_age_seconds
        with self.engine.connect() as conn:
            result = conn.execute(_rate_limits.delete().where(_rate_limits.c.last_accepted < cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
