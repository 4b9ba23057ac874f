"""
registry/store.py -- SQLAlchemy-backed device registry.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in registry/models.py
remain the authoritative domain representation. Swapping SQLite for PostgreSQL
is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. DeviceRegistry is the repository;
_row_to_device is the mapper. Route handlers never touch SQL directly.

Concurrency: request workers share nothing in-process, so every guarantee
comes from the database. Each status change is one conditional UPDATE whose
WHERE clause carries the expected version (optimistic concurrency) and any
extra precondition. rowcount == 1 means the write won; 0 means another writer
got there first. There are no read-then-write sequences on provisioning state.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    registry = DeviceRegistry()                                # SQLite default
    registry = DeviceRegistry("postgresql://user:pw@host/db")  # PostgreSQL
    result = registry.register("SN-001")
    record = registry.get_by_hash(hash_serial("SN-001"))
    registry.set_approval(record.id, True)
    registry.close()
"""

from __future__ import annotations

import dataclasses
import json
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_, create_engine, event, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.errors import ConcurrentUpdate, IllegalTransition, NotFoundError, ValidationError
from core.identity import hash_serial, sanitize_serial
from registry.models import DeviceRecord, ProvisioningStatus, RegistrationResult

logger = logging.getLogger("fleetprov.registry")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'fleetprov_devices.db'}"

_MAX_SERIAL_LENGTH = 255

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_devices = Table(
    "devices",
    metadata,
    Column("id", String(20), primary_key=True),
    Column("serial", String(_MAX_SERIAL_LENGTH), nullable=False, unique=True),
    Column("hash", String(64), nullable=False, unique=True),
    Column("friendly_name", String(300)),
    Column("approved_for_provisioning", Integer, nullable=False, server_default="0"),
    Column("provisioning_status", String(40), nullable=False, server_default="awaiting_approval"),
    Column("provisioning_instance_uuid", String(36)),
    Column("commissioned", Integer, nullable=False, server_default="0"),
    Column("state", Text),  # JSON object serialized as text
    Column("last_provision_request", String(32)),
    Column("last_provision_ip", String(45)),
    Column("last_seen", String(32)),
    Column("last_reported_status", String(40)),
    Column("last_reported_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# Status workflow
# ---------------------------------------------------------------------------

_S = ProvisioningStatus

# Allowed edges, keyed by current status (None = no record yet).
# script_generated -> approval_pending_request_received only happens when a
# failed issuance restores the pre-claim state.
_TRANSITIONS: dict[Optional[ProvisioningStatus], frozenset[ProvisioningStatus]] = {
    None: frozenset({_S.AWAITING_APPROVAL}),
    _S.AWAITING_APPROVAL: frozenset(
        {_S.AWAITING_APPROVAL, _S.APPROVAL_PENDING_REQUEST_RECEIVED, _S.SCRIPT_GENERATED}
    ),
    _S.APPROVAL_PENDING_REQUEST_RECEIVED: frozenset(
        {_S.AWAITING_APPROVAL, _S.APPROVAL_PENDING_REQUEST_RECEIVED, _S.SCRIPT_GENERATED}
    ),
    _S.SCRIPT_GENERATED: frozenset(
        {
            _S.AWAITING_APPROVAL,
            _S.APPROVAL_PENDING_REQUEST_RECEIVED,
            _S.SCRIPT_GENERATED,
            _S.PROVISIONING_COMPLETE,
        }
    ),
    _S.PROVISIONING_COMPLETE: frozenset({_S.AWAITING_APPROVAL}),
}


def check_transition(from_status: Optional[ProvisioningStatus], to_status: ProvisioningStatus) -> None:
    """Raise IllegalTransition unless from_status -> to_status is in the table."""
    if to_status not in _TRANSITIONS[from_status]:
        raise IllegalTransition(from_status.value if from_status else None, to_status.value)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    # Fixed microsecond precision keeps stored timestamps lexically comparable,
    # which the claim condition relies on.
    return dt.isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DeviceRegistry:
    """Repository for DeviceRecord entities and their provisioning status."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], datetime] = _utc_now) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self._clock = clock

    def _now(self) -> str:
        return _iso(self._clock())

    # ------------------------------------------------------------------
    # Single write site for provisioning_status
    # ------------------------------------------------------------------

    def _transition(
        self,
        record: DeviceRecord,
        to_status: ProvisioningStatus,
        *,
        conditions: tuple = (),
        check_version: bool = True,
        **values: Any,
    ) -> bool:
        """Move record to to_status in one conditional UPDATE.

        The transition is validated against the status held in record, and
        the WHERE clause pins the row to that same status (and, by default,
        the same version), so the validated edge is the edge actually taken.

        Returns True if the row was updated, False if a precondition failed.
        """
        check_transition(record.provisioning_status, to_status)
        where = [
            _devices.c.id == record.id,
            _devices.c.provisioning_status == record.provisioning_status.value,
        ]
        if check_version:
            where.append(_devices.c.version == record.version)
        where.extend(conditions)
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where(and_(*where))
                .values(provisioning_status=to_status.value, version=_devices.c.version + 1, **values)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, raw_serial: str) -> RegistrationResult:
        """Create a record for a new serial, or reset the existing one.

        Re-registration is how a factory-reset device re-enters the approval
        queue: the existing record goes back to awaiting_approval with the
        approval flag cleared. It never creates a second record.

        Raises ValidationError if the serial is empty after sanitization.
        """
        serial = sanitize_serial(raw_serial)
        if not serial:
            raise ValidationError("Serial number is empty after sanitization.")
        if len(serial) > _MAX_SERIAL_LENGTH:
            raise ValidationError("Serial number is too long.", detail=f"Maximum is {_MAX_SERIAL_LENGTH} characters.")

        existing = self._get_where(_devices.c.serial == serial)
        if existing is not None:
            return self._reset(existing)

        now = self._now()
        device_id = secrets.token_hex(10)
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _devices.insert().values(
                        id=device_id,
                        serial=serial,
                        hash=hash_serial(serial),
                        friendly_name=f"Device {serial}",
                        approved_for_provisioning=0,
                        provisioning_status=ProvisioningStatus.AWAITING_APPROVAL.value,
                        commissioned=0,
                        state=json.dumps({"connectivity_status": "unknown"}),
                        created_at=now,
                        last_seen=now,
                        version=0,
                    )
                )
                conn.commit()
        except IntegrityError:
            # A concurrent registration of the same serial won the UNIQUE race.
            existing = self._get_where(_devices.c.serial == serial)
            if existing is None:
                raise
            return self._reset(existing)

        logger.info("Registered new device %s (serial=%r)", device_id, serial)
        return RegistrationResult(device_id=device_id, status=ProvisioningStatus.AWAITING_APPROVAL, created=True)

    def _reset(self, record: DeviceRecord) -> RegistrationResult:
        # Any state may go back to awaiting_approval, so the reset is
        # unconditional: it must win over an in-flight claim, not lose to it.
        check_transition(record.provisioning_status, ProvisioningStatus.AWAITING_APPROVAL)
        with self.engine.connect() as conn:
            conn.execute(
                _devices.update()
                .where(_devices.c.id == record.id)
                .values(
                    provisioning_status=ProvisioningStatus.AWAITING_APPROVAL.value,
                    approved_for_provisioning=0,
                    last_provision_request=None,
                    last_seen=self._now(),
                    version=_devices.c.version + 1,
                )
            )
            conn.commit()
        logger.info("Re-registration reset device %s to awaiting_approval", record.id)
        return RegistrationResult(device_id=record.id, status=ProvisioningStatus.AWAITING_APPROVAL, created=False)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_where(self, clause) -> DeviceRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(clause)).fetchone()
        return _row_to_device(row) if row is not None else None

    def get(self, device_id: str) -> DeviceRecord | None:
        """Look up a device by id. Returns None if not found."""
        return self._get_where(_devices.c.id == device_id)

    def get_by_hash(self, device_hash: str) -> DeviceRecord | None:
        """Look up a device by its lowercase serial hash. O(1) via UNIQUE index."""
        return self._get_where(_devices.c.hash == device_hash)

    def list_devices(self, status: Optional[ProvisioningStatus] = None) -> list[DeviceRecord]:
        """Return all devices (optionally filtered by status), newest first."""
        query = _devices.select().order_by(_devices.c.created_at.desc())
        if status is not None:
            query = query.where(_devices.c.provisioning_status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_device(r) for r in rows]

    def check_status(self, device_id: str) -> DeviceRecord:
        """Return the record for a polling device and stamp last_seen.

        The last_seen stamp does not bump version: a poll must never make a
        concurrent provisioning claim fail.

        Raises NotFoundError if the id is unknown.
        """
        now = self._now()
        with self.engine.connect() as conn:
            result = conn.execute(_devices.update().where(_devices.c.id == device_id).values(last_seen=now))
            conn.commit()
        if result.rowcount == 0:
            raise NotFoundError("Device not found.", detail=f"No device with id {device_id[:40]!r}.")
        record = self.get(device_id)
        if record is None:
            raise NotFoundError("Device not found.")
        return record

    # ------------------------------------------------------------------
    # Provisioning workflow
    # ------------------------------------------------------------------

    def mark_approval_requested(self, record: DeviceRecord) -> None:
        """Record that an unapproved device asked for its script."""
        if record.provisioning_status == ProvisioningStatus.APPROVAL_PENDING_REQUEST_RECEIVED:
            return
        updated = self._transition(
            record,
            ProvisioningStatus.APPROVAL_PENDING_REQUEST_RECEIVED,
            conditions=(_devices.c.approved_for_provisioning == 0,),
            check_version=False,
        )
        if not updated:
            logger.info("Device %s changed concurrently; approval-pending flag not written", record.id)

    def claim_provisioning(
        self,
        record: DeviceRecord,
        instance_uuid: str,
        source_ip: Optional[str],
        claim_ttl_seconds: int,
    ) -> DeviceRecord | None:
        """Atomically move an approved device to script_generated.

        Succeeds only if, at the instant of the write:
          - the row still has the version that was read (nobody else wrote),
          - the device is still approved,
          - it is not already script_generated with a claim younger than
            claim_ttl_seconds (another worker is mid-issuance).

        Returns the claimed record, or None if any precondition failed.
        """
        now_dt = self._clock()
        now = _iso(now_dt)
        cutoff = _iso(now_dt - timedelta(seconds=claim_ttl_seconds))
        not_mid_issuance = or_(
            _devices.c.provisioning_status != ProvisioningStatus.SCRIPT_GENERATED.value,
            _devices.c.last_provision_request.is_(None),
            _devices.c.last_provision_request <= cutoff,
        )
        claimed = self._transition(
            record,
            ProvisioningStatus.SCRIPT_GENERATED,
            conditions=(_devices.c.approved_for_provisioning == 1, not_mid_issuance),
            provisioning_instance_uuid=instance_uuid,
            last_provision_request=now,
            last_provision_ip=source_ip,
        )
        if not claimed:
            logger.warning("Provisioning claim lost for device %s (concurrent request or approval change)", record.id)
            return None
        return dataclasses.replace(
            record,
            provisioning_status=ProvisioningStatus.SCRIPT_GENERATED,
            provisioning_instance_uuid=instance_uuid,
            last_provision_request=now,
            last_provision_ip=source_ip,
            version=record.version + 1,
        )

    def release_claim(self, claimed: DeviceRecord, previous: DeviceRecord) -> bool:
        """Restore the pre-claim state after a failed issuance.

        Conditioned on the claim's instance uuid, so a release can never undo a
        newer claim or a re-registration that happened in the meantime.
        """
        released = self._transition(
            claimed,
            previous.provisioning_status,
            conditions=(_devices.c.provisioning_instance_uuid == claimed.provisioning_instance_uuid,),
            check_version=False,
            provisioning_instance_uuid=previous.provisioning_instance_uuid,
            last_provision_request=previous.last_provision_request,
            last_provision_ip=previous.last_provision_ip,
        )
        if released:
            logger.info("Released provisioning claim for device %s", claimed.id)
        else:
            logger.warning("Provisioning claim for device %s was superseded; nothing to release", claimed.id)
        return released

    # ------------------------------------------------------------------
    # Administrative approval
    # ------------------------------------------------------------------

    def set_approval(self, device_id: str, approved: bool) -> DeviceRecord:
        """Grant or revoke provisioning approval.

        Revoking also sends a device that is waiting for, or has just received,
        a script back to awaiting_approval.

        Raises NotFoundError if the id is unknown.
        """
        record = self.get(device_id)
        if record is None:
            raise NotFoundError("Device not found.", detail=f"No device with id {device_id[:40]!r}.")

        back_to_queue = {ProvisioningStatus.SCRIPT_GENERATED, ProvisioningStatus.APPROVAL_PENDING_REQUEST_RECEIVED}
        if not approved and record.provisioning_status in back_to_queue:
            updated = self._transition(
                record,
                ProvisioningStatus.AWAITING_APPROVAL,
                check_version=False,
                approved_for_provisioning=0,
            )
            if not updated:
                # Status moved underneath us; the flag still has to be cleared.
                self._set_approval_flag(device_id, False)
        else:
            self._set_approval_flag(device_id, approved)

        logger.info("Device %s approval set to %s", device_id, approved)
        return self.get(device_id)  # type: ignore[return-value]

    def _set_approval_flag(self, device_id: str, approved: bool) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _devices.update()
                .where(_devices.c.id == device_id)
                .values(approved_for_provisioning=1 if approved else 0, version=_devices.c.version + 1)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Device status reports
    # ------------------------------------------------------------------

    def record_status_report(
        self,
        device_id: str,
        reported_status: Optional[str],
        state: Optional[dict[str, Any]] = None,
    ) -> DeviceRecord:
        """Merge a device-reported state and handle the terminal transition.

        Only "provisioning_complete" changes provisioning_status; any other
        reported value is kept in last_reported_status for auditing.

        Raises NotFoundError for an unknown id and IllegalTransition when
        provisioning_complete is reported from a state that cannot reach it.
        Raises ConcurrentUpdate if every optimistic write lost to another writer.
        """
        # Retry the optimistic write a few times: a concurrent approval or
        # poll bumps the version without invalidating this report.
        for _attempt in range(3):
            record = self.get(device_id)
            if record is None:
                raise NotFoundError("Device not found.", detail=f"No device with id {device_id[:40]!r}.")

            now = self._now()
            merged = dict(record.state)
            for key, value in (state or {}).items():
                if key != "lastUpdate":
                    merged[key] = value
            merged["lastUpdate"] = now
            values: dict[str, Any] = {
                "last_reported_status": (reported_status or "unknown")[:40],
                "last_reported_at": now,
            }

            completing = (
                reported_status == ProvisioningStatus.PROVISIONING_COMPLETE.value
                and record.provisioning_status != ProvisioningStatus.PROVISIONING_COMPLETE
            )
            if completing:
                merged["service_status"] = "starting"
                merged["connectivity_status"] = "connecting"
                values["state"] = json.dumps(merged)
                values["commissioned"] = 1
                updated = self._transition(record, ProvisioningStatus.PROVISIONING_COMPLETE, **values)
            else:
                values["state"] = json.dumps(merged)
                with self.engine.connect() as conn:
                    result = conn.execute(
                        _devices.update()
                        .where((_devices.c.id == device_id) & (_devices.c.version == record.version))
                        .values(version=_devices.c.version + 1, **values)
                    )
                    conn.commit()
                updated = result.rowcount == 1

            if updated:
                if completing:
                    logger.info("Device %s reported provisioning_complete", device_id)
                return self.get(device_id)  # type: ignore[return-value]

        logger.warning("Status report for %s lost every retry to concurrent writers", device_id)
        raise ConcurrentUpdate(
            "Device was updated concurrently; retry the report.", detail="concurrent update, retry"
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_device(row) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        serial=row.serial,
        hash=row.hash,
        provisioning_status=ProvisioningStatus(row.provisioning_status),
        approved_for_provisioning=bool(row.approved_for_provisioning),
        provisioning_instance_uuid=row.provisioning_instance_uuid,
        friendly_name=row.friendly_name or "",
        commissioned=bool(row.commissioned),
        state=json.loads(row.state) if row.state else {},
        last_provision_request=row.last_provision_request,
        last_provision_ip=row.last_provision_ip,
        last_seen=row.last_seen,
        last_reported_status=row.last_reported_status,
        last_reported_at=row.last_reported_at,
        created_at=row.created_at,
        version=row.version,
    )
