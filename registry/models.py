"""
registry/models.py -- Domain dataclasses for the device registry.

These are pure data containers with zero logic. All business logic (status
transitions, conditional claims, resets) lives in registry/store.py.

Separation of concerns: these dataclasses are the registry's domain truth.
api/models.py holds the HTTP contract; route handlers map between the two.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ProvisioningStatus(str, Enum):
    """Closed set of provisioning states. See registry/store._TRANSITIONS."""

    AWAITING_APPROVAL = "awaiting_approval"
    APPROVAL_PENDING_REQUEST_RECEIVED = "approval_pending_request_received"
    SCRIPT_GENERATED = "script_generated"
    PROVISIONING_COMPLETE = "provisioning_complete"


@dataclass
class DeviceRecord:
    """A physical device known to the fleet.

    hash is SHA-256(serial) and is the only identifier a device presents when
    asking for its provisioning script.

    provisioning_instance_uuid is re-minted on every successful claim; the
    auth token issued alongside the script carries the same value, so a status
    report from an older script can be told apart from the current one.

    version is the optimistic-concurrency counter. Every state-changing write
    is conditioned on it and increments it.
    """

    id: str
    serial: str
    hash: str
    provisioning_status: ProvisioningStatus = ProvisioningStatus.AWAITING_APPROVAL
    approved_for_provisioning: bool = False
    provisioning_instance_uuid: Optional[str] = None
    friendly_name: str = ""
    commissioned: bool = False
    state: dict[str, Any] = field(default_factory=dict)
    last_provision_request: Optional[str] = None  # ISO 8601
    last_provision_ip: Optional[str] = None
    last_seen: Optional[str] = None  # ISO 8601
    last_reported_status: Optional[str] = None
    last_reported_at: Optional[str] = None  # ISO 8601
    created_at: str = ""  # ISO 8601, set by store on insert
    version: int = 0


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of register(): created=False means an existing record was reset."""

    device_id: str
    status: ProvisioningStatus
    created: bool
