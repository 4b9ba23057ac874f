"""
API request and response models for FleetProv REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are kept
separate from the dataclasses in registry/models.py, which own the domain
representation; route handlers map between the two.

Field names on the device-facing routes are camelCase (deviceId,
scriptUrl, provisioningStatus) because that is what deployed device firmware
sends and expects. Operator-facing routes use snake_case.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from registry.models import DeviceRecord

# ---------------------------------------------------------------------------
# Device-facing requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Body for POST /register. Sanitization happens in the registry, not here."""

    serial: str = Field(max_length=1024)


class CheckStatusRequest(BaseModel):
    """Body for POST /check-status."""

    device_id: str = Field(alias="deviceId", min_length=1, max_length=64)


class StatusReport(BaseModel):
    """Body for POST /status.

    provisioningStatus is optional: periodic health reports only merge state.
    Unknown top-level fields are accepted and ignored so newer firmware does
    not break against an older server.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    device_id: str = Field(alias="deviceId", min_length=1, max_length=64)
    provisioning_status: Optional[str] = Field(default=None, alias="provisioningStatus", max_length=40)
    provisioning_instance_uuid: Optional[str] = Field(default=None, alias="provisioningInstanceUuid", max_length=36)
    state: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Device-facing responses
# ---------------------------------------------------------------------------


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deviceId: str
    status: str


class CheckStatusResponse(BaseModel):
    """status is "approved" (with scriptUrl) or the current provisioning status."""

    model_config = ConfigDict(frozen=True)

    status: str
    scriptUrl: Optional[str] = None


class StatusReportResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deviceId: str
    provisioningStatus: str
    commissioned: bool


# ---------------------------------------------------------------------------
# Operator-facing device models
# ---------------------------------------------------------------------------


class DeviceResponse(BaseModel):
    """One device as shown to operators. Never includes credentials."""

    model_config = ConfigDict(frozen=True)

    id: str
    serial: str
    hash: str
    friendly_name: str
    provisioning_status: str
    approved_for_provisioning: bool
    provisioning_instance_uuid: Optional[str]
    commissioned: bool
    state: dict[str, Any]
    last_provision_request: Optional[str]
    last_provision_ip: Optional[str]
    last_seen: Optional[str]
    last_reported_status: Optional[str]
    last_reported_at: Optional[str]
    created_at: str

    @classmethod
    def from_record(cls, record: DeviceRecord) -> "DeviceResponse":
        return cls(
            id=record.id,
            serial=record.serial,
            hash=record.hash,
            friendly_name=record.friendly_name,
            provisioning_status=record.provisioning_status.value,
            approved_for_provisioning=record.approved_for_provisioning,
            provisioning_instance_uuid=record.provisioning_instance_uuid,
            commissioned=record.commissioned,
            state=record.state,
            last_provision_request=record.last_provision_request,
            last_provision_ip=record.last_provision_ip,
            last_seen=record.last_seen,
            last_reported_status=record.last_reported_status,
            last_reported_at=record.last_reported_at,
            created_at=record.created_at,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Operator auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    username: str
    role: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    operator_id: int
    username: str
    role: str


class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class ApiKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    key_prefix: str
    created_at: str = ""
    last_used: Optional[str] = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation; the only time the raw key is visible."""

    key: str
