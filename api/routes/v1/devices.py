"""
api/routes/v1/devices.py -- Operator device-approval routes.

Routes:
  GET  /devices                 -- list devices (optional ?status= filter)
  GET  /devices/{device_id}     -- one device
  POST /devices/{device_id}/approve
  POST /devices/{device_id}/revoke

Approval is the only gate for credential issuance, so approve/revoke require
the admin role. Listing is open to any authenticated operator.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import DeviceResponse, ErrorDetail
from auth.dependencies import get_current_operator, require_admin
from auth.models import Operator
from registry.models import ProvisioningStatus
from registry.store import DeviceRegistry

logger = logging.getLogger("fleetprov.api")

router = APIRouter(dependencies=[Depends(get_current_operator)])


def _registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


@router.get("/devices", response_model=list[DeviceResponse])
def list_devices(request: Request, status: Optional[ProvisioningStatus] = None) -> list[DeviceResponse]:
    return [DeviceResponse.from_record(r) for r in _registry(request).list_devices(status)]


@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(request: Request, device_id: str) -> DeviceResponse:
    record = _registry(request).get(device_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message="Device not found.").model_dump(),
        )
    return DeviceResponse.from_record(record)


@router.post("/devices/{device_id}/approve", response_model=DeviceResponse)
def approve_device(
    request: Request,
    device_id: str,
    operator: Operator = Depends(require_admin),
) -> DeviceResponse:
    record = _registry(request).set_approval(device_id, True)
    logger.info("Operator %s approved device %s", operator.username, device_id)
    return DeviceResponse.from_record(record)


@router.post("/devices/{device_id}/revoke", response_model=DeviceResponse)
def revoke_device(
    request: Request,
    device_id: str,
    operator: Operator = Depends(require_admin),
) -> DeviceResponse:
    """Withdraw approval. A script already handed out stays valid until its
    credentials expire; this only stops new ones from being issued."""
    record = _registry(request).set_approval(device_id, False)
    logger.info("Operator %s revoked approval for device %s", operator.username, device_id)
    return DeviceResponse.from_record(record)
