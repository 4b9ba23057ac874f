"""
api/routes/devices.py -- Device-facing endpoints (unversioned, unauthenticated
except POST /status).

Routes:
  POST /register                      -- register or reset a device by serial
  POST /check-status                  -- poll approval status by device id
  GET  /provision?device_hash=<hex>   -- download the one-time provisioning script
  GET  /bootstrap?tag=<tag>           -- download a tagged first-stage registration script
  POST /status                        -- device status report (Bearer token)

These paths are baked into device firmware, so they are not under /api/v1.

Handlers are plain def: every call does blocking database work and, for
/provision, up to two upstream HTTP calls. FastAPI runs them in its
threadpool. Errors are ProvisioningError subclasses and are turned into the
standard error envelope by the handler in api/main.py, except on /bootstrap,
which answers failures with a shell script.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    CheckStatusRequest,
    CheckStatusResponse,
    RegisterRequest,
    RegisterResponse,
    StatusReport,
    StatusReportResponse,
)
from auth.dependencies import require_device_reporter
from core.errors import ProvisioningError
from credentials.tokens import StatusReporter
from provisioning.bootstrap import BootstrapLibrary, error_script
from provisioning.orchestrator import ProvisioningOrchestrator

router = APIRouter()


def _orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """201 for a new device, 200 when an existing serial was reset."""
    result = _orchestrator(request).register(body.serial)
    return JSONResponse(
        status_code=201 if result.created else 200,
        content=RegisterResponse(deviceId=result.device_id, status=result.status.value).model_dump(),
    )


@router.post("/check-status", response_model=CheckStatusResponse, response_model_exclude_none=True)
def check_status(request: Request, body: CheckStatusRequest) -> CheckStatusResponse:
    view = _orchestrator(request).check_status(body.device_id)
    return CheckStatusResponse(status=view.status, scriptUrl=view.script_url)


@router.get("/provision", response_class=Response)
def provision(
    request: Request,
    device_hash: str = Query(default="", max_length=128),
) -> Response:
    """Return the provisioning script as a shell-script attachment.

    The body carries live credentials: never cache it anywhere.
    """
    source_ip = request.client.host if request.client else None
    script = _orchestrator(request).fetch_provisioning_script(device_hash, source_ip)
    return Response(
        content=script.content,
        media_type="text/x-shellscript; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{script.filename}"',
            "Cache-Control": "no-store",
        },
    )


@router.get("/bootstrap", response_class=Response)
def bootstrap(request: Request, tag: str = Query(default="", max_length=128)) -> Response:
    """Return a tagged first-stage registration script.

    Errors are answered with a shell script (plus the mapped status code) so a
    `curl | bash` pipeline prints the reason instead of trying to run JSON.
    """
    library: BootstrapLibrary = request.app.state.bootstrap
    try:
        script = library.get(tag)
    except ProvisioningError as e:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        return Response(
            content=error_script(tag, e.message, timestamp),
            status_code=e.status_code,
            media_type="text/plain; charset=utf-8",
        )
    return Response(
        content=script.content,
        media_type="text/x-shellscript; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{script.filename}"'},
    )


@router.post("/status", response_model=StatusReportResponse)
def report_status(
    request: Request,
    body: StatusReport,
    reporter: StatusReporter = Depends(require_device_reporter),
) -> StatusReportResponse:
    record = _orchestrator(request).report_status(
        body.device_id,
        body.provisioning_status,
        body.state,
        reporter,
        instance_uuid=body.provisioning_instance_uuid,
    )
    return StatusReportResponse(
        deviceId=record.id,
        provisioningStatus=record.provisioning_status.value,
        commissioned=record.commissioned,
    )
