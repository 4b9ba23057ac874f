"""
api/main.py -- FastAPI application entry point for FleetProv.

Run with:      uvicorn api.main:app --host 0.0.0.0 --port 8000
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- only when CORS_ORIGINS is set (operator UIs)
  3. SlowAPIMiddleware     -- per-route limits on operator login

Lifespan builds every collaborator once (stores, credential authorities,
script generator, orchestrator) and hangs them on app.state; route handlers
only read app.state. Shutdown tears them down in reverse.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import requests
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.devices import router as devices_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.devices import router as admin_devices_router
from auth.dependencies import get_current_operator
from auth.models import Operator
from auth.store import OperatorStore
from core.config import get_settings
from core.errors import ConfigError, ProvisioningError, RateLimited, UpstreamError
from credentials.issuer import CredentialIssuer
from credentials.tailscale import TailscaleClient, default_session
from credentials.tokens import DeviceTokenSigner
from provisioning.bootstrap import BootstrapLibrary
from provisioning.orchestrator import ProvisioningOrchestrator
from provisioning.script import ScriptGenerator
from registry.store import DeviceRegistry
from throttle.store import RateLimiter

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("fleetprov.api")

settings = get_settings()

_PURGE_INTERVAL_SECONDS = 10 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop rate-limit entries that can no longer deny anything.

    An entry older than the longest configured interval is dead weight.
    CancelledError from task.cancel() during shutdown unwinds the loop.
    """
    max_age = max(settings.ip_rate_limit_seconds, settings.device_rate_limit_seconds)
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = await asyncio.to_thread(app.state.throttle.purge_expired, max_age)
        if removed:
            logger.info("Purged %d expired rate-limit entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_orchestrator(
    registry: DeviceRegistry,
    throttle: RateLimiter,
    signer: DeviceTokenSigner,
    session: requests.Session,
) -> ProvisioningOrchestrator:
    """Wire the provisioning collaborators from settings."""
    overlay = TailscaleClient(
        api_key=settings.tailscale_api_key,
        tailnet=settings.tailscale_tailnet,
        tag=settings.tailscale_provision_tag,
        expiry_seconds=settings.tailscale_key_expiry_seconds,
        api_url=settings.tailscale_api_url,
        timeout=settings.upstream_timeout_seconds,
        session=session,
    )
    generator = ScriptGenerator(
        docker_image=settings.device_docker_image,
        update_status_url=settings.update_status_url,
        container_name=settings.device_container_name,
        api_base_url=settings.device_api_base_url,
    )
    return ProvisioningOrchestrator(
        registry=registry,
        limiter=throttle,
        issuer=CredentialIssuer(signer, overlay),
        generator=generator,
        ip_interval_seconds=settings.ip_rate_limit_seconds,
        device_interval_seconds=settings.device_rate_limit_seconds,
        public_base_url=settings.public_base_url,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build application resources on startup, release them on shutdown."""
    logger.info("FleetProv API starting up")
    app.state.registry = DeviceRegistry(settings.database_url)
    app.state.throttle = RateLimiter(settings.throttle_database_url)
    app.state.operator_store = OperatorStore(settings.auth_database_url)
    app.state.device_tokens = DeviceTokenSigner(
        signing_key=settings.device_token_signing_key,
        algorithm=settings.device_token_algorithm,
        issuer=settings.device_token_issuer,
        expire_seconds=settings.device_token_expire_seconds,
        verify_key=settings.device_token_public_key or None,
    )
    app.state.http_session = default_session()
    app.state.bootstrap = BootstrapLibrary(settings.bootstrap_scripts_dir or None)
    app.state.orchestrator = build_orchestrator(
        app.state.registry, app.state.throttle, app.state.device_tokens, app.state.http_session
    )
    if not settings.device_token_signing_key or not settings.tailscale_api_key:
        logger.warning("Credential authorities are not fully configured; script requests will fail with config_error")
    if not app.state.operator_store.has_operators():
        logger.warning("No operator accounts exist. Create one with: python main.py create-admin <username>")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.http_session.close()
    app.state.operator_store.close()
    app.state.throttle.close()
    app.state.registry.close()
    logger.info("FleetProv API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FleetProv API",
    description="Device registration, approval, and one-time provisioning script issuance.",
    version=__version__,
    lifespan=lifespan,
    # Built-in docs are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
        max_age=3600,
    )

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    # Only the path is logged: /provision query strings carry device hashes.
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(devices_router, tags=["Devices"])
app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_devices_router, prefix="/api/v1", tags=["Device Approval"])


@app.get("/docs", include_in_schema=False)
async def docs(operator: Operator = Depends(get_current_operator)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="FleetProv API")


@app.get("/redoc", include_in_schema=False)
async def redoc(operator: Operator = Depends(get_current_operator)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="FleetProv API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
    """Map the provisioning error taxonomy onto HTTP.

    ConfigError is an operator problem and logged as such. UpstreamError logs
    the full upstream status and body; the response carries a truncated copy.
    """
    if isinstance(exc, ConfigError):
        logger.error("FATAL configuration error on %s: %s (%s)", request.url.path, exc.message, exc.detail)
    elif isinstance(exc, UpstreamError):
        logger.error(
            "Upstream failure on %s: %s (status=%s body=%r)",
            request.url.path,
            exc.message,
            exc.upstream_status,
            exc.upstream_body[:1000],
        )
    response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a slowapi route limit (operator login) is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query parameters are 400, like every other input fault."""
    return _error_response(400, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump();
    a dict detail is used directly as the error field."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit: load balancers and monitoring must not be throttled.
# ---------------------------------------------------------------------------


def _database_status(registry: DeviceRegistry) -> str:
    try:
        with registry.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: device registry unreachable")
        return "error"
    return "ok"


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the device registry answers."""
    database = _database_status(request.app.state.registry)
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
