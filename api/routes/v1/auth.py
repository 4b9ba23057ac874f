"""
api/routes/v1/auth.py -- Operator authentication REST endpoints.

Routes:
  POST   /api/v1/auth/login            -- password login; returns an operator JWT
  GET    /api/v1/auth/me               -- current operator info (requires auth)
  POST   /api/v1/auth/api-keys         -- create API key (requires auth)
  GET    /api/v1/auth/api-keys         -- list own API keys (requires auth)
  DELETE /api/v1/auth/api-keys/{id}    -- revoke own key (requires auth)

Operator accounts are created from the CLI (python main.py create-admin).

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  authenticate_operator() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
  DELETE /api-keys/{id} passes operator_id to the store; the store checks ownership.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse, LoginRequest, LoginResponse, MeResponse
from auth.dependencies import get_current_operator
from auth.models import ApiKey, Operator
from auth.store import OperatorStore
from auth.tokens import authenticate_operator, create_access_token, generate_api_key, hash_api_key
from core.config import get_settings

_MAX_KEYS_PER_OPERATOR = 10

router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Wrong username and wrong password return the same "bad_credentials" error.
    """
    store: OperatorStore = request.app.state.operator_store
    operator = authenticate_operator(store, body.username, body.password)
    if operator is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    store.update_last_login(operator.id)
    expires_in = get_settings().token_expire_seconds
    token = create_access_token(operator.id, operator.username, operator.role, expire_seconds=expires_in)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- token type, not a password
            expires_in=expires_in,
            username=operator.username,
            role=operator.role,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current: Operator = Depends(get_current_operator)) -> MeResponse:
    """Return identity information for the authenticated operator."""
    return MeResponse(operator_id=current.id, username=current.username, role=current.role)


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    current: Operator = Depends(get_current_operator),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored."""
    store: OperatorStore = request.app.state.operator_store

    if len(store.get_api_keys(current.id)) >= _MAX_KEYS_PER_OPERATOR:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "key_limit_reached",
                "message": f"Maximum of {_MAX_KEYS_PER_OPERATOR} API keys per operator. Revoke an existing key first.",
            },
        )

    raw_key = generate_api_key()
    key_prefix = raw_key[:12]
    key_id = store.create_api_key(
        ApiKey(operator_id=current.id, name=body.name, key_hash=hash_api_key(raw_key), key_prefix=key_prefix)
    )
    return ApiKeyCreatedResponse(id=key_id, name=body.name, key_prefix=key_prefix, key=raw_key)


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
async def list_api_keys(
    request: Request,
    current: Operator = Depends(get_current_operator),
) -> list[ApiKeyResponse]:
    """List the operator's active API keys. Raw key values are never returned."""
    store: OperatorStore = request.app.state.operator_store
    return [
        ApiKeyResponse(
            id=k.id,
            name=k.name,
            key_prefix=k.key_prefix,
            created_at=k.created_at or "",
            last_used=k.last_used,
        )
        for k in store.get_api_keys(current.id)
    ]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
async def revoke_api_key(
    request: Request,
    key_id: int,
    current: Operator = Depends(get_current_operator),
) -> Response:
    store: OperatorStore = request.app.state.operator_store
    if not store.revoke_api_key(key_id, current.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "API key not found."},
        )
    return Response(status_code=204)
