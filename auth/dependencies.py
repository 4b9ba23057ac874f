"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Operators authenticate two ways, checked in order:
  1. Authorization: Bearer <operator JWT>  -- from POST /api/v1/auth/login.
  2. X-API-Key header                      -- long-lived keys for scripts.

Devices authenticate to POST /status with Authorization: Bearer and either:
  a. the deployment-wide DEVICE_UPDATE_TOKEN (compared in constant time), or
  b. the device auth token embedded in their provisioning script.

try_get_current_operator() is the soft variant (returns None on failure).
get_current_operator() raises HTTP 401 if unauthenticated.
require_admin() additionally raises HTTP 403 if the operator is not an admin.
require_device_reporter() raises HTTP 401 unless one of a/b matches.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from auth.models import Operator
from auth.tokens import decode_access_token, hash_api_key
from core.config import get_settings
from credentials.tokens import StatusReporter


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_operator(request: Request) -> Operator | None:
    """Authenticate the request via Bearer JWT or API key. Never raises."""
    store = request.app.state.operator_store

    token = _bearer_token(request)
    if token:
        payload = decode_access_token(token)
        if payload:
            operator = store.get_by_id(payload["operator_id"])
            if operator and operator.is_active:
                return operator

    raw_key = request.headers.get("X-API-Key", "")
    if raw_key:
        key = store.get_api_key_by_hash(hash_api_key(raw_key))
        if key and key.is_active:
            operator = store.get_by_id(key.operator_id)
            if operator and operator.is_active:
                store.update_api_key_last_used(key.id)
                return operator

    return None


def get_current_operator(request: Request) -> Operator:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(operator: Operator = Depends(get_current_operator)): ...
    """
    operator = try_get_current_operator(request)
    if operator is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return operator


def require_admin(request: Request) -> Operator:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    operator = get_current_operator(request)
    if operator.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return operator


def require_device_reporter(request: Request) -> StatusReporter:
    """Authenticate a device calling POST /status.

    Whether the token's device and instance match the reported device is the
    orchestrator's call; this only establishes that the token is genuine.
    """
    token = _bearer_token(request)
    if token:
        shared = get_settings().device_update_token
        if shared and hmac.compare_digest(token.encode(), shared.encode()):
            return StatusReporter(shared=True)
        claims = request.app.state.device_tokens.verify(token)
        if claims is not None:
            return StatusReporter(shared=False, claims=claims)
    raise HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Valid device token required."},
    )
