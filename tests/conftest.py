"""
tests/conftest.py -- Shared test fixtures for FleetProv.

This module provides:
  - memory_url(): a unique named shared-memory SQLite URL per store
  - FakeClock: one controllable clock for the registry, limiter, and orchestrator
  - FakeOverlay: stand-in for the Tailscale client (records calls, can fail)
  - make_generator(): ScriptGenerator with test deployment settings
  - registry / throttle / signer / overlay / orchestrator: unit fixtures
  - api_client: TestClient against the real app with a patched lifespan and a
    temporary bootstrap script directory

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and DEVICE_UPDATE_TOKEN must be set before any auth/core import:
get_settings() is cached on first use.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DEVICE_UPDATE_TOKEN", "test-shared-update-token-0123456789")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Operator
from auth.store import OperatorStore
from auth.tokens import create_access_token, hash_password
from core.errors import UpstreamError
from credentials.issuer import CredentialIssuer
from credentials.tailscale import JoinKey
from credentials.tokens import DeviceTokenSigner
from provisioning.bootstrap import BootstrapLibrary
from provisioning.orchestrator import ProvisioningOrchestrator
from provisioning.script import ScriptGenerator
from registry.store import DeviceRegistry
from throttle.store import RateLimiter

SHARED_UPDATE_TOKEN = os.environ["DEVICE_UPDATE_TOKEN"]
SIGNING_KEY = "test-device-signing-key-0123456789abcdef"
BOOTSTRAP_SCRIPT = "#!/bin/bash\ncurl -fsS -X POST https://fleet.example.com/register\n"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def memory_url(name: str) -> str:
    """Return a named shared-memory SQLite URL unique to this call."""
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


class FakeClock:
    """Deterministic UTC clock. utcnow() feeds the registry and orchestrator,
    time() feeds the rate limiter; both move together on advance()."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def utcnow(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeOverlay:
    """In-memory join key authority.

    fail_with: set to an exception instance to make create_join_key raise it.
    """

    def __init__(self) -> None:
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.fail_with: Exception | None = None

    def create_join_key(self, serial: str) -> JoinKey:
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append(serial)
        n = len(self.created)
        return JoinKey(key=f"tskey-auth-test{n:04d}", key_id=f"key{n:04d}")

    def delete_key(self, key_id: str) -> None:
        self.deleted.append(key_id)


def upstream_failure() -> UpstreamError:
    return UpstreamError("Overlay network control plane rejected the key request.", 403, '{"message":"forbidden"}')


def make_generator(**overrides) -> ScriptGenerator:
    kwargs = {
        "docker_image": "registry.example.com/fleet/bacnet:1.4",
        "update_status_url": "https://fleet.example.com/status",
        "container_name": "bacnet-service",
        "api_base_url": "https://fleet.example.com",
    }
    kwargs.update(overrides)
    return ScriptGenerator(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> Generator[DeviceRegistry, None, None]:
    store = DeviceRegistry(memory_url("registry"), clock=clock.utcnow)
    yield store
    store.close()


@pytest.fixture
def throttle(clock: FakeClock) -> Generator[RateLimiter, None, None]:
    limiter = RateLimiter(memory_url("throttle"), clock=clock.time)
    yield limiter
    limiter.close()


@pytest.fixture
def signer() -> DeviceTokenSigner:
    return DeviceTokenSigner(SIGNING_KEY)


@pytest.fixture
def overlay() -> FakeOverlay:
    return FakeOverlay()


@pytest.fixture
def orchestrator(
    registry: DeviceRegistry,
    throttle: RateLimiter,
    signer: DeviceTokenSigner,
    overlay: FakeOverlay,
    clock: FakeClock,
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        registry=registry,
        limiter=throttle,
        issuer=CredentialIssuer(signer, overlay),
        generator=make_generator(),
        ip_interval_seconds=5,
        device_interval_seconds=60,
        public_base_url="https://fleet.example.com",
        clock=clock.utcnow,
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(registry, throttle, operator_store, signer, orchestrator, bootstrap):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test collaborators into app.state so routes see isolated
    in-memory stores and fake credential authorities.

    The purge_task is a long-sleeping coroutine: a real asyncio.Task is
    required because shutdown calls .cancel() on it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.registry = registry
        app.state.throttle = throttle
        app.state.operator_store = operator_store
        app.state.device_tokens = signer
        app.state.orchestrator = orchestrator
        app.state.bootstrap = bootstrap
        app.state.http_session = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, FakeOverlay], None, None]:
    """Yield (client, admin_token, overlay) for API integration tests.

    The per-IP interval starts at 0 because every TestClient request comes
    from the same address; tests that exercise it raise it temporarily.
    """
    registry = DeviceRegistry(memory_url("api_registry"))
    throttle = RateLimiter(memory_url("api_throttle"))
    operator_store = OperatorStore(memory_url("api_auth"))
    signer = DeviceTokenSigner(SIGNING_KEY)
    overlay = FakeOverlay()
    orchestrator = ProvisioningOrchestrator(
        registry=registry,
        limiter=throttle,
        issuer=CredentialIssuer(signer, overlay),
        generator=make_generator(),
        ip_interval_seconds=0,
        device_interval_seconds=60,
        public_base_url="https://fleet.example.com",
    )

    admin = Operator(username="testadmin", role="admin", hashed_password=hash_password("testpass123"))
    admin_id = operator_store.create_operator(admin)
    viewer = Operator(username="testviewer", role="viewer", hashed_password=hash_password("viewpass123"))
    operator_store.create_operator(viewer)

    token = create_access_token(operator_id=admin_id, username="testadmin", role="admin", expire_seconds=3600)

    bootstrap_dir = tmp_path_factory.mktemp("bootstrap")
    (bootstrap_dir / "leak-detection.sh").write_text(BOOTSTRAP_SCRIPT, encoding="utf-8")
    (bootstrap_dir / "blank.sh").write_text("  \n", encoding="utf-8")
    bootstrap = BootstrapLibrary(bootstrap_dir)

    app.router.lifespan_context = _patch_lifespan(
        registry, throttle, operator_store, signer, orchestrator, bootstrap
    )

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, overlay

    operator_store.close()
    throttle.close()
    registry.close()
