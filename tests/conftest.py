"""
tests/conftest.py -- Shared test fixtures for Cardinal.

This module provides:
  - FakeClock: monotonic clock + sleep pair that advances instantly
  - vault / store fixtures: real CredentialVault and an isolated ContainerStore
  - _make_test_store(): named shared-memory SQLite store for threaded tests
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: TestClient over the real app with a mocked hypervisor

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
wherever more than one thread touches the store. TestClient runs sync route
handlers in a thread pool and the reconciler runs on timer threads; plain
:memory: DBs are per-connection and would present a blank schema to each of
them. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG, ENCRYPTION_KEY and WEBHOOK_SECRET must be set before any core import
so get_settings() builds a usable Settings on first call.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress
from unittest.mock import MagicMock

# CRITICAL: set before any core/api import so the cached Settings sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-0123456789abcdef")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
# Route tests make far more calls per minute than CI ever would.
os.environ.setdefault("WEBHOOK_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.vault import CredentialVault
from core.config import get_settings
from core.hypervisor import HypervisorClient
from inventory.store import ContainerStore
from provisioning.orchestrator import ProvisioningOrchestrator
from provisioning.reconciler import AddressReconciler

TEST_KEY = "test-encryption-key-0123456789abcdef"
WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Clock and sleep that share one counter. sleep() advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_KEY)


def _make_test_store(vault: CredentialVault, db_suffix: str = "") -> ContainerStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Appended to the DB name; a random suffix is used when empty
                   so tests never share rows by accident.
    """
    name = f"test_cardinal_{db_suffix or uuid.uuid4().hex}"
    return ContainerStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true", vault)


@pytest.fixture
def store(vault: CredentialVault) -> Generator[ContainerStore, None, None]:
    s = _make_test_store(vault)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: ContainerStore, orchestrator: ProvisioningOrchestrator, reconciler):
    """Return an async context manager that replaces the real lifespan.

    The reconcile_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel (a MagicMock would not behave like one).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.store = store
        app.state.orchestrator = orchestrator
        app.state.reconciler = reconciler
        app.state.reconcile_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reconcile_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.reconcile_task

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, ContainerStore, MagicMock], None, None]:
    """Yield (client, store, hypervisor) for webhook integration tests.

    The orchestrator and store are real; the hypervisor is a MagicMock so no
    test reaches a network. The reconciler is mocked too: tests move records
    to "running" directly through the store.
    """
    vault = CredentialVault(TEST_KEY)
    store = _make_test_store(vault, "api")
    hypervisor = MagicMock(spec=HypervisorClient)
    reconciler = MagicMock(spec=AddressReconciler)
    orchestrator = ProvisioningOrchestrator(hypervisor, store, vault, reconciler)

    app.router.lifespan_context = _patch_lifespan(store, orchestrator, reconciler)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store, hypervisor

    store.close()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-Webhook-Secret": WEBHOOK_SECRET}
