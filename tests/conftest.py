"""Shared test fixtures for overdrip.

Provides an isolated Overdrip home directory, a pinned clock, a backend wired
to an in-memory store with a fake identity provider, and output/logging
resets between tests. These fixtures are automatically discovered by pytest
and available to all test modules without explicit imports.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from overdrip.backend.app import create_app
from overdrip.backend.auth_codes import AuthCodeManager
from overdrip.backend.errors import IdentityError
from overdrip.backend.identity import JWTIdentityService, ProviderIdentity
from overdrip.backend.registrar import DeviceRegistrar
from overdrip.backend.settings import BackendSettings
from overdrip.backend.store import MemoryDocumentStore
from overdrip.models import DeviceCredentials
from overdrip.output import reset_output

SIGNING_SECRET = "test-signing-secret-0123456789abcdef"
FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Global state resets
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during a
    test, the cached references go stale once the test finishes.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _reset_overdrip_logger() -> None:
    """Undo the handler and level installed by the CLI root callback."""
    yield
    logger = logging.getLogger("overdrip")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def overdrip_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point ``OVERDRIP_HOME`` at a per-test directory and clear client env vars."""
    home = tmp_path / "overdrip-home"
    monkeypatch.setenv("OVERDRIP_HOME", str(home))
    for var in (
        "GOOGLE_OAUTH_CLIENT_ID",
        "GOOGLE_OAUTH_CLIENT_SECRET",
        "GOOGLE_OAUTH_CLIENT_SECRET_SOURCE",
        "OVERDRIP_BACKEND_URL",
        "OVERDRIP_SIGNING_SECRET",
        "OVERDRIP_STORE_DIR",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


# ---------------------------------------------------------------------------
# Backend building blocks
# ---------------------------------------------------------------------------


class MutableClock:
    """A clock tests can move forward."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVerifier:
    """Accepts ID tokens of the form ``valid:<sub>[:<email>]``."""

    def verify(self, id_token: str) -> ProviderIdentity:
        parts = id_token.split(":")
        if len(parts) < 2 or parts[0] != "valid":
            raise IdentityError("Invalid ID token: not signed by the fake provider")
        email = parts[2] if len(parts) > 2 else None
        return ProviderIdentity(subject=parts[1], issuer="https://accounts.google.com", email=email)


@pytest.fixture
def signing_secret() -> str:
    return SIGNING_SECRET


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def identity(fake_verifier: FakeVerifier, clock: MutableClock) -> JWTIdentityService:
    return JWTIdentityService(SIGNING_SECRET, fake_verifier, clock=clock)


@pytest.fixture
def auth_codes(
    store: MemoryDocumentStore, identity: JWTIdentityService, clock: MutableClock
) -> AuthCodeManager:
    return AuthCodeManager(store, identity, clock=clock)


@pytest.fixture
def registrar(auth_codes: AuthCodeManager) -> DeviceRegistrar:
    return DeviceRegistrar(auth_codes)


# ---------------------------------------------------------------------------
# Device-side data
# ---------------------------------------------------------------------------


@pytest.fixture
def device_credentials() -> DeviceCredentials:
    return DeviceCredentials(
        device_id=uuid.UUID("6f1c2a4e-8b1d-4d55-9a0e-3c2b1f0a9d77"),
        device_name="Greenhouse Pi",
        auth_code="a" * 64,
    )



# ---------------------------------------------------------------------------
# Backend application
# ---------------------------------------------------------------------------


@pytest.fixture
def backend_settings() -> BackendSettings:
    return BackendSettings(signing_secret=SIGNING_SECRET, google_client_id="test-client-id")


@pytest.fixture
def backend_app(
    backend_settings: BackendSettings,
    store: MemoryDocumentStore,
    identity: JWTIdentityService,
    clock: MutableClock,
) -> FastAPI:
    return create_app(backend_settings, store=store, identity=identity, clock=clock)


@pytest.fixture
def api_client(backend_app: FastAPI) -> TestClient:
    with TestClient(backend_app) as client:
        yield client


@pytest.fixture
def session_headers(api_client: TestClient) -> dict[str, str]:
    """Bearer header of a signed-in user ``user-1``."""
    response = api_client.post("/v1/auth/signin", json={"idToken": "valid:user-1:a@example.com"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['sessionToken']}"}
