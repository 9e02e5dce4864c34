"""Device-side SDK: the explicitly constructed holder of the device credential.

A :class:`DeviceClient` is built from the stored
:class:`~overdrip.models.DeviceCredentials` and a
:class:`~overdrip.client.backend.BackendClient`. At boot it trades the auth
code for a short-lived custom token through the refresh endpoint and renews
it shortly before it expires.

Telemetry upload and remote command delivery are modelled as the
:class:`TelemetrySink` and :class:`CommandSubscription` protocols. They carry
no behaviour of their own; :class:`LoggingTelemetrySink` is the stand-in used
until a real transport is wired in.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable
from uuid import UUID

import jwt
from pydantic import BaseModel, ConfigDict

from overdrip.client.backend import BackendClient
from overdrip.device.credentials import CredentialStore
from overdrip.exceptions import AuthError, NotSetUpError
from overdrip.models import DeviceCredentials

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(seconds=60)


@runtime_checkable
class TelemetrySink(Protocol):
    """Destination for sensor readings and device status reports."""

    def publish_reading(self, device_id: UUID, reading: Mapping[str, Any]) -> None: ...

    def publish_status(self, device_id: UUID, status: Mapping[str, Any]) -> None: ...


@runtime_checkable
class CommandSubscription(Protocol):
    """Source of remote commands addressed to this device."""

    def subscribe(
        self, device_id: UUID, handler: Callable[[Mapping[str, Any]], None]
    ) -> None: ...

    def unsubscribe(self) -> None: ...


class LoggingTelemetrySink:
    """Telemetry sink that only logs what it would upload."""

    def publish_reading(self, device_id: UUID, reading: Mapping[str, Any]) -> None:
        logger.info("Reading from %s: %s", device_id, dict(reading))

    def publish_status(self, device_id: UUID, status: Mapping[str, Any]) -> None:
        logger.info("Status of %s: %s", device_id, dict(status))


class DeviceSession(BaseModel):
    """A custom token issued by the refresh endpoint."""

    model_config = ConfigDict(frozen=True)

    custom_token: str
    issued_at: datetime
    expires_at: Optional[datetime] = None

    def needs_refresh(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at - REFRESH_MARGIN


class DeviceClient:
    """Authenticated handle for one provisioned device.

    Args:
        credentials: The stored device credential record.
        backend: Client for the backend API.
        telemetry: Where readings and status go once authenticated.
    """

    def __init__(
        self,
        credentials: DeviceCredentials,
        backend: BackendClient,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._credentials = credentials
        self._backend = backend
        self._telemetry = telemetry or LoggingTelemetrySink()
        self._session: Optional[DeviceSession] = None

    @classmethod
    def from_store(
        cls,
        store: CredentialStore,
        backend: BackendClient,
        telemetry: Optional[TelemetrySink] = None,
    ) -> DeviceClient:
        """Build a client from the credential file.

        Raises:
            NotSetUpError: If the device has no stored credentials.
        """
        credentials = store.load()
        if credentials is None:
            raise NotSetUpError(
                f"No device credentials found at {store.path}. Run 'overdrip setup' first."
            )
        return cls(credentials, backend, telemetry=telemetry)

    @property
    def device_id(self) -> UUID:
        return self._credentials.device_id

    @property
    def device_name(self) -> str:
        return self._credentials.device_name

    @property
    def session(self) -> Optional[DeviceSession]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def authenticate(self) -> DeviceSession:
        """Exchange the auth code for a fresh custom token.

        Raises:
            AuthError: If the backend rejects the auth code. The device must
                be set up again.
        """
        token = self._backend.refresh_device_token(
            self._credentials.auth_code, self._credentials.device_id
        )
        now = datetime.now(timezone.utc)
        self._session = DeviceSession(
            custom_token=token, issued_at=now, expires_at=_token_expiry(token)
        )
        logger.info(
            "Device authenticated: %s (%s)", self.device_name, self.device_id
        )
        return self._session

    def ensure_session(self) -> DeviceSession:
        """Return a usable session, refreshing it when close to expiry."""
        now = datetime.now(timezone.utc)
        if self._session is None or self._session.needs_refresh(now):
            return self.authenticate()
        return self._session

    def disconnect(self) -> None:
        self._session = None

    def upload_reading(self, reading: Mapping[str, Any]) -> None:
        self._require_session()
        self._telemetry.publish_reading(self.device_id, reading)

    def upload_status(self, status: Mapping[str, Any]) -> None:
        self._require_session()
        self._telemetry.publish_status(self.device_id, status)

    def _require_session(self) -> None:
        if self._session is None:
            raise AuthError("Device not authenticated. Call authenticate() first.")


def _token_expiry(token: str) -> Optional[datetime]:
    """Read ``exp`` from the custom token without verifying it.

    The device cannot verify the backend signature; it only needs to know
    when to ask for a new token.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)
