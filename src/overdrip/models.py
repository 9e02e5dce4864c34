"""Canonical Pydantic models shared across all overdrip modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into four groups:

**OAuth models** -- ephemeral, never persisted:
    :class:`PKCEChallenge`, :class:`OAuthCallbackResult`, :class:`TokenResponse`.

**Wire records** -- request/response bodies of the backend API. Fields are
snake_case in Python and camelCase on the wire (``populate_by_name`` accepts
either when validating, except on the unauthenticated
:class:`RefreshTokenRequest`; dump with ``by_alias=True``):
    :class:`SignInRequest`, :class:`SignInResponse`,
    :class:`SetupDeviceRequest`, :class:`SetupDeviceResponse`,
    :class:`RefreshTokenRequest`, :class:`RefreshTokenResponse`,
    :class:`RevokeDeviceRequest`, :class:`RevokeDeviceResponse`,
    :class:`AuthCodeSummary`.

**Backend entities** -- documents held by the backend store:
    :class:`AuthCodeRecord`, :class:`DeviceRegistration`.

**Client configuration and device credentials**:
    :class:`ClientConfig`, :class:`DeviceCredentials`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

AUTH_CODE_PATTERN = r"^[0-9a-f]{64}$"
"""Exact shape of a device auth code: 64 lowercase hex characters."""

DEVICE_NAME_MAX_LENGTH = 50

SETUP_METHOD_GOOGLE_OAUTH = "google_oauth"

DEFAULT_BACKEND_URL = "http://127.0.0.1:8000"


class _WireModel(BaseModel):
    """Base for camelCase wire records."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# --- OAuth ---


class PKCEChallenge(BaseModel):
    """A PKCE verifier/challenge pair plus the CSRF ``state`` for one setup attempt.

    Created at setup start, consumed once by callback validation and the
    token exchange, and discarded afterwards.
    """

    model_config = ConfigDict(frozen=True)

    code_verifier: str
    code_challenge: str
    state: str


class OAuthCallbackResult(BaseModel):
    """The ``code`` and ``state`` delivered to the local callback listener."""

    model_config = ConfigDict(frozen=True)

    code: str
    state: str


class TokenResponse(BaseModel):
    """Successful response of the identity provider's token endpoint."""

    model_config = ConfigDict(extra="allow")

    id_token: str
    access_token: str = ""
    token_type: str = "Bearer"
    expires_in: int = 0
    scope: str = ""


# --- Wire records ---


class SignInRequest(_WireModel):
    id_token: str = Field(alias="idToken", min_length=1)


class SignInResponse(_WireModel):
    session_token: str = Field(alias="sessionToken")
    user_id: str = Field(alias="userId")
    expires_in: int = Field(alias="expiresIn")


class SetupDeviceRequest(_WireModel):
    """Input of the ``setupDevice`` RPC.

    ``device_id`` is present only when re-authenticating an existing device.
    """

    device_name: str = Field(
        alias="deviceName", min_length=1, max_length=DEVICE_NAME_MAX_LENGTH
    )
    device_id: Optional[UUID] = Field(default=None, alias="deviceId")


class SetupDeviceResponse(_WireModel):
    device_id: UUID = Field(alias="deviceId")
    auth_code: str = Field(alias="authCode", pattern=AUTH_CODE_PATTERN)


class RefreshTokenRequest(_WireModel):
    """Body of the unauthenticated ``refreshDeviceToken`` endpoint.

    Only the camelCase keys are accepted.
    """

    model_config = ConfigDict(populate_by_name=False, extra="forbid")

    auth_code: str = Field(alias="authCode", pattern=AUTH_CODE_PATTERN)
    device_id: UUID = Field(alias="deviceId")


class RefreshTokenResponse(_WireModel):
    custom_token: str = Field(alias="customToken", min_length=1)


class RevokeDeviceRequest(_WireModel):
    device_id: UUID = Field(alias="deviceId")


class RevokeDeviceResponse(_WireModel):
    success: bool


class AuthCodeSummary(_WireModel):
    """An auth code as shown to its owner: only the 8-character prefix is exposed."""

    auth_code_prefix: str = Field(alias="authCodePrefix")
    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")
    last_used: Optional[datetime] = Field(default=None, alias="lastUsed")


# --- Backend entities ---


class AuthCodeRecord(BaseModel):
    """Stored auth code, keyed in the ``authCodes`` collection by the code value itself."""

    user_id: str
    device_id: str
    device_name: str
    created_at: datetime
    expires_at: datetime
    last_used: Optional[datetime] = None


class DeviceRegistration(BaseModel):
    """Stored device registration, keyed by ``(user_id, device_id)``.

    ``registered_at`` is written once when the device is first created;
    ``last_setup`` moves forward on every setup or re-authentication.
    """

    name: str
    registered_at: datetime
    last_setup: datetime
    setup_method: str = SETUP_METHOD_GOOGLE_OAUTH
    auth_code: Optional[str] = None


# --- Client side ---


class ClientConfig(BaseModel):
    """Effective configuration of the ``overdrip`` CLI.

    Resolved by :func:`overdrip.config.load_client_config` from CLI flags,
    environment variables, and the settings file.
    """

    google_oauth_client_id: str = Field(min_length=1)
    google_oauth_client_secret: Optional[str] = Field(
        default=None,
        description="Required by some OAuth client types in addition to PKCE",
    )
    backend_url: str = Field(default=DEFAULT_BACKEND_URL)
    callback_port: int = Field(default=8080, ge=1, le=65535)
    callback_timeout: float = Field(default=300.0, gt=0)


class DeviceCredentials(_WireModel):
    """The device-side mirror of the active auth code.

    Persisted as ``{deviceId, deviceName, authCode}`` by
    :class:`~overdrip.device.credentials.CredentialStore`.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device_id: UUID = Field(alias="deviceId")
    device_name: str = Field(
        alias="deviceName", min_length=1, max_length=DEVICE_NAME_MAX_LENGTH
    )
    auth_code: str = Field(alias="authCode", pattern=AUTH_CODE_PATTERN)
    setup_at: Optional[datetime] = Field(default=None, alias="setupAt")

    @property
    def auth_code_prefix(self) -> str:
        """First 8 characters of the auth code, safe to display."""
        return self.auth_code[:8]
