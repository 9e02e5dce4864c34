"""HTTP client for the Overdrip backend API.

:class:`BackendClient` wraps :class:`httpx.Client` and turns every backend
endpoint into a typed method:

- :meth:`~BackendClient.sign_in` -- provider ID token to backend session.
- :meth:`~BackendClient.setup_device` -- the ``setupDevice`` RPC.
- :meth:`~BackendClient.revoke_device` -- the ``revokeDevice`` RPC.
- :meth:`~BackendClient.list_auth_codes` -- the ``listAuthCodes`` RPC.
- :meth:`~BackendClient.refresh_device_token` -- the unauthenticated boot-time
  exchange of an auth code for a custom token.

RPC failures arrive as ``{"error": {"status": "NOT_FOUND", "message": ...}}``
and are raised as :class:`~overdrip.exceptions.BackendCallError` carrying the
lowercase RPC code (``not-found``). There are no retries: every call either
succeeds or surfaces its error to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from overdrip.exceptions import (
    AuthError,
    BackendCallError,
    ConnectionError_,
    InvalidUsageError,
    NotFoundError,
    ServerError,
    SignInError,
)
from overdrip.models import (
    AuthCodeSummary,
    RefreshTokenRequest,
    RefreshTokenResponse,
    RevokeDeviceRequest,
    RevokeDeviceResponse,
    SetupDeviceRequest,
    SetupDeviceResponse,
    SignInRequest,
    SignInResponse,
)

logger = logging.getLogger(__name__)

SIGNIN_PATH = "/v1/auth/signin"
SETUP_DEVICE_PATH = "/v1/devices/setup"
REVOKE_DEVICE_PATH = "/v1/devices/revoke"
LIST_AUTH_CODES_PATH = "/v1/devices/auth-codes"
REFRESH_TOKEN_PATH = "/v1/devices/refresh-token"

DEFAULT_TIMEOUT = 30.0

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class BackendSession(BaseModel):
    """A signed-in backend session, used as the bearer for RPC calls."""

    model_config = ConfigDict(frozen=True)

    session_token: str
    user_id: str
    expires_in: int = 0

    @property
    def authorization(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.session_token}"}


class BackendClient:
    """Synchronous client for the backend HTTP API.

    Args:
        base_url: Backend root URL, e.g. ``http://127.0.0.1:8000``.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport. Tests pass an
            :class:`httpx.MockTransport` or the ASGI app's transport.

    Example::

        with BackendClient(config.backend_url) as backend:
            session = backend.sign_in(tokens.id_token)
            created = backend.setup_device(session, "Greenhouse Pi")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def __enter__(self) -> BackendClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------ #
    # Sign-in bridge
    # ------------------------------------------------------------------ #

    def sign_in(self, id_token: str) -> BackendSession:
        """Exchange a provider ID token for a backend session.

        Raises:
            SignInError: For every failure, so an authentication problem is
                never confused with a later registration problem.
        """
        body = SignInRequest(id_token=id_token).model_dump(by_alias=True)
        try:
            response = self._client.post(SIGNIN_PATH, json=body)
        except httpx.HTTPError as exc:
            raise SignInError(f"Cannot reach backend at {self._base_url} ({exc})") from exc

        if response.status_code >= 400:
            raise SignInError(
                f"Backend rejected the sign-in: {_error_message(response) or f'HTTP {response.status_code}'}"
            )
        try:
            signed_in = SignInResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SignInError("Malformed sign-in response from backend") from exc

        logger.debug("Signed in as user %s", signed_in.user_id)
        return BackendSession(
            session_token=signed_in.session_token,
            user_id=signed_in.user_id,
            expires_in=signed_in.expires_in,
        )

    # ------------------------------------------------------------------ #
    # Device RPCs (session-authenticated)
    # ------------------------------------------------------------------ #

    def setup_device(
        self,
        session: BackendSession,
        device_name: str,
        device_id: Optional[UUID] = None,
    ) -> SetupDeviceResponse:
        """Register a new device, or re-authenticate *device_id*.

        Raises:
            BackendCallError: With the RPC code returned by the backend.
        """
        request = SetupDeviceRequest(device_name=device_name, device_id=device_id)
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        return self._call(SETUP_DEVICE_PATH, session, payload, SetupDeviceResponse)

    def revoke_device(self, session: BackendSession, device_id: UUID) -> bool:
        payload = RevokeDeviceRequest(device_id=device_id).model_dump(
            mode="json", by_alias=True
        )
        result = self._call(REVOKE_DEVICE_PATH, session, payload, RevokeDeviceResponse)
        return result.success

    def list_auth_codes(self, session: BackendSession) -> list[AuthCodeSummary]:
        """Auth codes of the signed-in user, newest first, prefixes only."""
        response = self._send("GET", LIST_AUTH_CODES_PATH, headers=session.authorization)
        self._raise_for_rpc_error(response)
        data = _json(response)
        items = data.get("authCodes", []) if isinstance(data, dict) else []
        try:
            return [AuthCodeSummary.model_validate(item) for item in items]
        except ValidationError as exc:
            raise ServerError(f"Malformed listAuthCodes response: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Device boot
    # ------------------------------------------------------------------ #

    def refresh_device_token(self, auth_code: str, device_id: UUID) -> str:
        """Exchange the stored auth code for a short-lived custom token.

        Raises:
            AuthError: If the backend rejects the auth code (revoked, expired,
                or bound to another device).
            InvalidUsageError: If the stored credentials are malformed.
            NotFoundError: If the backend URL has no token endpoint.
            ServerError: On a backend failure.
            ConnectionError_: If the backend is unreachable.
        """
        payload = RefreshTokenRequest(authCode=auth_code, deviceId=device_id).model_dump(
            mode="json", by_alias=True
        )
        response = self._send("POST", REFRESH_TOKEN_PATH, json=payload)

        status = response.status_code
        if status == 401:
            raise AuthError(
                f"{_error_message(response) or 'Invalid or expired auth code'}. "
                "Run 'overdrip setup' to re-authenticate this device."
            )
        if status == 400:
            raise InvalidUsageError(
                f"Stored device credentials were rejected: {_error_message(response)}"
            )
        if status == 404:
            raise NotFoundError(
                f"No token endpoint at {self._base_url}{REFRESH_TOKEN_PATH}; is the backend URL correct?"
            )
        if status >= 400:
            raise ServerError(f"Token refresh failed: HTTP {status} {_error_message(response)}")

        try:
            return RefreshTokenResponse.model_validate(_json(response)).custom_token
        except ValidationError as exc:
            raise ServerError("Token refresh returned a malformed response") from exc

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ConnectionError_(
                f"Cannot reach backend at {self._base_url}: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ConnectionError_(f"Request to {path} failed: {exc}") from exc

    def _call(
        self,
        path: str,
        session: BackendSession,
        payload: dict[str, Any],
        response_model: type[_ModelT],
    ) -> _ModelT:
        response = self._send("POST", path, json=payload, headers=session.authorization)
        self._raise_for_rpc_error(response)
        try:
            return response_model.model_validate(_json(response))
        except ValidationError as exc:
            raise ServerError(f"Malformed response from {path}: {exc}") from exc

    def _raise_for_rpc_error(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        data = _json(response)
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("status"):
            code = str(error["status"]).lower().replace("_", "-")
            raise BackendCallError(code, str(error.get("message", "")))

        # Unclassified failure: map by HTTP status.
        message = f"HTTP {response.status_code}: {response.text[:200]}"
        if response.status_code in (401, 403):
            raise AuthError(message)
        if response.status_code == 404:
            raise NotFoundError(f"{message} (is the backend URL correct?)")
        raise ServerError(message)


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    data = _json(response)
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if error:
            return str(error)
        if data.get("detail"):
            return str(data["detail"])
    return response.text[:200] if response.text else ""
