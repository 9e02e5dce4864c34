"""Exception hierarchy for overdrip.

All client-side exceptions inherit from :class:`OverdripError`, which carries
an ``exit_code`` attribute mapped to a constant from :mod:`overdrip.exit_codes`.
The top-level error handler in :func:`overdrip.app.main` catches
``OverdripError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    OverdripError (exit 1)
    +-- InvalidUsageError          (exit 2)
    +-- AuthError                  (exit 3)
    |   +-- OAuthFlowError
    |   |   +-- CallbackTimeoutError
    |   |   +-- ProviderAuthorizationError
    |   |   +-- StateMismatchError
    |   |   +-- InvalidCallbackError
    |   +-- TokenExchangeError
    |   +-- SignInError
    +-- NotFoundError              (exit 4)
    +-- ServerError                (exit 5)
    +-- ConnectionError_           (exit 6)
    +-- NotSetUpError              (exit 7)
    +-- PortUnavailableError       (exit 8)
    +-- ListenerBusyError          (exit 1)
    +-- BackendCallError           (exit depends on the RPC error code)
    +-- CredentialStorageError     (exit 1)
    +-- ConfigError                (exit 1)
    +-- SetupError                 (exit code of the wrapped cause)

Backend-side errors live in :mod:`overdrip.backend.errors`; they are turned
into HTTP responses rather than exit codes.
"""

from __future__ import annotations

import enum
from typing import Any

from overdrip.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_NOT_SET_UP,
    EXIT_PORT_UNAVAILABLE,
    EXIT_SERVER_ERROR,
)


class OverdripError(Exception):
    """Base exception for all overdrip errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`overdrip.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(OverdripError):
    """Raised for invalid CLI arguments (e.g. a device name longer than 50 characters)."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(OverdripError):
    """Raised when authentication fails (rejected login, revoked or expired auth code)."""

    exit_code = EXIT_AUTH_FAILURE


class OAuthFlowError(AuthError):
    """Raised when the browser leg of the OAuth flow does not yield an authorization code."""


class CallbackTimeoutError(OAuthFlowError):
    """Raised when no valid callback reached the local listener before its timeout."""


class ProviderAuthorizationError(OAuthFlowError):
    """Raised when the identity provider redirected back with an ``error`` parameter.

    Args:
        error: The provider's ``error`` code (e.g. ``access_denied``).
        description: The provider's ``error_description``, if any.
    """

    def __init__(self, error: str, description: str | None = None):
        super().__init__(f"OAuth error: {description or error}")
        self.error = error
        self.description = description


class StateMismatchError(OAuthFlowError):
    """Raised when the callback ``state`` does not match the value sent to the provider.

    Treated as a possible CSRF attempt: the setup run is aborted and must be
    restarted with a fresh state/PKCE pair.
    """


class InvalidCallbackError(OAuthFlowError):
    """Raised when the callback is missing ``code`` or ``state``."""


class TokenExchangeError(AuthError):
    """Raised when the identity provider rejects the authorization code exchange.

    Args:
        message: Human-readable description.
        status_code: HTTP status returned by the token endpoint, if any.
        payload: The provider's decoded error body, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class SignInError(AuthError):
    """Raised when the backend refuses to turn the provider ID token into a session."""


class NotFoundError(OverdripError):
    """Raised when the backend has no route for a request, usually a wrong backend URL."""

    exit_code = EXIT_NOT_FOUND


class ServerError(OverdripError):
    """Raised when the backend returns an HTTP 5xx server error."""

    exit_code = EXIT_SERVER_ERROR


class ConnectionError_(OverdripError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR


class NotSetUpError(OverdripError):
    """Raised when the device has no stored credentials."""

    exit_code = EXIT_NOT_SET_UP


class PortUnavailableError(OverdripError):
    """Raised when the OAuth callback listener cannot bind a local port."""

    exit_code = EXIT_PORT_UNAVAILABLE


class ListenerBusyError(OverdripError):
    """Raised when a second callback listener is started while one is active."""


class BackendCallError(OverdripError):
    """Raised when a backend RPC returns a classified error.

    The exit code follows the RPC error code so that ``not-found`` and
    ``unauthenticated`` remain distinguishable for shell wrappers.

    Args:
        code: RPC error code (``unauthenticated``, ``invalid-argument``,
            ``not-found`` or ``internal``).
        message: The message returned by the backend.
    """

    _EXIT_CODES = {
        "unauthenticated": EXIT_AUTH_FAILURE,
        "invalid-argument": EXIT_INVALID_USAGE,
        "not-found": EXIT_NOT_FOUND,
        "internal": EXIT_SERVER_ERROR,
    }

    def __init__(self, code: str, message: str):
        super().__init__(message, exit_code=self._EXIT_CODES.get(code, EXIT_SERVER_ERROR))
        self.code = code


class CredentialStorageError(OverdripError):
    """Raised when the local credential file cannot be read, parsed, or written."""


class ConfigError(OverdripError):
    """Raised for configuration problems (missing OAuth client id, invalid settings file)."""


class SetupStage(str, enum.Enum):
    """Stages of the interactive setup pipeline, used to qualify errors."""

    OAUTH = "OAuth flow"
    TOKEN_EXCHANGE = "Token exchange"
    AUTHENTICATION = "Authentication"
    DEVICE_SETUP = "Device setup"
    CREDENTIAL_STORAGE = "Credential storage"


class SetupError(OverdripError):
    """A setup failure qualified with the pipeline stage that produced it.

    The message reads ``"<stage> failed: <cause>"`` so the user can tell a
    failed Google login from a failed device registration without a stack
    trace. The exit code is inherited from the wrapped cause.

    Args:
        stage: The :class:`SetupStage` that failed.
        cause: The underlying exception.
    """

    def __init__(self, stage: SetupStage, cause: BaseException):
        exit_code = cause.exit_code if isinstance(cause, OverdripError) else None
        super().__init__(f"{stage.value} failed: {cause}", exit_code=exit_code)
        self.stage = stage
        self.cause = cause
