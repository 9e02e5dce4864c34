"""Exception types raised inside the backend.

Only lightweight, data-carrying exceptions live here so that the HTTP layer
in :mod:`overdrip.backend.app` can turn them into responses.
"""

from __future__ import annotations

import enum
from typing import Any

_HTTP_STATUS = {
    "unauthenticated": 401,
    "invalid-argument": 400,
    "not-found": 404,
    "internal": 500,
}


class FunctionsError(Exception):
    """A classified RPC failure.

    Args:
        code: One of ``unauthenticated``, ``invalid-argument``,
            ``not-found`` or ``internal``.
        message: Safe, user-facing message.
    """

    def __init__(self, code: str, message: str) -> None:
        if code not in _HTTP_STATUS:
            raise ValueError(f"Unknown RPC error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.code]

    def to_payload(self) -> dict[str, Any]:
        """JSON body of the error response, e.g. ``{"error": {"status": "NOT_FOUND", ...}}``."""
        return {
            "error": {
                "status": self.code.upper().replace("-", "_"),
                "message": self.message,
            }
        }


class AuthCodeRejection(str, enum.Enum):
    INVALID = "invalid"
    EXPIRED = "expired"
    DEVICE_MISMATCH = "device_mismatch"


_REJECTION_MESSAGES = {
    AuthCodeRejection.INVALID: "Invalid auth code",
    AuthCodeRejection.EXPIRED: "Auth code expired",
    AuthCodeRejection.DEVICE_MISMATCH: "Device ID mismatch",
}


class AuthCodeValidationError(Exception):
    """Raised when an auth code cannot be used by the presenting device.

    The reason is for logs only. Callers answer the device with one opaque
    message whatever the reason, so a caller cannot tell which codes exist.
    """

    def __init__(self, reason: AuthCodeRejection) -> None:
        super().__init__(_REJECTION_MESSAGES[reason])
        self.reason = reason


class DeviceNotFoundError(LookupError):
    """No registration for ``(user_id, device_id)``."""


class IdentityError(Exception):
    """A provider ID token or session token failed verification."""
