"""Session-authenticated device RPCs: ``setupDevice``, ``revokeDevice`` and ``listAuthCodes``.

Every RPC takes the verified :class:`~overdrip.backend.identity.Principal`
(or ``None`` when the caller presented no valid session) and the raw request
data. Failures are raised as :class:`~overdrip.backend.errors.FunctionsError`
with one of four codes; only ``internal`` hides its cause from the caller.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from overdrip.backend.auth_codes import AuthCodeManager, create_auth_code_prefix
from overdrip.backend.errors import DeviceNotFoundError, FunctionsError
from overdrip.backend.identity import Principal
from overdrip.models import (
    AuthCodeSummary,
    RevokeDeviceRequest,
    RevokeDeviceResponse,
    SetupDeviceRequest,
    SetupDeviceResponse,
)

logger = logging.getLogger(__name__)


def _require_principal(principal: Optional[Principal]) -> Principal:
    if principal is None:
        raise FunctionsError("unauthenticated", "User must be authenticated")
    return principal


class DeviceRegistrar:
    def __init__(self, auth_codes: AuthCodeManager) -> None:
        self._auth_codes = auth_codes

    def setup_device(
        self, principal: Optional[Principal], data: Any
    ) -> SetupDeviceResponse:
        """Register a new device or rotate the auth code of an existing one.

        With no ``deviceId`` a fresh UUID is assigned. With a ``deviceId`` the
        caller must already own that device; every earlier auth code of the
        device is revoked before the new one is minted.

        Raises:
            FunctionsError: ``unauthenticated``, ``invalid-argument``,
                ``not-found`` or ``internal``.
        """
        user_id = _require_principal(principal).user_id
        try:
            request = SetupDeviceRequest.model_validate(data)
        except ValidationError as exc:
            raise FunctionsError("invalid-argument", "Invalid request data") from exc

        is_reauth = request.device_id is not None
        device_id = request.device_id if request.device_id is not None else uuid.uuid4()
        try:
            auth_code = self._auth_codes.rotate(
                user_id, device_id, request.device_name, is_reauth
            )
        except DeviceNotFoundError as exc:
            raise FunctionsError("not-found", "Device not found") from exc
        except Exception as exc:
            logger.error(
                "Error setting up device: %s", exc, extra={"user_id": user_id}, exc_info=True
            )
            raise FunctionsError("internal", "Failed to setup device") from exc

        logger.info(
            "Device setup completed: user=%s device=%s name=%r reauth=%s code=%s...",
            user_id,
            device_id,
            request.device_name,
            is_reauth,
            create_auth_code_prefix(auth_code),
        )
        return SetupDeviceResponse(device_id=device_id, auth_code=auth_code)

    def revoke_device(
        self, principal: Optional[Principal], data: Any
    ) -> RevokeDeviceResponse:
        """Revoke every auth code of the device and delete its registration."""
        user_id = _require_principal(principal).user_id
        try:
            request = RevokeDeviceRequest.model_validate(data)
        except ValidationError as exc:
            raise FunctionsError("invalid-argument", "deviceId is required") from exc

        try:
            self._auth_codes.remove_device(user_id, request.device_id)
        except DeviceNotFoundError as exc:
            raise FunctionsError("not-found", "Device not found") from exc
        except Exception as exc:
            logger.error(
                "Error revoking device %s: %s",
                request.device_id,
                exc,
                extra={"user_id": user_id},
                exc_info=True,
            )
            raise FunctionsError("internal", "Failed to revoke device") from exc

        logger.info("Device revoked: user=%s device=%s", user_id, request.device_id)
        return RevokeDeviceResponse(success=True)

    def list_auth_codes(self, principal: Optional[Principal]) -> list[AuthCodeSummary]:
        user_id = _require_principal(principal).user_id
        try:
            return self._auth_codes.list_for_user(user_id)
        except Exception as exc:
            logger.error(
                "Error listing auth codes: %s", exc, extra={"user_id": user_id}, exc_info=True
            )
            raise FunctionsError("internal", "Failed to list auth codes") from exc
