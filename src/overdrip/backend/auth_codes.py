"""Long-lived device auth codes.

An auth code is a 64-character lowercase hex bearer credential, stored in the
``authCodes`` collection keyed by the code value itself. Each device holds
exactly one active code; re-authentication revokes the old code before the
new one is issued.

The module-level helpers are pure. :class:`AuthCodeManager` adds the store,
the identity service and the clock, and also owns the ``devices``
collection that points back at each device's active code.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional
from uuid import UUID

from pydantic import ValidationError

from overdrip.backend.clock import Clock, default_clock, utcnow
from overdrip.backend.errors import (
    AuthCodeRejection,
    AuthCodeValidationError,
    DeviceNotFoundError,
)
from overdrip.backend.identity import IdentityService
from overdrip.backend.store import AUTH_CODES, DEVICES, DocumentNotFoundError, DocumentStore
from overdrip.models import (
    AUTH_CODE_PATTERN,
    SETUP_METHOD_GOOGLE_OAUTH,
    AuthCodeRecord,
    AuthCodeSummary,
    DeviceRegistration,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 365
AUTH_CODE_BYTES = 32
PREFIX_LENGTH = 8

_AUTH_CODE_RE = re.compile(AUTH_CODE_PATTERN)


# --- Pure helpers ---


def generate_auth_code() -> str:
    """32 bytes from the OS CSPRNG as 64 lowercase hex characters."""
    return secrets.token_hex(AUTH_CODE_BYTES)


def calculate_expiration_date(
    days: int = DEFAULT_TTL_DAYS, now: Optional[datetime] = None
) -> datetime:
    """``now + days * 86400s`` as an aware UTC datetime."""
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=days)


def is_auth_code_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    """``True`` iff *expires_at* is strictly before *now*."""
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < now


def is_valid_auth_code_format(code: object) -> bool:
    """Exactly 64 characters of ``[0-9a-f]``. Uppercase is rejected, not normalised."""
    return isinstance(code, str) and _AUTH_CODE_RE.fullmatch(code) is not None


def create_auth_code_prefix(code: str) -> str:
    """First 8 characters, safe for logs and token claims."""
    return code[:PREFIX_LENGTH]


def _device_key(user_id: str, device_id: str) -> str:
    return f"{user_id}/{device_id}"


# --- Manager ---


class AuthCodeManager:
    """Create, validate, rotate and revoke auth codes.

    Args:
        store: Backing document store.
        identity: Mints the custom tokens returned by the refresh endpoint.
        clock: Time source; inject a fixed clock in tests.
        ttl_days: Lifetime of newly created codes.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityService,
        clock: Clock = default_clock,
        ttl_days: int = DEFAULT_TTL_DAYS,
    ) -> None:
        self._store = store
        self._identity = identity
        self._clock = clock
        self._ttl_days = ttl_days
        self._device_locks: dict[str, threading.Lock] = {}
        self._device_locks_guard = threading.Lock()

    def _now(self) -> datetime:
        return utcnow(self._clock)

    # ------------------------------------------------------------------ #
    # Auth codes
    # ------------------------------------------------------------------ #

    def create(self, user_id: str, device_id: UUID | str, device_name: str) -> str:
        """Issue and persist a new code for *device_id*. Returns the code."""
        code = generate_auth_code()
        now = self._now()
        record = AuthCodeRecord(
            user_id=user_id,
            device_id=str(device_id),
            device_name=device_name,
            created_at=now,
            expires_at=calculate_expiration_date(self._ttl_days, now=now),
        )
        self._store.set(AUTH_CODES, code, record.model_dump(mode="json"))
        return code

    def get(self, code: str) -> Optional[AuthCodeRecord]:
        doc = self._store.get(AUTH_CODES, code)
        return AuthCodeRecord.model_validate(doc) if doc is not None else None

    def validate(self, code: str, device_id: UUID | str) -> AuthCodeRecord:
        """Check that *code* exists, has not expired and belongs to *device_id*.

        The record is read once; every check runs against that snapshot.

        Raises:
            AuthCodeValidationError: With reason ``invalid``, ``expired`` or
                ``device_mismatch``.
        """
        record = self.get(code)
        if record is None:
            raise AuthCodeValidationError(AuthCodeRejection.INVALID)
        if is_auth_code_expired(record.expires_at, now=self._now()):
            raise AuthCodeValidationError(AuthCodeRejection.EXPIRED)
        if record.device_id != str(device_id):
            raise AuthCodeValidationError(AuthCodeRejection.DEVICE_MISMATCH)
        return record

    def mark_used(self, code: str) -> None:
        """Stamp ``last_used``. A code revoked in the meantime is skipped."""
        try:
            self._store.update(
                AUTH_CODES, code, {"last_used": self._now().isoformat()}
            )
        except DocumentNotFoundError:
            logger.debug(
                "Auth code %s... vanished before last_used could be stamped",
                create_auth_code_prefix(code),
            )

    def revoke(self, code: str) -> None:
        """Delete *code*. Revoking an unknown code is not an error."""
        self._store.delete(AUTH_CODES, code)

    def mint_session_token(
        self, device_id: UUID | str, user_id: str, device_name: str, code_prefix: str
    ) -> str:
        """Short-lived custom token scoped to the device, not to the human user."""
        return self._identity.create_custom_token(
            str(device_id),
            {
                "deviceName": device_name,
                "userId": user_id,
                "authCodePrefix": code_prefix,
            },
        )

    def list_for_user(self, user_id: str) -> list[AuthCodeSummary]:
        """All codes of *user_id*, newest first, exposing only their prefix."""
        records = []
        for code, doc in self._store.query(AUTH_CODES, "user_id", user_id):
            try:
                records.append((code, AuthCodeRecord.model_validate(doc)))
            except ValidationError:
                logger.warning(
                    "Skipping malformed auth code record %s...", create_auth_code_prefix(code)
                )
        records.sort(key=lambda item: item[1].created_at, reverse=True)
        return [
            AuthCodeSummary(
                auth_code_prefix=f"{create_auth_code_prefix(code)}...",
                device_id=record.device_id,
                device_name=record.device_name,
                created_at=record.created_at,
                expires_at=record.expires_at,
                last_used=record.last_used,
            )
            for code, record in records
        ]

    # ------------------------------------------------------------------ #
    # Device registrations
    # ------------------------------------------------------------------ #

    def get_device(self, user_id: str, device_id: UUID | str) -> DeviceRegistration:
        """Registration of *device_id* owned by *user_id*.

        Raises:
            DeviceNotFoundError: If the user has no such device.
        """
        doc = self._store.get(DEVICES, _device_key(user_id, str(device_id)))
        if doc is None:
            raise DeviceNotFoundError("Device not found")
        return DeviceRegistration.model_validate(doc)

    def store_device_registration(
        self,
        user_id: str,
        device_id: UUID | str,
        device_name: str,
        auth_code: str,
        is_reauth: bool,
    ) -> None:
        """Upsert the registration. ``registered_at`` is only written for new devices."""
        now = self._now().isoformat()
        data = {
            "user_id": user_id,
            "device_id": str(device_id),
            "name": device_name,
            "last_setup": now,
            "setup_method": SETUP_METHOD_GOOGLE_OAUTH,
            "auth_code": auth_code,
        }
        if not is_reauth:
            data["registered_at"] = now
        self._store.set(DEVICES, _device_key(user_id, str(device_id)), data, merge=True)

    def delete_device(self, user_id: str, device_id: UUID | str) -> None:
        self._store.delete(DEVICES, _device_key(user_id, str(device_id)))

    # ------------------------------------------------------------------ #
    # Serialised per-device operations
    # ------------------------------------------------------------------ #

    @contextmanager
    def _device_lock(self, device_id: UUID | str) -> Iterator[None]:
        # In-process only; one backend process owns a store.
        with self._device_locks_guard:
            lock = self._device_locks.setdefault(str(device_id), threading.Lock())
        with lock:
            yield

    def revoke_device_codes(self, device_id: UUID | str) -> int:
        """Delete every code issued to *device_id*. Returns how many were removed."""
        removed = 0
        for code, _ in self._store.query(AUTH_CODES, "device_id", str(device_id)):
            if self._store.delete(AUTH_CODES, code):
                removed += 1
        return removed

    def rotate(
        self,
        user_id: str,
        device_id: UUID | str,
        device_name: str,
        is_reauth: bool,
    ) -> str:
        """Issue the device's only live code and point its registration at it.

        For a re-auth the registration must exist and all earlier codes of the
        device are revoked first. Concurrent calls for one device run one at
        a time.

        Raises:
            DeviceNotFoundError: If *is_reauth* and the user has no such device.
        """
        with self._device_lock(device_id):
            if is_reauth:
                self.get_device(user_id, device_id)
                revoked = self.revoke_device_codes(device_id)
                logger.debug("Revoked %d prior code(s) of device %s", revoked, device_id)
            code = self.create(user_id, device_id, device_name)
            self.store_device_registration(user_id, device_id, device_name, code, is_reauth)
            return code

    def remove_device(self, user_id: str, device_id: UUID | str) -> None:
        """Revoke all codes of the device and delete its registration.

        Raises:
            DeviceNotFoundError: If the user has no such device.
        """
        with self._device_lock(device_id):
            self.get_device(user_id, device_id)
            self.revoke_device_codes(device_id)
            self.delete_device(user_id, device_id)
