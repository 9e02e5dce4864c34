"""Device-side credential file.

The device keeps exactly one credential record, ``{deviceId, deviceName,
authCode}``, in ``<overdrip home>/config.json`` (``~/.overdrip/config.json``
unless ``OVERDRIP_HOME`` is set). The file is written atomically with ``0o600``
permissions and is overwritten wholesale on every successful setup, so a
re-authentication never leaves a stale code behind.

Writers serialise on an advisory ``O_EXCL`` lock file next to the record;
readers take no lock because the atomic rename guarantees they see either
the old or the new file, never a mix.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from overdrip.config import atomic_write, get_home_dir
from overdrip.exceptions import CredentialStorageError
from overdrip.models import DeviceCredentials

logger = logging.getLogger(__name__)

CREDENTIALS_FILENAME = "config.json"
CREDENTIALS_MODE = 0o600


def default_credentials_path() -> Path:
    return get_home_dir() / CREDENTIALS_FILENAME


@contextlib.contextmanager
def _file_lock(lock_path: Path, retries: int = 25, delay: float = 0.2) -> Iterator[None]:
    """Advisory file lock using ``os.O_EXCL`` creation of *lock_path*."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o600)
            os.close(fd)
            break
        except FileExistsError:
            if attempt == retries:
                raise CredentialStorageError(
                    f"Could not acquire lock {lock_path}. If no other overdrip "
                    "process is running, delete the lock file and retry."
                ) from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


class CredentialStore:
    """Read/write the device credential record.

    Args:
        path: Credential file location. Defaults to
            :func:`default_credentials_path`.

    Example::

        store = CredentialStore()
        store.save(DeviceCredentials(device_id=..., device_name="Pi", auth_code=...))
        creds = store.load()
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path if path is not None else default_credentials_path()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def _lock_path(self) -> Path:
        return self._path.with_name(f".{self._path.name}.lock")

    def save(self, credentials: DeviceCredentials) -> None:
        """Persist *credentials* atomically with ``0o600`` permissions.

        ``setupAt`` is stamped with the current UTC time when not set.

        Raises:
            CredentialStorageError: If the file cannot be written.
        """
        if credentials.setup_at is None:
            credentials = credentials.model_copy(
                update={"setup_at": datetime.now(timezone.utc)}
            )
        data = credentials.model_dump(mode="json", by_alias=True)
        text = json.dumps(data, indent=2) + "\n"

        try:
            with _file_lock(self._lock_path):
                atomic_write(self._path, text, mode=CREDENTIALS_MODE)
        except OSError as exc:
            raise CredentialStorageError(
                f"Cannot write device credentials to {self._path}: {exc}"
            ) from exc
        logger.debug(
            "Stored credentials for device %s (auth code %s...)",
            credentials.device_id,
            credentials.auth_code_prefix,
        )

    def load(self) -> Optional[DeviceCredentials]:
        """Load the stored record.

        Returns:
            The credentials, or ``None`` if the device has never been set up.

        Raises:
            CredentialStorageError: If the file exists but is unreadable or
                does not hold a valid record.
        """
        if not self._path.is_file():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return DeviceCredentials.model_validate(data)
        except (json.JSONDecodeError, ValidationError, OSError) as exc:
            raise CredentialStorageError(
                f"Invalid device credentials at {self._path}: {exc}. "
                "Run 'overdrip setup' to provision this device again."
            ) from exc

    def exists(self) -> bool:
        return self._path.is_file()

    def clear(self) -> bool:
        """Delete the credential file.

        Returns:
            ``True`` if a file was removed, ``False`` if there was none.
        """
        with _file_lock(self._lock_path):
            try:
                self._path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise CredentialStorageError(
                    f"Cannot delete device credentials at {self._path}: {exc}"
                ) from exc
        return True
