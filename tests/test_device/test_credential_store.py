"""Tests for the device credential file."""

from __future__ import annotations

import json
import stat
import uuid
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from overdrip.device.credentials import (
    CREDENTIALS_MODE,
    CredentialStore,
    _file_lock,
    default_credentials_path,
)
from overdrip.exceptions import CredentialStorageError
from overdrip.models import DeviceCredentials


@pytest.fixture
def cred_store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "device" / "config.json")


class TestDefaultPath:
    def test_lives_in_overdrip_home(self, overdrip_home: Path) -> None:
        assert default_credentials_path() == overdrip_home / "config.json"
        assert CredentialStore().path == overdrip_home / "config.json"


class TestSaveAndLoad:
    def test_load_without_file(self, cred_store: CredentialStore) -> None:
        assert cred_store.load() is None
        assert not cred_store.exists()

    def test_round_trip(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        cred_store.save(device_credentials)

        loaded = cred_store.load()

        assert loaded is not None
        assert loaded.device_id == device_credentials.device_id
        assert loaded.device_name == "Greenhouse Pi"
        assert loaded.auth_code == "a" * 64
        assert cred_store.exists()

    def test_file_layout(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        cred_store.save(device_credentials)

        data = json.loads(cred_store.path.read_text())

        assert data["deviceId"] == "6f1c2a4e-8b1d-4d55-9a0e-3c2b1f0a9d77"
        assert data["deviceName"] == "Greenhouse Pi"
        assert data["authCode"] == "a" * 64
        assert "setupAt" in data

    def test_file_is_owner_only(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        cred_store.save(device_credentials)
        mode = stat.S_IMODE(cred_store.path.stat().st_mode)
        assert mode == CREDENTIALS_MODE

    def test_setup_at_is_stamped(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        before = datetime.now(timezone.utc)
        cred_store.save(device_credentials)

        loaded = cred_store.load()

        assert loaded is not None
        assert loaded.setup_at is not None
        assert loaded.setup_at >= before.replace(microsecond=0)

    def test_explicit_setup_at_is_kept(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        stamp = datetime(2024, 6, 1, tzinfo=timezone.utc)
        cred_store.save(device_credentials.model_copy(update={"setup_at": stamp}))

        loaded = cred_store.load()

        assert loaded is not None
        assert loaded.setup_at == stamp

    def test_overwrite_replaces_the_record(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        cred_store.save(device_credentials)
        rotated = device_credentials.model_copy(update={"auth_code": "b" * 64})

        cred_store.save(rotated)

        loaded = cred_store.load()
        assert loaded is not None
        assert loaded.auth_code == "b" * 64
        assert "a" * 64 not in cred_store.path.read_text()

    def test_no_temp_or_lock_files_left_behind(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        cred_store.save(device_credentials)
        assert [p.name for p in cred_store.path.parent.iterdir()] == ["config.json"]

    def test_unknown_fields_are_ignored(self, cred_store: CredentialStore) -> None:
        cred_store.path.parent.mkdir(parents=True)
        cred_store.path.write_text(
            json.dumps(
                {
                    "deviceId": str(uuid.uuid4()),
                    "deviceName": "Pi",
                    "authCode": "c" * 64,
                    "firmware": "1.2.3",
                }
            )
        )
        loaded = cred_store.load()
        assert loaded is not None
        assert loaded.device_name == "Pi"


class TestInvalidFile:
    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            "[]",
            json.dumps({"deviceId": "not-a-uuid", "deviceName": "Pi", "authCode": "a" * 64}),
            json.dumps({"deviceId": str(uuid.UUID(int=1)), "deviceName": "Pi", "authCode": "XYZ"}),
            json.dumps({"deviceName": "Pi"}),
        ],
    )
    def test_invalid_contents(self, cred_store: CredentialStore, content: str) -> None:
        cred_store.path.parent.mkdir(parents=True)
        cred_store.path.write_text(content)

        with pytest.raises(CredentialStorageError, match="overdrip setup"):
            cred_store.load()

    def test_write_failure(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        with patch(
            "overdrip.device.credentials.atomic_write", side_effect=PermissionError("denied")
        ):
            with pytest.raises(CredentialStorageError, match="Cannot write device credentials"):
                cred_store.save(device_credentials)


class TestClear:
    def test_clear_removes_file(
        self, cred_store: CredentialStore, device_credentials: DeviceCredentials
    ) -> None:
        cred_store.save(device_credentials)

        assert cred_store.clear() is True
        assert not cred_store.exists()
        assert cred_store.load() is None

    def test_clear_without_file(self, cred_store: CredentialStore) -> None:
        assert cred_store.clear() is False


class TestFileLock:
    def test_held_lock_times_out(self, tmp_path: Path) -> None:
        lock = tmp_path / ".config.json.lock"
        lock.write_text("")

        with pytest.raises(CredentialStorageError, match="Could not acquire lock"):
            with _file_lock(lock, retries=1, delay=0.01):
                pass

    def test_lock_is_released(self, tmp_path: Path) -> None:
        lock = tmp_path / ".config.json.lock"
        with _file_lock(lock):
            assert lock.exists()
        assert not lock.exists()
