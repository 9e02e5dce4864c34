"""Tests for the session-authenticated device RPCs."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from unittest.mock import patch

import pytest

from overdrip.backend.auth_codes import AuthCodeManager, is_valid_auth_code_format
from overdrip.backend.errors import AuthCodeValidationError, FunctionsError
from overdrip.backend.identity import Principal
from overdrip.backend.registrar import DeviceRegistrar
from overdrip.backend.store import AUTH_CODES, DEVICES, MemoryDocumentStore

USER = Principal(user_id="user-1", email="a@example.com")
OTHER_USER = Principal(user_id="user-2")


def _setup(registrar: DeviceRegistrar, principal=USER, **data: object):
    payload = {"deviceName": "Greenhouse Pi", **data}
    return registrar.setup_device(principal, payload)


def _live_codes(store: MemoryDocumentStore, device_id: uuid.UUID) -> list[str]:
    return sorted(code for code, _ in store.query(AUTH_CODES, "device_id", str(device_id)))


class SlowDeviceReads(MemoryDocumentStore):
    """Stalls every registration read so concurrent callers overlap."""

    def get(self, collection: str, key: str):
        doc = super().get(collection, key)
        if collection == DEVICES:
            time.sleep(0.05)
        return doc


# ---------------------------------------------------------------------------
# setupDevice
# ---------------------------------------------------------------------------


class TestSetupDevice:
    def test_new_device(self, registrar: DeviceRegistrar, auth_codes: AuthCodeManager) -> None:
        result = _setup(registrar)

        assert result.device_id.version == 4
        assert is_valid_auth_code_format(result.auth_code)
        record = auth_codes.validate(result.auth_code, result.device_id)
        assert record.user_id == "user-1"
        assert record.device_name == "Greenhouse Pi"

        registration = auth_codes.get_device("user-1", result.device_id)
        assert registration.auth_code == result.auth_code
        assert registration.registered_at == registration.last_setup

    def test_reauth_rotates_the_code(
        self, registrar: DeviceRegistrar, auth_codes: AuthCodeManager, clock
    ) -> None:
        first = _setup(registrar)
        clock.advance(60)

        second = _setup(registrar, deviceId=str(first.device_id), deviceName="Renamed Pi")

        assert second.device_id == first.device_id
        assert second.auth_code != first.auth_code
        with pytest.raises(AuthCodeValidationError, match="Invalid auth code"):
            auth_codes.validate(first.auth_code, first.device_id)
        assert auth_codes.validate(second.auth_code, first.device_id).device_name == "Renamed Pi"

        registration = auth_codes.get_device("user-1", first.device_id)
        assert registration.registered_at < registration.last_setup
        assert registration.auth_code == second.auth_code
        assert registration.name == "Renamed Pi"

    def test_reauth_of_unknown_device(self, registrar: DeviceRegistrar) -> None:
        with pytest.raises(FunctionsError) as exc_info:
            _setup(registrar, deviceId=str(uuid.uuid4()))
        assert exc_info.value.code == "not-found"
        assert exc_info.value.message == "Device not found"

    def test_reauth_of_another_users_device(self, registrar: DeviceRegistrar) -> None:
        result = _setup(registrar)

        with pytest.raises(FunctionsError) as exc_info:
            _setup(registrar, principal=OTHER_USER, deviceId=str(result.device_id))

        assert exc_info.value.code == "not-found"

    def test_unauthenticated(self, registrar: DeviceRegistrar) -> None:
        with pytest.raises(FunctionsError) as exc_info:
            _setup(registrar, principal=None)
        assert exc_info.value.code == "unauthenticated"
        assert exc_info.value.message == "User must be authenticated"

    @pytest.mark.parametrize(
        "data",
        [
            {"deviceName": ""},
            {"deviceName": "x" * 51},
            {"deviceName": 42},
            {},
            {"deviceName": "Pi", "deviceId": "not-a-uuid"},
            {"deviceName": "Pi", "unexpected": True},
            None,
            "deviceName=Pi",
        ],
    )
    def test_invalid_argument(self, registrar: DeviceRegistrar, data: object) -> None:
        with pytest.raises(FunctionsError) as exc_info:
            registrar.setup_device(USER, data)
        assert exc_info.value.code == "invalid-argument"
        assert exc_info.value.message == "Invalid request data"

    def test_name_at_length_limit_is_accepted(self, registrar: DeviceRegistrar) -> None:
        result = _setup(registrar, deviceName="x" * 50)
        assert is_valid_auth_code_format(result.auth_code)

    def test_store_failure_is_internal(
        self, registrar: DeviceRegistrar, auth_codes: AuthCodeManager, caplog
    ) -> None:
        with patch.object(auth_codes, "create", side_effect=RuntimeError("disk on fire")):
            with caplog.at_level(logging.ERROR, logger="overdrip.backend.registrar"):
                with pytest.raises(FunctionsError) as exc_info:
                    _setup(registrar)

        assert exc_info.value.code == "internal"
        assert exc_info.value.message == "Failed to setup device"
        assert "disk on fire" not in exc_info.value.message
        assert "disk on fire" in caplog.text

    def test_logs_only_the_code_prefix(self, registrar: DeviceRegistrar, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="overdrip.backend.registrar"):
            result = _setup(registrar)

        assert result.auth_code[:8] in caplog.text
        assert result.auth_code not in caplog.text


# ---------------------------------------------------------------------------
# revokeDevice / listAuthCodes
# ---------------------------------------------------------------------------


class TestRevokeDevice:
    def test_revoke(self, registrar: DeviceRegistrar, auth_codes: AuthCodeManager) -> None:
        result = _setup(registrar)

        response = registrar.revoke_device(USER, {"deviceId": str(result.device_id)})

        assert response.success is True
        with pytest.raises(AuthCodeValidationError):
            auth_codes.validate(result.auth_code, result.device_id)
        with pytest.raises(FunctionsError) as exc_info:
            registrar.revoke_device(USER, {"deviceId": str(result.device_id)})
        assert exc_info.value.code == "not-found"

    def test_requires_device_id(self, registrar: DeviceRegistrar) -> None:
        with pytest.raises(FunctionsError) as exc_info:
            registrar.revoke_device(USER, {})
        assert exc_info.value.code == "invalid-argument"

    def test_unauthenticated(self, registrar: DeviceRegistrar) -> None:
        with pytest.raises(FunctionsError) as exc_info:
            registrar.revoke_device(None, {"deviceId": str(uuid.uuid4())})
        assert exc_info.value.code == "unauthenticated"


class TestListAuthCodes:
    def test_lists_prefixes_of_own_codes(self, registrar: DeviceRegistrar, clock) -> None:
        first = _setup(registrar, deviceName="One")
        clock.advance(5)
        second = _setup(registrar, deviceName="Two")
        _setup(registrar, principal=OTHER_USER, deviceName="Not mine")

        summaries = registrar.list_auth_codes(USER)

        assert [s.device_name for s in summaries] == ["Two", "One"]
        assert summaries[0].auth_code_prefix == f"{second.auth_code[:8]}..."
        assert summaries[1].device_id == str(first.device_id)

    def test_unauthenticated(self, registrar: DeviceRegistrar) -> None:
        with pytest.raises(FunctionsError) as exc_info:
            registrar.list_auth_codes(None)
        assert exc_info.value.code == "unauthenticated"


# ---------------------------------------------------------------------------
# One live code per device
# ---------------------------------------------------------------------------


class TestSingleLiveCode:
    def test_concurrent_reauth(self, identity, clock) -> None:
        store = SlowDeviceReads()
        manager = AuthCodeManager(store, identity, clock=clock)
        registrar = DeviceRegistrar(manager)
        device_id = _setup(registrar).device_id

        start = threading.Barrier(2)
        results = []

        def reauth() -> None:
            start.wait(timeout=5)
            results.append(_setup(registrar, deviceId=str(device_id)))

        threads = [threading.Thread(target=reauth) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == 2
        registration = manager.get_device("user-1", device_id)
        assert _live_codes(store, device_id) == [registration.auth_code]

        registrar.revoke_device(USER, {"deviceId": str(device_id)})
        assert _live_codes(store, device_id) == []

    def test_reauth_revokes_stray_codes(
        self, registrar: DeviceRegistrar, auth_codes: AuthCodeManager, store
    ) -> None:
        first = _setup(registrar)
        stray = auth_codes.create("user-1", first.device_id, "Greenhouse Pi")

        second = _setup(registrar, deviceId=str(first.device_id))

        assert _live_codes(store, first.device_id) == [second.auth_code]
        assert stray not in _live_codes(store, first.device_id)

    def test_revoke_removes_codes_not_on_the_registration(
        self, registrar: DeviceRegistrar, auth_codes: AuthCodeManager, store
    ) -> None:
        result = _setup(registrar)
        auth_codes.create("user-1", result.device_id, "Greenhouse Pi")

        registrar.revoke_device(USER, {"deviceId": str(result.device_id)})

        assert _live_codes(store, result.device_id) == []

    def test_other_devices_keep_their_codes(
        self, registrar: DeviceRegistrar, store
    ) -> None:
        kept = _setup(registrar, deviceName="Kept")
        gone = _setup(registrar, deviceName="Gone")

        registrar.revoke_device(USER, {"deviceId": str(gone.device_id)})

        assert _live_codes(store, kept.device_id) == [kept.auth_code]
