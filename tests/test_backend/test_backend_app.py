"""HTTP-level tests for the backend application."""

from __future__ import annotations

import uuid

import jwt
import pytest
from fastapi.testclient import TestClient

from overdrip import __version__
from overdrip.backend.app import REFRESH_FAILED_MESSAGE, create_app
from overdrip.backend.auth_codes import AuthCodeManager
from overdrip.backend.identity import DEVICE_AUDIENCE
from overdrip.backend.settings import BackendSettings
from overdrip.backend.store import DiskDocumentStore, MemoryDocumentStore
from overdrip.exceptions import ConfigError

REFRESH = "/v1/devices/refresh-token"


def _setup_device(
    api_client: TestClient, headers: dict[str, str], **data: object
) -> dict[str, str]:
    response = api_client.post(
        "/v1/devices/setup", json={"deviceName": "Greenhouse Pi", **data}, headers=headers
    )
    assert response.status_code == 200, response.text
    return response.json()


# ---------------------------------------------------------------------------
# Sign-in and health
# ---------------------------------------------------------------------------


class TestSignIn:
    def test_health(self, api_client: TestClient) -> None:
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__}

    def test_sign_in(self, api_client: TestClient) -> None:
        response = api_client.post("/v1/auth/signin", json={"idToken": "valid:user-9"})

        assert response.status_code == 200
        body = response.json()
        assert body["userId"] == "user-9"
        assert body["sessionToken"]
        assert body["expiresIn"] == 3600

    def test_untrusted_id_token(self, api_client: TestClient) -> None:
        response = api_client.post("/v1/auth/signin", json={"idToken": "forged"})

        assert response.status_code == 401
        assert response.json() == {
            "error": {"status": "UNAUTHENTICATED", "message": "Authentication failed"}
        }

    def test_missing_id_token(self, api_client: TestClient) -> None:
        response = api_client.post("/v1/auth/signin", json={})
        assert response.status_code == 400
        assert response.json()["error"]["status"] == "INVALID_ARGUMENT"


# ---------------------------------------------------------------------------
# Device RPCs
# ---------------------------------------------------------------------------


class TestDeviceRpcs:
    def test_setup_device(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        body = _setup_device(api_client, session_headers)

        assert uuid.UUID(body["deviceId"]).version == 4
        assert len(body["authCode"]) == 64

    def test_setup_without_session(self, api_client: TestClient) -> None:
        response = api_client.post("/v1/devices/setup", json={"deviceName": "Pi"})

        assert response.status_code == 401
        assert response.json() == {
            "error": {"status": "UNAUTHENTICATED", "message": "User must be authenticated"}
        }

    def test_setup_with_bad_session_token(self, api_client: TestClient) -> None:
        response = api_client.post(
            "/v1/devices/setup",
            json={"deviceName": "Pi"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    def test_setup_with_expired_session(
        self, api_client: TestClient, session_headers: dict[str, str], clock
    ) -> None:
        clock.advance(3601)
        response = api_client.post(
            "/v1/devices/setup", json={"deviceName": "Pi"}, headers=session_headers
        )
        assert response.status_code == 401

    def test_setup_invalid_argument(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        response = api_client.post(
            "/v1/devices/setup", json={"deviceName": ""}, headers=session_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["status"] == "INVALID_ARGUMENT"

    def test_reauth_unknown_device(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        response = api_client.post(
            "/v1/devices/setup",
            json={"deviceName": "Pi", "deviceId": str(uuid.uuid4())},
            headers=session_headers,
        )
        assert response.status_code == 404
        assert response.json()["error"] == {"status": "NOT_FOUND", "message": "Device not found"}

    def test_list_and_revoke(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        device = _setup_device(api_client, session_headers)

        listed = api_client.get("/v1/devices/auth-codes", headers=session_headers)
        assert listed.status_code == 200
        codes = listed.json()["authCodes"]
        assert len(codes) == 1
        assert codes[0]["authCodePrefix"] == f"{device['authCode'][:8]}..."
        assert device["authCode"] not in listed.text

        revoked = api_client.post(
            "/v1/devices/revoke", json={"deviceId": device["deviceId"]}, headers=session_headers
        )
        assert revoked.status_code == 200
        assert revoked.json() == {"success": True}

        refresh = api_client.post(REFRESH, json=device)
        assert refresh.status_code == 401


# ---------------------------------------------------------------------------
# Refresh endpoint
# ---------------------------------------------------------------------------


class TestRefreshToken:
    def test_valid_refresh(
        self,
        api_client: TestClient,
        session_headers: dict[str, str],
        auth_codes: AuthCodeManager,
        signing_secret: str,
    ) -> None:
        device = _setup_device(api_client, session_headers)

        response = api_client.post(REFRESH, json=device)

        assert response.status_code == 200
        token = response.json()["customToken"]
        assert token
        claims = jwt.decode(
            token,
            signing_secret,
            algorithms=["HS256"],
            audience=DEVICE_AUDIENCE,
            options={"verify_exp": False},
        )
        assert claims["sub"] == device["deviceId"]
        assert claims["claims"]["userId"] == "user-1"
        assert claims["claims"]["authCodePrefix"] == device["authCode"][:8]

        record = auth_codes.get(device["authCode"])
        assert record is not None
        assert record.last_used is not None

    def test_wrong_device_id(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        device = _setup_device(api_client, session_headers)

        response = api_client.post(
            REFRESH, json={"authCode": device["authCode"], "deviceId": str(uuid.uuid4())}
        )

        assert response.status_code == 401
        assert response.json() == {"error": REFRESH_FAILED_MESSAGE}

    def test_rejections_share_one_body(
        self, api_client: TestClient, session_headers: dict[str, str], clock
    ) -> None:
        device = _setup_device(api_client, session_headers)
        unknown = api_client.post(
            REFRESH, json={"authCode": "0" * 64, "deviceId": device["deviceId"]}
        )
        mismatch = api_client.post(
            REFRESH, json={"authCode": device["authCode"], "deviceId": str(uuid.uuid4())}
        )
        clock.advance(366 * 86400)
        expired = api_client.post(REFRESH, json=device)

        assert unknown.status_code == mismatch.status_code == expired.status_code == 401
        assert unknown.json() == mismatch.json() == expired.json()

    def test_reauth_invalidates_previous_code(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        first = _setup_device(api_client, session_headers)
        second = _setup_device(api_client, session_headers, deviceId=first["deviceId"])

        assert api_client.post(REFRESH, json=first).status_code == 401
        assert api_client.post(REFRESH, json=second).status_code == 200

    @pytest.mark.parametrize(
        "body",
        [
            {"authCode": "A" * 64, "deviceId": str(uuid.uuid4())},
            {"authCode": "a" * 63, "deviceId": str(uuid.uuid4())},
            {"authCode": "a" * 64, "deviceId": "not-a-uuid"},
            {"authCode": "a" * 64},
            {"deviceId": str(uuid.uuid4())},
            {},
        ],
    )
    def test_validation_errors(self, api_client: TestClient, body: dict[str, str]) -> None:
        response = api_client.post(REFRESH, json=body)

        assert response.status_code == 400
        payload = response.json()
        assert payload["error"] == "Invalid request data"
        assert payload["details"]

    def test_snake_case_keys_rejected(
        self, api_client: TestClient, session_headers: dict[str, str]
    ) -> None:
        device = _setup_device(api_client, session_headers)

        response = api_client.post(
            REFRESH, json={"auth_code": device["authCode"], "device_id": device["deviceId"]}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request data"

    def test_non_json_body(self, api_client: TestClient) -> None:
        response = api_client.post(
            REFRESH, content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request data"

    @pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE"])
    def test_other_methods_not_allowed(self, api_client: TestClient, method: str) -> None:
        response = api_client.request(method, REFRESH)

        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}

    def test_options(self, api_client: TestClient) -> None:
        response = api_client.options(REFRESH)
        assert response.status_code == 204

    def test_cors_preflight(self, api_client: TestClient) -> None:
        response = api_client.options(
            REFRESH,
            headers={
                "Origin": "https://dashboard.example.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_unexpected_failure_is_500(
        self,
        api_client: TestClient,
        backend_app,
        session_headers: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        device = _setup_device(api_client, session_headers)

        def boom(*args: object, **kwargs: object) -> str:
            raise RuntimeError("signing backend down")

        monkeypatch.setattr(backend_app.state.auth_codes, "mint_session_token", boom)
        response = api_client.post(REFRESH, json=device)

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_mark_used_failure_does_not_fail_refresh(
        self,
        api_client: TestClient,
        backend_app,
        session_headers: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        device = _setup_device(api_client, session_headers)

        def boom(code: str) -> None:
            raise RuntimeError("write failed")

        monkeypatch.setattr(backend_app.state.auth_codes, "mark_used", boom)
        response = api_client.post(REFRESH, json=device)

        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestCreateApp:
    def test_requires_client_id_without_identity(self, store: MemoryDocumentStore) -> None:
        settings = BackendSettings(signing_secret="s" * 32)
        with pytest.raises(ConfigError, match="GOOGLE_OAUTH_CLIENT_ID"):
            create_app(settings, store=store)

    def test_reads_settings_from_env(self, monkeypatch: pytest.MonkeyPatch, identity) -> None:
        monkeypatch.setenv("OVERDRIP_SIGNING_SECRET", "s" * 32)
        app = create_app(identity=identity)
        assert isinstance(app.state.store, MemoryDocumentStore)

    def test_missing_signing_secret(self) -> None:
        with pytest.raises(ConfigError, match="OVERDRIP_SIGNING_SECRET"):
            create_app()

    def test_disk_store_from_settings(self, tmp_path, identity) -> None:
        settings = BackendSettings(signing_secret="s" * 32, store_dir=tmp_path / "store")
        app = create_app(settings, identity=identity)
        with TestClient(app):
            assert isinstance(app.state.store, DiskDocumentStore)
