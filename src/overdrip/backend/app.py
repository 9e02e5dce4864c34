"""FastAPI application exposing the backend API.

Routes:

- ``GET  /health``
- ``POST /v1/auth/signin`` -- provider ID token to session token.
- ``POST /v1/devices/setup`` -- ``setupDevice`` RPC (Bearer session).
- ``POST /v1/devices/revoke`` -- ``revokeDevice`` RPC (Bearer session).
- ``GET  /v1/devices/auth-codes`` -- ``listAuthCodes`` RPC (Bearer session).
- ``POST /v1/devices/refresh-token`` -- unauthenticated auth-code exchange.

RPC failures are rendered from :class:`~overdrip.backend.errors.FunctionsError`
as ``{"error": {"status", "message"}}``. The refresh endpoint has its own
flat ``{"error": ...}`` shape because devices parse it directly.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, BackgroundTasks, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from overdrip import __version__
from overdrip.backend.auth_codes import AuthCodeManager, create_auth_code_prefix
from overdrip.backend.clock import Clock, default_clock
from overdrip.backend.errors import AuthCodeValidationError, FunctionsError, IdentityError
from overdrip.backend.identity import (
    GoogleIdTokenVerifier,
    IdentityService,
    JWTIdentityService,
    Principal,
)
from overdrip.backend.registrar import DeviceRegistrar
from overdrip.backend.settings import BackendSettings
from overdrip.backend.store import DiskDocumentStore, DocumentStore, MemoryDocumentStore
from overdrip.exceptions import ConfigError
from overdrip.models import RefreshTokenRequest, SignInRequest

logger = logging.getLogger(__name__)

REFRESH_FAILED_MESSAGE = "Invalid or expired auth code"

router = APIRouter()


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #


async def _json_body(request: Request) -> Any:
    """Decoded JSON body, or ``None`` when the body is not valid JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


def _principal(request: Request) -> Optional[Principal]:
    """Verified caller of an RPC, or ``None`` without a valid Bearer session."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header.removeprefix("Bearer ").strip()
    identity: IdentityService = request.app.state.identity
    try:
        return identity.verify_session_token(token)
    except IdentityError as exc:
        logger.info("Rejected session token: %s", exc)
        return None


def _mark_used(auth_codes: AuthCodeManager, code: str) -> None:
    try:
        auth_codes.mark_used(code)
    except Exception as exc:
        logger.warning(
            "Could not stamp last_used on auth code %s...: %s",
            create_auth_code_prefix(code),
            exc,
        )


# --------------------------------------------------------------------------- #
# Routes
# --------------------------------------------------------------------------- #


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


@router.post("/v1/auth/signin")
async def sign_in(request: Request) -> JSONResponse:
    """Exchange a provider ID token for a backend session token."""
    try:
        body = SignInRequest.model_validate(await _json_body(request))
    except ValidationError as exc:
        raise FunctionsError("invalid-argument", "idToken is required") from exc

    identity: IdentityService = request.app.state.identity
    try:
        session = await run_in_threadpool(identity.sign_in_with_id_token, body.id_token)
    except IdentityError as exc:
        logger.info("Sign-in rejected: %s", exc)
        raise FunctionsError("unauthenticated", "Authentication failed") from exc
    return JSONResponse(session.model_dump(by_alias=True))


@router.post("/v1/devices/setup")
async def setup_device(request: Request) -> JSONResponse:
    principal = _principal(request)
    body = await _json_body(request)
    registrar: DeviceRegistrar = request.app.state.registrar
    result = await run_in_threadpool(registrar.setup_device, principal, body)
    return JSONResponse(result.model_dump(mode="json", by_alias=True))


@router.post("/v1/devices/revoke")
async def revoke_device(request: Request) -> JSONResponse:
    principal = _principal(request)
    body = await _json_body(request)
    registrar: DeviceRegistrar = request.app.state.registrar
    result = await run_in_threadpool(registrar.revoke_device, principal, body)
    return JSONResponse(result.model_dump(mode="json", by_alias=True))


@router.get("/v1/devices/auth-codes")
async def list_auth_codes(request: Request) -> JSONResponse:
    principal = _principal(request)
    registrar: DeviceRegistrar = request.app.state.registrar
    summaries = await run_in_threadpool(registrar.list_auth_codes, principal)
    return JSONResponse(
        {"authCodes": [s.model_dump(mode="json", by_alias=True) for s in summaries]}
    )


@router.post("/v1/devices/refresh-token")
async def refresh_device_token(
    request: Request, background_tasks: BackgroundTasks
) -> JSONResponse:
    """Trade a device's auth code for a short-lived custom token.

    Unauthenticated. The three rejection reasons (unknown, expired, other
    device) are logged distinctly but all answered with the same 401 body.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request data",
                "details": [{"type": "json_invalid", "msg": "Body is not valid JSON"}],
            },
        )
    try:
        data = RefreshTokenRequest.model_validate(body)
    except ValidationError as exc:
        details = exc.errors(include_url=False, include_input=False, include_context=False)
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request data", "details": jsonable_encoder(details)},
        )

    auth_codes: AuthCodeManager = request.app.state.auth_codes
    prefix = create_auth_code_prefix(data.auth_code)
    try:
        record = await run_in_threadpool(auth_codes.validate, data.auth_code, data.device_id)
        token = await run_in_threadpool(
            auth_codes.mint_session_token,
            data.device_id,
            record.user_id,
            record.device_name,
            prefix,
        )
    except AuthCodeValidationError as exc:
        logger.info(
            "Token refresh failed - %s (reason=%s device=%s code=%s...)",
            exc,
            exc.reason.value,
            data.device_id,
            prefix,
        )
        return JSONResponse(status_code=401, content={"error": REFRESH_FAILED_MESSAGE})
    except Exception:
        logger.error(
            "Error refreshing device token (device=%s code=%s...)",
            data.device_id,
            prefix,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    background_tasks.add_task(_mark_used, auth_codes, data.auth_code)
    logger.info(
        "Token refresh successful (device=%s name=%r user=%s code=%s...)",
        data.device_id,
        record.device_name,
        record.user_id,
        prefix,
    )
    return JSONResponse({"customToken": token})


@router.options("/v1/devices/refresh-token")
async def refresh_device_token_options() -> Response:
    # Real CORS preflights are answered by the middleware before reaching here.
    return Response(status_code=204)


@router.api_route(
    "/v1/devices/refresh-token", methods=["GET", "PUT", "PATCH", "DELETE"]
)
async def refresh_device_token_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": "Method not allowed"},
        headers={"Allow": "POST, OPTIONS"},
    )


# --------------------------------------------------------------------------- #
# Application factory
# --------------------------------------------------------------------------- #


async def _functions_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, FunctionsError)
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


def create_app(
    settings: Optional[BackendSettings] = None,
    *,
    store: Optional[DocumentStore] = None,
    identity: Optional[IdentityService] = None,
    clock: Clock = default_clock,
) -> FastAPI:
    """Build the backend application.

    Args:
        settings: Backend settings; read from the environment when omitted.
        store: Document store; derived from ``settings.store_dir`` when omitted.
        identity: Identity service; a :class:`JWTIdentityService` verifying
            Google ID tokens when omitted.
        clock: Time source shared by tokens and auth codes.

    Raises:
        ConfigError: If the settings are incomplete.
    """
    settings = settings or BackendSettings.from_env()

    if store is None:
        if settings.store_dir is not None:
            store = DiskDocumentStore(settings.store_dir)
        else:
            logger.warning("OVERDRIP_STORE_DIR not set; devices are kept in memory only")
            store = MemoryDocumentStore()

    if identity is None:
        if not settings.google_client_id:
            raise ConfigError(
                "GOOGLE_OAUTH_CLIENT_ID is required to verify Google ID tokens"
            )
        identity = JWTIdentityService(
            settings.signing_secret,
            GoogleIdTokenVerifier(settings.google_client_id),
            clock=clock,
            session_ttl=settings.session_ttl_seconds,
            custom_token_ttl=settings.session_ttl_seconds,
        )

    auth_codes = AuthCodeManager(
        store, identity, clock=clock, ttl_days=settings.auth_code_ttl_days
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        store.close()

    app = FastAPI(
        title="Overdrip Backend",
        description="Device provisioning and auth-code refresh API.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.identity = identity
    app.state.auth_codes = auth_codes
    app.state.registrar = DeviceRegistrar(auth_codes)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_exception_handler(FunctionsError, _functions_error_handler)
    app.include_router(router)
    return app
