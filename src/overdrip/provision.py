"""Interactive device setup: browser login to stored device credential.

:func:`provision_device` runs the whole pipeline in order, each step blocking
on the previous one:

1. generate a PKCE challenge and start the loopback callback listener;
2. open the Google consent page and wait for the redirect;
3. exchange the authorization code for an ID token;
4. sign in to the backend with the ID token;
5. call ``setupDevice`` (passing the stored device id when re-authenticating);
6. write the returned auth code to the local credential file.

Any failure is re-raised as :class:`~overdrip.exceptions.SetupError` naming
the stage that failed, so "Google login failed" and "device registration
failed" read differently to the user. Nothing is retried; the user re-runs
``overdrip setup``.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import webbrowser
from typing import Callable, Iterator, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from overdrip.client.backend import BackendClient
from overdrip.device.credentials import CredentialStore
from overdrip.exceptions import (
    CredentialStorageError,
    InvalidUsageError,
    SetupError,
    SetupStage,
)
from overdrip.models import DEVICE_NAME_MAX_LENGTH, ClientConfig, DeviceCredentials
from overdrip.oauth.callback_server import open_listener
from overdrip.oauth.exchange import exchange_code
from overdrip.oauth.pkce import build_auth_url, generate_challenge

logger = logging.getLogger(__name__)


class SetupStep(str, enum.Enum):
    INITIALIZING = "initializing"
    STARTING_OAUTH_SERVER = "starting_oauth_server"
    WAITING_FOR_AUTH = "waiting_for_auth"
    EXCHANGING_TOKENS = "exchanging_tokens"
    AUTHENTICATING = "authenticating"
    SETTING_UP_DEVICE = "setting_up_device"
    STORING_CREDENTIALS = "storing_credentials"
    COMPLETE = "complete"


class SetupProgress(BaseModel):
    """A progress event. For ``WAITING_FOR_AUTH``, ``details`` is the consent URL."""

    model_config = ConfigDict(frozen=True)

    step: SetupStep
    details: Optional[str] = None
    browser_opened: Optional[bool] = None


class SetupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: UUID
    device_name: str
    is_reauth: bool


ProgressCallback = Callable[[SetupProgress], None]


def validate_device_name(device_name: str) -> str:
    """Strip *device_name* and check its length.

    Raises:
        InvalidUsageError: If the name is empty or longer than 50 characters.
    """
    name = device_name.strip()
    if not name:
        raise InvalidUsageError("Device name must not be empty")
    if len(name) > DEVICE_NAME_MAX_LENGTH:
        raise InvalidUsageError(
            f"Device name must be at most {DEVICE_NAME_MAX_LENGTH} characters "
            f"(got {len(name)})"
        )
    return name


@contextlib.contextmanager
def _stage(stage: SetupStage) -> Iterator[None]:
    try:
        yield
    except SetupError:
        raise
    except Exception as exc:
        logger.debug("%s failed", stage.value, exc_info=True)
        raise SetupError(stage, exc) from exc


def _existing_credentials(store: CredentialStore) -> Optional[DeviceCredentials]:
    try:
        return store.load()
    except CredentialStorageError as exc:
        logger.warning("Ignoring unreadable credential file, setting up a new device: %s", exc)
        return None


def provision_device(
    device_name: str,
    config: ClientConfig,
    store: CredentialStore,
    backend: BackendClient,
    on_progress: Optional[ProgressCallback] = None,
    open_browser: Callable[[str], bool] = webbrowser.open,
) -> SetupResult:
    """Run the interactive setup and persist the new device credential.

    When the credential file already holds a device, the same device is
    re-authenticated: the backend rotates its auth code and the device keeps
    its id.

    Args:
        device_name: Human-readable device name, 1-50 characters.
        config: Effective client configuration.
        store: Where the credential is written.
        backend: Backend API client.
        on_progress: Called with a :class:`SetupProgress` at every step.
        open_browser: Opens the consent URL; returns ``False`` if no browser
            could be launched.

    Returns:
        The provisioned device.

    Raises:
        InvalidUsageError: If *device_name* is invalid.
        SetupError: If any stage fails.
    """

    def report(step: SetupStep, **kwargs: object) -> None:
        logger.debug("Setup step: %s", step.value)
        if on_progress is not None:
            on_progress(SetupProgress(step=step, **kwargs))

    device_name = validate_device_name(device_name)
    report(SetupStep.INITIALIZING)

    existing = _existing_credentials(store)
    is_reauth = existing is not None

    report(SetupStep.STARTING_OAUTH_SERVER)
    with _stage(SetupStage.OAUTH):
        challenge = generate_challenge()
        listener = open_listener(
            challenge.state,
            start_port=config.callback_port,
            timeout=config.callback_timeout,
        )

    try:
        auth_url = build_auth_url(
            config.google_oauth_client_id, listener.redirect_uri, challenge
        )
        browser_opened = bool(open_browser(auth_url))
        report(SetupStep.WAITING_FOR_AUTH, details=auth_url, browser_opened=browser_opened)
        with _stage(SetupStage.OAUTH):
            callback = listener.wait()
    finally:
        # A settled listener shuts itself down after its grace period.
        if not listener.is_settled:
            listener.close()

    report(SetupStep.EXCHANGING_TOKENS)
    with _stage(SetupStage.TOKEN_EXCHANGE):
        tokens = exchange_code(
            config.google_oauth_client_id,
            listener.redirect_uri,
            callback.code,
            challenge.code_verifier,
            client_secret=config.google_oauth_client_secret,
        )

    report(SetupStep.AUTHENTICATING)
    with _stage(SetupStage.AUTHENTICATION):
        session = backend.sign_in(tokens.id_token)

    report(SetupStep.SETTING_UP_DEVICE)
    with _stage(SetupStage.DEVICE_SETUP):
        created = backend.setup_device(
            session,
            device_name,
            device_id=existing.device_id if existing is not None else None,
        )

    report(SetupStep.STORING_CREDENTIALS)
    with _stage(SetupStage.CREDENTIAL_STORAGE):
        store.save(
            DeviceCredentials(
                device_id=created.device_id,
                device_name=device_name,
                auth_code=created.auth_code,
            )
        )

    report(SetupStep.COMPLETE)
    logger.info(
        "Device %s (%s) %s",
        device_name,
        created.device_id,
        "re-authenticated" if is_reauth else "registered",
    )
    return SetupResult(
        device_id=created.device_id, device_name=device_name, is_reauth=is_reauth
    )
