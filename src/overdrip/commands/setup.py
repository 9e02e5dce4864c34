"""Setup command -- provision this machine as an Overdrip device.

Runs the browser-based Google sign-in, registers the device with the backend
and stores the resulting auth code in the credential file. Running it again
on a provisioned device re-authenticates the same device and rotates its
auth code.

Typical workflow::

    overdrip setup --name "Greenhouse"
    overdrip status
    overdrip start
"""

from __future__ import annotations

import webbrowser
from typing import TYPE_CHECKING, Optional

import typer

from overdrip.exceptions import CredentialStorageError, OverdripError, SetupError, SetupStage
from overdrip.output import (
    OutputFormat,
    error,
    format_response,
    get_output,
    info,
    progress,
    success,
    suggest,
)
from overdrip.provision import SetupProgress, SetupStep

if TYPE_CHECKING:
    from overdrip.device.credentials import CredentialStore

DEFAULT_DEVICE_NAME = "Plant Monitor"

_STEP_MESSAGES = {
    SetupStep.INITIALIZING: "Initializing setup...",
    SetupStep.STARTING_OAUTH_SERVER: "Starting local callback server...",
    SetupStep.EXCHANGING_TOKENS: "Exchanging authorization code...",
    SetupStep.AUTHENTICATING: "Signing in to Overdrip...",
    SetupStep.SETTING_UP_DEVICE: "Registering device...",
    SetupStep.STORING_CREDENTIALS: "Saving device credentials...",
}

_STAGE_SUGGESTIONS = {
    SetupStage.OAUTH: "Run 'overdrip setup' again and finish the Google sign-in (--port picks another callback port).",
    SetupStage.TOKEN_EXCHANGE: "Check GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET, then retry.",
    SetupStage.AUTHENTICATION: "Check that the backend is reachable and uses the same Google client id.",
    SetupStage.DEVICE_SETUP: "If the device was removed from your account, run 'overdrip logout' and set it up again.",
    SetupStage.CREDENTIAL_STORAGE: "Check permissions of the Overdrip home directory (OVERDRIP_HOME).",
}


def _report_progress(event: SetupProgress) -> None:
    if event.step == SetupStep.WAITING_FOR_AUTH:
        if not event.browser_opened:
            info("Open this URL in your browser to sign in:")
            # The URL is required to finish setup, so it ignores --quiet.
            typer.echo(event.details, err=True)
        progress("Waiting for Google sign-in...")
    elif event.step in _STEP_MESSAGES:
        progress(_STEP_MESSAGES[event.step])


def _no_browser(url: str) -> bool:
    return False


def _prompt_device_name(store: CredentialStore) -> str:
    try:
        existing = store.load()
    except CredentialStorageError:
        existing = None
    default = existing.device_name if existing is not None else DEFAULT_DEVICE_NAME
    return typer.prompt("Device name", default=default)


def setup_command(
    name: Optional[str] = typer.Option(
        None, "--name", "-n", help="Device name (1-50 characters). Prompted when omitted."
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL instead of opening a browser."
    ),
    port: Optional[int] = typer.Option(
        None, "--port", help="First local port to try for the OAuth callback."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the browser sign-in."
    ),
    backend_url: Optional[str] = typer.Option(
        None, "--backend-url", help="Overdrip backend base URL."
    ),
) -> None:
    """Set up this device with Google sign-in.

    Starts a one-shot callback server on localhost, opens the Google consent
    page, and on success registers the device with the backend. The
    returned auth code is written to ``<home>/config.json`` with owner-only
    permissions.

    Args:
        name: Human-readable device name.
        no_browser: Do not try to launch a browser.
        port: First port of the callback port range.
        timeout: How long to wait for the consent redirect.
        backend_url: Override the configured backend URL.

    Raises:
        typer.Exit: With the failing error's exit code.

    Example::

        overdrip setup --name "Greenhouse"
        overdrip setup --no-browser --port 9000
    """
    from overdrip.client import BackendClient
    from overdrip.config import load_client_config
    from overdrip.device.credentials import CredentialStore
    from overdrip.provision import provision_device

    try:
        config = load_client_config(
            cli_backend_url=backend_url,
            cli_callback_port=port,
            cli_callback_timeout=timeout,
        )
    except OverdripError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    store = CredentialStore()
    device_name = name if name is not None else _prompt_device_name(store)

    with BackendClient(config.backend_url) as backend:
        try:
            result = provision_device(
                device_name,
                config,
                store,
                backend,
                on_progress=_report_progress,
                open_browser=_no_browser if no_browser else webbrowser.open,
            )
        except SetupError as exc:
            error(str(exc))
            suggest(_STAGE_SUGGESTIONS[exc.stage])
            raise typer.Exit(code=exc.exit_code) from None
        except OverdripError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None

    if result.is_reauth:
        success(f'Device "{result.device_name}" re-authenticated ({result.device_id}).')
    else:
        success(f'Device "{result.device_name}" set up ({result.device_id}).')
    if get_output().format == OutputFormat.JSON:
        format_response(
            {
                "deviceId": str(result.device_id),
                "deviceName": result.device_name,
                "isReauth": result.is_reauth,
            }
        )
    suggest("Start the device: overdrip start")
