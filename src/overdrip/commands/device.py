"""Device commands -- run, inspect, and forget the provisioned device.

* ``overdrip start`` exchanges the stored auth code for a session and runs
  the device loop until interrupted.
* ``overdrip status`` shows the stored identity. Only the first 8
  characters of the auth code are ever printed.
* ``overdrip logout`` deletes the local credential file.
"""

from __future__ import annotations

from typing import Optional

import typer

from overdrip.exceptions import AuthError, NotSetUpError, OverdripError
from overdrip.exit_codes import EXIT_NOT_SET_UP
from overdrip.output import error, format_response, info, success, suggest


def start_command(
    interval: float = typer.Option(
        30.0, "--interval", min=1.0, help="Seconds between status heartbeats."
    ),
    backend_url: Optional[str] = typer.Option(
        None, "--backend-url", help="Overdrip backend base URL."
    ),
) -> None:
    """Authenticate with the stored auth code and run the device loop.

    Raises:
        typer.Exit: With code 7 when the device is not set up, or 3 when the
            backend rejects the auth code.

    Example::

        overdrip start
        overdrip start --interval 60
    """
    from overdrip.client import BackendClient
    from overdrip.config import resolve_backend_url
    from overdrip.device import CredentialStore, DeviceClient, OverdripRuntime

    try:
        url = resolve_backend_url(backend_url)
    except OverdripError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    with BackendClient(url) as backend:
        try:
            client = DeviceClient.from_store(CredentialStore(), backend)
            info(f"Starting {client.device_name} ({client.device_id})...")
            OverdripRuntime(client, interval=interval).start()
        except NotSetUpError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None
        except AuthError as exc:
            error(str(exc))
            suggest("Re-authenticate: overdrip setup")
            raise typer.Exit(code=exc.exit_code) from None
        except OverdripError as exc:
            error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None


def status_command() -> None:
    """Show the stored device identity.

    Example::

        overdrip status
        overdrip status --json
    """
    from overdrip.device import CredentialStore

    store = CredentialStore()
    try:
        credentials = store.load()
    except OverdripError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if credentials is None:
        error("This device is not set up.")
        suggest("Set it up: overdrip setup")
        raise typer.Exit(code=EXIT_NOT_SET_UP)

    format_response(
        {
            "deviceId": str(credentials.device_id),
            "deviceName": credentials.device_name,
            "authCode": f"{credentials.auth_code_prefix}...",
            "setupAt": credentials.setup_at.isoformat() if credentials.setup_at else None,
            "credentialsPath": str(store.path),
        }
    )


def logout_command(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete the local device credentials.

    The auth code stays valid on the backend until the device is set up
    again or revoked from the account.

    Example::

        overdrip logout
        overdrip logout --yes
    """
    from overdrip.device import CredentialStore

    store = CredentialStore()
    if not store.exists():
        info("No device credentials stored.")
        return

    if not yes:
        confirmed = typer.confirm(
            "Remove the device credentials? The device must be set up again to run."
        )
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    try:
        store.clear()
    except OverdripError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    success(f"Removed {store.path}")
