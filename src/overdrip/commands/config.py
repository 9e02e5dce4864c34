"""Config commands -- inspect client configuration and the credential file.

Provides the ``overdrip config`` sub-command group. ``show`` prints the
effective client configuration after applying CLI, environment and settings
file precedence, with secrets masked. ``verify`` checks that the stored
device credential file is present and well formed.
"""

from __future__ import annotations

from typing import Optional

import typer

from overdrip.exceptions import OverdripError
from overdrip.exit_codes import EXIT_NOT_SET_UP
from overdrip.output import error, format_response, info, success, suggest

config_app = typer.Typer(no_args_is_help=True)


def _mask(secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    return f"{secret[:4]}****" if len(secret) > 8 else "****"


@config_app.command("show")
def config_show() -> None:
    """Show the effective client configuration.

    Example::

        overdrip config show
        overdrip config show --json
    """
    from overdrip.config import get_home_dir, get_settings_path, load_client_config
    from overdrip.device.credentials import default_credentials_path

    try:
        config = load_client_config()
    except OverdripError as exc:
        error(str(exc))
        suggest("Export GOOGLE_OAUTH_CLIENT_ID or add it to the settings file.")
        raise typer.Exit(code=exc.exit_code) from None

    info(f"Overdrip home: {get_home_dir()}")
    data = config.model_dump(mode="json")
    data["google_oauth_client_secret"] = _mask(config.google_oauth_client_secret)
    data["settings_file"] = str(get_settings_path())
    data["credentials_file"] = str(default_credentials_path())
    format_response(data)


@config_app.command("verify")
def config_verify() -> None:
    """Check that the device credential file is present and valid.

    Raises:
        typer.Exit: With code 7 when the file is missing, or 1 when it is
            unreadable or malformed.

    Example::

        overdrip config verify
    """
    from overdrip.device import CredentialStore

    store = CredentialStore()
    try:
        credentials = store.load()
    except OverdripError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if credentials is None:
        error(f"No device credentials at {store.path}")
        suggest("Set the device up: overdrip setup")
        raise typer.Exit(code=EXIT_NOT_SET_UP)

    mode = store.path.stat().st_mode & 0o777
    if mode & 0o077:
        error(f"{store.path} has mode {mode:o}; expected 600")
        suggest(f"Fix it: chmod 600 {store.path}")
        raise typer.Exit(code=1)

    success(
        f'Credentials valid for "{credentials.device_name}" ({credentials.device_id})'
    )
