"""Serve command -- run the Overdrip backend with uvicorn."""

from __future__ import annotations

import typer

from overdrip.exceptions import OverdripError
from overdrip.output import error, info


def serve_command(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", help="Port to listen on."),
    log_level: str = typer.Option("info", "--log-level", help="uvicorn log level."),
) -> None:
    """Run the backend API (sign-in, device RPCs, token refresh).

    Configuration comes from the environment: ``OVERDRIP_SIGNING_SECRET``
    (required), ``GOOGLE_OAUTH_CLIENT_ID``, ``OVERDRIP_STORE_DIR``,
    ``OVERDRIP_CORS_ORIGINS``, ``OVERDRIP_AUTH_CODE_TTL_DAYS`` and
    ``OVERDRIP_SESSION_TTL_SECONDS``.

    Example::

        OVERDRIP_SIGNING_SECRET=... overdrip serve --host 0.0.0.0 --port 8000
    """
    import uvicorn

    from overdrip.backend import create_app

    try:
        api = create_app()
    except OverdripError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    info(f"Overdrip backend listening on http://{host}:{port}")
    uvicorn.run(api, host=host, port=port, log_level=log_level)
