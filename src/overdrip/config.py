"""Configuration management with a fixed home directory, atomic writes, and precedence resolution.

This module handles all persistent client-side configuration for overdrip:

* **Directory layout** -- everything lives under the Overdrip home directory,
  ``$OVERDRIP_HOME`` or ``~/.overdrip/``. The device credential file, the
  optional settings file, and crash logs are placed there. See
  :func:`get_home_dir` and :func:`get_data_dir`.
* **Settings file** -- ``<home>/settings.json``, a flat JSON object with the
  same keys as :class:`~overdrip.models.ClientConfig`.
* **Precedence resolution** -- :func:`load_client_config` merges CLI flags,
  environment variables, the settings file, and defaults into the effective
  configuration.
* **Credential resolution** -- :func:`resolve_credential` reads the OAuth
  client secret from an environment variable or a file.

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from overdrip.exceptions import ConfigError
from overdrip.models import DEFAULT_BACKEND_URL, ClientConfig

_APP_NAME = "overdrip"
_SETTINGS_FILENAME = "settings.json"

ENV_HOME = "OVERDRIP_HOME"
ENV_CLIENT_ID = "GOOGLE_OAUTH_CLIENT_ID"
ENV_CLIENT_SECRET = "GOOGLE_OAUTH_CLIENT_SECRET"
ENV_CLIENT_SECRET_SOURCE = "GOOGLE_OAUTH_CLIENT_SECRET_SOURCE"
ENV_BACKEND_URL = "OVERDRIP_BACKEND_URL"


# --- Paths ---


def get_home_dir() -> Path:
    """Return the Overdrip home directory, creating it if necessary.

    ``$OVERDRIP_HOME`` when set, otherwise ``~/.overdrip/``. The directory is
    created with ``0o700`` permissions since it holds the device credential.

    Returns:
        Absolute path to the home directory (guaranteed to exist).
    """
    env_value = os.environ.get(ENV_HOME, "")
    path = Path(env_value).expanduser() if env_value else Path.home() / f".{_APP_NAME}"
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the directory for crash logs, creating it if necessary."""
    path = get_home_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_settings_path() -> Path:
    """Path to the optional client settings file."""
    return get_home_dir() / _SETTINGS_FILENAME


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    When *mode* is given, permissions are applied to the temp file before any
    content is written, so the data is never readable with looser permissions.
    On any failure the temp file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Settings file ---


def load_settings() -> dict[str, Any]:
    """Load the client settings file.

    Returns:
        The parsed JSON object, or an empty dict if the file does not exist.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    path = get_settings_path()
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigError(f"Invalid settings file at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid settings file at {path}: expected a JSON object")
    return data


def save_settings(settings: dict[str, Any]) -> None:
    """Persist the client settings file atomically."""
    atomic_write(get_settings_path(), json.dumps(settings, indent=2) + "\n")


# --- Precedence resolution ---


def load_client_config(
    cli_client_id: Optional[str] = None,
    cli_backend_url: Optional[str] = None,
    cli_callback_port: Optional[int] = None,
    cli_callback_timeout: Optional[float] = None,
) -> ClientConfig:
    """Resolve the CLI configuration with its full precedence chain.

    Precedence (high to low):
        1. CLI flags
        2. Environment variables (``GOOGLE_OAUTH_CLIENT_ID``,
           ``GOOGLE_OAUTH_CLIENT_SECRET`` or ``GOOGLE_OAUTH_CLIENT_SECRET_SOURCE``,
           ``OVERDRIP_BACKEND_URL``)
        3. Settings file (``<home>/settings.json``)
        4. Defaults

    Returns:
        The effective :class:`~overdrip.models.ClientConfig`.

    Raises:
        ConfigError: If no OAuth client id is configured or a value is invalid.
    """
    values: dict[str, Any] = dict(load_settings())

    env_map = {
        ENV_CLIENT_ID: "google_oauth_client_id",
        ENV_CLIENT_SECRET: "google_oauth_client_secret",
        ENV_BACKEND_URL: "backend_url",
    }
    for env_var, key in env_map.items():
        env_value = os.environ.get(env_var)
        if env_value:
            values[key] = env_value

    secret_source = os.environ.get(ENV_CLIENT_SECRET_SOURCE)
    if secret_source and not values.get("google_oauth_client_secret"):
        values["google_oauth_client_secret"] = resolve_credential(secret_source)

    overrides = {
        "google_oauth_client_id": cli_client_id,
        "backend_url": cli_backend_url,
        "callback_port": cli_callback_port,
        "callback_timeout": cli_callback_timeout,
    }
    for key, value in overrides.items():
        if value is not None:
            values[key] = value

    if not values.get("google_oauth_client_id"):
        raise ConfigError(
            f"{ENV_CLIENT_ID} is required. Export it in the environment or add "
            f"'google_oauth_client_id' to {get_settings_path()}"
        )

    try:
        return ClientConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid client configuration: {exc}") from exc


def resolve_backend_url(cli_backend_url: Optional[str] = None) -> str:
    """Backend URL alone, with the same precedence as :func:`load_client_config`.

    Used by commands that talk to the backend without running the OAuth
    flow, so no client id is required.
    """
    if cli_backend_url:
        return cli_backend_url
    env_value = os.environ.get(ENV_BACKEND_URL)
    if env_value:
        return env_value
    settings_value = load_settings().get("backend_url")
    if isinstance(settings_value, str) and settings_value:
        return settings_value
    return DEFAULT_BACKEND_URL


# --- Credential source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a secret from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace

    Args:
        source: The source descriptor string.

    Returns:
        The resolved secret.

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    raise ConfigError(f"Unknown credential source format: {source}")
