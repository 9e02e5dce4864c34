"""Backend configuration, read from the environment by :meth:`BackendSettings.from_env`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from overdrip.exceptions import ConfigError

ENV_SIGNING_SECRET = "OVERDRIP_SIGNING_SECRET"
ENV_CLIENT_ID = "GOOGLE_OAUTH_CLIENT_ID"
ENV_STORE_DIR = "OVERDRIP_STORE_DIR"
ENV_CORS_ORIGINS = "OVERDRIP_CORS_ORIGINS"
ENV_AUTH_CODE_TTL_DAYS = "OVERDRIP_AUTH_CODE_TTL_DAYS"
ENV_SESSION_TTL_SECONDS = "OVERDRIP_SESSION_TTL_SECONDS"


class BackendSettings(BaseModel):
    """Settings of the backend service.

    Attributes:
        signing_secret: HMAC key for session and custom tokens (>= 32 bytes).
        google_client_id: Audience expected in provider ID tokens.
        store_dir: :mod:`diskcache` directory; ``None`` keeps data in memory.
        cors_origins: Origins allowed to call the API from a browser.
        auth_code_ttl_days: Lifetime of new auth codes.
        session_ttl_seconds: Lifetime of session and custom tokens.
    """

    signing_secret: str = Field(min_length=32, repr=False)
    google_client_id: Optional[str] = None
    store_dir: Optional[Path] = None
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    auth_code_ttl_days: int = Field(default=365, gt=0)
    session_ttl_seconds: int = Field(default=3600, gt=0)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> BackendSettings:
        """Build settings from ``OVERDRIP_*`` variables.

        Raises:
            ConfigError: If the signing secret is missing or a value is invalid.
        """
        env = os.environ if environ is None else environ
        secret = env.get(ENV_SIGNING_SECRET)
        if not secret:
            raise ConfigError(
                f"{ENV_SIGNING_SECRET} is required to run the backend. "
                "Generate one with: python -c 'import secrets; print(secrets.token_hex(32))'"
            )

        values: dict[str, object] = {"signing_secret": secret}
        optional = {
            ENV_CLIENT_ID: "google_client_id",
            ENV_STORE_DIR: "store_dir",
            ENV_CORS_ORIGINS: "cors_origins",
            ENV_AUTH_CODE_TTL_DAYS: "auth_code_ttl_days",
            ENV_SESSION_TTL_SECONDS: "session_ttl_seconds",
        }
        for env_var, key in optional.items():
            if env.get(env_var):
                values[key] = env[env_var]

        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid backend configuration: {exc}") from exc
