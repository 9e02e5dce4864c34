"""Identity and session tokens for the backend.

:class:`IdentityService` is what the rest of the backend depends on. It
turns a provider ID token into a backend session, verifies session tokens
presented as ``Authorization: Bearer``, and mints the short-lived custom
tokens handed to devices by the refresh endpoint.

:class:`JWTIdentityService` implements it with PyJWT:

* provider ID tokens are checked by a :class:`ProviderTokenVerifier`
  (:class:`GoogleIdTokenVerifier` in production: RS256 against Google's
  published JWKS, audience = OAuth client id);
* session tokens and custom tokens are HS256 JWTs signed with the backend
  signing secret and told apart by their audience.
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

import jwt
from pydantic import BaseModel, ConfigDict

from overdrip.backend.clock import Clock, default_clock
from overdrip.backend.errors import IdentityError
from overdrip.models import SignInResponse

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
TOKEN_ISSUER = "overdrip"
SESSION_AUDIENCE = "overdrip-session"
DEVICE_AUDIENCE = "overdrip-device"

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


class ProviderIdentity(BaseModel):
    """Claims of a verified provider ID token that the backend cares about."""

    model_config = ConfigDict(frozen=True)

    subject: str
    issuer: str
    email: Optional[str] = None


class Principal(BaseModel):
    """The verified caller of a session-authenticated RPC."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None


@runtime_checkable
class ProviderTokenVerifier(Protocol):
    def verify(self, id_token: str) -> ProviderIdentity: ...


class GoogleIdTokenVerifier:
    """Verify Google-issued ID tokens against Google's published signing keys.

    Args:
        client_id: The OAuth client id the token must be issued for.
        jwks_client: Optional :class:`jwt.PyJWKClient`; keys are fetched and
            cached from :data:`GOOGLE_JWKS_URL` by default.
    """

    def __init__(self, client_id: str, jwks_client: Optional[jwt.PyJWKClient] = None) -> None:
        self._client_id = client_id
        self._jwks = jwks_client or jwt.PyJWKClient(GOOGLE_JWKS_URL)

    def verify(self, id_token: str) -> ProviderIdentity:
        try:
            signing_key = self._jwks.get_signing_key_from_jwt(id_token)
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._client_id,
                options={"require": ["sub", "iss", "exp", "aud"]},
            )
        except jwt.PyJWTError as exc:
            raise IdentityError(f"Invalid ID token: {exc}") from exc

        if claims["iss"] not in GOOGLE_ISSUERS:
            raise IdentityError(f"Untrusted ID token issuer: {claims['iss']}")
        return ProviderIdentity(
            subject=claims["sub"], issuer=claims["iss"], email=claims.get("email")
        )


class IdentityService(ABC):
    @abstractmethod
    def sign_in_with_id_token(self, id_token: str) -> SignInResponse:
        """Verify a provider ID token and open a backend session.

        Raises:
            IdentityError: If the token is not trusted.
        """

    @abstractmethod
    def verify_session_token(self, token: str) -> Principal:
        """Resolve a bearer session token to its principal.

        Raises:
            IdentityError: If the token is invalid or expired.
        """

    @abstractmethod
    def create_custom_token(self, uid: str, claims: Mapping[str, Any]) -> str:
        """Mint a short-lived token scoped to *uid* with extra *claims*."""


class JWTIdentityService(IdentityService):
    """HS256-signed sessions and custom tokens.

    Args:
        signing_secret: HMAC key, at least 32 bytes.
        verifier: Checks provider ID tokens.
        clock: Time source for ``iat``/``exp``.
        session_ttl: Lifetime of session tokens in seconds.
        custom_token_ttl: Lifetime of device custom tokens in seconds.
    """

    def __init__(
        self,
        signing_secret: str,
        verifier: ProviderTokenVerifier,
        clock: Clock = default_clock,
        session_ttl: int = 3600,
        custom_token_ttl: int = 3600,
    ) -> None:
        if len(signing_secret.encode("utf-8")) < 32:
            raise ValueError("Signing secret must be at least 32 bytes")
        self._secret = signing_secret
        self._verifier = verifier
        self._clock = clock
        self._session_ttl = session_ttl
        self._custom_token_ttl = custom_token_ttl

    def sign_in_with_id_token(self, id_token: str) -> SignInResponse:
        identity = self._verifier.verify(id_token)
        user_id = identity.subject
        claims: dict[str, Any] = {}
        if identity.email:
            claims["email"] = identity.email
        token = self._encode(user_id, SESSION_AUDIENCE, self._session_ttl, claims)
        logger.info("User %s signed in", user_id)
        return SignInResponse(
            session_token=token, user_id=user_id, expires_in=self._session_ttl
        )

    def verify_session_token(self, token: str) -> Principal:
        claims = self._decode(token, SESSION_AUDIENCE)
        return Principal(user_id=claims["sub"], email=claims.get("email"))

    def create_custom_token(self, uid: str, claims: Mapping[str, Any]) -> str:
        return self._encode(uid, DEVICE_AUDIENCE, self._custom_token_ttl, {"claims": dict(claims)})

    def _encode(self, subject: str, audience: str, ttl: int, extra: Mapping[str, Any]) -> str:
        now = int(self._clock())
        payload = {
            "iss": TOKEN_ISSUER,
            "sub": subject,
            "aud": audience,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_hex(16),
            **extra,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def _decode(self, token: str, audience: str) -> dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=audience,
                issuer=TOKEN_ISSUER,
                options={
                    "require": ["sub", "exp", "iss", "aud"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            raise IdentityError(f"Invalid token: {exc}") from exc
        # Expiry is checked against the injected clock.
        if claims["exp"] <= self._clock():
            raise IdentityError("Token expired")
        return claims
