"""PKCE challenge generation (:rfc:`7636`) and the authorization URL.

Each setup attempt gets a fresh :class:`~overdrip.models.PKCEChallenge`:

* ``code_verifier`` -- 96 random bytes, base64url without padding
  (128 characters, the upper bound allowed by the RFC).
* ``code_challenge`` -- ``base64url(SHA-256(code_verifier))`` without padding
  (always 43 characters).
* ``state`` -- 32 random bytes, base64url without padding, used to bind the
  browser redirect to this attempt.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from urllib.parse import urlencode

from overdrip.models import PKCEChallenge

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"

OAUTH_SCOPES = ("openid", "email", "profile")

_VERIFIER_BYTES = 96
_STATE_BYTES = 32


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def compute_code_challenge(code_verifier: str) -> str:
    """S256 transform of a verifier."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_challenge() -> PKCEChallenge:
    """Generate a fresh verifier, its S256 challenge, and a CSRF state.

    Randomness comes from :mod:`secrets`; if the OS entropy source fails the
    error propagates and setup cannot proceed.
    """
    code_verifier = _b64url(secrets.token_bytes(_VERIFIER_BYTES))
    state = _b64url(secrets.token_bytes(_STATE_BYTES))
    return PKCEChallenge(
        code_verifier=code_verifier,
        code_challenge=compute_code_challenge(code_verifier),
        state=state,
    )


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    challenge: PKCEChallenge,
    authorization_endpoint: str = GOOGLE_AUTH_URL,
) -> str:
    """Build the provider authorization URL for the browser leg of the flow.

    Args:
        client_id: OAuth client id registered with the provider.
        redirect_uri: Loopback redirect, see
            :func:`~overdrip.oauth.callback_server.redirect_uri_for`.
        challenge: The challenge of this setup attempt. Only its
            ``code_challenge`` and ``state`` leave the process.
        authorization_endpoint: Provider authorization endpoint.

    Returns:
        The endpoint with all query parameters percent-encoded. The same
        inputs always produce the same URL.
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(OAUTH_SCOPES),
        "state": challenge.state,
        "code_challenge": challenge.code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{authorization_endpoint}?{urlencode(params)}"
