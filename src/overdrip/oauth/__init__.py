"""Client side of the one-time Google OAuth 2.0 + PKCE login.

:mod:`~overdrip.oauth.pkce` generates the challenge and authorization URL,
:mod:`~overdrip.oauth.callback_server` receives the browser redirect on a
loopback port, and :mod:`~overdrip.oauth.exchange` trades the authorization
code for an ID token.
"""

from overdrip.oauth.callback_server import (
    CallbackListener,
    ListenerState,
    find_available_port,
    open_listener,
    redirect_uri_for,
)
from overdrip.oauth.exchange import GOOGLE_TOKEN_URL, exchange_code
from overdrip.oauth.pkce import GOOGLE_AUTH_URL, build_auth_url, generate_challenge

__all__ = [
    "GOOGLE_AUTH_URL",
    "GOOGLE_TOKEN_URL",
    "CallbackListener",
    "ListenerState",
    "build_auth_url",
    "exchange_code",
    "find_available_port",
    "generate_challenge",
    "open_listener",
    "redirect_uri_for",
]
