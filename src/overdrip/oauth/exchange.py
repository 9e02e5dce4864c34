"""Authorization code exchange against the provider token endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from overdrip.exceptions import TokenExchangeError
from overdrip.models import TokenResponse

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

EXCHANGE_TIMEOUT = 30.0


def exchange_code(
    client_id: str,
    redirect_uri: str,
    code: str,
    code_verifier: str,
    client_secret: Optional[str] = None,
    token_url: str = GOOGLE_TOKEN_URL,
    http_client: Optional[httpx.Client] = None,
) -> TokenResponse:
    """Exchange an authorization code and PKCE verifier for provider tokens.

    Sends a single form-encoded POST. ``client_secret`` is included only when
    configured; PKCE alone suffices for public clients. There is no retry: an
    authorization code is single-use, so a failed exchange means starting the
    setup over.

    Args:
        client_id: OAuth client id.
        redirect_uri: Must equal the redirect URI of the authorization request.
        code: Authorization code from the callback.
        code_verifier: Verifier whose challenge was sent to the provider.
        client_secret: Optional OAuth client secret.
        token_url: Provider token endpoint.
        http_client: Optional client to send the request with (tests inject
            one backed by :class:`httpx.MockTransport`).

    Returns:
        The parsed token response; ``id_token`` is guaranteed present.

    Raises:
        TokenExchangeError: If the provider rejects the exchange, the
            response lacks an ``id_token``, or the request fails.
    """
    data: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    if client_secret:
        data["client_secret"] = client_secret

    post = http_client.post if http_client is not None else httpx.post
    try:
        response = post(
            token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=EXCHANGE_TIMEOUT,
        )
        response.raise_for_status()
        token_data: dict[str, Any] = response.json()
    except httpx.HTTPStatusError as exc:
        payload = _error_payload(exc.response)
        raise TokenExchangeError(
            f"Token exchange failed with status {exc.response.status_code}: "
            f"{_describe(payload)}",
            status_code=exc.response.status_code,
            payload=payload,
        ) from exc
    except httpx.HTTPError as exc:
        raise TokenExchangeError(f"Token exchange failed: {exc}") from exc
    except ValueError as exc:
        raise TokenExchangeError("Token endpoint returned a non-JSON response") from exc

    try:
        tokens = TokenResponse.model_validate(token_data)
    except ValidationError as exc:
        raise TokenExchangeError(
            "Token response missing 'id_token' field", payload=token_data
        ) from exc

    logger.debug("Token exchange succeeded (token_type=%s)", tokens.token_type)
    return tokens


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _describe(payload: Any) -> str:
    if isinstance(payload, dict) and payload.get("error"):
        description = payload.get("error_description")
        return f"{payload['error']} ({description})" if description else str(payload["error"])
    return str(payload)
