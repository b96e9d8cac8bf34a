import logging
from typing import Optional

import httpx

from webtty.comms_core.errors import ProtocolError, TokenFetchError
from webtty.comms_core.protocol.messages import TokenResponse, parse_payload

logger = logging.getLogger(__name__)

TOKEN_FETCH_TIMEOUT = 10.0  # seconds


async def fetch_token(token_url: str,
                      client: Optional[httpx.AsyncClient] = None,
                      credential: Optional[str] = None) -> str:
    """
    Fetch the session token that authenticates the WebSocket handshake.

    A single attempt is made; callers decide whether to try again.

    Args:
        token_url: The token endpoint derived from the page location.
        client: An existing HTTP client to reuse. A short-lived one is created otherwise.
        credential: Optional ``user:password`` for a token endpoint behind basic auth.

    Returns:
        The opaque token. It is empty when the server does not require authentication.

    Raises:
        TokenFetchError: On a network error, a non-success status, or a body that is not a token document.
    """
    auth = None
    if credential:
        username, _, password = credential.partition(":")
        auth = httpx.BasicAuth(username, password)

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=TOKEN_FETCH_TIMEOUT) as owned_client:
                response = await owned_client.get(token_url, auth=auth)
        else:
            response = await client.get(token_url, auth=auth)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(f"Token request to {token_url} returned {e.response.status_code}")
        raise TokenFetchError(f"token request failed with status {e.response.status_code}") from e
    except httpx.HTTPError as e:
        logger.error(f"Token request to {token_url} failed: {e!r}")
        raise TokenFetchError(f"token request failed: {e}") from e

    try:
        token = parse_payload(response.content, TokenResponse).token
    except ProtocolError as e:
        logger.error(f"Token endpoint {token_url} returned an unexpected body")
        raise TokenFetchError("token endpoint returned an unexpected body") from e

    logger.info(f"Fetched session token from {token_url} ({'empty' if not token else 'present'})")
    return token
