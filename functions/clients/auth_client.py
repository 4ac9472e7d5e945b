"""
Client for the auth server's OAuth token endpoint.

Profile service writes made on a user's behalf need an OAuth access token
minted from the user's session token.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from clients.http_client import get_http_client
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)

OAUTH_TOKEN_PATH = "/v1/oauth/token"


class AuthClient:
    def __init__(self, base_url: str, http_client_factory: Callable[[], httpx.AsyncClient] = get_http_client):
        self.base_url = base_url.rstrip("/")
        self.http_client_factory = http_client_factory

    async def create_oauth_token(
        self, session_token: str, client_id: str, scope: str, ttl: Optional[int] = None
    ) -> dict:
        """
        Exchange a session token for an OAuth access token.

        Returns:
            The token response, including access_token

        Raises:
            httpx.HTTPStatusError: the auth server rejected the request
        """
        body = {"grant_type": "fxa-credentials", "client_id": client_id, "scope": scope}
        if ttl is not None:
            body["ttl"] = ttl

        client = self.http_client_factory()
        start = time.monotonic()
        try:
            response = await client.post(
                f"{self.base_url}{OAUTH_TOKEN_PATH}",
                json=body,
                headers={"Authorization": f"Bearer {session_token}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_external_call(logger, "auth", "create_oauth_token", False, (time.monotonic() - start) * 1000, str(e))
            raise
        log_external_call(logger, "auth", "create_oauth_token", True, (time.monotonic() - start) * 1000)
        return response.json()
