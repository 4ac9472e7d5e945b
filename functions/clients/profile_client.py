"""
Client for the profile service.

User-facing writes (display name, avatar) are authorised with an OAuth token
minted for the configured client id. Cache deletes come from this service
itself and use the shared server secret.

Connection-level failures are retried with backoff; HTTP error statuses are
not.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from clients.auth_client import AuthClient
from clients.http_client import get_http_client
from shared.logging_utils import log_external_call
from shared.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

DISPLAY_NAME_SCOPE = "profile:display_name:write"
AVATAR_SCOPE = "profile:avatar:write"

DEFAULT_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=0.2,
    max_delay=2.0,
    retryable_exceptions=(httpx.TransportError,),
)


class ProfileClient:
    def __init__(
        self,
        base_url: str,
        auth_client: AuthClient,
        client_id: str,
        server_secret: Optional[str] = None,
        http_client_factory: Callable[[], httpx.AsyncClient] = get_http_client,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_client = auth_client
        self.client_id = client_id
        self.server_secret = server_secret
        self.http_client_factory = http_client_factory
        self.retry_config = retry_config

    async def _access_token(self, session_token: str, scope: str) -> str:
        token = await self.auth_client.create_oauth_token(session_token, self.client_id, scope)
        return token["access_token"]

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        client = self.http_client_factory()
        start = time.monotonic()
        try:
            response = await retry_async(
                client.request, method, f"{self.base_url}{path}", config=self.retry_config, **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_external_call(logger, "profile", operation, False, (time.monotonic() - start) * 1000, str(e))
            raise
        log_external_call(logger, "profile", operation, True, (time.monotonic() - start) * 1000)
        return response

    async def update_display_name(self, session_token: str, name: str) -> bool:
        access_token = await self._access_token(session_token, DISPLAY_NAME_SCOPE)
        await self._request(
            "update_display_name",
            "POST",
            "/v1/display_name",
            json={"displayName": name},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return True

    async def avatar_upload(self, session_token: str, content_type: str, file: bytes) -> str:
        """
        Upload a new avatar image.

        Returns:
            URL of the uploaded avatar
        """
        access_token = await self._access_token(session_token, AVATAR_SCOPE)
        response = await self._request(
            "avatar_upload",
            "POST",
            "/v1/avatar/upload",
            content=file,
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": content_type},
        )
        return response.json()["url"]

    async def delete_cache(self, uid: str) -> None:
        """Drop the profile service's cached profile for uid."""
        if not self.server_secret:
            logger.warning("PROFILE_SERVER_SECRET not configured, skipping profile cache delete")
            return
        await self._request(
            "delete_cache",
            "DELETE",
            f"/v1/cache/{uid}",
            headers={"Authorization": f"Bearer {self.server_secret}"},
        )
