"""
Tests for the profile service and auth server clients.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from clients.auth_client import AuthClient
from clients.profile_client import ProfileClient
from shared.retry import RetryConfig

PROFILE_URL = "https://profile.test"
AUTH_URL = "https://auth.test"

NO_DELAY_RETRY = RetryConfig(
    max_retries=2, base_delay=0.0, jitter_factor=0.0, retryable_exceptions=(httpx.TransportError,)
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_mock_transport(handler):
    """Create a mock transport for httpx that routes requests to handler."""
    async def mock_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)
    return httpx.MockTransport(mock_handler)


@pytest.fixture
def auth_client():
    client = AsyncMock()
    client.create_oauth_token.return_value = {"access_token": "test"}
    return client


def make_profile_client(handler, auth_client, server_secret="server-secret"):
    transport = create_mock_transport(handler)
    return ProfileClient(
        PROFILE_URL,
        auth_client,
        "clientid",
        server_secret=server_secret,
        http_client_factory=lambda: httpx.AsyncClient(transport=transport),
        retry_config=NO_DELAY_RETRY,
    )


class TestProfileClient:
    def test_updates_display_name(self, auth_client):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="{}")

        client = make_profile_client(handler, auth_client)

        assert run_async(client.update_display_name("token", "name")) is True

        auth_client.create_oauth_token.assert_awaited_once_with("token", "clientid", "profile:display_name:write")
        assert requests[0].method == "POST"
        assert requests[0].url == f"{PROFILE_URL}/v1/display_name"
        assert requests[0].headers["Authorization"] == "Bearer test"
        assert json.loads(requests[0].content) == {"displayName": "name"}

    def test_uploads_the_avatar(self, auth_client):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"url": "testurl"})

        client = make_profile_client(handler, auth_client)

        assert run_async(client.avatar_upload("token", "app/json", b"somefile")) == "testurl"
        assert requests[0].url == f"{PROFILE_URL}/v1/avatar/upload"
        assert requests[0].headers["Content-Type"] == "app/json"
        assert requests[0].content == b"somefile"

    def test_delete_cache_uses_server_secret(self, auth_client):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={})

        client = make_profile_client(handler, auth_client)
        run_async(client.delete_cache("uid_123"))

        assert requests[0].method == "DELETE"
        assert requests[0].url == f"{PROFILE_URL}/v1/cache/uid_123"
        assert requests[0].headers["Authorization"] == "Bearer server-secret"
        auth_client.create_oauth_token.assert_not_awaited()

    def test_delete_cache_without_secret_is_skipped(self, auth_client):
        def handler(request):
            raise AssertionError("no request expected")

        run_async(make_profile_client(handler, auth_client, server_secret=None).delete_cache("uid_123"))

    def test_retries_connection_errors(self, auth_client):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 2:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={})

        run_async(make_profile_client(handler, auth_client).delete_cache("uid_123"))

        assert len(attempts) == 2

    def test_error_status_is_not_retried(self, auth_client):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503, json={"error": "unavailable"})

        with pytest.raises(httpx.HTTPStatusError):
            run_async(make_profile_client(handler, auth_client).delete_cache("uid_123"))

        assert len(attempts) == 1


class TestAuthClient:
    @pytest.mark.asyncio
    @respx.mock
    async def test_creates_oauth_token(self):
        route = respx.post(f"{AUTH_URL}/v1/oauth/token").mock(
            return_value=httpx.Response(200, json={"access_token": "at_123", "expires_in": 3600})
        )

        token = await AuthClient(AUTH_URL, httpx.AsyncClient).create_oauth_token(
            "session", "clientid", "profile:display_name:write", ttl=60
        )

        assert token["access_token"] == "at_123"
        sent = route.calls.last.request
        assert sent.headers["Authorization"] == "Bearer session"
        assert json.loads(sent.content) == {
            "grant_type": "fxa-credentials",
            "client_id": "clientid",
            "scope": "profile:display_name:write",
            "ttl": 60,
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_token_request(self):
        respx.post(f"{AUTH_URL}/v1/oauth/token").mock(return_value=httpx.Response(401, json={"errno": 110}))

        with pytest.raises(httpx.HTTPStatusError):
            await AuthClient(AUTH_URL, httpx.AsyncClient).create_oauth_token("session", "clientid", "profile")
