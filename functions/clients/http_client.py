"""
Shared httpx client for calls to internal HTTP peers.

The auth server and the profile service sit behind the same client so
deliveries handled by a warm Lambda reuse connections.

Set USE_CONNECTION_POOLING=false in tests: every get_http_client() call then
returns a fresh client, which lets tests patch the transport per call.
"""

import asyncio
import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None
_client_loop_id: Optional[int] = None

# Internal peers answer quickly; the collaborator timeout bounds the whole call
DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=3.0)

DEFAULT_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30.0,
)


def _use_connection_pooling() -> bool:
    return os.environ.get("USE_CONNECTION_POOLING", "true").lower() == "true"


def _new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, limits=DEFAULT_LIMITS, http2=False)


def get_http_client() -> httpx.AsyncClient:
    """
    Get the HTTP client for internal peers.

    The pooled client is bound to the event loop it was created on. The
    Lambda handler runs each delivery on a new loop, so a loop change
    replaces the client.
    """
    global _client, _client_loop_id

    if not _use_connection_pooling():
        return _new_client()

    try:
        current_loop_id = id(asyncio.get_running_loop())
    except RuntimeError:
        current_loop_id = None

    if _client is not None and _client_loop_id != current_loop_id:
        logger.debug("Event loop changed, recreating HTTP client")
        _client = None

    if _client is None:
        logger.debug("Initializing shared HTTP client")
        _client = _new_client()
        _client_loop_id = current_loop_id

    return _client


async def close_http_client() -> None:
    """Close the shared client. The handler calls this before closing its loop."""
    global _client, _client_loop_id

    if _client is not None:
        await _client.aclose()
        _client = None
        _client_loop_id = None
        logger.debug("Closed shared HTTP client")
