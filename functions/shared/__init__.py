# Shared utilities package
from .errors import (
    APIError,
    BouncedContactError,
    InvalidSignatureError,
    UnresolvableSourceError,
    WebhookError,
)
from .response_utils import error_response, json_response, received_response

__all__ = [
    "APIError",
    "WebhookError",
    "InvalidSignatureError",
    "BouncedContactError",
    "UnresolvableSourceError",
    "error_response",
    "json_response",
    "received_response",
]
