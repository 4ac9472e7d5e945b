"""
Error taxonomy for webhook processing and standardized API errors.

Webhook errors fall into four groups:

- Fatal request errors (InvalidSignatureError, MalformedEventError): the
  delivery is rejected with a 400 and Stripe retries it.
- Report-only errors (UnknownEventTypeError): never raised, only captured.
- Ignorable domain errors (BouncedContactError, UnresolvableSourceError):
  logged and swallowed, the delivery is acknowledged.
- Unexpected errors (UnexpectedError and anything else): captured with event
  context and re-raised, the delivery fails with a 500.
"""

import json
from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class WebhookError(Exception):
    """Base class for everything raised while handling a webhook delivery."""

    code = "webhook_error"


class InvalidSignatureError(WebhookError, APIError):
    """Raised when the Stripe signature is missing or does not verify."""

    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature"):
        APIError.__init__(self, code=self.code, message=message, status_code=400)


class MalformedEventError(WebhookError, APIError):
    """Raised when a verified payload does not have the shape of an event."""

    code = "invalid_webhook_payload"

    def __init__(self, message: str = "Invalid webhook payload"):
        APIError.__init__(self, code=self.code, message=message, status_code=400)


class UnknownEventTypeError(WebhookError):
    """Reported (never raised) for event types without a handler."""

    code = "unknown_event_type"

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unhandled Stripe event type: {event_type}")


class IgnorableDomainError(WebhookError):
    """A recognized failure that must not fail the webhook delivery."""

    code = "ignorable"


class BouncedContactError(IgnorableDomainError):
    """The recipient address is permanently undeliverable."""

    code = "email_bounced_hard"

    def __init__(self, recipient: Optional[str] = None, reason: str = ""):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Email to {recipient or 'unknown recipient'} bounced: {reason}".rstrip(": "))


class UnresolvableSourceError(IgnorableDomainError):
    """A payment source event has no subscription we can attribute it to."""

    code = "missing_subscription_for_source"

    def __init__(self, operation: str, source_id: Optional[str] = None):
        self.operation = operation
        self.source_id = source_id
        super().__init__(f"No subscription found for source {source_id} in {operation}")


class UnexpectedError(WebhookError):
    """An error that should fail the delivery so Stripe retries it."""

    code = "processing_failed"


class CollaboratorTimeoutError(UnexpectedError):
    """An external collaborator did not answer within its timeout."""

    code = "collaborator_timeout"

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")


class AccountNotFoundError(Exception):
    """Raised by the account store when no local account matches."""

    def __init__(self, uid: Optional[str] = None, email: Optional[str] = None):
        self.uid = uid
        self.email = email
        super().__init__(f"Unknown account (uid={uid}, email={email})")


IGNORABLE_ERRORS = (BouncedContactError, UnresolvableSourceError)
