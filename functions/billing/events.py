"""
Stripe webhook event normalization.

Turns a signed webhook delivery into an immutable StripeEvent. Signature
verification itself is the payments backend's job (the Stripe SDK); this
module forwards the signature header and secret through the collaborator
timeout, and checks that what comes back has the shape of an event.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from shared.errors import InvalidSignatureError, MalformedEventError

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("stripe-signature", "Stripe-Signature")


@dataclass(frozen=True)
class StripeEvent:
    """A verified Stripe event: type tag plus the object it describes."""

    id: str
    type: str
    created: Optional[int]
    data_object: Mapping[str, Any]
    previous_attributes: Mapping[str, Any] = field(default_factory=dict)
    livemode: bool = False

    def summary(self) -> dict:
        """Compact description used as error-tracking context."""
        return {
            "id": self.id,
            "type": self.type,
            "created": self.created,
            "livemode": self.livemode,
            "object_id": self.data_object.get("id"),
            "object": self.data_object.get("object"),
            "customer": self.data_object.get("customer"),
        }


@dataclass(frozen=True)
class WebhookRequest:
    """The parts of an HTTP delivery the webhook pipeline needs."""

    payload: str
    headers: Mapping[str, str]
    request_id: str = ""

    @property
    def signature(self) -> Optional[str]:
        for name in SIGNATURE_HEADERS:
            value = self.headers.get(name)
            if value:
                return value
        return None


def to_plain_dict(value: Any) -> dict:
    """Plain dict copy of a Stripe SDK object or decoded JSON."""
    if hasattr(value, "to_dict_recursive"):
        return value.to_dict_recursive()
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


def normalize_event(raw: Any) -> StripeEvent:
    """
    Validate a decoded event payload and build a StripeEvent.

    Raises:
        MalformedEventError: if the payload lacks a string type or a data.object mapping
    """
    if not isinstance(raw, Mapping) and not hasattr(raw, "to_dict"):
        raise MalformedEventError("Event payload is not an object")

    event = to_plain_dict(raw)
    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event has no type")

    data = event.get("data")
    if not isinstance(data, Mapping) or not isinstance(data.get("object"), Mapping):
        raise MalformedEventError(f"Event {event_type} has no data.object")

    previous = data.get("previous_attributes") or {}
    return StripeEvent(
        id=event.get("id") or "",
        type=event_type,
        created=event.get("created"),
        data_object=MappingProxyType(to_plain_dict(data["object"])),
        previous_attributes=MappingProxyType(to_plain_dict(previous)),
        livemode=bool(event.get("livemode", False)),
    )


async def construct_event(collaborators, request: WebhookRequest, webhook_secret: str) -> StripeEvent:
    """
    Verify the delivery's signature and return the normalized event.

    Raises:
        InvalidSignatureError: missing signature header or verification failure
        MalformedEventError: verified payload is not an event
        CollaboratorTimeoutError: verification did not finish in time
    """
    signature = request.signature
    if not signature:
        logger.warning("Missing Stripe signature")
        raise InvalidSignatureError("Missing Stripe signature")

    raw = await collaborators.call(
        "payments.verify_webhook_signature",
        collaborators.payments.verify_webhook_signature(request.payload, signature, webhook_secret),
    )
    return normalize_event(raw)
