"""
Stripe SDK implementation of the payments backend.

The SDK is synchronous, so every call runs in a worker thread. The API key
is the module-global stripe.api_key, set by the Lambda handler from
Secrets Manager before the dispatcher runs.
"""

import asyncio
import logging
import os
import time
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import stripe

from billing.events import to_plain_dict
from shared.errors import InvalidSignatureError, MalformedEventError
from shared.logging_utils import log_external_call
from shared.types import PlanCatalogEntry

logger = logging.getLogger(__name__)

PLAN_CATALOG_CACHE_TTL = int(os.environ.get("PLAN_CATALOG_CACHE_TTL", "300"))

_RETRIEVERS = {
    "customers": lambda resource_id: stripe.Customer.retrieve(resource_id),
    "subscriptions": lambda resource_id: stripe.Subscription.retrieve(resource_id),
    "invoices": lambda resource_id: stripe.Invoice.retrieve(resource_id),
}


def flatten_plan(plan: Mapping) -> PlanCatalogEntry:
    """Flatten a Stripe plan (with its product expanded) into a catalog entry."""
    product = plan.get("product") or {}
    if not isinstance(product, Mapping):
        product = {"id": product}
    return {
        "plan_id": plan.get("id"),
        "plan_name": plan.get("nickname"),
        "product_id": product.get("id"),
        "product_name": product.get("name"),
        "interval": plan.get("interval"),
        "interval_count": plan.get("interval_count") or 1,
        "amount": plan.get("amount"),
        "currency": plan.get("currency"),
        "plan_metadata": dict(plan.get("metadata") or {}),
        "product_metadata": dict(product.get("metadata") or {}),
    }


def _is_missing(error: stripe.InvalidRequestError) -> bool:
    return getattr(error, "code", None) == "resource_missing"


class StripePaymentsBackend:
    def __init__(self, plan_cache_ttl: int = PLAN_CATALOG_CACHE_TTL):
        self.plan_cache_ttl = plan_cache_ttl
        self._plan_cache: Optional[List[PlanCatalogEntry]] = None
        self._plan_cache_time = 0.0

    async def verify_webhook_signature(self, payload: str, signature: str, secret: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and decode the event.

        Raises:
            InvalidSignatureError: signature does not match the payload
            MalformedEventError: payload is not valid JSON
        """
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe signature: {e}")
            raise InvalidSignatureError() from e
        except ValueError as e:
            logger.error(f"Webhook error: {e}")
            raise MalformedEventError() from e
        return to_plain_dict(event)

    async def fetch_plan_catalog(self) -> List[PlanCatalogEntry]:
        """Active plans with their products, cached for plan_cache_ttl seconds."""
        if self._plan_cache is not None and (time.time() - self._plan_cache_time) < self.plan_cache_ttl:
            return self._plan_cache

        def _list_plans() -> List[PlanCatalogEntry]:
            plans = stripe.Plan.list(active=True, expand=["data.product"], limit=100)
            return [flatten_plan(to_plain_dict(plan)) for plan in plans.auto_paging_iter()]

        start = time.monotonic()
        try:
            catalog = await asyncio.to_thread(_list_plans)
        except stripe.StripeError as e:
            log_external_call(logger, "stripe", "plan.list", False, (time.monotonic() - start) * 1000, str(e))
            raise
        log_external_call(logger, "stripe", "plan.list", True, (time.monotonic() - start) * 1000)

        self._plan_cache = catalog
        self._plan_cache_time = time.time()
        return catalog

    async def find_plan_by_id(self, plan_id: str) -> Optional[PlanCatalogEntry]:
        for plan in await self.fetch_plan_catalog():
            if plan.get("plan_id") == plan_id:
                return plan
        return None

    async def _retrieve(self, operation: str, retrieve) -> Optional[Dict[str, Any]]:
        start = time.monotonic()
        try:
            resource = await asyncio.to_thread(retrieve)
        except stripe.InvalidRequestError as e:
            if _is_missing(e):
                log_external_call(logger, "stripe", operation, True, (time.monotonic() - start) * 1000)
                return None
            log_external_call(logger, "stripe", operation, False, (time.monotonic() - start) * 1000, str(e))
            raise
        except stripe.StripeError as e:
            log_external_call(logger, "stripe", operation, False, (time.monotonic() - start) * 1000, str(e))
            raise
        log_external_call(logger, "stripe", operation, True, (time.monotonic() - start) * 1000)
        return to_plain_dict(resource)

    async def fetch_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Customer with its subscriptions expanded, or None if Stripe has no such customer."""
        return await self._retrieve(
            "customer.retrieve",
            lambda: stripe.Customer.retrieve(customer_id, expand=["subscriptions"]),
        )

    async def expand_resource(self, resource: Any, resource_type: str) -> Optional[Dict[str, Any]]:
        """
        Return the full object for an id or an already expanded object.

        Args:
            resource: Stripe id, expanded object, or None
            resource_type: customers, subscriptions or invoices
        """
        if resource is None:
            return None
        if isinstance(resource, Mapping) or hasattr(resource, "to_dict"):
            return to_plain_dict(resource)
        if resource_type not in _RETRIEVERS:
            raise ValueError(f"Unsupported resource type: {resource_type}")
        retriever = _RETRIEVERS[resource_type]
        return await self._retrieve(f"{resource_type}.retrieve", lambda: retriever(resource))
