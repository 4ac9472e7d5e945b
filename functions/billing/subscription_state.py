"""
Subscription state classification.

Decides whether a subscription counts as active and whether a webhook event
moved it across the active/inactive boundary. Only such transitions trigger
cache invalidation, push notifications and status records.

active_subscriptions feeds the expiring-source email. The
find_subscription_by_plan_id and find_subscription_by_product_id lookups
are library surface for account and plan-change handlers; the webhook
path does not call them.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Union

from shared.constants import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
)


@dataclass(frozen=True)
class Transition:
    transitioned: bool
    to_active: bool


@dataclass(frozen=True)
class SubscriptionSummary:
    id: str
    product_id: Optional[str]


NO_TRANSITION = Transition(transitioned=False, to_active=False)


def is_active(subscription: Union[Mapping[str, Any], str, None]) -> bool:
    """True iff the subscription (or bare status) is trialing, active or past_due."""
    if isinstance(subscription, Mapping):
        status = subscription.get("status")
    else:
        status = subscription
    return status in ACTIVE_SUBSCRIPTION_STATUSES


def classify_transition(event) -> Transition:
    """
    Classify a subscription event.

    created: transitioned when the new subscription is active.
    updated: transitioned only when previous_attributes records a status
        change that crosses the active/inactive boundary.
    deleted: always a transition to inactive.
    Any other event type is never a transition.
    """
    subscription = event.data_object

    if event.type == EVENT_SUBSCRIPTION_CREATED:
        active = is_active(subscription)
        return Transition(transitioned=active, to_active=active)

    if event.type == EVENT_SUBSCRIPTION_UPDATED:
        if "status" not in event.previous_attributes:
            return NO_TRANSITION
        previous_status = event.previous_attributes.get("status")
        if previous_status == subscription.get("status"):
            return NO_TRANSITION
        was_active = is_active(previous_status)
        now_active = is_active(subscription)
        return Transition(transitioned=was_active != now_active, to_active=now_active)

    if event.type == EVENT_SUBSCRIPTION_DELETED:
        return Transition(transitioned=True, to_active=False)

    return NO_TRANSITION


def subscription_plan(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    """The subscription's plan: the legacy top-level plan, else the first item's."""
    plan = subscription.get("plan")
    if plan:
        return plan
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("plan") or items[0].get("price") or {}
    return {}


def _product_id(plan: Mapping[str, Any]) -> Optional[str]:
    product = plan.get("product")
    if isinstance(product, Mapping):
        return product.get("id")
    return product


def summarize_subscription(subscription: Mapping[str, Any]) -> SubscriptionSummary:
    return SubscriptionSummary(
        id=subscription.get("id"),
        product_id=_product_id(subscription_plan(subscription)),
    )


def _subscription_items(subscription: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items
    plan = subscription.get("plan")
    return [{"plan": plan}] if plan else []


def _customer_subscriptions(customer: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    return list(((customer or {}).get("subscriptions") or {}).get("data") or [])


def active_subscriptions(customer: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    """The customer's subscriptions that are trialing, active or past_due."""
    return [s for s in _customer_subscriptions(customer) if is_active(s)]


def find_subscription_by_plan_id(customer: Mapping[str, Any], plan_id: str) -> Optional[Mapping[str, Any]]:
    """First subscription with any item on the given plan."""
    for subscription in _customer_subscriptions(customer):
        for item in _subscription_items(subscription):
            if (item.get("plan") or {}).get("id") == plan_id:
                return subscription
    return None


def find_subscription_by_product_id(customer: Mapping[str, Any], product_id: str) -> Optional[Mapping[str, Any]]:
    """First subscription with any item on a plan of the given product."""
    for subscription in _customer_subscriptions(customer):
        for item in _subscription_items(subscription):
            if _product_id(item.get("plan") or {}) == product_id:
                return subscription
    return None
