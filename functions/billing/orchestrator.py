"""
Side effects of a subscription crossing the active/inactive boundary.

For the account that owns the subscription:
1. invalidate the cached customer projection and the profile cache, and
   push a profile-updated notification to its devices (concurrently);
2. once the invalidations are done, publish profileDataChanged and then
   the subscription:update status record.

Subscriptions that belong to no local account (test objects, orphans) are
skipped without error.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from billing.capabilities import product_capabilities
from billing.collaborators import AccountBinding, Collaborators
from billing.subscription_state import SubscriptionSummary
from shared.constants import TOPIC_PROFILE_DATA_CHANGED, TOPIC_SUBSCRIPTION_UPDATE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusRecord:
    uid: str
    eventCreatedAt: Optional[int]
    subscriptionId: str
    isActive: bool
    productId: Optional[str]
    productCapabilities: List[str]

    def to_message(self) -> dict:
        return asdict(self)


class SideEffectOrchestrator:
    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    async def _notify_devices(self, uid: str) -> None:
        c = self.collaborators
        devices = await c.call("accounts.list_devices", c.accounts.list_devices(uid))
        if not devices:
            logger.info(f"No devices registered for {uid}, skipping push")
            return
        await c.call("push.notify_devices", c.push.notify_devices(uid, devices))

    async def customer_changed(self, ctx, uid: str, email: Optional[str]) -> None:
        """Refresh everything that caches the customer and tell the account's devices."""
        c = self.collaborators
        await asyncio.gather(
            c.call("cache.invalidate_customer_projection", c.cache.invalidate_customer_projection(uid, email)),
            c.call("cache.invalidate_profile_cache", c.cache.invalidate_profile_cache(uid)),
            self._notify_devices(uid),
        )
        await c.call(
            "status.publish:profileDataChanged",
            c.status.publish(TOPIC_PROFILE_DATA_CHANGED, {"uid": uid, "email": email}),
        )

    async def send_subscription_status(self, ctx, uid: str, event, summary: SubscriptionSummary, is_active: bool) -> StatusRecord:
        """Publish the subscription:update record with capabilities from the current catalog."""
        c = self.collaborators
        plans = await c.call("payments.fetch_plan_catalog", c.payments.fetch_plan_catalog())
        record = StatusRecord(
            uid=uid,
            eventCreatedAt=event.created,
            subscriptionId=summary.id,
            isActive=is_active,
            productId=summary.product_id,
            productCapabilities=product_capabilities(plans, summary.product_id),
        )
        await c.call("status.publish:subscription:update", c.status.publish(TOPIC_SUBSCRIPTION_UPDATE, record.to_message()))
        logger.info(
            f"Published subscription status for {summary.id}",
            extra={"uid": uid, "subscription_id": summary.id, "is_active": is_active},
        )
        return record

    async def handle_transition(
        self,
        ctx,
        event,
        summary: SubscriptionSummary,
        is_active: bool,
        binding: Optional[AccountBinding] = None,
    ) -> bool:
        """
        Run the transition side effects for the event's account.

        Returns:
            False when the subscription belongs to no local account
        """
        c = self.collaborators
        if binding is None or not binding.resolved:
            binding = await c.call("accounts.lookup_account", c.accounts.lookup_account(event.data_object))

        if not binding.resolved:
            logger.info(f"No local account for {summary.id}, skipping side effects")
            return False

        ctx.scope.set_context("account", {"uid": binding.uid})
        await self.customer_changed(ctx, binding.uid, binding.email)
        await self.send_subscription_status(ctx, binding.uid, event, summary, is_active)
        return True
