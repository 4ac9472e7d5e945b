"""
Transactional email selection and dispatch for subscription events.

Each handled event sends at most one email variant (the first invoice of a
new subscription also sends the download email). The template is chosen
here; rendering belongs to the mailer.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from billing.collaborators import AccountBinding, Collaborators
from billing.subscription_state import active_subscriptions, is_active, subscription_plan
from shared.constants import (
    BILLING_REASON_SUBSCRIPTION_CREATE,
    CANCELLED_FOR_CUSTOMER_AT,
    INTERVAL_DAYS,
    TEMPLATE_ACCOUNT_DELETION,
    TEMPLATE_CANCELLATION,
    TEMPLATE_DOWNLOAD,
    TEMPLATE_FIRST_INVOICE,
    TEMPLATE_MULTI_PAYMENT_EXPIRED,
    TEMPLATE_PAYMENT_EXPIRED,
    TEMPLATE_PAYMENT_FAILED,
    TEMPLATE_SUBSEQUENT_INVOICE,
    UPDATE_TYPE_CANCELLATION,
    UPDATE_TYPE_DOWNGRADE,
    UPDATE_TYPE_REACTIVATION,
    UPDATE_TYPE_TEMPLATES,
    UPDATE_TYPE_UPGRADE,
)
from shared.errors import AccountNotFoundError, UnresolvableSourceError

logger = logging.getLogger(__name__)


def _interval_days(plan: Mapping[str, Any]) -> int:
    return INTERVAL_DAYS.get(plan.get("interval"), 0) * int(plan.get("interval_count") or 1)


def compare_plans(old_plan: Mapping[str, Any], new_plan: Mapping[str, Any]) -> str:
    """
    Upgrade or downgrade between two plans.

    A higher amount is an upgrade. On equal amounts a shorter billing
    interval is an upgrade. Everything else is a downgrade.
    """
    old_amount = old_plan.get("amount") or 0
    new_amount = new_plan.get("amount") or 0
    if new_amount != old_amount:
        return UPDATE_TYPE_UPGRADE if new_amount > old_amount else UPDATE_TYPE_DOWNGRADE
    if _interval_days(new_plan) < _interval_days(old_plan):
        return UPDATE_TYPE_UPGRADE
    return UPDATE_TYPE_DOWNGRADE


def previous_plan(previous_attributes: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """The plan a subscription had before an update, if the update changed it."""
    if previous_attributes.get("plan"):
        return previous_attributes["plan"]
    items = (previous_attributes.get("items") or {}).get("data") or []
    if items:
        return items[0].get("plan") or items[0].get("price")
    return None


def determine_update_type(subscription: Mapping[str, Any], previous_attributes: Mapping[str, Any]) -> Optional[str]:
    """
    Classify a customer.subscription.updated event for email purposes.

    Returns one of the four update types, or None when the update is not
    something the customer is told about (metadata, invoice or period
    changes that leave plan, cancellation flag and active state alone).
    """
    if "cancel_at_period_end" in previous_attributes:
        was_cancelling = bool(previous_attributes.get("cancel_at_period_end"))
        now_cancelling = bool(subscription.get("cancel_at_period_end"))
        if now_cancelling and not was_cancelling:
            return UPDATE_TYPE_CANCELLATION
        if was_cancelling and not now_cancelling:
            return UPDATE_TYPE_REACTIVATION

    old_plan = previous_plan(previous_attributes)
    new_plan = subscription_plan(subscription)
    if old_plan and old_plan.get("id") != new_plan.get("id"):
        return compare_plans(old_plan, new_plan)

    if "status" in previous_attributes:
        was_active = is_active(previous_attributes.get("status"))
        now_active = is_active(subscription)
        if now_active and not was_active:
            return UPDATE_TYPE_REACTIVATION
        if was_active and not now_active:
            return UPDATE_TYPE_CANCELLATION

    return None


def recipients_for(account: Mapping[str, Any]) -> List[str]:
    emails = [entry["email"] for entry in account.get("emails") or [] if entry.get("email")]
    if not emails and account.get("email"):
        emails = [account["email"]]
    return emails


def _customer_id(stripe_object: Mapping[str, Any]) -> Optional[str]:
    customer = stripe_object.get("customer")
    if isinstance(customer, Mapping):
        return customer.get("id")
    return customer


class SubscriptionEmails:
    """Builds email details from Stripe objects and sends the matching template."""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    async def _send(self, template: str, account: Mapping[str, Any], details: Mapping[str, Any]) -> None:
        context = {"accept_language": account.get("locale"), **details}
        recipients = recipients_for(account)
        await self.collaborators.call(
            f"mailer.send:{template}",
            self.collaborators.mailer.send(template, recipients, account, context),
        )
        logger.info(f"Sent {template} email", extra={"template": template, "uid": account.get("uid")})

    async def _customer_binding(self, stripe_object: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """uid/email of the Stripe customer behind an object, from customer metadata."""
        c = self.collaborators
        customer = await c.call(
            "payments.expand_resource:customers",
            c.payments.expand_resource(stripe_object.get("customer"), "customers"),
        )
        if not customer or customer.get("deleted"):
            logger.warning(f"Stripe customer {_customer_id(stripe_object)} is missing or deleted")
            return None
        uid = (customer.get("metadata") or {}).get("userid")
        if not uid:
            logger.warning(f"Stripe customer {customer.get('id')} has no userid metadata")
            return None
        return {"uid": uid, "email": customer.get("email")}

    async def invoice_details(self, invoice: Any) -> Optional[Dict[str, Any]]:
        """Email details for an invoice (expanded from its id when needed)."""
        c = self.collaborators
        if not invoice:
            return None
        invoice = await c.call("payments.expand_resource:invoices", c.payments.expand_resource(invoice, "invoices"))
        if not invoice:
            return None

        binding = await self._customer_binding(invoice)
        if binding is None:
            return None

        lines = (invoice.get("lines") or {}).get("data") or []
        line = lines[0] if lines else {}
        plan = line.get("plan") or {}
        plan_id = plan.get("id")
        catalog_entry = await c.call("payments.find_plan_by_id", c.payments.find_plan_by_id(plan_id)) if plan_id else None
        catalog_entry = catalog_entry or {}

        return {
            **binding,
            "invoice_id": invoice.get("id"),
            "invoice_number": invoice.get("number"),
            "invoice_total": invoice.get("total"),
            "invoice_currency": invoice.get("currency"),
            "invoice_date": invoice.get("created"),
            "billing_reason": invoice.get("billing_reason"),
            "next_invoice_date": (line.get("period") or {}).get("end"),
            "plan_id": plan_id,
            "product_id": catalog_entry.get("product_id") or plan.get("product"),
            "product_name": catalog_entry.get("product_name"),
            "product_metadata": catalog_entry.get("product_metadata") or {},
        }

    async def subscription_update_details(self, event) -> Optional[Dict[str, Any]]:
        """Email details for a customer.subscription.updated event, or None when no email applies."""
        c = self.collaborators
        subscription = event.data_object
        update_type = determine_update_type(subscription, event.previous_attributes)
        if update_type is None:
            return None

        binding = await self._customer_binding(subscription)
        if binding is None:
            return None

        new_plan = dict(subscription_plan(subscription))
        if new_plan.get("id") and new_plan.get("amount") is None:
            new_plan.update(await c.call("payments.find_plan_by_id", c.payments.find_plan_by_id(new_plan["id"])) or {})

        details = {
            **binding,
            "update_type": update_type,
            "subscription_id": subscription.get("id"),
            "plan_id": new_plan.get("id") or new_plan.get("plan_id"),
            "product_id": new_plan.get("product") or new_plan.get("product_id"),
            "plan_amount": new_plan.get("amount"),
            "plan_interval": new_plan.get("interval"),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "current_period_end": subscription.get("current_period_end"),
        }
        if update_type in (UPDATE_TYPE_UPGRADE, UPDATE_TYPE_DOWNGRADE):
            old_plan = previous_plan(event.previous_attributes) or {}
            details.update(
                {
                    "previous_plan_id": old_plan.get("id"),
                    "previous_product_id": old_plan.get("product"),
                    "previous_plan_amount": old_plan.get("amount"),
                    "previous_plan_interval": old_plan.get("interval"),
                }
            )
        return details

    async def source_details(self, source: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Email details for an expiring payment source.

        Raises:
            UnresolvableSourceError: the source's customer is gone or has no active subscriptions
        """
        c = self.collaborators
        customer_id = _customer_id(source)
        customer = await c.call("payments.fetch_customer", c.payments.fetch_customer(customer_id)) if customer_id else None
        if not customer or customer.get("deleted"):
            raise UnresolvableSourceError("source_details", source.get("id"))

        subscriptions = active_subscriptions(customer)
        uid = (customer.get("metadata") or {}).get("userid")
        if not subscriptions or not uid:
            raise UnresolvableSourceError("source_details", source.get("id"))

        catalog = {plan["plan_id"]: plan for plan in await c.call("payments.fetch_plan_catalog", c.payments.fetch_plan_catalog())}
        summaries = []
        for subscription in subscriptions:
            plan_id = subscription_plan(subscription).get("id")
            entry = catalog.get(plan_id, {})
            summaries.append(
                {
                    "subscription_id": subscription.get("id"),
                    "plan_id": plan_id,
                    "product_id": entry.get("product_id"),
                    "product_name": entry.get("product_name"),
                }
            )

        return {
            "uid": uid,
            "email": customer.get("email"),
            "subscriptions": summaries,
            "last4": source.get("last4"),
            "brand": source.get("brand"),
            "exp_month": source.get("exp_month"),
            "exp_year": source.get("exp_year"),
        }

    async def _account(self, uid: str) -> Dict[str, Any]:
        c = self.collaborators
        return await c.call("accounts.fetch_account_by_uid", c.accounts.fetch_account_by_uid(uid))

    async def send_subscription_updated_email(self, event) -> Optional[AccountBinding]:
        """Send exactly one of upgrade/downgrade/reactivation/cancellation, when the update calls for one."""
        details = await self.subscription_update_details(event)
        if details is None:
            logger.info(f"No update email for subscription {event.data_object.get('id')}")
            return None

        account = await self._account(details["uid"])
        await self._send(UPDATE_TYPE_TEMPLATES[details["update_type"]], account, details)
        return AccountBinding(uid=details["uid"], email=details["email"])

    async def send_subscription_deleted_email(self, subscription: Mapping[str, Any]) -> Optional[AccountBinding]:
        """
        Email for a deleted subscription.

        Account still exists: cancellation email, unless the subscription was
        set to cancel at period end (the update event already sent it).
        Account is gone: account-deletion email, unless we cancelled the
        subscription on the customer's behalf (cancelled_for_customer_at set).
        """
        details = await self.invoice_details(subscription.get("latest_invoice"))
        if details is None:
            logger.warning(f"No invoice details for deleted subscription {subscription.get('id')}")
            return None

        binding = AccountBinding(uid=details["uid"], email=details["email"])
        try:
            account = await self._account(details["uid"])
        except AccountNotFoundError:
            if (subscription.get("metadata") or {}).get(CANCELLED_FOR_CUSTOMER_AT):
                logger.info(f"Subscription {subscription.get('id')} already cancelled for deleted account")
                return binding
            deleted_account = {
                "uid": details["uid"],
                "email": details["email"],
                "emails": [{"email": details["email"], "isPrimary": True}],
            }
            await self._send(TEMPLATE_ACCOUNT_DELETION, deleted_account, details)
            return binding

        if subscription.get("cancel_at_period_end"):
            logger.info(f"Cancellation already emailed for subscription {subscription.get('id')}")
            return binding

        await self._send(TEMPLATE_CANCELLATION, account, details)
        return binding

    async def send_subscription_invoice_email(self, invoice: Mapping[str, Any]) -> None:
        details = await self.invoice_details(invoice)
        if details is None:
            return

        account = await self._account(details["uid"])
        if invoice.get("billing_reason") == BILLING_REASON_SUBSCRIPTION_CREATE:
            await self._send(TEMPLATE_FIRST_INVOICE, account, details)
            await self._send(TEMPLATE_DOWNLOAD, account, details)
        else:
            await self._send(TEMPLATE_SUBSEQUENT_INVOICE, account, details)

    async def send_subscription_payment_failed_email(self, invoice: Mapping[str, Any]) -> None:
        details = await self.invoice_details(invoice)
        if details is None:
            return

        account = await self._account(details["uid"])
        await self._send(TEMPLATE_PAYMENT_FAILED, account, details)

    async def send_subscription_payment_expired_email(self, source: Mapping[str, Any]) -> None:
        details = await self.source_details(source)
        account = await self._account(details["uid"])
        template = TEMPLATE_MULTI_PAYMENT_EXPIRED if len(details["subscriptions"]) > 1 else TEMPLATE_PAYMENT_EXPIRED
        await self._send(template, account, details)
