"""
Stripe webhook dispatch.

handle_webhook_event verifies the delivery, claims it in the event ledger,
routes it to exactly one handler and decides what the outcome means for
Stripe:

- processed / unhandled / ignored / duplicate: the delivery is acknowledged
- anything raised: Stripe gets a failure and retries with its own backoff

Bounced recipients and expiring sources that no subscription can be
attributed to are ignorable: they are logged, the delivery is acknowledged.
Every other error is captured with the event as context and re-raised.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from billing.collaborators import AccountBinding, Collaborators, EventLedger
from billing.emails import SubscriptionEmails
from billing.events import StripeEvent, WebhookRequest, construct_event
from billing.orchestrator import SideEffectOrchestrator
from billing.subscription_state import classify_transition, summarize_subscription
from shared.constants import (
    BILLING_REASON_SUBSCRIPTION_CREATE,
    EVENT_CUSTOMER_CREATED,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SOURCE_EXPIRING,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
)
from shared.error_tracking import ErrorScope, ErrorTracker
from shared.errors import IGNORABLE_ERRORS, AccountNotFoundError, UnknownEventTypeError
from shared.logging_utils import log_webhook_outcome
from shared.metrics import emit_webhook_metric

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_UNHANDLED = "unhandled"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"


@dataclass
class DispatchContext:
    """Per-delivery state handed to every handler."""

    request: WebhookRequest
    event: StripeEvent
    scope: ErrorScope


Handler = Callable[[DispatchContext, StripeEvent], Awaitable[None]]


class WebhookDispatcher:
    def __init__(
        self,
        collaborators: Collaborators,
        webhook_secret: str,
        error_tracker: Optional[ErrorTracker] = None,
        ledger: Optional[EventLedger] = None,
    ):
        self.collaborators = collaborators
        self.webhook_secret = webhook_secret
        self.error_tracker = error_tracker or ErrorTracker()
        self.ledger = ledger
        self.emails = SubscriptionEmails(collaborators)
        self.orchestrator = SideEffectOrchestrator(collaborators)
        self.handlers: Dict[str, Handler] = {
            EVENT_CUSTOMER_CREATED: self.handle_customer_created,
            EVENT_SUBSCRIPTION_CREATED: self.handle_subscription_created,
            EVENT_SUBSCRIPTION_UPDATED: self.handle_subscription_updated,
            EVENT_SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            EVENT_SOURCE_EXPIRING: self.handle_customer_source_expiring,
            EVENT_INVOICE_PAYMENT_SUCCEEDED: self.handle_invoice_payment_succeeded,
            EVENT_INVOICE_PAYMENT_FAILED: self.handle_invoice_payment_failed,
        }

    async def handle_webhook_event(self, request: WebhookRequest) -> str:
        """
        Verify, dedupe, route and guard one webhook delivery.

        Returns:
            The outcome (processed, unhandled, ignored or duplicate)

        Raises:
            InvalidSignatureError / MalformedEventError: the delivery is not a valid event
            Exception: any non-ignorable failure, after it has been captured
        """
        event = await construct_event(self.collaborators, request, self.webhook_secret)
        start = time.monotonic()
        logger.info(f"Processing Stripe event: {event.type} (id={event.id})")

        if self.ledger is not None and not await self.ledger.claim(event):
            self._finish(event, OUTCOME_DUPLICATE, start)
            return OUTCOME_DUPLICATE

        with self.error_tracker.scope() as scope:
            scope.set_tag("event_type", event.type)
            ctx = DispatchContext(request=request, event=event, scope=scope)
            try:
                outcome = await self.route(ctx, event)
            except IGNORABLE_ERRORS as e:
                logger.warning(
                    "subscriptions.handleWebhookEvent.failure",
                    extra={"error": str(e), "error_code": e.code, "event_id": event.id, "event_type": event.type},
                )
                await self._record(event, OUTCOME_IGNORED, str(e))
                self._finish(event, OUTCOME_IGNORED, start, str(e))
                return OUTCOME_IGNORED
            except Exception as e:
                scope.set_context("stripe_event", event.summary())
                self.error_tracker.capture_exception(e, scope)
                if self.ledger is not None:
                    await self.ledger.release(event)
                    await self.ledger.record(event, OUTCOME_FAILED, str(e))
                self._finish(event, OUTCOME_FAILED, start, str(e))
                raise

        await self._record(event, outcome)
        self._finish(event, outcome, start)
        return outcome

    async def route(self, ctx: DispatchContext, event: StripeEvent) -> str:
        """Run the one handler registered for the event type, or report the type."""
        handler = self.handlers.get(event.type)
        if handler is None:
            ctx.scope.set_context("stripe_event", event.summary())
            self.error_tracker.capture_message(
                str(UnknownEventTypeError(event.type)),
                ctx.scope,
                error_type=UnknownEventTypeError.__name__,
            )
            return OUTCOME_UNHANDLED

        await handler(ctx, event)
        return OUTCOME_PROCESSED

    async def _record(self, event: StripeEvent, status: str, error: Optional[str] = None) -> None:
        if self.ledger is not None:
            await self.ledger.record(event, status, error)

    def _finish(self, event: StripeEvent, outcome: str, start: float, error: Optional[str] = None) -> None:
        log_webhook_outcome(logger, event.id, event.type, outcome, (time.monotonic() - start) * 1000, error)
        emit_webhook_metric(event.type, outcome)

    # ===========================================
    # Event handlers
    # ===========================================

    async def handle_customer_created(self, ctx: DispatchContext, event: StripeEvent) -> None:
        """Record the new Stripe customer id against the account with the same email."""
        c = self.collaborators
        customer = event.data_object
        email = customer.get("email")
        if not email:
            logger.warning(f"Customer {customer.get('id')} has no email")
            return

        try:
            account = await c.call("accounts.fetch_account_by_email", c.accounts.fetch_account_by_email(email))
        except AccountNotFoundError:
            logger.warning(f"No local account for new customer {customer.get('id')}")
            return

        await c.call("accounts.create_local_customer", c.accounts.create_local_customer(account["uid"], customer))

    async def handle_subscription_created(self, ctx: DispatchContext, event: StripeEvent) -> None:
        """
        Notify when a new subscription starts out active.

        Creation emails go out with the subscription's first invoice.
        """
        transition = classify_transition(event)
        if not transition.transitioned:
            logger.info(f"Skipping subscription.created with status={event.data_object.get('status')}")
            return
        await self.orchestrator.handle_transition(
            ctx, event, summarize_subscription(event.data_object), transition.to_active
        )

    async def _email_then_transition(
        self, ctx: DispatchContext, event: StripeEvent, send_email: Awaitable[Optional[AccountBinding]]
    ) -> None:
        """
        Send the event's email, then run transition side effects.

        An ignorable email failure (a bounce) does not skip the side effects:
        they still run, and the error is raised afterwards so the guard logs
        it and acknowledges the delivery.
        """
        email_error = None
        try:
            binding = await send_email
        except IGNORABLE_ERRORS as e:
            binding, email_error = None, e

        transition = classify_transition(event)
        if transition.transitioned:
            await self.orchestrator.handle_transition(
                ctx, event, summarize_subscription(event.data_object), transition.to_active, binding
            )

        if email_error is not None:
            raise email_error

    async def handle_subscription_updated(self, ctx: DispatchContext, event: StripeEvent) -> None:
        await self._email_then_transition(ctx, event, self.emails.send_subscription_updated_email(event))

    async def handle_subscription_deleted(self, ctx: DispatchContext, event: StripeEvent) -> None:
        # Deletion always classifies as a transition to inactive
        await self._email_then_transition(ctx, event, self.emails.send_subscription_deleted_email(event.data_object))

    async def handle_customer_source_expiring(self, ctx: DispatchContext, event: StripeEvent) -> None:
        await self.emails.send_subscription_payment_expired_email(event.data_object)

    async def handle_invoice_payment_succeeded(self, ctx: DispatchContext, event: StripeEvent) -> None:
        await self.emails.send_subscription_invoice_email(event.data_object)

    async def handle_invoice_payment_failed(self, ctx: DispatchContext, event: StripeEvent) -> None:
        invoice = event.data_object
        if invoice.get("billing_reason") == BILLING_REASON_SUBSCRIPTION_CREATE:
            # The first invoice of a new subscription is handled by the signup flow
            logger.info(f"Skipping payment failed email for creation invoice {invoice.get('id')}")
            return
        await self.emails.send_subscription_payment_failed_email(invoice)
