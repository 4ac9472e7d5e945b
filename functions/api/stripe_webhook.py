"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Verifies and dispatches Stripe subscription lifecycle events. Authenticated
by the Stripe signature, not by API key.

Responses:
- 200 {"received": true}: processed, unhandled type, ignored, or duplicate
- 400: missing/invalid signature or malformed payload
- 500: Stripe not configured, or processing failed (Stripe retries)
"""

import asyncio
import base64
import json
import logging
import os
import time

import stripe
from botocore.exceptions import ClientError

from billing.aws_collaborators import (
    CustomerCacheInvalidator,
    DynamoAccountStore,
    DynamoEventLedger,
    SesMailer,
    SnsPushNotifier,
    SnsStatusSink,
)
from billing.collaborators import Collaborators
from billing.dispatcher import OUTCOME_DUPLICATE, WebhookDispatcher
from billing.events import WebhookRequest
from billing.stripe_backend import StripePaymentsBackend
from clients.auth_client import AuthClient
from clients.http_client import close_http_client
from clients.profile_client import ProfileClient
from shared.aws_clients import get_secretsmanager
from shared.error_tracking import ErrorTracker
from shared.errors import InvalidSignatureError, MalformedEventError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, received_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ACCOUNTS_TABLE = os.environ.get("ACCOUNTS_TABLE", "subhub-accounts")
CUSTOMER_CACHE_TABLE = os.environ.get("CUSTOMER_CACHE_TABLE", "subhub-customer-cache")
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "subhub-billing-events")
STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")
PUSH_TOPIC_ARN = os.environ.get("PUSH_TOPIC_ARN")
STATUS_TOPIC_ARN = os.environ.get("STATUS_TOPIC_ARN")
EMAIL_SENDER = os.environ.get("EMAIL_SENDER", "noreply@subhub.dev")
EMAIL_TEMPLATE_PREFIX = os.environ.get("EMAIL_TEMPLATE_PREFIX", "subhub-")
PROFILE_SERVER_URL = os.environ.get("PROFILE_SERVER_URL", "http://localhost:1111")
PROFILE_SERVER_SECRET = os.environ.get("PROFILE_SERVER_SECRET")
AUTH_SERVER_URL = os.environ.get("AUTH_SERVER_URL", "http://localhost:9000")
PROFILE_CLIENT_ID = os.environ.get("PROFILE_CLIENT_ID", "")
COLLABORATOR_TIMEOUT_SECONDS = float(os.environ.get("COLLABORATOR_TIMEOUT_SECONDS", "10"))

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes

# Survives across warm invocations so the plan catalog cache does too
_payments_backend: StripePaymentsBackend | None = None


def _read_secret(arn: str, json_key: str) -> str | None:
    try:
        response = get_secretsmanager().get_secret_value(SecretId=arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_key}: {e}")
        return None
    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value
    if isinstance(secret_json, dict):
        return secret_json.get(json_key) or secret_value
    return secret_value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = _read_secret(STRIPE_SECRET_ARN, "key") if STRIPE_SECRET_ARN else None
    webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret") if STRIPE_WEBHOOK_SECRET_ARN else None

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def get_payments_backend() -> StripePaymentsBackend:
    global _payments_backend
    if _payments_backend is None:
        _payments_backend = StripePaymentsBackend()
    return _payments_backend


def build_dispatcher(webhook_secret: str) -> WebhookDispatcher:
    """Wire the dispatcher to the production collaborators configured in the environment."""
    auth_client = AuthClient(AUTH_SERVER_URL)
    profile_client = ProfileClient(PROFILE_SERVER_URL, auth_client, PROFILE_CLIENT_ID, PROFILE_SERVER_SECRET)
    collaborators = Collaborators(
        payments=get_payments_backend(),
        accounts=DynamoAccountStore(ACCOUNTS_TABLE),
        cache=CustomerCacheInvalidator(CUSTOMER_CACHE_TABLE, profile_client),
        push=SnsPushNotifier(PUSH_TOPIC_ARN),
        mailer=SesMailer(EMAIL_SENDER, EMAIL_TEMPLATE_PREFIX),
        status=SnsStatusSink(STATUS_TOPIC_ARN),
        timeout=COLLABORATOR_TIMEOUT_SECONDS,
    )
    return WebhookDispatcher(
        collaborators,
        webhook_secret,
        error_tracker=ErrorTracker(),
        ledger=DynamoEventLedger(BILLING_EVENTS_TABLE),
    )


def _request_from_event(event: dict, context) -> WebhookRequest:
    payload = event.get("body") or ""
    if event.get("isBase64Encoded"):
        payload = base64.b64decode(payload).decode("utf-8")
    return WebhookRequest(
        payload=payload,
        headers=event.get("headers") or {},
        request_id=getattr(context, "aws_request_id", "") or "",
    )


async def _dispatch(dispatcher: WebhookDispatcher, request: WebhookRequest) -> str:
    try:
        return await dispatcher.handle_webhook_event(request)
    finally:
        await close_http_client()


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles customer.created, customer.subscription.created/updated/deleted,
    customer.source.expiring and invoice.payment_succeeded/payment_failed.
    Other event types are acknowledged and reported.
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()

    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    stripe.api_key = stripe_api_key

    dispatcher = build_dispatcher(webhook_secret)
    request = _request_from_event(event, context)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        outcome = loop.run_until_complete(_dispatch(dispatcher, request))
    except (InvalidSignatureError, MalformedEventError) as e:
        return e.to_response()
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return error_response(500, "processing_failed", "Processing failed")
    finally:
        loop.close()

    if outcome == OUTCOME_DUPLICATE:
        return received_response(duplicate=True)
    return received_response(outcome=outcome)
