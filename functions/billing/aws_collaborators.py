"""
AWS-backed collaborators: DynamoDB account store and event ledger, SES
mailer, SNS push and status topics.

Accounts table layout (pk = uid):
    sk = "ACCOUNT"         email, emails, locale, stripe_customer_id
    sk = "DEVICE#<id>"     one item per registered device

GSIs: email-index (email), stripe-customer-index (stripe_customer_id).

boto3 is synchronous; each call runs in a worker thread so the dispatcher
can bound it with a timeout and fan out concurrently.
"""

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, TypeVar

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from billing.collaborators import UNRESOLVED, AccountBinding
from shared.aws_clients import get_dynamodb, get_ses, get_sns
from shared.errors import AccountNotFoundError, BouncedContactError
from shared.logging_utils import log_external_call
from shared.response_utils import decimal_default
from shared.types import Account

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACCOUNT_SK = "ACCOUNT"
DEVICE_SK_PREFIX = "DEVICE#"
CLAIM_SK = "CLAIM"
ATTEMPT_SK_PREFIX = "ATTEMPT#"
BOUNCE_ERROR_CODES = ("MessageRejected",)


async def _call(service: str, operation: str, fn: Callable[[], T]) -> T:
    """Run a blocking AWS call in a thread and log its outcome."""
    start = time.monotonic()
    try:
        result = await asyncio.to_thread(fn)
    except Exception as e:
        log_external_call(logger, service, operation, False, (time.monotonic() - start) * 1000, str(e))
        raise
    log_external_call(logger, service, operation, True, (time.monotonic() - start) * 1000)
    return result


def _stripe_customer_id(stripe_object: Mapping) -> Optional[str]:
    if stripe_object.get("object") == "customer":
        return stripe_object.get("id")
    customer = stripe_object.get("customer")
    if isinstance(customer, Mapping):
        return customer.get("id")
    return customer


def _to_account(item: Mapping[str, Any]) -> Account:
    account: Account = {
        "uid": item["pk"],
        "email": item.get("email"),
        "emails": list(item.get("emails") or [{"email": item.get("email"), "isPrimary": True}]),
    }
    if item.get("locale"):
        account["locale"] = item["locale"]
    if item.get("stripe_customer_id"):
        account["stripe_customer_id"] = item["stripe_customer_id"]
    return account


class DynamoAccountStore:
    def __init__(self, table_name: str):
        self.table_name = table_name

    @property
    def table(self):
        return get_dynamodb().Table(self.table_name)

    async def lookup_account(self, stripe_object: Mapping[str, Any]) -> AccountBinding:
        """Which account owns the Stripe customer behind a subscription, invoice or customer."""
        customer_id = _stripe_customer_id(stripe_object)
        if not customer_id:
            return UNRESOLVED

        response = await _call(
            "dynamodb",
            "accounts.query:stripe-customer-index",
            lambda: self.table.query(
                IndexName="stripe-customer-index",
                KeyConditionExpression=Key("stripe_customer_id").eq(customer_id),
                Limit=1,
            ),
        )
        items = response.get("Items", [])
        if not items:
            return UNRESOLVED
        return AccountBinding(uid=items[0]["pk"], email=items[0].get("email"))

    async def fetch_account_by_uid(self, uid: str) -> Account:
        response = await _call(
            "dynamodb",
            "accounts.get_item",
            lambda: self.table.get_item(Key={"pk": uid, "sk": ACCOUNT_SK}),
        )
        item = response.get("Item")
        if not item:
            raise AccountNotFoundError(uid=uid)
        return _to_account(item)

    async def fetch_account_by_email(self, email: str) -> Account:
        response = await _call(
            "dynamodb",
            "accounts.query:email-index",
            lambda: self.table.query(
                IndexName="email-index",
                KeyConditionExpression=Key("email").eq(email.lower()),
            ),
        )
        for item in response.get("Items", []):
            if item.get("sk") == ACCOUNT_SK:
                return _to_account(item)
        raise AccountNotFoundError(email=email)

    async def list_devices(self, uid: str) -> List[str]:
        response = await _call(
            "dynamodb",
            "accounts.query:devices",
            lambda: self.table.query(
                KeyConditionExpression=Key("pk").eq(uid) & Key("sk").begins_with(DEVICE_SK_PREFIX),
            ),
        )
        return [item["sk"][len(DEVICE_SK_PREFIX):] for item in response.get("Items", [])]

    async def create_local_customer(self, uid: str, customer: Mapping[str, Any]) -> None:
        """Record the Stripe customer id on the account."""
        await _call(
            "dynamodb",
            "accounts.update_item:stripe_customer_id",
            lambda: self.table.update_item(
                Key={"pk": uid, "sk": ACCOUNT_SK},
                UpdateExpression="SET stripe_customer_id = :cid, stripe_customer_created_at = :created",
                ExpressionAttributeValues={
                    ":cid": customer["id"],
                    ":created": customer.get("created") or int(time.time()),
                },
            ),
        )
        logger.info(f"Linked Stripe customer {customer['id']} to account {uid}")


class CustomerCacheInvalidator:
    """Drops the cached customer projection and asks the profile service to drop its cache."""

    def __init__(self, customer_cache_table: str, profile_client):
        self.customer_cache_table = customer_cache_table
        self.profile_client = profile_client

    async def invalidate_customer_projection(self, uid: str, email: Optional[str]) -> None:
        table = get_dynamodb().Table(self.customer_cache_table)
        await _call("dynamodb", "customer_cache.delete_item", lambda: table.delete_item(Key={"pk": uid}))

    async def invalidate_profile_cache(self, uid: str) -> None:
        await self.profile_client.delete_cache(uid)


class SnsPushNotifier:
    def __init__(self, topic_arn: Optional[str]):
        self.topic_arn = topic_arn

    async def notify_devices(self, uid: str, device_ids: List[str]) -> None:
        if not self.topic_arn:
            logger.warning("PUSH_TOPIC_ARN not configured, skipping device notification")
            return
        message = json.dumps({"uid": uid, "deviceIds": device_ids, "reason": "profileUpdated"})
        await _call(
            "sns",
            "push.publish",
            lambda: get_sns().publish(
                TopicArn=self.topic_arn,
                Message=message,
                MessageAttributes={"event": {"DataType": "String", "StringValue": "profileUpdated"}},
            ),
        )


class SnsStatusSink:
    def __init__(self, topic_arn: Optional[str]):
        self.topic_arn = topic_arn

    async def publish(self, topic: str, record: Mapping[str, Any]) -> None:
        if not self.topic_arn:
            logger.warning(f"STATUS_TOPIC_ARN not configured, dropping {topic} record")
            return
        message = json.dumps(dict(record), default=decimal_default)
        await _call(
            "sns",
            f"status.publish:{topic}",
            lambda: get_sns().publish(
                TopicArn=self.topic_arn,
                Message=message,
                MessageAttributes={"event": {"DataType": "String", "StringValue": topic}},
            ),
        )


class SesMailer:
    """Sends SES templates named <template_prefix><template>."""

    def __init__(self, sender: str, template_prefix: str = ""):
        self.sender = sender
        self.template_prefix = template_prefix

    async def send(
        self, template: str, recipients: List[str], account: Mapping[str, Any], context: Mapping[str, Any]
    ) -> None:
        """
        Raises:
            BouncedContactError: SES rejected the message for the recipients
        """
        if not recipients:
            logger.warning(f"No recipients for {template} email to {account.get('uid')}")
            return

        template_data = json.dumps({"uid": account.get("uid"), **context}, default=decimal_default)
        try:
            await _call(
                "ses",
                f"send_templated_email:{template}",
                lambda: get_ses().send_templated_email(
                    Source=self.sender,
                    Destination={"ToAddresses": recipients},
                    Template=f"{self.template_prefix}{template}",
                    TemplateData=template_data,
                ),
            )
        except ClientError as e:
            if e.response["Error"]["Code"] in BOUNCE_ERROR_CODES:
                raise BouncedContactError(recipients[0], e.response["Error"].get("Message", "")) from e
            raise


class DynamoEventLedger:
    """
    Delivery dedup and audit trail in the billing events table.

    The CLAIM item is the dedup lock: a conditional put succeeds for exactly
    one delivery of an event id. Failed attempts delete the claim so Stripe's
    retry can claim again; every outcome is also written as its own
    ATTEMPT#<timestamp> item.
    """

    def __init__(self, table_name: str, ttl_days: int = 90):
        self.table_name = table_name
        self.ttl_days = ttl_days

    @property
    def table(self):
        return get_dynamodb().Table(self.table_name)

    def _ttl(self, now: datetime) -> int:
        return int((now + timedelta(days=self.ttl_days)).timestamp())

    async def claim(self, event) -> bool:
        """
        Returns:
            True if this delivery claimed the event, False for a duplicate
        """
        now = datetime.now(timezone.utc)
        try:
            await _call(
                "dynamodb",
                "billing_events.claim",
                lambda: self.table.put_item(
                    Item={
                        "pk": event.id,
                        "sk": CLAIM_SK,
                        "event_type": event.type,
                        "status": "processing",
                        "claimed_at": now.isoformat(),
                        "ttl": self._ttl(now),
                    },
                    ConditionExpression="attribute_not_exists(pk)",
                ),
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(f"Skipping duplicate event {event.id}")
                return False
            raise
        return True

    async def release(self, event) -> None:
        try:
            await _call(
                "dynamodb",
                "billing_events.release",
                lambda: self.table.delete_item(Key={"pk": event.id, "sk": CLAIM_SK}),
            )
            logger.info(f"Released event claim for {event.id} to allow retry")
        except ClientError as e:
            logger.error(f"Failed to release event claim {event.id}: {e}")

    async def record(self, event, status: str, error: Optional[str] = None) -> None:
        """Write the audit item for this attempt and, unless it failed, settle the claim."""
        now = datetime.now(timezone.utc)
        customer = event.data_object.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")

        item = {
            "pk": event.id,
            "sk": f"{ATTEMPT_SK_PREFIX}{now.isoformat()}",
            "event_type": event.type,
            "customer_id": customer or "unknown",
            "event_created_at": event.created,
            "livemode": event.livemode,
            "status": status,
            "processed_at": now.isoformat(),
            "ttl": self._ttl(now),
        }
        if error:
            item["error"] = error[:1000]

        try:
            await _call("dynamodb", "billing_events.record", lambda: self.table.put_item(Item=item))
            if status != "failed":
                await _call(
                    "dynamodb",
                    "billing_events.settle",
                    lambda: self.table.update_item(
                        Key={"pk": event.id, "sk": CLAIM_SK},
                        UpdateExpression="SET #status = :status, processed_at = :at",
                        ExpressionAttributeNames={"#status": "status"},
                        ExpressionAttributeValues={":status": status, ":at": now.isoformat()},
                    ),
                )
        except ClientError as e:
            logger.error(f"Failed to record billing event {event.id}: {e}")
