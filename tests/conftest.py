"""
Shared pytest fixtures for SubHub tests.
"""

import json
import os
import sys
from collections.abc import Mapping
from unittest.mock import AsyncMock, MagicMock, patch

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

VALID_SIGNATURE = "t=1700000000,v1=valid"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    # Fresh httpx client per call so httpx.MockTransport can be injected
    os.environ["USE_CONNECTION_POOLING"] = "false"


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def cloudwatch_client():
    """Keep metric emission off the network; tests can assert on put_metric_data."""
    client = MagicMock()
    with patch("shared.metrics.get_cloudwatch", return_value=client):
        yield client


@pytest.fixture(autouse=True)
def reset_stripe_secrets_cache():
    """Reset the webhook handler's cached secrets and backend between tests."""
    yield
    try:
        import api.stripe_webhook as webhook_module
        webhook_module._stripe_secrets_cache = (None, None)
        webhook_module._stripe_secrets_cache_time = 0.0
        webhook_module._payments_backend = None
    except ImportError:
        pass


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Accounts table: account record plus device items per uid
    dynamodb.create_table(
        TableName="subhub-accounts",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "stripe-customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Cached customer projections, one item per uid
    dynamodb.create_table(
        TableName="subhub-customer-cache",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table for webhook dedup and audit trail
    dynamodb.create_table(
        TableName="subhub-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def seeded_accounts_table(mock_dynamodb):
    """Accounts table with one account, linked to a Stripe customer, with two devices."""
    table = mock_dynamodb.Table("subhub-accounts")
    table.put_item(
        Item={
            "pk": "uid_123",
            "sk": "ACCOUNT",
            "email": "user@example.com",
            "emails": [
                {"email": "user@example.com", "isPrimary": True},
                {"email": "alt@example.com", "isPrimary": False},
            ],
            "locale": "en-US",
            "stripe_customer_id": "cus_123",
        }
    )
    table.put_item(Item={"pk": "uid_123", "sk": "DEVICE#device_a"})
    table.put_item(Item={"pk": "uid_123", "sk": "DEVICE#device_b"})
    return table


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


# =============================================================================
# Webhook pipeline fakes
# =============================================================================


class FakePaymentsBackend:
    """In-memory payments backend: resources by id plus a plan catalog."""

    def __init__(self):
        self.plans = []
        self.resources = {}

    async def verify_webhook_signature(self, payload, signature, secret):
        from shared.errors import InvalidSignatureError

        if signature != VALID_SIGNATURE:
            raise InvalidSignatureError()
        return json.loads(payload)

    async def fetch_plan_catalog(self):
        return list(self.plans)

    async def fetch_customer(self, customer_id):
        return self.resources.get(customer_id)

    async def expand_resource(self, resource, resource_type):
        if resource is None:
            return None
        if isinstance(resource, Mapping):
            return dict(resource)
        return self.resources.get(resource)

    async def find_plan_by_id(self, plan_id):
        for plan in self.plans:
            if plan["plan_id"] == plan_id:
                return plan
        return None


@pytest.fixture
def account():
    return {
        "uid": "uid_123",
        "email": "user@example.com",
        "emails": [{"email": "user@example.com", "isPrimary": True}],
        "locale": "en-US",
    }


@pytest.fixture
def plan_catalog():
    return [
        {
            "plan_id": "plan_basic",
            "plan_name": "Basic Monthly",
            "product_id": "prod_vpn",
            "product_name": "VPN",
            "interval": "month",
            "interval_count": 1,
            "amount": 500,
            "currency": "usd",
            "plan_metadata": {"capabilities:client1": "c,  d"},
            "product_metadata": {"capabilities": "a, b"},
        },
        {
            "plan_id": "plan_pro",
            "plan_name": "Pro Monthly",
            "product_id": "prod_vpn",
            "product_name": "VPN",
            "interval": "month",
            "interval_count": 1,
            "amount": 1000,
            "currency": "usd",
            "plan_metadata": {},
            "product_metadata": {"capabilities": "a, b"},
        },
    ]


@pytest.fixture
def payments(plan_catalog):
    backend = FakePaymentsBackend()
    backend.plans = plan_catalog
    backend.resources["cus_123"] = {
        "id": "cus_123",
        "object": "customer",
        "email": "user@example.com",
        "metadata": {"userid": "uid_123"},
        "subscriptions": {"data": []},
    }
    return backend


@pytest.fixture
def collaborators(payments, account):
    """Collaborators with the in-memory payments backend and AsyncMock services."""
    from billing.collaborators import UNRESOLVED, Collaborators

    accounts = AsyncMock()
    accounts.lookup_account.return_value = UNRESOLVED
    accounts.fetch_account_by_uid.return_value = account
    accounts.fetch_account_by_email.return_value = account
    accounts.list_devices.return_value = ["device_a"]

    return Collaborators(
        payments=payments,
        accounts=accounts,
        cache=AsyncMock(),
        push=AsyncMock(),
        mailer=AsyncMock(),
        status=AsyncMock(),
        timeout=1.0,
    )


@pytest.fixture
def make_event():
    """Factory for normalized StripeEvents."""
    from billing.events import normalize_event

    def _make(event_type, obj, previous_attributes=None, event_id="evt_123", created=1700000000):
        data = {"object": obj}
        if previous_attributes is not None:
            data["previous_attributes"] = previous_attributes
        return normalize_event(
            {"id": event_id, "type": event_type, "created": created, "livemode": False, "data": data}
        )

    return _make


@pytest.fixture
def make_request():
    """Factory for signed WebhookRequests wrapping a raw event."""
    from billing.events import WebhookRequest

    def _make(raw_event, signature=VALID_SIGNATURE):
        headers = {"stripe-signature": signature} if signature else {}
        return WebhookRequest(payload=json.dumps(raw_event), headers=headers, request_id="req_123")

    return _make


@pytest.fixture
def subscription():
    """An active subscription on plan_basic owned by cus_123."""
    return {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_end": 1702592000,
        "latest_invoice": "in_123",
        "items": {
            "data": [
                {
                    "id": "si_123",
                    "plan": {
                        "id": "plan_basic",
                        "product": "prod_vpn",
                        "amount": 500,
                        "interval": "month",
                        "interval_count": 1,
                    },
                }
            ]
        },
        "metadata": {},
    }


@pytest.fixture
def invoice():
    return {
        "id": "in_123",
        "object": "invoice",
        "customer": "cus_123",
        "subscription": "sub_123",
        "number": "ABC-0001",
        "total": 500,
        "currency": "usd",
        "created": 1700000000,
        "billing_reason": "subscription_cycle",
        "lines": {
            "data": [
                {
                    "plan": {"id": "plan_basic", "product": "prod_vpn"},
                    "period": {"start": 1700000000, "end": 1702592000},
                }
            ]
        },
    }
