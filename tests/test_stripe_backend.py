"""
Tests for the Stripe SDK payments backend.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

stripe = pytest.importorskip("stripe")

from billing.stripe_backend import StripePaymentsBackend, flatten_plan  # noqa: E402
from shared.errors import InvalidSignatureError, MalformedEventError  # noqa: E402


def run_async(coro):
    """Helper to run async functions in sync tests."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


STRIPE_PLAN = {
    "id": "plan_basic",
    "object": "plan",
    "nickname": "Basic Monthly",
    "interval": "month",
    "interval_count": 1,
    "amount": 500,
    "currency": "usd",
    "metadata": {"capabilities:client1": "c,d"},
    "product": {"id": "prod_vpn", "name": "VPN", "metadata": {"capabilities": "a,b"}},
}


def _plan_list(plans):
    listing = MagicMock()
    listing.auto_paging_iter.return_value = iter(plans)
    return listing


class TestVerifyWebhookSignature:
    def test_returns_decoded_event(self):
        event = {"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        with patch("stripe.Webhook.construct_event", return_value=event) as construct:
            result = run_async(StripePaymentsBackend().verify_webhook_signature("{}", "sig", "whsec_test"))

        construct.assert_called_once_with("{}", "sig", "whsec_test")
        assert result == event

    def test_invalid_signature(self):
        error = stripe.SignatureVerificationError("No signatures found", "sig")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(InvalidSignatureError):
                run_async(StripePaymentsBackend().verify_webhook_signature("{}", "sig", "whsec_test"))

    def test_invalid_payload(self):
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            with pytest.raises(MalformedEventError):
                run_async(StripePaymentsBackend().verify_webhook_signature("not json", "sig", "whsec_test"))


class TestPlanCatalog:
    def test_flatten_plan(self):
        entry = flatten_plan(STRIPE_PLAN)
        assert entry == {
            "plan_id": "plan_basic",
            "plan_name": "Basic Monthly",
            "product_id": "prod_vpn",
            "product_name": "VPN",
            "interval": "month",
            "interval_count": 1,
            "amount": 500,
            "currency": "usd",
            "plan_metadata": {"capabilities:client1": "c,d"},
            "product_metadata": {"capabilities": "a,b"},
        }

    def test_flatten_plan_with_unexpanded_product(self):
        plan = dict(STRIPE_PLAN, product="prod_vpn")
        entry = flatten_plan(plan)
        assert entry["product_id"] == "prod_vpn"
        assert entry["product_metadata"] == {}

    def test_catalog_is_cached(self):
        backend = StripePaymentsBackend(plan_cache_ttl=300)
        with patch("stripe.Plan.list", side_effect=lambda **kwargs: _plan_list([STRIPE_PLAN])) as list_plans:
            first = run_async(backend.fetch_plan_catalog())
            second = run_async(backend.fetch_plan_catalog())

        assert first == second
        assert first[0]["plan_id"] == "plan_basic"
        list_plans.assert_called_once_with(active=True, expand=["data.product"], limit=100)

    def test_expired_cache_refetches(self):
        backend = StripePaymentsBackend(plan_cache_ttl=0)
        with patch("stripe.Plan.list", side_effect=lambda **kwargs: _plan_list([STRIPE_PLAN])) as list_plans:
            run_async(backend.fetch_plan_catalog())
            run_async(backend.fetch_plan_catalog())

        assert list_plans.call_count == 2

    def test_find_plan_by_id(self):
        backend = StripePaymentsBackend()
        with patch("stripe.Plan.list", return_value=_plan_list([STRIPE_PLAN])):
            assert run_async(backend.find_plan_by_id("plan_basic"))["product_name"] == "VPN"
            assert run_async(backend.find_plan_by_id("plan_missing")) is None


class TestResources:
    def test_fetch_customer_expands_subscriptions(self):
        customer = {"id": "cus_123", "subscriptions": {"data": []}}
        with patch("stripe.Customer.retrieve", return_value=customer) as retrieve:
            result = run_async(StripePaymentsBackend().fetch_customer("cus_123"))

        retrieve.assert_called_once_with("cus_123", expand=["subscriptions"])
        assert result == customer

    def test_missing_customer(self):
        error = stripe.InvalidRequestError("No such customer: 'cus_x'", "id", code="resource_missing")
        with patch("stripe.Customer.retrieve", side_effect=error):
            assert run_async(StripePaymentsBackend().fetch_customer("cus_x")) is None

    def test_other_stripe_errors_propagate(self):
        error = stripe.APIConnectionError("connection reset")
        with patch("stripe.Customer.retrieve", side_effect=error):
            with pytest.raises(stripe.APIConnectionError):
                run_async(StripePaymentsBackend().fetch_customer("cus_123"))

    def test_expand_passes_through_expanded_objects(self):
        with patch("stripe.Invoice.retrieve") as retrieve:
            result = run_async(StripePaymentsBackend().expand_resource({"id": "in_123"}, "invoices"))

        retrieve.assert_not_called()
        assert result == {"id": "in_123"}

    def test_expand_retrieves_ids(self):
        with patch("stripe.Invoice.retrieve", return_value={"id": "in_123", "total": 500}) as retrieve:
            result = run_async(StripePaymentsBackend().expand_resource("in_123", "invoices"))

        retrieve.assert_called_once_with("in_123")
        assert result["total"] == 500

    def test_expand_none(self):
        assert run_async(StripePaymentsBackend().expand_resource(None, "customers")) is None

    def test_expand_unknown_type(self):
        with pytest.raises(ValueError):
            run_async(StripePaymentsBackend().expand_resource("x_1", "charges"))
