"""Tests for StripeGateway call wrappers: read retries, mutation fail-fast, pagination."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from billing_recon.core.exceptions import ProcessorRejected, ProcessorUnavailable
from billing_recon.services.stripe_gateway import StripeGateway, build_stripe_client

pytestmark = pytest.mark.unit


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def gateway(client) -> StripeGateway:
    return StripeGateway(client, read_attempts=2)


async def test_read_retries_rate_limit(gateway, client):
    client.v1.subscriptions.retrieve_async = AsyncMock(
        side_effect=[stripe.RateLimitError("Too many requests"), {"id": "sub_1", "status": "active"}]
    )

    subscription = await gateway.retrieve_subscription("sub_1")

    assert subscription == {"id": "sub_1", "status": "active"}
    assert client.v1.subscriptions.retrieve_async.await_count == 2


async def test_read_gives_up_after_attempts(gateway, client):
    client.v1.subscriptions.retrieve_async = AsyncMock(side_effect=stripe.APIError("boom"))

    with pytest.raises(ProcessorUnavailable) as exc_info:
        await gateway.retrieve_subscription("sub_1")

    assert exc_info.value.operation == "retrieve_subscription"
    assert client.v1.subscriptions.retrieve_async.await_count == 2


async def test_connection_error_is_not_retried(gateway, client):
    client.v1.payment_intents.retrieve_async = AsyncMock(side_effect=stripe.APIConnectionError("timed out"))

    with pytest.raises(ProcessorUnavailable):
        await gateway.retrieve_payment_intent("pi_1")

    assert client.v1.payment_intents.retrieve_async.await_count == 1


async def test_missing_resource_is_none(gateway, client):
    client.v1.subscriptions.retrieve_async = AsyncMock(
        side_effect=stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")
    )

    assert await gateway.retrieve_subscription("sub_gone") is None


async def test_other_invalid_request_is_rejected(gateway, client):
    client.v1.subscriptions.retrieve_async = AsyncMock(
        side_effect=stripe.InvalidRequestError("Bad parameter", "id", code="parameter_invalid")
    )

    with pytest.raises(ProcessorRejected) as exc_info:
        await gateway.retrieve_subscription("sub_1")

    assert exc_info.value.code == "parameter_invalid"
    assert exc_info.value.http_status == 502
    assert client.v1.subscriptions.retrieve_async.await_count == 1


async def test_checkout_refused_is_rejected(gateway, client):
    client.v1.checkout.sessions.create_async = AsyncMock(
        side_effect=stripe.InvalidRequestError(
            "Amount must be at least 50 cents", "line_items", code="amount_too_small"
        )
    )

    with pytest.raises(ProcessorRejected) as exc_info:
        await gateway.create_payment_checkout(
            customer_id="cus_1",
            amount=30,
            currency="usd",
            product_name="Plan upgrade",
            metadata={},
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

    assert exc_info.value.operation == "create_checkout_session"
    assert exc_info.value.code == "amount_too_small"


async def test_authentication_error_is_rejected(gateway, client):
    client.v1.subscriptions.update_async = AsyncMock(side_effect=stripe.AuthenticationError("Invalid API key"))

    with pytest.raises(ProcessorRejected):
        await gateway.set_cancel_at_period_end("sub_1")


async def test_mutation_runs_once(gateway, client):
    client.v1.subscriptions.update_async = AsyncMock(side_effect=stripe.RateLimitError("Too many requests"))

    with pytest.raises(ProcessorUnavailable) as exc_info:
        await gateway.swap_subscription_price(
            subscription_id="sub_1",
            item_id="si_1",
            price_id="price_2",
            proration_behavior="always_invoice",
            metadata={"planType": "cca_monthly_37"},
        )

    assert exc_info.value.operation == "swap_subscription_price"
    assert client.v1.subscriptions.update_async.await_count == 1


async def test_swap_sends_item_price_and_proration(gateway, client):
    client.v1.subscriptions.update_async = AsyncMock(return_value={"id": "sub_1"})

    await gateway.swap_subscription_price(
        subscription_id="sub_1",
        item_id="si_1",
        price_id="price_2",
        proration_behavior="none",
        metadata={"planType": "cca_membership_87"},
    )

    args, kwargs = client.v1.subscriptions.update_async.call_args
    assert args == ("sub_1",)
    assert kwargs["params"] == {
        "items": [{"id": "si_1", "price": "price_2"}],
        "proration_behavior": "none",
        "metadata": {"planType": "cca_membership_87"},
    }


async def test_pagination_follows_has_more(gateway, client):
    client.v1.customers.list_async = AsyncMock(
        side_effect=[
            {"data": [{"id": "cus_1"}, {"id": "cus_2"}], "has_more": True},
            {"data": [{"id": "cus_3"}], "has_more": False},
        ]
    )

    customers = [c async for c in gateway.iter_customers_by_email("a@example.com")]

    assert [c["id"] for c in customers] == ["cus_1", "cus_2", "cus_3"]
    second_call = client.v1.customers.list_async.call_args_list[1]
    assert second_call.kwargs["params"]["starting_after"] == "cus_2"
    assert second_call.kwargs["params"]["email"] == "a@example.com"


async def test_connected_account_events_pass_stripe_account(gateway, client):
    client.v1.events.list_async = AsyncMock(return_value={"data": [], "has_more": False})

    events = [e async for e in gateway.iter_events("checkout.session.completed", 1700000000, "acct_1")]

    assert events == []
    kwargs = client.v1.events.list_async.call_args.kwargs
    assert kwargs["options"] == {"stripe_account": "acct_1"}
    assert kwargs["params"]["created"] == {"gte": 1700000000}


async def test_find_price_returns_first_match(gateway, client):
    client.v1.prices.list_async = AsyncMock(return_value={"data": [{"id": "price_1"}]})

    assert await gateway.find_price_by_lookup_key("cca_monthly_37_monthly") == {"id": "price_1"}


async def test_create_price_uses_idempotency_key(gateway, client):
    client.v1.prices.create_async = AsyncMock(return_value={"id": "price_new"})

    await gateway.create_price(
        product_id="cca_membership",
        lookup_key="cca_monthly_37_monthly",
        unit_amount=3700,
        currency="usd",
        plan_type="cca_monthly_37",
    )

    options = client.v1.prices.create_async.call_args.kwargs["options"]
    assert options == {"idempotency_key": "price-create:cca_monthly_37_monthly:3700:usd"}


def test_build_stripe_client(settings):
    client = build_stripe_client(settings)

    assert isinstance(client, stripe.StripeClient)
