"""Tests for the billing redirect client."""

import json

import httpx
import pytest

from webai_chat.services.billing import PRICING_PLANS, BillingClient, BillingError

from conftest import make_principal


def billing_for(handler):
    return BillingClient(
        "https://billing.test/api/",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_checkout_posts_contract_body():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"url": "https://checkout.stripe.test/s/1"})

    principal = make_principal()
    url = await billing_for(handler).create_checkout_url("price_pro_monthly", principal)

    assert url == "https://checkout.stripe.test/s/1"
    assert seen["url"] == "https://billing.test/api/create-checkout-session"
    assert seen["body"] == {
        "priceId": "price_pro_monthly",
        "userId": principal.id,
        "email": principal.email,
        "customerId": None,
    }


@pytest.mark.asyncio
async def test_portal_posts_customer_id():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"url": "https://billing.stripe.test/p/1"})

    url = await billing_for(handler).create_portal_url("cus_123")

    assert url == "https://billing.stripe.test/p/1"
    assert seen["url"] == "https://billing.test/api/create-portal-session"
    assert seen["body"] == {"customerId": "cus_123"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json={"error": "no url"}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_unusable_response_raises(response):
    with pytest.raises(BillingError):
        await billing_for(lambda request: response).create_portal_url("cus_123")


def test_paid_plans_carry_price_ids():
    paid = [plan for plan in PRICING_PLANS if plan.id != "free"]
    assert paid and all(plan.price_id for plan in paid)
    assert PRICING_PLANS[0].price_id is None
