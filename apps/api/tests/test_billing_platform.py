import json

import httpx
import pytest

from services.billing_platform import BillingPlatformError, ShopifyBillingClient, cents_to_money


SHOP = "demo.myshopify.com"


def _client(handler):
    return ShopifyBillingClient(
        SHOP,
        "shpat_test_token",
        api_version="2025-07",
        test=True,
        transport=httpx.MockTransport(handler),
    )


def test_cents_to_money():
    assert cents_to_money(5000) == "50.00"
    assert cents_to_money(15) == "0.15"
    assert cents_to_money(0) == "0.00"


@pytest.mark.asyncio
async def test_usage_charge_posts_mutation_with_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["token"] = request.headers.get("X-Shopify-Access-Token")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "appUsageRecordCreate": {
                        "appUsageRecord": {"id": "gid://shopify/AppUsageRecord/77"},
                        "userErrors": [],
                    }
                }
            },
        )

    receipt = await _client(handler).create_usage_charge(
        "gid://shopify/AppSubscriptionLineItem/5",
        20,
        "1 generation credit(s) over plan",
        f"{SHOP}:gen-1",
    )

    assert receipt.id == "gid://shopify/AppUsageRecord/77"
    assert receipt.amount_cents == 20
    assert seen["url"] == f"https://{SHOP}/admin/api/2025-07/graphql.json"
    assert seen["token"] == "shpat_test_token"
    variables = seen["body"]["variables"]
    assert variables["idempotencyKey"] == f"{SHOP}:gen-1"
    assert variables["price"] == {"amount": "0.20", "currencyCode": "USD"}
    assert variables["subscriptionLineItemId"] == "gid://shopify/AppSubscriptionLineItem/5"


@pytest.mark.asyncio
async def test_capped_amount_user_error_has_dedicated_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "appUsageRecordCreate": {
                        "appUsageRecord": None,
                        "userErrors": [{"field": ["price"], "message": "Total price exceeded the capped amount"}],
                    }
                }
            },
        )

    with pytest.raises(BillingPlatformError) as exc_info:
        await _client(handler).create_usage_charge("line", 20, "overage", "key")
    assert exc_info.value.code == "CAPPED_AMOUNT_EXCEEDED"


@pytest.mark.asyncio
async def test_other_user_errors_are_generic():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": {"appUsageRecordCreate": {"userErrors": [{"message": "Line item not found"}]}}},
        )

    with pytest.raises(BillingPlatformError) as exc_info:
        await _client(handler).create_usage_charge("line", 20, "overage", "key")
    assert exc_info.value.code == "USER_ERROR"


@pytest.mark.asyncio
async def test_http_and_graphql_failures():
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"errors": "Internal"})

    def graphql_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BillingPlatformError) as http_exc:
        await _client(server_error).create_usage_charge("line", 20, "overage", "key")
    with pytest.raises(BillingPlatformError) as graphql_exc:
        await _client(graphql_error).create_usage_charge("line", 20, "overage", "key")
    with pytest.raises(BillingPlatformError) as network_exc:
        await _client(unreachable).create_one_time_charge("Overage", 500, "https://app/billing")

    assert http_exc.value.code == "HTTP_ERROR"
    assert graphql_exc.value.code == "GRAPHQL_ERROR"
    assert network_exc.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_one_time_charge_returns_confirmation_url():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["variables"] = json.loads(request.content)["variables"]
        return httpx.Response(
            200,
            json={
                "data": {
                    "appPurchaseOneTimeCreate": {
                        "confirmationUrl": f"https://{SHOP}/admin/charges/9/confirm",
                        "appPurchaseOneTime": {"id": "gid://shopify/AppPurchaseOneTime/9", "status": "PENDING"},
                        "userErrors": [],
                    }
                }
            },
        )

    receipt = await _client(handler).create_one_time_charge("100 Credits", 1800, "https://app/billing")

    assert receipt.id == "gid://shopify/AppPurchaseOneTime/9"
    assert receipt.confirmation_url == f"https://{SHOP}/admin/charges/9/confirm"
    assert seen["variables"]["test"] is True
    assert seen["variables"]["price"]["amount"] == "18.00"


@pytest.mark.asyncio
async def test_one_time_charge_without_id_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"appPurchaseOneTimeCreate": {"userErrors": []}}})

    with pytest.raises(BillingPlatformError):
        await _client(handler).create_one_time_charge("100 Credits", 1800, "https://app/billing")
