"""Commerce platform billing client (Admin GraphQL API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from config import require_admin_access_token, settings

logger = logging.getLogger(__name__)


USAGE_RECORD_CREATE = """
mutation CreateUsageRecord(
  $subscriptionLineItemId: ID!
  $description: String!
  $price: MoneyInput!
  $idempotencyKey: String!
) {
  appUsageRecordCreate(
    subscriptionLineItemId: $subscriptionLineItemId
    description: $description
    price: $price
    idempotencyKey: $idempotencyKey
  ) {
    appUsageRecord { id }
    userErrors { field message }
  }
}
"""

ONE_TIME_PURCHASE_CREATE = """
mutation CreateOneTimeCharge($name: String!, $price: MoneyInput!, $returnUrl: URL!, $test: Boolean) {
  appPurchaseOneTimeCreate(name: $name, price: $price, returnUrl: $returnUrl, test: $test) {
    confirmationUrl
    appPurchaseOneTime { id status }
    userErrors { field message }
  }
}
"""


class BillingPlatformError(RuntimeError):
    """Raised when the billing platform refuses or cannot process a charge."""

    def __init__(self, message: str, *, code: str = "BILLING_PLATFORM_ERROR"):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class UsageChargeReceipt:
    id: Optional[str]
    amount_cents: int


@dataclass(frozen=True)
class OneTimeChargeReceipt:
    id: str
    amount_cents: int
    confirmation_url: Optional[str]


def cents_to_money(amount_cents: int) -> str:
    return str((Decimal(int(amount_cents)) / Decimal(100)).quantize(Decimal("0.01")))


class ShopifyBillingClient:
    """Thin Admin GraphQL client for usage records and one-time purchases."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: Optional[str] = None,
        test: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.test = settings.BILLING_TEST_MODE if test is None else bool(test)
        self.timeout = float(timeout or settings.BILLING_HTTP_TIMEOUT_SECONDS)
        self.transport = transport

    @property
    def graphql_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.graphql_url,
                    json={"query": query, "variables": variables},
                    headers=headers,
                )
        except httpx.RequestError as exc:
            raise BillingPlatformError(f"Error contacting billing platform: {exc}", code="NETWORK_ERROR") from exc

        request_id = response.headers.get("X-Request-Id")
        if response.status_code >= 400:
            raise BillingPlatformError(
                f"Billing platform HTTP {response.status_code} (X-Request-Id: {request_id})",
                code="HTTP_ERROR",
            )
        payload = response.json()
        if payload.get("errors"):
            raise BillingPlatformError(
                f"Billing platform GraphQL error: {payload['errors']} (X-Request-Id: {request_id})",
                code="GRAPHQL_ERROR",
            )
        return payload.get("data") or {}

    async def create_usage_charge(
        self,
        subscription_line_item_id: str,
        amount_cents: int,
        description: str,
        idempotency_key: str,
    ) -> UsageChargeReceipt:
        data = await self._graphql(
            USAGE_RECORD_CREATE,
            {
                "subscriptionLineItemId": subscription_line_item_id,
                "description": description,
                "price": {"amount": cents_to_money(amount_cents), "currencyCode": "USD"},
                "idempotencyKey": idempotency_key,
            },
        )
        result = data.get("appUsageRecordCreate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = ", ".join(str(item.get("message", "")) for item in user_errors)
            lowered = messages.lower()
            if "capped amount" in lowered or "exceeded" in lowered:
                raise BillingPlatformError(messages, code="CAPPED_AMOUNT_EXCEEDED")
            raise BillingPlatformError(f"Usage record creation failed: {messages}", code="USER_ERROR")

        record = result.get("appUsageRecord") or {}
        logger.info(
            "Usage record created shop=%s line_item=%s amount_cents=%s key=%s",
            self.shop_domain,
            subscription_line_item_id,
            amount_cents,
            idempotency_key,
        )
        return UsageChargeReceipt(id=record.get("id"), amount_cents=int(amount_cents))

    async def create_one_time_charge(self, name: str, amount_cents: int, return_url: str) -> OneTimeChargeReceipt:
        data = await self._graphql(
            ONE_TIME_PURCHASE_CREATE,
            {
                "name": name,
                "price": {"amount": cents_to_money(amount_cents), "currencyCode": "USD"},
                "returnUrl": return_url,
                "test": self.test,
            },
        )
        result = data.get("appPurchaseOneTimeCreate")
        if not result:
            raise BillingPlatformError("Unexpected response from appPurchaseOneTimeCreate - no data returned")
        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = ", ".join(str(item.get("message", "")) for item in user_errors)
            raise BillingPlatformError(f"One-time charge creation failed: {messages}", code="USER_ERROR")
        purchase = result.get("appPurchaseOneTime") or {}
        if not purchase.get("id"):
            raise BillingPlatformError("Unexpected response from appPurchaseOneTimeCreate - missing id")
        return OneTimeChargeReceipt(
            id=str(purchase["id"]),
            amount_cents=int(amount_cents),
            confirmation_url=result.get("confirmationUrl"),
        )


def build_billing_client(store_id: str) -> ShopifyBillingClient:
    """Billing client for a store using the configured Admin API token."""
    return ShopifyBillingClient(store_id, require_admin_access_token())
