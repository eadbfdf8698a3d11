"""Normalise app subscription webhook payloads into SubscriptionEvent values."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from services.ledger.types import BillingInterval, SubscriptionEvent, SubscriptionStatus, UnknownWebhookShape
from services.plans import find_plan_by_name, get_plan

_ID_KEYS = ("admin_graphql_api_id", "id", "subscription_id")
_HANDLE_KEYS = ("plan_handle", "planHandle", "handle")
_USAGE_PRICING = "AppUsagePricing"


def _first(data: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _looks_like_subscription(data: Any) -> bool:
    return isinstance(data, dict) and _first(data, _ID_KEYS) is not None and bool(data.get("status"))


def _first_valid(items: list) -> Dict[str, Any]:
    for item in items:
        if _looks_like_subscription(item):
            return item
    raise UnknownWebhookShape("Subscription list contained no recognisable subscription")


def _unwrap(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, list):
        return _first_valid(payload)
    if not isinstance(payload, dict):
        raise UnknownWebhookShape(f"Unsupported payload type {type(payload).__name__}")
    nested = payload.get("app_subscription")
    if isinstance(nested, dict):
        return nested
    items = payload.get("app_subscriptions")
    if isinstance(items, list):
        return _first_valid(items)
    if _looks_like_subscription(payload):
        return payload
    raise UnknownWebhookShape(f"Unrecognised subscription payload keys: {sorted(payload)[:10]}")


def money_to_cents(value: Any) -> Optional[int]:
    """Accept "50.00", 50, 50.0 or {"amount": "50.0", ...}."""
    if isinstance(value, dict):
        value = value.get("amount")
    if value in (None, ""):
        return None
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise ValueError(f"Money amount {value!r} is not a finite number")
    return int((amount * 100).quantize(Decimal("1")))


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _usage_line_item(data: Dict[str, Any]) -> tuple:
    """Return (line item id, capped amount cents) of the usage pricing line item."""
    line_items = data.get("line_items") or data.get("lineItems") or []
    if not isinstance(line_items, list):
        raise TypeError("line_items must be a list")
    for item in line_items:
        if not isinstance(item, dict):
            continue
        plan = item.get("plan") or {}
        if not isinstance(plan, dict):
            raise TypeError(f"line item plan must be an object, got {type(plan).__name__}")
        pricing = plan.get("pricingDetails") or plan.get("pricing_details") or {}
        if not isinstance(pricing, dict):
            raise TypeError("pricingDetails must be an object")
        if pricing.get("__typename") == _USAGE_PRICING or "cappedAmount" in pricing or "capped_amount" in pricing:
            capped = pricing.get("cappedAmount") or pricing.get("capped_amount")
            return item.get("id"), money_to_cents(capped)
    return None, None


def normalize_subscription_payload(payload: Any) -> SubscriptionEvent:
    """Accept the nested, array and bare payload shapes.

    Raises UnknownWebhookShape for anything else, before any state is touched.
    """
    data = _unwrap(payload)
    try:
        return _build_event(data)
    except (ValueError, TypeError, AttributeError, InvalidOperation) as exc:
        raise UnknownWebhookShape(f"Malformed subscription field: {exc}") from exc


def _build_event(data: Dict[str, Any]) -> SubscriptionEvent:
    subscription_id = _first(data, _ID_KEYS)
    status = SubscriptionStatus.parse(data.get("status"))
    if subscription_id is None or status is None:
        raise UnknownWebhookShape(f"Missing subscription id or unknown status {data.get('status')!r}")

    interval = BillingInterval.parse(data.get("interval"))
    plan = get_plan(_first(data, _HANDLE_KEYS))
    if plan is None:
        plan = find_plan_by_name(data.get("name"), interval.value if interval else None)
    if interval is None and plan is not None:
        interval = BillingInterval.parse(plan.interval)

    line_item_id, line_item_cap = _usage_line_item(data)
    capped_amount = money_to_cents(data.get("capped_amount"))
    if capped_amount is None:
        capped_amount = line_item_cap

    trial_days = data.get("trial_days")
    return SubscriptionEvent(
        subscription_id=str(subscription_id),
        status=status,
        plan_handle=plan.handle if plan else _first(data, _HANDLE_KEYS),
        interval=interval,
        capped_amount_cents=capped_amount,
        trial_days=int(trial_days) if trial_days not in (None, "") else None,
        usage_line_item_id=data.get("usage_line_item_id") or line_item_id,
        current_period_end=parse_timestamp(data.get("current_period_end") or data.get("currentPeriodEnd")),
    )
