"""Plan, credit package and coupon catalog."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from config import settings


INTERVAL_MONTHLY = "EVERY_30_DAYS"
INTERVAL_ANNUAL = "ANNUAL"


@dataclass(frozen=True)
class Plan:
    handle: str
    name: str
    price: float
    interval: str
    trial_days: int
    included_credits: int
    currency_code: str = "USD"
    monthly_equivalent: Optional[float] = None


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: float
    currency_code: str = "USD"
    recommended: bool = False


@dataclass(frozen=True)
class CouponCode:
    code: str
    credits: int
    per_store_limit: Optional[int]
    expires_at: Optional[datetime]
    active: bool
    description: str


PLANS: Dict[str, Plan] = {
    "pro-monthly": Plan(
        handle="pro-monthly",
        name="Plan Standard",
        price=23.0,
        interval=INTERVAL_MONTHLY,
        trial_days=15,
        included_credits=100,
    ),
    "pro-annual": Plan(
        handle="pro-annual",
        name="Plan Standard",
        price=180.0,
        interval=INTERVAL_ANNUAL,
        trial_days=15,
        included_credits=100,
        monthly_equivalent=20.0,
    ),
}

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "small": CreditPackage(id="small", name="50 Credits", credits=50, price=10.0),
    "medium": CreditPackage(id="medium", name="100 Credits", credits=100, price=18.0, recommended=True),
    "large": CreditPackage(id="large", name="200 Credits", credits=200, price=32.0),
}

COUPON_CODES: Dict[str, CouponCode] = {
    "WELCOME50": CouponCode(
        code="WELCOME50",
        credits=50,
        per_store_limit=1,
        expires_at=datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
        active=True,
        description="Welcome bonus - 50 free credits",
    ),
    "REFERRAL100": CouponCode(
        code="REFERRAL100",
        credits=100,
        per_store_limit=1,
        expires_at=None,
        active=True,
        description="Referral bonus - 100 free credits",
    ),
    "HOLIDAY25": CouponCode(
        code="HOLIDAY25",
        credits=25,
        per_store_limit=3,
        expires_at=datetime(2024, 12, 25, 23, 59, 59, tzinfo=timezone.utc),
        active=True,
        description="Holiday special - 25 credits (3 uses per store)",
    ),
}


def get_plan(plan_handle: Optional[str]) -> Optional[Plan]:
    if not plan_handle:
        return None
    return PLANS.get(plan_handle.strip().lower())


def find_plan_by_name(name: Optional[str], interval: Optional[str] = None) -> Optional[Plan]:
    """Resolve a plan from the display name the platform echoes back in webhooks."""
    if not name:
        return None
    wanted = name.strip().lower()
    for plan in PLANS.values():
        if plan.name.lower() == wanted and (interval is None or plan.interval == interval):
            return plan
    return None


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def get_credit_package(package_id: str) -> Optional[CreditPackage]:
    return CREDIT_PACKAGES.get((package_id or "").strip().lower())


def get_coupon(code: Optional[str]) -> Optional[CouponCode]:
    if not code:
        return None
    return COUPON_CODES.get(code.strip().upper())


def included_credits_for(plan_handle: Optional[str]) -> int:
    plan = get_plan(plan_handle)
    if plan:
        return plan.included_credits
    return max(int(settings.DEFAULT_INCLUDED_CREDITS), 0)


def trial_days_for(plan_handle: Optional[str]) -> int:
    plan = get_plan(plan_handle)
    return plan.trial_days if plan else 0
