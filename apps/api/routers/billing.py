"""Billing and credits router."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, ensure_store_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.annual_overage import bill_accumulated_overage
from services.billing_platform import BillingPlatformError
from services.credits import (
    add_purchased_credits,
    credit,
    debit,
    get_balance,
    get_ledger_store,
    redeem_coupon,
    rollover_if_due,
    start_credit_purchase,
)
from services.ledger.store import LedgerStore
from services.ledger.types import (
    CouponRejected,
    DebitResult,
    InsufficientCredit,
    LedgerError,
    LockTimeout,
    OverageCapReached,
    RemoteChargeFailed,
    SubscriptionInactive,
)
from services.plans import get_credit_package, list_plans, CREDIT_PACKAGES

router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (InsufficientCredit, 402),
    (OverageCapReached, 402),
    (SubscriptionInactive, 403),
    (CouponRejected, 422),
    (RemoteChargeFailed, 503),
    (LockTimeout, 503),
)


def ledger_http_error(exc: LedgerError) -> HTTPException:
    """Map a ledger error to an HTTP error without exposing pool balances."""
    status_code = next((code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)), 400)
    return HTTPException(status_code=status_code, detail={"reason": exc.reason, "message": str(exc)})


class DebitRequest(BaseModel):
    store_id: Optional[str] = None
    amount: int = Field(default=1, ge=1, le=100)
    reference_id: Optional[str] = Field(default=None, max_length=200)


class PoolChargePayload(BaseModel):
    pool: Literal["trial", "coupon", "plan", "purchased"]
    amount: int = Field(ge=0)


class CreditRequest(BaseModel):
    store_id: Optional[str] = None
    debit_id: str
    amount: int = Field(ge=1)
    reference_id: Optional[str] = None
    pools_charged: List[PoolChargePayload] = Field(default_factory=list)
    overage_units: int = Field(default=0, ge=0)
    overage_charged_cents: int = Field(default=0, ge=0)
    overage_mode: Optional[Literal["usage_record", "tracked"]] = None
    overage_period_end: Optional[datetime] = None
    trial_ended: bool = False


class CouponRedeemRequest(BaseModel):
    store_id: Optional[str] = None
    code: str = Field(min_length=1, max_length=64)


class PurchaseRequest(BaseModel):
    store_id: Optional[str] = None
    package_id: str


class PurchaseCompleteRequest(BaseModel):
    store_id: Optional[str] = None
    package_id: str
    charge_id: str = Field(min_length=1)


def _require_package(package_id: str) -> None:
    if get_credit_package(package_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown credit package: {package_id}")


@router.get("/plans")
async def plans_catalog():
    return {
        "plans": [
            {
                "handle": plan.handle,
                "name": plan.name,
                "price": plan.price,
                "interval": plan.interval,
                "trial_days": plan.trial_days,
                "included_credits": plan.included_credits,
                "monthly_equivalent": plan.monthly_equivalent,
                "currency_code": plan.currency_code,
            }
            for plan in list_plans()
        ],
        "packages": [
            {
                "id": package.id,
                "name": package.name,
                "credits": package.credits,
                "price": package.price,
                "recommended": package.recommended,
                "currency_code": package.currency_code,
            }
            for package in CREDIT_PACKAGES.values()
        ],
    }


@router.get("/credits")
async def credits_summary(
    store_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, store_id)
    try:
        return await get_balance(scoped_store_id, store=store)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc


@router.post("/debit")
async def debit_credits(
    request: DebitRequest,
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, request.store_id)
    result = await debit(scoped_store_id, request.amount, reference_id=request.reference_id, store=store)
    try:
        result.raise_for_refusal()
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return result.to_payload()


@router.post("/credit")
async def refund_debit(
    request: CreditRequest,
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, request.store_id)
    payload = request.model_dump()
    payload["store_id"] = scoped_store_id
    debit_result = DebitResult.from_payload(payload)
    try:
        result = await credit(scoped_store_id, debit_result, store=store)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {
        "debit_id": result.debit_id,
        "credits_restored": result.credits_restored,
        "pools_restored": [{"pool": item.pool.value, "amount": item.amount} for item in result.pools_restored],
        "overage_refunded_cents": result.overage_refunded_cents,
        "manual_reconciliation": result.manual_reconciliation,
        "already_refunded": result.already_refunded,
    }


@router.post("/rollover")
async def trigger_rollover(
    store_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, store_id)
    try:
        result = await rollover_if_due(scoped_store_id, store=store)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return {
        "periods_advanced": result.periods_advanced,
        "credits_granted": result.credits_granted,
        "trial_converted": result.trial_converted,
        "anomaly": result.anomaly,
    }


@router.post("/coupons/redeem")
async def redeem_coupon_code(
    request: CouponRedeemRequest,
    _rate_limit: None = Depends(rate_limit("coupon_redeem", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, request.store_id)
    try:
        result = await redeem_coupon(scoped_store_id, request.code, store=store)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return {"ok": True, **result}


@router.post("/purchases")
async def create_purchase(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    scoped_store_id = ensure_store_scope(auth.store_id, request.store_id)
    _require_package(request.package_id)
    try:
        return await start_credit_purchase(scoped_store_id, request.package_id)
    except BillingPlatformError as exc:
        logger.error("Credit purchase for store=%s failed: %s", scoped_store_id, exc)
        raise HTTPException(status_code=503, detail={"reason": exc.code, "message": str(exc)}) from exc
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/purchases/complete")
async def complete_purchase(
    request: PurchaseCompleteRequest,
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, request.store_id)
    _require_package(request.package_id)
    try:
        result = await add_purchased_credits(scoped_store_id, request.package_id, request.charge_id, store=store)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return {"ok": True, **result}


@router.post("/overage/bill")
async def bill_overage(
    store_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_store_id = ensure_store_scope(auth.store_id, store_id)
    try:
        return await bill_accumulated_overage(scoped_store_id, store=store)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
