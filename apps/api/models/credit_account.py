"""CreditAccount model: one ledger record per installed store."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditAccount(Base):
    """Per-store credit pools, period boundaries and overage counters.

    `version` is bumped on every flush; a concurrent writer holding an older
    version fails with StaleDataError instead of overwriting.
    """

    __tablename__ = "credit_accounts"

    store_id = Column(String, primary_key=True)

    trial_credits = Column(Integer, nullable=False, default=0)
    coupon_credits = Column(Integer, nullable=False, default=0)
    plan_credits = Column(Integer, nullable=False, default=0)
    purchased_credits = Column(Integer, nullable=False, default=0)
    credits_used_this_period = Column(Integer, nullable=False, default=0)

    trial_active = Column(Boolean, nullable=False, default=False)
    trial_started_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    trial_ended_at = Column(DateTime(timezone=True), nullable=True)

    current_period_end = Column(DateTime(timezone=True), nullable=True)
    monthly_period_end = Column(DateTime(timezone=True), nullable=True)
    last_credit_reset_at = Column(DateTime(timezone=True), nullable=True)

    overage_mode = Column(String, nullable=True)
    overage_balance_used_cents = Column(Integer, nullable=False, default=0)
    overage_capped_amount_cents = Column(Integer, nullable=False, default=0)
    overage_rate_cents = Column(Integer, nullable=False, default=0)
    overage_units_this_period = Column(Integer, nullable=False, default=0)
    overage_unbilled_cents = Column(Integer, nullable=False, default=0)
    overage_unbilled_units = Column(Integer, nullable=False, default=0)
    last_overage_billed_at = Column(DateTime(timezone=True), nullable=True)

    plan_handle = Column(String, nullable=True)
    included_credits = Column(Integer, nullable=False, default=0)
    billing_interval = Column(String, nullable=True)
    subscription_status = Column(String, nullable=False, default="PENDING", index=True)
    subscription_id = Column(String, nullable=True, index=True)
    usage_line_item_id = Column(String, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=lambda: datetime.now(timezone.utc))

    __mapper_args__ = {"version_id_col": version}

    entries = relationship("CreditLedger", back_populates="account", cascade="all, delete-orphan")


def new_credit_account(store_id: str, now: Optional[datetime] = None) -> CreditAccount:
    """Build a fresh PENDING account with every counter explicitly zeroed."""
    return CreditAccount(
        store_id=store_id,
        trial_credits=0,
        coupon_credits=0,
        plan_credits=0,
        purchased_credits=0,
        credits_used_this_period=0,
        trial_active=False,
        overage_mode=None,
        overage_balance_used_cents=0,
        overage_capped_amount_cents=0,
        overage_rate_cents=0,
        overage_units_this_period=0,
        overage_unbilled_cents=0,
        overage_unbilled_units=0,
        included_credits=0,
        subscription_status="PENDING",
        created_at=now,
    )
