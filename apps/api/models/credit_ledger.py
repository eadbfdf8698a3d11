"""CreditLedger model for per-store credit accounting."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String, ForeignKey("credit_accounts.store_id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False, index=True)
    delta_credits = Column(Integer, nullable=False, default=0)
    pool_deltas = Column(JSON, nullable=True)
    overage_delta_cents = Column(Integer, nullable=False, default=0)
    overage_units = Column(Integer, nullable=False, default=0)
    overage_mode = Column(String, nullable=True)
    overage_period_end = Column(DateTime(timezone=True), nullable=True)
    balance_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    billing_provider = Column(String, nullable=True)
    billing_reference = Column(String, nullable=True, index=True)
    period_key = Column(String, nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    account = relationship("CreditAccount", back_populates="entries")
