"""SubscriptionEventRecord model for webhook deduplication and audit."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionEventRecord(Base):
    """One row per subscription webhook event seen for a store."""

    __tablename__ = "subscription_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    dedup_key = Column(String, nullable=False, unique=True)
    capped_amount_cents = Column(Integer, nullable=True)
    outcome = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    received_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )
