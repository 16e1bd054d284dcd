from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, Numeric, String, text

from referral_pricing.core.constants import ACTION_APPLY_REDUCTION, STATUS_PENDING
from referral_pricing.database.base import Base


class ScheduledPriceChange(Base):
    __tablename__ = "scheduled_price_changes"

    id = Column(Integer, primary_key=True)
    referrer_subscription_id = Column(BigInteger, nullable=False)
    referred_order_id = Column(BigInteger, nullable=False)
    action = Column(String(30), nullable=False, default=ACTION_APPLY_REDUCTION)

    original_price = Column(Numeric(10, 2), nullable=False)
    new_price = Column(Numeric(10, 2), nullable=False)
    reduction_amount = Column(Numeric(10, 2), nullable=False)
    reduction_percentage = Column(Numeric(5, 2), nullable=False)
    referred_contribution = Column(Numeric(10, 2), nullable=False)

    scheduled_date = Column(DateTime(timezone=True), nullable=False)
    applied_date = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    retry_count = Column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes.
    meta = Column("metadata", JSON, nullable=False, default=dict)

    locked_by = Column(String(120))
    lease_expires_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index(
            "uq_scheduled_price_changes_one_pending",
            "referrer_subscription_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_scheduled_price_changes_subscription", "referrer_subscription_id"),
        Index("idx_scheduled_price_changes_status_retry", "status", "retry_count"),
        Index("idx_scheduled_price_changes_scheduled_date", "scheduled_date"),
    )


__all__ = ["ScheduledPriceChange"]
