from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Index, Integer, Numeric, String

from referral_pricing.database.base import Base


class PriceChangeHistory(Base):
    __tablename__ = "price_change_history"

    id = Column(Integer, primary_key=True)
    referrer_subscription_id = Column(BigInteger, nullable=False)
    referred_order_id = Column(BigInteger, nullable=False)
    action = Column(String(30), nullable=False)

    price_before = Column(Numeric(10, 2), nullable=False)
    price_after = Column(Numeric(10, 2), nullable=False)
    reduction_amount = Column(Numeric(10, 2), nullable=False)

    execution_status = Column(String(20), nullable=False)
    execution_details = Column(JSON, nullable=False, default=dict)
    user_notified = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_price_change_history_subscription", "referrer_subscription_id", "created_at"),
        Index("idx_price_change_history_status", "execution_status"),
        Index("idx_price_change_history_notified", "user_notified"),
    )


__all__ = ["PriceChangeHistory"]
