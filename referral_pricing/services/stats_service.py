from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from referral_pricing.core.constants import (
    SCHEDULE_STATUSES,
    STATUS_APPLIED,
    STATUS_FAILED,
)
from referral_pricing.core.exceptions import StorageError
from referral_pricing.models.scheduled_price_change import ScheduledPriceChange


def _success_rate(applied, failed):
    finished = applied + failed
    if finished == 0:
        return 100.0
    return round(applied / finished * 100, 2)


def pricing_statistics(session_factory=None):
    """Dashboard counters computed from the schedule table."""
    if session_factory is None:
        from referral_pricing.database.session import SessionLocal

        session_factory = SessionLocal

    db = session_factory()
    try:
        rows = db.execute(
            select(ScheduledPriceChange.status, func.count(ScheduledPriceChange.id)).group_by(
                ScheduledPriceChange.status
            )
        ).all()
        savings = db.execute(
            select(func.coalesce(func.sum(ScheduledPriceChange.reduction_amount), 0)).where(
                ScheduledPriceChange.status == STATUS_APPLIED
            )
        ).scalar_one()
    except SQLAlchemyError as exc:
        raise StorageError("Unable to compute pricing statistics: {}".format(exc)) from exc
    finally:
        db.close()

    counts = {status: 0 for status in SCHEDULE_STATUSES}
    for status, count in rows:
        counts[status] = count

    stats = {"total_scheduled": sum(counts.values())}
    stats.update(counts)
    stats["total_savings"] = Decimal(str(savings or 0)).quantize(Decimal("0.01"))
    stats["success_rate"] = _success_rate(counts[STATUS_APPLIED], counts[STATUS_FAILED])
    return stats


__all__ = ["pricing_statistics"]
