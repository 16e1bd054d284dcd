from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from referral_pricing.core.constants import (
    ACTION_APPLY_REDUCTION,
    DEFAULT_RETRY_DELAYS,
    EXECUTION_STATUSES,
    PRICING_ACTIONS,
    STATUS_APPLIED,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
)
from referral_pricing.core.dates import as_utc, utc_now
from referral_pricing.core.exceptions import AlreadyScheduledError, InvalidInputError, StorageError
from referral_pricing.models.price_change_history import PriceChangeHistory
from referral_pricing.models.scheduled_price_change import ScheduledPriceChange

logger = logging.getLogger(__name__)

_MONEY_FIELDS = (
    "original_price",
    "new_price",
    "reduction_amount",
    "reduction_percentage",
    "referred_contribution",
)


def _truncate_error(value, limit: int = 1000) -> str:
    if value is None:
        return ""
    return str(value)[:limit]


@dataclass
class NewPriceChange:
    referrer_subscription_id: int
    referred_order_id: int
    original_price: Decimal
    new_price: Decimal
    reduction_amount: Decimal
    reduction_percentage: Decimal
    referred_contribution: Decimal
    scheduled_date: datetime
    action: str = ACTION_APPLY_REDUCTION
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if self.action not in PRICING_ACTIONS:
            raise InvalidInputError("Unknown pricing action: {}".format(self.action))
        for name in _MONEY_FIELDS:
            value = getattr(self, name)
            if value is None or Decimal(value) < 0:
                raise InvalidInputError("{} must be a non-negative amount".format(name))
        if self.scheduled_date is None:
            raise InvalidInputError("scheduled_date is required")


@dataclass
class NewHistoryRecord:
    referrer_subscription_id: int
    referred_order_id: int
    action: str
    price_before: Decimal
    price_after: Decimal
    reduction_amount: Decimal
    execution_status: str
    execution_details: dict[str, Any] = field(default_factory=dict)
    user_notified: bool = False


class ScheduleStore:
    """Durable schedule entries and their append-only history.

    Each method runs in its own short transaction. Status transitions are
    conditional updates on ``status = 'pending'``; a transition that matches
    no row was handled by a concurrent caller and returns a falsy value.
    """

    def __init__(
        self,
        session_factory=None,
        *,
        max_attempts: int = 3,
        retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
        history_limit: int = 100,
    ) -> None:
        if session_factory is None:
            from referral_pricing.database.session import SessionLocal

            session_factory = SessionLocal
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self.max_attempts = int(max_attempts)
        self.retry_delays = tuple(int(value) for value in retry_delays) or DEFAULT_RETRY_DELAYS
        self.history_limit = int(history_limit)

    @property
    def session_factory(self):
        return self._session_factory

    @classmethod
    def from_settings(cls, settings, session_factory=None) -> "ScheduleStore":
        return cls(
            session_factory,
            max_attempts=settings.PRICING_MAX_ATTEMPTS,
            retry_delays=settings.PRICING_RETRY_DELAYS,
            history_limit=settings.PRICING_HISTORY_LIMIT,
        )

    # ------------------------------------------------------------------
    # Schedule entries
    # ------------------------------------------------------------------

    def create_pending(self, entry: NewPriceChange) -> int:
        entry.validate()
        now = utc_now()
        db = self._session_factory()
        try:
            row = ScheduledPriceChange(
                referrer_subscription_id=entry.referrer_subscription_id,
                referred_order_id=entry.referred_order_id,
                action=entry.action,
                original_price=entry.original_price,
                new_price=entry.new_price,
                reduction_amount=entry.reduction_amount,
                reduction_percentage=entry.reduction_percentage,
                referred_contribution=entry.referred_contribution,
                scheduled_date=entry.scheduled_date,
                status=STATUS_PENDING,
                retry_count=0,
                meta=dict(entry.metadata),
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            existing_id = db.execute(
                select(ScheduledPriceChange.id).where(
                    ScheduledPriceChange.referrer_subscription_id == entry.referrer_subscription_id,
                    ScheduledPriceChange.status == STATUS_PENDING,
                )
            ).scalar_one_or_none()
            raise AlreadyScheduledError(entry.referrer_subscription_id, existing_id) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to store scheduled price change: {}".format(exc)) from exc
        finally:
            db.close()

        logger.info(
            "Price change %s scheduled for subscription %s on %s",
            row.id,
            entry.referrer_subscription_id,
            entry.scheduled_date,
        )
        return row.id

    def get(self, change_id: int) -> Optional[ScheduledPriceChange]:
        db = self._session_factory()
        try:
            return db.get(ScheduledPriceChange, change_id)
        except SQLAlchemyError as exc:
            raise StorageError("Unable to load price change {}: {}".format(change_id, exc)) from exc
        finally:
            db.close()

    def get_pending(self, referrer_subscription_id: int) -> Optional[ScheduledPriceChange]:
        db = self._session_factory()
        try:
            return db.execute(
                select(ScheduledPriceChange)
                .where(
                    ScheduledPriceChange.referrer_subscription_id == referrer_subscription_id,
                    ScheduledPriceChange.status == STATUS_PENDING,
                )
                .order_by(ScheduledPriceChange.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(
                "Unable to load pending change for subscription {}: {}".format(referrer_subscription_id, exc)
            ) from exc
        finally:
            db.close()

    def list_for_subscription(self, referrer_subscription_id: int, status: Optional[str] = None):
        db = self._session_factory()
        try:
            stmt = select(ScheduledPriceChange).where(
                ScheduledPriceChange.referrer_subscription_id == referrer_subscription_id
            )
            if status:
                stmt = stmt.where(ScheduledPriceChange.status == status)
            stmt = stmt.order_by(ScheduledPriceChange.created_at.desc(), ScheduledPriceChange.id.desc())
            return list(db.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            raise StorageError("Unable to list price changes: {}".format(exc)) from exc
        finally:
            db.close()

    def claim(
        self,
        change_id: int,
        owner: str,
        *,
        lease_seconds: int = 30,
        now: Optional[datetime] = None,
    ) -> Optional[ScheduledPriceChange]:
        """Take the short apply lease on a pending entry.

        Returns the refreshed entry, or None when the entry is no longer
        pending or another worker holds an unexpired lease.
        """
        now = now or utc_now()
        db = self._session_factory()
        try:
            result = db.execute(
                update(ScheduledPriceChange)
                .where(
                    ScheduledPriceChange.id == change_id,
                    ScheduledPriceChange.status == STATUS_PENDING,
                    or_(
                        ScheduledPriceChange.lease_expires_at.is_(None),
                        ScheduledPriceChange.lease_expires_at < now,
                    ),
                )
                .values(
                    locked_by=owner,
                    lease_expires_at=now + timedelta(seconds=max(1, int(lease_seconds))),
                    updated_at=ScheduledPriceChange.updated_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return None
            db.commit()
            return db.get(ScheduledPriceChange, change_id, populate_existing=True)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to claim price change {}: {}".format(change_id, exc)) from exc
        finally:
            db.close()

    def release(self, change_id: int, owner: str) -> bool:
        return self._conditional_update(
            change_id,
            owner,
            values={"locked_by": None, "lease_expires_at": None},
            touch=False,
        )

    def mark_applied(self, change_id: int, *, owner: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        applied = self._conditional_update(
            change_id,
            owner,
            values={
                "status": STATUS_APPLIED,
                "applied_date": now,
                "updated_at": now,
                "locked_by": None,
                "lease_expires_at": None,
            },
        )
        if applied:
            logger.info("Price change %s marked as applied", change_id)
        return applied

    def mark_failed(
        self,
        change_id: int,
        error_message: str,
        *,
        permanent: bool = False,
        owner: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ScheduledPriceChange]:
        """Record a failed attempt.

        The entry stays pending until ``retry_count`` reaches ``max_attempts``;
        permanent failures go straight to ``failed``. Returns the updated entry,
        or None when the entry was no longer pending.
        """
        now = now or utc_now()
        db = self._session_factory()
        try:
            current = db.get(ScheduledPriceChange, change_id)
            if current is None or current.status != STATUS_PENDING:
                return None

            retry_count = current.retry_count + 1
            final_status = STATUS_FAILED if permanent or retry_count >= self.max_attempts else STATUS_PENDING
            meta = dict(current.meta or {})
            meta["last_error"] = _truncate_error(error_message)
            meta["last_error_date"] = now.isoformat()
            if permanent:
                meta["permanent_failure"] = True

            stmt = update(ScheduledPriceChange).where(
                ScheduledPriceChange.id == change_id,
                ScheduledPriceChange.status == STATUS_PENDING,
                ScheduledPriceChange.retry_count == current.retry_count,
            )
            if owner is not None:
                stmt = stmt.where(ScheduledPriceChange.locked_by == owner)
            result = db.execute(
                stmt.values(
                    status=final_status,
                    retry_count=retry_count,
                    meta=meta,
                    updated_at=now,
                    locked_by=None,
                    lease_expires_at=None,
                ).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return None
            db.commit()
            db.refresh(current)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to mark price change {} as failed: {}".format(change_id, exc)) from exc
        finally:
            db.close()

        logger.warning(
            "Price change %s failed (attempt %s/%s, status %s): %s",
            change_id,
            retry_count,
            self.max_attempts,
            final_status,
            error_message,
        )
        return current

    def mark_cancelled(self, change_id: int, reason: str, *, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        db = self._session_factory()
        try:
            current = db.get(ScheduledPriceChange, change_id)
            if current is None or current.status != STATUS_PENDING:
                return False
            meta = dict(current.meta or {})
            meta["cancellation_reason"] = reason
            meta["cancelled_at"] = now.isoformat()
            result = db.execute(
                update(ScheduledPriceChange)
                .where(
                    ScheduledPriceChange.id == change_id,
                    ScheduledPriceChange.status == STATUS_PENDING,
                )
                .values(
                    status=STATUS_CANCELLED,
                    meta=meta,
                    updated_at=now,
                    locked_by=None,
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to cancel price change {}: {}".format(change_id, exc)) from exc
        finally:
            db.close()

        logger.info("Price change %s cancelled (%s)", change_id, reason)
        return True

    def retry_delay_for(self, retry_count: int) -> int:
        if retry_count <= 0:
            return 0
        index = min(retry_count, len(self.retry_delays)) - 1
        return self.retry_delays[index]

    def list_retry_candidates(self, now: Optional[datetime] = None) -> list[ScheduledPriceChange]:
        now = now or utc_now()
        db = self._session_factory()
        try:
            rows = db.execute(
                select(ScheduledPriceChange)
                .where(
                    ScheduledPriceChange.status == STATUS_PENDING,
                    ScheduledPriceChange.retry_count > 0,
                    ScheduledPriceChange.retry_count < self.max_attempts,
                )
                .order_by(ScheduledPriceChange.updated_at.asc())
            ).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError("Unable to list retry candidates: {}".format(exc)) from exc
        finally:
            db.close()

        due = []
        for row in rows:
            elapsed = now - as_utc(row.updated_at)
            if elapsed >= timedelta(seconds=self.retry_delay_for(row.retry_count)):
                due.append(row)
        return due

    def list_stale_pending(self, cutoff: datetime) -> list[ScheduledPriceChange]:
        db = self._session_factory()
        try:
            return list(
                db.execute(
                    select(ScheduledPriceChange)
                    .where(
                        ScheduledPriceChange.status == STATUS_PENDING,
                        ScheduledPriceChange.scheduled_date < cutoff,
                    )
                    .order_by(ScheduledPriceChange.scheduled_date.asc())
                ).scalars()
            )
        except SQLAlchemyError as exc:
            raise StorageError("Unable to list stale price changes: {}".format(exc)) from exc
        finally:
            db.close()

    def _conditional_update(self, change_id: int, owner: Optional[str], *, values: dict, touch: bool = True) -> bool:
        db = self._session_factory()
        try:
            stmt = update(ScheduledPriceChange).where(
                ScheduledPriceChange.id == change_id,
                ScheduledPriceChange.status == STATUS_PENDING,
            )
            if owner is not None:
                stmt = stmt.where(ScheduledPriceChange.locked_by == owner)
            if not touch:
                # Keep updated_at as-is: the retry backoff is measured from it.
                values = dict(values, updated_at=ScheduledPriceChange.updated_at)
            result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to update price change {}: {}".format(change_id, exc)) from exc
        finally:
            db.close()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append_history(self, record: NewHistoryRecord) -> int:
        if record.execution_status not in EXECUTION_STATUSES:
            raise InvalidInputError("Unknown execution status: {}".format(record.execution_status))
        db = self._session_factory()
        try:
            row = PriceChangeHistory(
                referrer_subscription_id=record.referrer_subscription_id,
                referred_order_id=record.referred_order_id,
                action=record.action,
                price_before=record.price_before,
                price_after=record.price_after,
                reduction_amount=record.reduction_amount,
                execution_status=record.execution_status,
                execution_details=dict(record.execution_details),
                user_notified=record.user_notified,
                created_at=utc_now(),
            )
            db.add(row)
            db.commit()
            history_id = row.id
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to store price change history: {}".format(exc)) from exc
        finally:
            db.close()

        self._prune_history(record.referrer_subscription_id)
        return history_id

    def _prune_history(self, referrer_subscription_id: int) -> int:
        if self.history_limit <= 0:
            return 0
        db = self._session_factory()
        try:
            count = db.execute(
                select(func.count(PriceChangeHistory.id)).where(
                    PriceChangeHistory.referrer_subscription_id == referrer_subscription_id
                )
            ).scalar_one()
            excess = count - self.history_limit
            if excess <= 0:
                return 0
            stale_ids = db.execute(
                select(PriceChangeHistory.id)
                .where(PriceChangeHistory.referrer_subscription_id == referrer_subscription_id)
                .order_by(PriceChangeHistory.created_at.asc(), PriceChangeHistory.id.asc())
                .limit(excess)
            ).scalars().all()
            db.execute(delete(PriceChangeHistory).where(PriceChangeHistory.id.in_(stale_ids)))
            db.commit()
            return len(stale_ids)
        except SQLAlchemyError:
            db.rollback()
            logger.warning(
                "History pruning failed for subscription %s", referrer_subscription_id, exc_info=True
            )
            return 0
        finally:
            db.close()

    def list_history(self, referrer_subscription_id: int, limit: int = 20) -> list[PriceChangeHistory]:
        db = self._session_factory()
        try:
            return list(
                db.execute(
                    select(PriceChangeHistory)
                    .where(PriceChangeHistory.referrer_subscription_id == referrer_subscription_id)
                    .order_by(PriceChangeHistory.created_at.desc(), PriceChangeHistory.id.desc())
                    .limit(limit)
                ).scalars()
            )
        except SQLAlchemyError as exc:
            raise StorageError("Unable to load price change history: {}".format(exc)) from exc
        finally:
            db.close()

    def list_unnotified_history(self, limit: int = 50) -> list[PriceChangeHistory]:
        db = self._session_factory()
        try:
            return list(
                db.execute(
                    select(PriceChangeHistory)
                    .where(PriceChangeHistory.user_notified.is_(False))
                    .order_by(PriceChangeHistory.created_at.asc(), PriceChangeHistory.id.asc())
                    .limit(limit)
                ).scalars()
            )
        except SQLAlchemyError as exc:
            raise StorageError("Unable to load unnotified history: {}".format(exc)) from exc
        finally:
            db.close()

    def mark_history_notified(self, history_id: int) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(PriceChangeHistory)
                .where(
                    PriceChangeHistory.id == history_id,
                    PriceChangeHistory.user_notified.is_(False),
                )
                .values(user_notified=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Unable to flag history {} as notified: {}".format(history_id, exc)) from exc
        finally:
            db.close()


__all__ = ["NewHistoryRecord", "NewPriceChange", "ScheduleStore"]
