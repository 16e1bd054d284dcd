import json
import logging
from urllib import error, request
from urllib.parse import urlparse

from referral_pricing.core.constants import (
    EXECUTION_CANCELLED,
    EXECUTION_FAILED,
    EXECUTION_SUCCESS,
    STATUS_FAILED,
)
from referral_pricing.core.exceptions import StorageError

logger = logging.getLogger(__name__)

_ALLOWED_HTTP_SCHEMES = {"http", "https"}


def validate_webhook_url(webhook_url):
    parsed = urlparse(webhook_url)
    scheme = parsed.scheme.lower()
    if scheme not in _ALLOWED_HTTP_SCHEMES or not parsed.netloc:
        raise RuntimeError("NOTIFY_WEBHOOK_URL must be an absolute HTTP(S) URL")
    return webhook_url


def is_terminal_outcome(row):
    """Failed rows are only worth telling anyone about once retries are exhausted."""
    if row.execution_status in (EXECUTION_SUCCESS, EXECUTION_CANCELLED):
        return True
    if row.execution_status == EXECUTION_FAILED:
        return (row.execution_details or {}).get("final_status") == STATUS_FAILED
    return False


def build_message(row):
    details = row.execution_details or {}
    if row.execution_status == EXECUTION_SUCCESS:
        text = (
            "Thanks to your referral (order {}), your subscription price drops "
            "from {} to {}. You save {} on every renewal."
        ).format(row.referred_order_id, row.price_before, row.price_after, row.reduction_amount)
    elif row.execution_status == EXECUTION_CANCELLED:
        text = "The referral reduction for order {} was cancelled: {}.".format(
            row.referred_order_id, details.get("cancellation_reason") or "subscription ended"
        )
    else:
        text = "The referral reduction for order {} could not be applied: {}.".format(
            row.referred_order_id, details.get("error_message") or "unknown error"
        )
    return {
        "event": "referral_price_change",
        "status": row.execution_status,
        "change_id": details.get("change_id"),
        "history_id": row.id,
        "subscription_id": row.referrer_subscription_id,
        "customer_id": details.get("referrer_customer_id"),
        "referred_order_id": row.referred_order_id,
        "price_before": str(row.price_before),
        "price_after": str(row.price_after),
        "reduction_amount": str(row.reduction_amount),
        "message": text,
    }


def _raise_http_error(exc):
    body = ""
    try:
        body_bytes = exc.read()
        if body_bytes:
            body = body_bytes.decode("utf-8", errors="replace").strip()
    except (OSError, ValueError):
        body = ""

    if body:
        raise RuntimeError("Notification webhook error: HTTP {} {}".format(exc.code, body)) from exc
    raise RuntimeError("Notification webhook error: HTTP {}".format(exc.code)) from exc


def send_webhook(webhook_url, payload, timeout=10):
    webhook_url = validate_webhook_url((webhook_url or "").strip())
    req = request.Request(
        webhook_url,
        data=json.dumps(payload, default=str).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with request.urlopen(req, timeout=timeout) as response:  # nosec B310
            status_code = response.getcode()
            if status_code < 200 or status_code >= 300:
                raise RuntimeError("Notification webhook error: HTTP {}".format(status_code))
    except error.HTTPError as exc:
        _raise_http_error(exc)
    except error.URLError as exc:
        raise RuntimeError("Notification webhook error: {}".format(exc.reason)) from exc


class NotificationService:
    """Delivers customer notices for finished price changes.

    Rows are flagged ``user_notified`` once sent; a failed send leaves the row
    for the next run. Without a webhook nothing is sent and nothing is flagged.
    """

    def __init__(self, store, *, webhook_url=None, batch_size=50, sender=send_webhook):
        self._store = store
        self._webhook_url = (webhook_url or "").strip() or None
        self._batch_size = max(1, int(batch_size))
        self._sender = sender
        if self._webhook_url:
            validate_webhook_url(self._webhook_url)

    @classmethod
    def from_settings(cls, settings, store):
        return cls(store, webhook_url=settings.NOTIFY_WEBHOOK_URL, batch_size=settings.NOTIFY_BATCH_SIZE)

    @property
    def enabled(self):
        return self._webhook_url is not None

    def dispatch_pending(self):
        stats = {"checked": 0, "sent": 0, "skipped": 0, "failed": 0}
        if not self.enabled:
            logger.debug("Notification webhook not configured; skipping dispatch")
            return stats

        try:
            rows = self._store.list_unnotified_history(limit=self._batch_size)
        except StorageError:
            logger.exception("Unable to load history rows for notification")
            stats["failed"] += 1
            return stats

        for row in rows:
            stats["checked"] += 1
            if not is_terminal_outcome(row):
                # Intermediate retry failure; the final outcome gets its own row.
                self._flag(row.id)
                stats["skipped"] += 1
                continue
            try:
                self._sender(self._webhook_url, build_message(row))
            except (RuntimeError, ValueError) as exc:
                logger.warning("Notification for history %s failed: %s", row.id, exc)
                stats["failed"] += 1
                continue
            self._flag(row.id)
            stats["sent"] += 1

        if stats["checked"]:
            logger.info(
                "Notifications dispatched: %d sent, %d skipped, %d failed",
                stats["sent"],
                stats["skipped"],
                stats["failed"],
            )
        return stats

    def send_operator_alert(self, title, context):
        """Alert hook for storage failures; always logs, posts when a webhook exists."""
        logger.error("Operator alert: %s", title, extra={"context": context})
        if not self.enabled:
            return False
        try:
            self._sender(self._webhook_url, {"event": "operator_alert", "title": title, "context": context})
        except (RuntimeError, ValueError) as exc:
            logger.warning("Operator alert delivery failed: %s", exc)
            return False
        return True

    def _flag(self, history_id):
        try:
            self._store.mark_history_notified(history_id)
        except StorageError:
            logger.exception("Unable to flag history %s as notified", history_id)


__all__ = [
    "NotificationService",
    "build_message",
    "is_terminal_outcome",
    "send_webhook",
    "validate_webhook_url",
]
