from datetime import date, datetime, time, timezone


def utc_now():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_datetime(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        value_text = value.strip()
        if not value_text:
            return None
        if value_text.endswith("Z"):
            value_text = value_text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(value_text))
        except ValueError:
            return None
    return None
