"""UTC day keys (YYYY-MM-DD) and timestamp normalization."""

import math
import re
from datetime import UTC, date, datetime, timedelta

MAX_DAY_RANGE = 400

# Epoch values below this are seconds, at or above are milliseconds
_MS_EPOCH_THRESHOLD = 1_000_000_000_000

_DAY_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class InvalidDayKeyError(ValueError):
    """Raised when a day key is not a real YYYY-MM-DD calendar date."""

    def __init__(self, day_key: object, label: str = "day key") -> None:
        self.day_key = day_key
        super().__init__(f"Invalid {label} format: {day_key}")


class DayRangeTooLargeError(ValueError):
    """Raised when an inclusive day range exceeds MAX_DAY_RANGE days."""

    def __init__(self, day_count: int, max_days: int = MAX_DAY_RANGE) -> None:
        self.day_count = day_count
        self.max_days = max_days
        super().__init__(f"Date range too large: {day_count} days (max {max_days})")


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_utc_day_key(value: datetime) -> str:
    """Format a datetime as its UTC calendar day. Naive datetimes are UTC."""
    if not isinstance(value, datetime):
        raise InvalidDayKeyError(value, "datetime")
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%d")


def is_valid_day_key(day_key: object) -> bool:
    if not isinstance(day_key, str) or not _DAY_KEY_PATTERN.match(day_key):
        return False
    try:
        date.fromisoformat(day_key)
    except ValueError:
        return False
    return True


def validate_day_key(day_key: object) -> str | None:
    return day_key if is_valid_day_key(day_key) else None  # type: ignore[return-value]


def add_days_utc(day_key: str, days: int) -> str:
    return (date.fromisoformat(day_key) + timedelta(days=days)).isoformat()


def get_day_keys_inclusive(start_day: str, end_day: str) -> list[str]:
    """Every day key from start_day to end_day, both included.

    Raises:
        InvalidDayKeyError: Either key is malformed or start is after end.
        DayRangeTooLargeError: The range covers more than MAX_DAY_RANGE days.
    """
    if not is_valid_day_key(start_day):
        raise InvalidDayKeyError(start_day, "start day key")
    if not is_valid_day_key(end_day):
        raise InvalidDayKeyError(end_day, "end day key")

    start = date.fromisoformat(start_day)
    end = date.fromisoformat(end_day)
    day_count = (end - start).days + 1
    if day_count < 1:
        raise InvalidDayKeyError(
            f"{start_day}..{end_day}", "date range (start is after end)"
        )
    if day_count > MAX_DAY_RANGE:
        raise DayRangeTooLargeError(day_count)

    return [(start + timedelta(days=i)).isoformat() for i in range(day_count)]


def normalize_timestamp_to_ms(value: object) -> float | None:
    """Coerce seconds, milliseconds or ISO-8601 text to epoch milliseconds."""
    if isinstance(value, bool):
        return None
    number: float | None = None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            number = None

    if number is not None and math.isfinite(number):
        return number * 1000 if number < _MS_EPOCH_THRESHOLD else number

    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp() * 1000

    return None
