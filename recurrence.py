# recurrence.py
"""
Pure schedule arithmetic: human-readable intervals, cron expressions,
daily time-of-day recurrences, explicit run times and retry backoff.

Every function here takes its reference time as an argument and never reads
the clock, so the same inputs always give the same next run.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from errors import ScheduleParseError

MS_SECOND = 1000
MS_MINUTE = 60 * MS_SECOND
MS_HOUR = 60 * MS_MINUTE
MS_DAY = 24 * MS_HOUR

UNITS_MS = {
    "ms": 1, "msec": 1, "msecs": 1, "millisecond": 1, "milliseconds": 1,
    "s": MS_SECOND, "sec": MS_SECOND, "secs": MS_SECOND, "second": MS_SECOND, "seconds": MS_SECOND,
    "m": MS_MINUTE, "min": MS_MINUTE, "mins": MS_MINUTE, "minute": MS_MINUTE, "minutes": MS_MINUTE,
    "h": MS_HOUR, "hr": MS_HOUR, "hrs": MS_HOUR, "hour": MS_HOUR, "hours": MS_HOUR,
    "d": MS_DAY, "day": MS_DAY, "days": MS_DAY,
    "w": 7 * MS_DAY, "week": 7 * MS_DAY, "weeks": 7 * MS_DAY,
    "month": 30 * MS_DAY, "months": 30 * MS_DAY,
    "y": 365 * MS_DAY, "year": 365 * MS_DAY, "years": 365 * MS_DAY,
}

WORD_NUMBERS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}

BACKOFF_TYPES = ("fixed", "exponential")

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_TIME_OF_DAY_RE = re.compile(
    r"(\d{1,2})(?::(\d{2}))?(?::(\d{2}))?\s*(?:([ap])\.?m\.?)?"
)


# ---------------- Time helpers ----------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str]) -> Optional[ZoneInfo]:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleParseError(f"Unknown timezone: {name!r}") from e


def _localize(base: datetime, tz: Optional[ZoneInfo]) -> datetime:
    base = ensure_utc(base)
    if tz:
        return base.astimezone(tz)
    # naive process-local wall clock, so DST rules apply when converting back
    return base.astimezone().replace(tzinfo=None)


def _wall_clock_to_utc(local: datetime, tz: Optional[ZoneInfo]) -> datetime:
    if local.tzinfo is None and tz:
        local = local.replace(tzinfo=tz)
    return local.astimezone(timezone.utc)


# ---------------- Intervals ----------------
def parse_interval(value) -> int:
    """
    Parse a duration into milliseconds.

    Numbers (and numeric strings) are milliseconds. Strings may combine
    several amounts: "5 minutes", "1.5 hours", "one week", "2h 30m",
    "3 days and 4 hours". A leading "in" or "every" is ignored.
    """
    if isinstance(value, bool) or value is None:
        raise ScheduleParseError(f"Invalid interval: {value!r}")
    if isinstance(value, (int, float)):
        ms = int(value)
    else:
        text = str(value).strip().lower()
        if _NUMBER_RE.fullmatch(text):
            ms = int(float(text))
        else:
            ms = _parse_human_interval(text)
    if ms <= 0:
        raise ScheduleParseError(f"Interval must be positive: {value!r}")
    return ms


def _parse_human_interval(text: str) -> int:
    text = re.sub(r"^(in|every)\s+", "", text)
    text = re.sub(r",|\band\b", " ", text)
    parts = re.findall(r"\d+(?:\.\d+)?|[a-z]+", text)
    if not parts or len(parts) % 2:
        raise ScheduleParseError(f"Invalid interval: {text!r}")

    total = 0.0
    for amount, unit in zip(parts[::2], parts[1::2]):
        if _NUMBER_RE.fullmatch(amount):
            number = float(amount)
        elif amount in WORD_NUMBERS:
            number = WORD_NUMBERS[amount]
        else:
            raise ScheduleParseError(f"Invalid interval amount {amount!r} in {text!r}")
        if unit not in UNITS_MS:
            raise ScheduleParseError(f"Invalid interval unit {unit!r} in {text!r}")
        total += number * UNITS_MS[unit]
    return int(total)


def is_cron(expression) -> bool:
    if not isinstance(expression, str) or len(expression.split()) < 5:
        return False
    return croniter.is_valid(expression)


def validate_repeat_interval(repeat_interval) -> None:
    if is_cron(repeat_interval):
        return
    parse_interval(repeat_interval)


# ---------------- Time of day ----------------
def parse_time_of_day(text: str) -> Tuple[int, int, int]:
    """Parse "1:00 am", "3pm", "13:30", "06:15:30", "noon" or "midnight"."""
    raw = (text or "").strip().lower()
    if raw == "noon":
        return 12, 0, 0
    if raw == "midnight":
        return 0, 0, 0

    match = _TIME_OF_DAY_RE.fullmatch(raw)
    if not match:
        raise ScheduleParseError(f"Invalid time of day: {text!r}")
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    second = int(match.group(3) or 0)
    meridiem = match.group(4)

    if meridiem:
        if not 1 <= hour <= 12:
            raise ScheduleParseError(f"Invalid time of day: {text!r}")
        hour = hour % 12 + (12 if meridiem == "p" else 0)
    elif match.group(2) is None:
        # a bare "13" is ambiguous
        raise ScheduleParseError(f"Invalid time of day: {text!r}")

    if hour > 23 or minute > 59 or second > 59:
        raise ScheduleParseError(f"Invalid time of day: {text!r}")
    return hour, minute, second


# ---------------- Next run computation ----------------
def next_interval_run(repeat_interval, base: datetime, tz_name: Optional[str] = None) -> datetime:
    if is_cron(repeat_interval):
        tz = resolve_timezone(tz_name)
        nxt = croniter(repeat_interval, _localize(base, tz)).get_next(datetime)
        return _wall_clock_to_utc(nxt, tz)
    return ensure_utc(base) + timedelta(milliseconds=parse_interval(repeat_interval))


def next_time_of_day_run(repeat_at: str, base: datetime, tz_name: Optional[str] = None) -> datetime:
    hour, minute, second = parse_time_of_day(repeat_at)
    tz = resolve_timezone(tz_name)
    local_base = _localize(base, tz)
    candidate = local_base.replace(hour=hour, minute=minute, second=second, microsecond=0)
    if candidate <= local_base:
        candidate = candidate + timedelta(days=1)
    return _wall_clock_to_utc(candidate, tz)


def compute_next_run_at(base: datetime, repeat_interval=None, repeat_at=None,
                        tz_name: Optional[str] = None) -> Optional[datetime]:
    """Next run strictly after `base`, or None for a non-recurring job."""
    if repeat_interval:
        return next_interval_run(repeat_interval, base, tz_name)
    if repeat_at:
        return next_time_of_day_run(repeat_at, base, tz_name)
    return None


def parse_run_at(when, now: datetime) -> datetime:
    """
    Resolve an explicit run time: a datetime, an ISO-8601 string, "now",
    "+N" (seconds from now) or a human interval such as "in 5 minutes".
    """
    if isinstance(when, datetime):
        return ensure_utc(when)
    if not isinstance(when, str) or not when.strip():
        raise ScheduleParseError(f"Invalid run time: {when!r}")

    text = when.strip()
    if text.lower() == "now":
        return ensure_utc(now)
    if text.startswith("+"):
        try:
            return ensure_utc(now) + timedelta(seconds=float(text[1:]))
        except ValueError as e:
            raise ScheduleParseError(f"Invalid run time: {when!r}") from e
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    return ensure_utc(now) + timedelta(milliseconds=parse_interval(text))


# ---------------- Backoff ----------------
def backoff_delay(backoff_type: str, delay: int, attempts_made: int) -> int:
    """Retry delay in milliseconds after `attempts_made` failed attempts."""
    if backoff_type == "fixed":
        return int(delay)
    if backoff_type == "exponential":
        return int(delay * 2 ** (max(attempts_made, 1) - 1))
    raise ScheduleParseError(f"Unknown backoff type: {backoff_type!r}")
