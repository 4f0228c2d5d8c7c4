# models.py
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, Optional

from recurrence import (
    BACKOFF_TYPES,
    compute_next_run_at,
    ensure_utc,
    parse_run_at,
    parse_time_of_day,
    resolve_timezone,
    utc_now,
    validate_repeat_interval,
)

JOB_TYPE_NORMAL = "normal"
JOB_TYPE_SINGLE = "single"   # at most one row per name, upserted


class JobPriority(IntEnum):
    HIGHEST = 20
    HIGH = 10
    NORMAL = 0
    LOW = -10
    LOWEST = -20


def resolve_priority(value) -> int:
    """Map a priority name ("high") or number to its integer level."""
    if value is None:
        return int(JobPriority.NORMAL)
    if isinstance(value, bool):
        raise ValueError(f"Invalid priority: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        return JobPriority[text.upper()].value
    except KeyError:
        pass
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"Invalid priority: {value!r}") from None


@dataclass
class Backoff:
    type: str = "exponential"   # fixed | exponential
    delay: int = 1000           # milliseconds

    def __post_init__(self):
        if self.type not in BACKOFF_TYPES:
            raise ValueError(f"Unknown backoff type: {self.type!r}")
        if int(self.delay) < 0:
            raise ValueError(f"Backoff delay must not be negative: {self.delay!r}")
        self.delay = int(self.delay)

    @classmethod
    def from_value(cls, value) -> Optional["Backoff"]:
        if value is None or isinstance(value, Backoff):
            return value
        if isinstance(value, str):
            value = json.loads(value)
        return cls(type=value.get("type", "exponential"), delay=value.get("delay", 1000))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DATETIME_FIELDS = (
    "next_run_at", "last_run_at", "last_finished_at", "locked_at",
    "failed_at", "created_at", "updated_at",
)

JOB_COLUMNS = (
    "id", "name", "type", "data", "priority",
    "next_run_at", "last_run_at", "last_finished_at", "locked_at",
    "failed_at", "fail_reason", "fail_count",
    "attempts", "attempts_made", "backoff",
    "repeat_interval", "repeat_at", "repeat_timezone",
    "disabled", "should_save_result", "result",
    "last_modified_by", "created_at", "updated_at",
)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    # fixed width so that text order in SQLite equals time order
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass
class Job:
    name: str
    id: Optional[str] = None
    type: str = JOB_TYPE_NORMAL
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0

    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None

    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    fail_count: int = 0

    attempts: int = 0
    attempts_made: int = 0
    backoff: Optional[Backoff] = None

    repeat_interval: Optional[str] = None
    repeat_at: Optional[str] = None
    repeat_timezone: Optional[str] = None

    disabled: bool = False
    should_save_result: bool = False
    result: Any = None

    last_modified_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # ---------------- Scheduling helpers ----------------
    @property
    def is_recurring(self) -> bool:
        return bool(self.repeat_interval or self.repeat_at)

    def schedule(self, when, now: Optional[datetime] = None) -> "Job":
        self.next_run_at = parse_run_at(when, now or utc_now())
        return self

    def repeat_every(self, interval, timezone: Optional[str] = None,
                     skip_immediate: bool = False, now: Optional[datetime] = None) -> "Job":
        interval = str(interval)
        validate_repeat_interval(interval)
        resolve_timezone(timezone)
        now = now or utc_now()
        self.repeat_interval = interval
        self.repeat_at = None
        self.repeat_timezone = timezone
        if skip_immediate:
            self.next_run_at = compute_next_run_at(now, interval, None, timezone)
        else:
            self.next_run_at = now
        return self

    def repeat_daily_at(self, time_of_day: str, timezone: Optional[str] = None,
                        now: Optional[datetime] = None) -> "Job":
        parse_time_of_day(time_of_day)
        resolve_timezone(timezone)
        self.repeat_at = time_of_day
        self.repeat_interval = None
        self.repeat_timezone = timezone
        self.next_run_at = compute_next_run_at(now or utc_now(), None, time_of_day, timezone)
        return self

    def compute_next_run_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next occurrence after the last run (or `now` if it never ran)."""
        base = self.last_run_at or now or utc_now()
        return compute_next_run_at(base, self.repeat_interval, self.repeat_at, self.repeat_timezone)

    def set_priority(self, value) -> "Job":
        self.priority = resolve_priority(value)
        return self

    def disable(self) -> "Job":
        self.disabled = True
        return self

    def enable(self) -> "Job":
        self.disabled = False
        return self

    @property
    def state(self) -> str:
        if self.disabled:
            return "disabled"
        if self.locked_at is not None:
            return "locked"
        if self.next_run_at is not None:
            return "scheduled"
        if self.failed_at is not None and (
                self.last_finished_at is None or self.failed_at >= self.last_finished_at):
            return "failed"
        if self.last_finished_at is not None:
            return "completed"
        return "unscheduled"

    # ---------------- Row mapping ----------------
    def to_row(self) -> Dict[str, Any]:
        row = {}
        for col in JOB_COLUMNS:
            value = getattr(self, col)
            if col in DATETIME_FIELDS:
                value = to_iso(value)
            elif col == "data":
                value = json.dumps(value or {})
            elif col == "result":
                value = json.dumps(value, default=str) if value is not None else None
            elif col == "backoff":
                value = json.dumps(value.to_dict()) if value else None
            elif col in ("disabled", "should_save_result"):
                value = int(bool(value))
            row[col] = value
        return row

    @classmethod
    def from_row(cls, row) -> "Job":
        values = {col: row[col] for col in JOB_COLUMNS}
        for col in DATETIME_FIELDS:
            values[col] = from_iso(values[col])
        values["data"] = json.loads(values["data"]) if values["data"] else {}
        values["result"] = json.loads(values["result"]) if values["result"] is not None else None
        values["backoff"] = Backoff.from_value(values["backoff"])
        values["disabled"] = bool(values["disabled"])
        values["should_save_result"] = bool(values["should_save_result"])
        values["fail_count"] = values["fail_count"] or 0
        values["attempts"] = values["attempts"] or 0
        values["attempts_made"] = values["attempts_made"] or 0
        return cls(**values)

    def snapshot(self) -> Dict[str, Any]:
        snap = self.to_row()
        snap["data"] = dict(self.data or {})
        snap["result"] = self.result
        snap["backoff"] = self.backoff.to_dict() if self.backoff else None
        snap["disabled"] = self.disabled
        snap["should_save_result"] = self.should_save_result
        snap["state"] = self.state
        return snap
