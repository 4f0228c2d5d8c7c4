# settings.py
import os
from dataclasses import dataclass, field, fields
from typing import Dict

from recurrence import parse_interval

DEFAULT_DB_PATH = os.environ.get("SCHEDCTL_DB", "queue.db")
DEFAULT_SORT = {"next_run_at": 1, "priority": -1}
SORTABLE_FIELDS = ("next_run_at", "priority", "last_run_at", "created_at", "name", "locked_at")

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


def parse_sort(value) -> Dict[str, int]:
    """Accept {"next_run_at": 1, "priority": -1} or "next_run_at:asc,priority:desc"."""
    if isinstance(value, dict):
        items = list(value.items())
    else:
        items = []
        for part in str(value).split(","):
            key, _, direction = part.strip().partition(":")
            items.append((key.strip(), -1 if direction.strip().lower() in ("desc", "-1") else 1))
    sort = {}
    for key, direction in items:
        if key not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort on {key!r}; allowed: {', '.join(SORTABLE_FIELDS)}")
        if direction not in (1, -1):
            raise ValueError(f"Sort direction for {key!r} must be 1 or -1")
        sort[key] = direction
    if not sort:
        raise ValueError("Sort order is empty")
    return sort


@dataclass
class SchedulerConfig:
    name: str = ""
    db_path: str = DEFAULT_DB_PATH
    process_every: int = 5000           # ms between run loop ticks
    default_concurrency: int = 5
    max_concurrency: int = 20
    default_lock_limit: int = 0         # 0 = unlimited
    lock_limit: int = 0                 # process-wide, 0 = unlimited
    default_lock_lifetime: int = 600000
    sort: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SORT))
    resume_on_restart: bool = True

    def __post_init__(self):
        self.process_every = parse_interval(self.process_every)
        self.default_lock_lifetime = parse_interval(self.default_lock_lifetime)
        for key in ("default_concurrency", "max_concurrency"):
            value = int(getattr(self, key))
            if value < 1:
                raise ValueError(f"{key} must be at least 1")
            setattr(self, key, value)
        for key in ("default_lock_limit", "lock_limit"):
            value = int(getattr(self, key))
            if value < 0:
                raise ValueError(f"{key} must not be negative")
            setattr(self, key, value)
        self.sort = parse_sort(self.sort)
        self.resume_on_restart = parse_bool(self.resume_on_restart)

    @classmethod
    def from_storage(cls, storage, **overrides) -> "SchedulerConfig":
        """Defaults, then keys from the config table, then explicit overrides."""
        values = {}
        for f in fields(cls):
            if f.name == "db_path":
                continue
            stored = storage.get_config(f.name)
            if stored is not None:
                values[f.name] = stored
        values.update({k: v for k, v in overrides.items() if v is not None})
        values.setdefault("db_path", storage.db_path)
        return cls(**values)
