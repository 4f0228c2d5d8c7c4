# job_queue.py
import bisect
import itertools
import threading
from datetime import datetime, timezone
from functools import total_ordering
from typing import Callable, Dict, List, Optional

from models import Job


@total_ordering
class _Descending:
    __slots__ = ("value",)

    def __init__(self, value):
        self.value = value

    def __eq__(self, other):
        return self.value == other.value

    def __lt__(self, other):
        return other.value < self.value


def _sortable(value):
    # NULLs sort first, as they do in the store
    if value is None:
        return (0, 0)
    if isinstance(value, datetime):
        return (1, value.timestamp())
    return (1, value)


def sort_key(job: Job, sort: Dict[str, int]):
    key = []
    for field, direction in sort.items():
        value = _sortable(getattr(job, field, None))
        key.append(_Descending(value) if direction == -1 else value)
    return tuple(key)


class JobProcessingQueue:
    """
    Local buffer of jobs this process has locked but not started, kept in
    the same order the lock query uses. Losing it is harmless: the locks in
    the store expire and the jobs get claimed again.
    """

    def __init__(self, sort: Dict[str, int]):
        self.sort = dict(sort)
        self._entries: List[tuple] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def push(self, job: Job) -> None:
        with self._lock:
            bisect.insort(self._entries, (sort_key(job, self.sort), next(self._seq), job))

    def pop_next(self, now: datetime, can_start: Callable[[Job], bool]) -> Optional[Job]:
        """
        Remove and return the first due job for which `can_start` agrees.
        Jobs that are not due yet, or whose definition is at capacity, stay.
        """
        with self._lock:
            for index, (_, _, job) in enumerate(self._entries):
                if job.next_run_at is not None and job.next_run_at > now:
                    continue
                if can_start(job):
                    del self._entries[index]
                    return job
        return None

    def remove_where(self, predicate: Callable[[Job], bool]) -> List[Job]:
        with self._lock:
            removed = [job for _, _, job in self._entries if predicate(job)]
            if removed:
                self._entries = [e for e in self._entries if not predicate(e[2])]
        return removed

    def drain(self) -> List[Job]:
        with self._lock:
            jobs = [job for _, _, job in self._entries]
            self._entries = []
        return jobs

    def next_due_at(self) -> Optional[datetime]:
        with self._lock:
            dues = [job.next_run_at for _, _, job in self._entries if job.next_run_at is not None]
            if len(dues) < len(self._entries):
                return datetime.min.replace(tzinfo=timezone.utc)
        return min(dues) if dues else None

    def count(self, name: Optional[str] = None) -> int:
        with self._lock:
            if name is None:
                return len(self._entries)
            return sum(1 for _, _, job in self._entries if job.name == name)

    def __len__(self) -> int:
        return self.count()

    def __iter__(self):
        with self._lock:
            return iter([job for _, _, job in self._entries])
