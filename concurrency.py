# concurrency.py
"""
Per-definition and process-wide capacity accounting.

`locked` counts jobs claimed in the store but not yet started, `running`
counts jobs whose processor is executing. A job moves locked -> running in
`try_start` and leaves through `finish`; a claim that is given back (nothing
matched, lock expired in the queue, scheduler stopping) goes through
`release_lock`.
"""
import logging

from errors import CapacityInvariantError

log = logging.getLogger("schedctl.concurrency")


class ConcurrencyController:
    def __init__(self, registry, max_concurrency=20, lock_limit=0):
        self.registry = registry
        self.max_concurrency = max_concurrency
        self.lock_limit = lock_limit      # process-wide, 0 = unlimited
        self._lock = registry.lock
        self._total_running = 0
        self._total_locked = 0

    # ---------------- Claiming ----------------
    def try_reserve_lock(self, name: str) -> bool:
        """Reserve a `locked` slot before claiming a job of `name`."""
        with self._lock:
            d = self.registry.require(name)
            if self.lock_limit and self._total_locked >= self.lock_limit:
                return False
            if d.lock_limit and d.locked >= d.lock_limit:
                return False
            if d.running + d.locked >= d.concurrency:
                return False
            d.locked += 1
            self._total_locked += 1
            return True

    def release_lock(self, name: str) -> None:
        with self._lock:
            d = self.registry.require(name)
            self._decrement(d, "locked")
            self._total_locked -= 1
            self._check_totals()

    def available_lock_slots(self, name: str) -> int:
        with self._lock:
            d = self.registry.require(name)
            free = d.concurrency - d.running - d.locked
            if d.lock_limit:
                free = min(free, d.lock_limit - d.locked)
            if self.lock_limit:
                free = min(free, self.lock_limit - self._total_locked)
            return max(free, 0)

    # ---------------- Dispatch ----------------
    def try_start(self, name: str) -> bool:
        """Move one job of `name` from locked to running if capacity allows."""
        with self._lock:
            d = self.registry.require(name)
            if self._total_running >= self.max_concurrency:
                return False
            if d.running >= d.concurrency:
                return False
            self._decrement(d, "locked")
            self._total_locked -= 1
            d.running += 1
            self._total_running += 1
            self._check_totals()
            return True

    def finish(self, name: str) -> None:
        with self._lock:
            d = self.registry.require(name)
            self._decrement(d, "running")
            self._total_running -= 1
            self._check_totals()

    # ---------------- Introspection ----------------
    @property
    def total_running(self) -> int:
        return self._total_running

    @property
    def total_locked(self) -> int:
        return self._total_locked

    def counts(self, name: str):
        with self._lock:
            d = self.registry.require(name)
            return d.running, d.locked

    def _decrement(self, definition, counter: str) -> None:
        value = getattr(definition, counter)
        if value <= 0:
            raise CapacityInvariantError(f"{counter} count for {definition.name} would go negative")
        setattr(definition, counter, value - 1)

    def _check_totals(self) -> None:
        if self._total_running < 0 or self._total_locked < 0:
            raise CapacityInvariantError(
                f"process totals went negative (running={self._total_running}, locked={self._total_locked})"
            )
