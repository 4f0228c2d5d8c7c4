# definitions.py
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from errors import UnknownJobError
from models import Backoff, resolve_priority

log = logging.getLogger("schedctl.definitions")

Processor = Callable[..., Any]


@dataclass
class JobDefinition:
    """Process-local policy and processor for one job name. Never persisted."""
    name: str
    processor: Processor
    concurrency: int
    lock_limit: int
    lock_lifetime: int      # ms
    priority: int = 0
    should_save_result: bool = False
    attempts: int = 0
    backoff: Optional[Backoff] = None
    # live counters, mutated only by ConcurrencyController
    running: int = 0
    locked: int = 0


class DefinitionRegistry:
    def __init__(self, default_concurrency=5, default_lock_limit=0, default_lock_lifetime=600000):
        self.default_concurrency = default_concurrency
        self.default_lock_limit = default_lock_limit
        self.default_lock_lifetime = default_lock_lifetime
        self._definitions: Dict[str, JobDefinition] = {}
        self._fill_locks: Dict[str, threading.Lock] = {}
        # guards definitions and their counters; ConcurrencyController holds it too
        self.lock = threading.RLock()

    def define(self, name: str, processor: Processor, concurrency=None, lock_limit=None,
               lock_lifetime=None, priority=None, should_save_result=False,
               attempts=0, backoff=None) -> JobDefinition:
        """
        Register (or replace) the definition for `name`.

        Unset limits fall back to the registry defaults. With attempts > 0 and
        no backoff, retries back off exponentially from one second. Redefining
        a name replaces the policy but keeps its live running/locked counts.
        """
        if not callable(processor):
            raise TypeError(f"Processor for {name!r} is not callable")
        attempts = int(attempts or 0)
        if attempts < 0:
            raise ValueError("attempts must not be negative")
        if attempts:
            backoff = Backoff.from_value(backoff) or Backoff()
        else:
            backoff = None

        definition = JobDefinition(
            name=name,
            processor=processor,
            concurrency=int(self.default_concurrency if concurrency is None else concurrency),
            lock_limit=int(self.default_lock_limit if lock_limit is None else lock_limit),
            lock_lifetime=int(self.default_lock_lifetime if lock_lifetime is None else lock_lifetime),
            priority=resolve_priority(priority),
            should_save_result=bool(should_save_result),
            attempts=attempts,
            backoff=backoff,
        )
        if definition.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if definition.lock_limit < 0:
            raise ValueError("lock_limit must not be negative")
        if definition.lock_lifetime <= 0:
            raise ValueError("lock_lifetime must be positive")

        with self.lock:
            previous = self._definitions.get(name)
            if previous is not None:
                definition.running = previous.running
                definition.locked = previous.locked
                log.debug("Redefining job %s", name)
            self._definitions[name] = definition
            self._fill_locks.setdefault(name, threading.Lock())
        log.debug("Job %s defined: %s", name, definition)
        return definition

    def get(self, name: str) -> Optional[JobDefinition]:
        return self._definitions.get(name)

    def require(self, name: str) -> JobDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownJobError(name)
        return definition

    def fill_lock(self, name: str) -> threading.Lock:
        """Mutex shared by queue filling and lock-on-the-fly for one definition."""
        with self.lock:
            return self._fill_locks.setdefault(name, threading.Lock())

    def names(self):
        return list(self._definitions)

    def __contains__(self, name) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[JobDefinition]:
        return iter(list(self._definitions.values()))

    def __len__(self) -> int:
        return len(self._definitions)
