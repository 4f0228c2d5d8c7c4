# job_events.py
"""
Typed observer registry for scheduler and job lifecycle events.

Three kinds of subscription:
  * base events (`ready`, `error`), not tied to any job
  * job events (`start`, `success`, `fail`, `complete`, `cancel`) for every job
  * the same job events scoped to a single job name

Job listeners receive a copy of the job as it was at the transition; `fail`
listeners receive `(error, job)`.
"""
import copy
import dataclasses
import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

log = logging.getLogger("schedctl.events")


class EventKind(str, Enum):
    READY = "ready"
    ERROR = "error"
    START = "start"
    SUCCESS = "success"
    FAIL = "fail"
    COMPLETE = "complete"
    CANCEL = "cancel"


BASE_EVENTS = (EventKind.READY, EventKind.ERROR)
JOB_EVENTS = (EventKind.START, EventKind.SUCCESS, EventKind.FAIL, EventKind.COMPLETE, EventKind.CANCEL)


class JobEvents:
    def __init__(self):
        self._base: Dict[EventKind, List[Callable]] = defaultdict(list)
        self._jobs: Dict[Tuple[EventKind, Optional[str]], List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def on_base(self, kind, listener: Callable) -> Callable:
        kind = EventKind(kind)
        if kind not in BASE_EVENTS:
            raise ValueError(f"{kind.value!r} is a job event; use on_job()")
        with self._lock:
            self._base[kind].append(listener)
        return listener

    def on_job(self, kind, listener: Callable, name: Optional[str] = None) -> Callable:
        """Subscribe to a job event, optionally only for jobs called `name`."""
        kind = EventKind(kind)
        if kind not in JOB_EVENTS:
            raise ValueError(f"{kind.value!r} is not a job event; use on_base()")
        with self._lock:
            self._jobs[(kind, name)].append(listener)
        return listener

    def off(self, kind, listener: Callable, name: Optional[str] = None) -> None:
        kind = EventKind(kind)
        with self._lock:
            listeners = self._base[kind] if kind in BASE_EVENTS else self._jobs[(kind, name)]
            if listener in listeners:
                listeners.remove(listener)

    def emit_base(self, kind, *args) -> None:
        kind = EventKind(kind)
        with self._lock:
            listeners = list(self._base[kind])
        for listener in listeners:
            self._call(kind, listener, *args)

    def emit_job(self, kind, job, error: Optional[BaseException] = None) -> None:
        kind = EventKind(kind)
        with self._lock:
            listeners = list(self._jobs[(kind, None)]) + list(self._jobs[(kind, job.name)])
        if not listeners:
            return
        snapshot = dataclasses.replace(job, data=copy.deepcopy(job.data))
        args = (error, snapshot) if kind == EventKind.FAIL else (snapshot,)
        for listener in listeners:
            self._call(kind, listener, *args)

    def _call(self, kind, listener, *args) -> None:
        try:
            listener(*args)
        except Exception:
            log.exception("Listener %r for %s event raised", listener, kind.value)
