# scheduler.py
"""
The scheduler: job definitions, job creation, and the run loop that claims
due jobs from the shared table and runs them within capacity.

Any number of Scheduler instances, in any number of processes, can point at
the same SQLite file. They coordinate only through the atomic claim in
`locking`; everything else here is private to one instance.
"""
import logging
import threading
import time
from datetime import timedelta
from typing import Dict, List, Optional, Union

import locking
from concurrency import ConcurrencyController
from definitions import DefinitionRegistry
from errors import StoreUnavailable
from job_events import EventKind, JobEvents
from job_queue import JobProcessingQueue
from models import JOB_TYPE_NORMAL, JOB_TYPE_SINGLE, Job
from recurrence import utc_now
from resume import resume_on_restart
from settings import SchedulerConfig
from storage import Storage
from worker import JobRunner

log = logging.getLogger("schedctl.scheduler")


class Scheduler:
    def __init__(self, config: Optional[SchedulerConfig] = None, storage: Optional[Storage] = None, **overrides):
        if config is None:
            self.storage = storage or Storage(overrides.get("db_path"))
            config = SchedulerConfig.from_storage(self.storage, **overrides)
        else:
            self.storage = storage or Storage(config.db_path)
        self.config = config

        self.registry = DefinitionRegistry(
            default_concurrency=config.default_concurrency,
            default_lock_limit=config.default_lock_limit,
            default_lock_lifetime=config.default_lock_lifetime,
        )
        self.controller = ConcurrencyController(
            self.registry, max_concurrency=config.max_concurrency, lock_limit=config.lock_limit,
        )
        self.queue = JobProcessingQueue(config.sort)
        self.events = JobEvents()
        self.runner = JobRunner(self.storage, self.registry, self.events, worker_id=config.name or None)
        self.name = config.name or self.runner.worker_id

        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._running_threads = set()
        self._threads_lock = threading.Lock()
        self._next_scan_at = None
        self._next_tick_at = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    # ---------------- Definitions and jobs ----------------
    def define(self, name, processor, **options):
        return self.registry.define(name, processor, **options)

    def create(self, name: str, data: Optional[Dict] = None) -> Job:
        """A new, unsaved job due now, carrying its definition's policy."""
        definition = self.registry.get(name)
        job = Job(name=name, data=dict(data or {}), type=JOB_TYPE_NORMAL, next_run_at=utc_now())
        if definition is not None:
            job.priority = definition.priority
            job.should_save_result = definition.should_save_result
            job.attempts = definition.attempts
            job.backoff = definition.backoff
        return job

    def every(self, interval, names: Union[str, List[str]], data: Optional[Dict] = None,
              timezone: Optional[str] = None, skip_immediate: bool = False):
        """Create or update a recurring single-type job for each name."""
        def every_one(name):
            job = self.create(name, data)
            job.type = JOB_TYPE_SINGLE
            job.repeat_every(interval, timezone=timezone, skip_immediate=skip_immediate)
            return self.save_job(job)

        if isinstance(names, str):
            return every_one(names)
        return [every_one(name) for name in names]

    def schedule(self, when, names: Union[str, List[str]], data: Optional[Dict] = None):
        def schedule_one(name):
            return self.save_job(self.create(name, data).schedule(when))

        if isinstance(names, str):
            return schedule_one(names)
        return [schedule_one(name) for name in names]

    def now(self, name: str, data: Optional[Dict] = None) -> Job:
        return self.save_job(self.create(name, data))

    def save_job(self, job: Job) -> Job:
        job.last_modified_by = self.name
        if job.id and self.storage.save(job):
            pass
        elif job.type == JOB_TYPE_SINGLE:
            self.storage.upsert_single(job)
        else:
            self.storage.insert(job)
        self._lock_on_the_fly(job)
        return job

    def jobs(self, filters: Optional[Dict] = None, sort: Optional[Dict[str, int]] = None,
             limit: int = 0, skip: int = 0) -> List[Job]:
        return self.storage.find(filters, sort, limit, skip)

    def count_jobs(self, filters: Optional[Dict] = None) -> int:
        return self.storage.count(filters)

    def cancel(self, filters: Dict) -> int:
        """Delete matching jobs. Returns how many were removed."""
        removed = self.storage.delete(filters)
        ids = {job.id for job in removed}
        for job in self.queue.remove_where(lambda j: j.id in ids):
            self.controller.release_lock(job.name)
        for job in removed:
            log.info("Job %s (%s) cancelled", job.id, job.name)
            self.events.emit_job(EventKind.CANCEL, job)
        return len(removed)

    def disable(self, filters: Dict) -> int:
        return self.storage.update_many(filters, {"disabled": True})

    def enable(self, filters: Dict) -> int:
        return self.storage.update_many(filters, {"disabled": False})

    def purge(self) -> int:
        """Delete jobs whose name has no definition in this process."""
        return self.storage.delete_unknown_names(self.registry.names())

    def touch(self, job: Job) -> bool:
        """Renew the lock of a running job; False if the lock was lost."""
        now = utc_now()
        if not self.storage.compare_and_set(job.id, job.locked_at, {"locked_at": now}):
            return False
        job.locked_at = now
        return True

    def resume_on_restart(self) -> int:
        return resume_on_restart(self.storage, modified_by=self.name)

    # ---------------- Lifecycle ----------------
    @property
    def is_running(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        if self.config.resume_on_restart:
            try:
                self.resume_on_restart()
            except StoreUnavailable as e:
                log.error("Resume on restart skipped: %s", e)
                self.events.emit_base(EventKind.ERROR, e)
        self._next_tick_at = utc_now()
        self._loop_thread = threading.Thread(target=self._run_loop, name=f"scheduler-{self.name}", daemon=True)
        self._loop_thread.start()
        log.info("Scheduler %s started (process_every=%sms, max_concurrency=%s)",
                 self.name, self.config.process_every, self.config.max_concurrency)
        self.events.emit_base(EventKind.READY)

    def stop(self, grace_period: Optional[float] = 10.0) -> bool:
        """
        Stop claiming, hand back locks on jobs that never started, and give
        running processors `grace_period` seconds. Jobs still running after
        that keep their locks; lock expiry lets another worker take them.
        Returns True if nothing was left running.
        """
        self._halt_loop()
        released = self._release_queued_locks()
        idle = self.wait_until_idle(grace_period)
        log.info("Scheduler %s stopped (released %d queued lock(s)%s)",
                 self.name, released, "" if idle else ", jobs still running")
        return idle

    def drain(self) -> None:
        """Stop claiming and wait for every running job to finish."""
        self._halt_loop()
        self._release_queued_locks()
        self.wait_until_idle(None)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._threads_lock:
                threads = list(self._running_threads)
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                thread.join(remaining)

    def _halt_loop(self) -> None:
        self._stop_event.set()
        self._wakeup.set()
        if self._loop_thread is not None and self._loop_thread is not threading.current_thread():
            self._loop_thread.join()
        self._loop_thread = None

    def _release_queued_locks(self) -> int:
        released = 0
        for job in self.queue.drain():
            try:
                if self.storage.compare_and_set(job.id, job.locked_at, {"locked_at": None}):
                    released += 1
            except StoreUnavailable as e:
                log.error("Could not unlock job %s (%s): %s", job.id, job.name, e)
            self.controller.release_lock(job.name)
        return released

    # ---------------- Run loop ----------------
    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.clear()
            try:
                if utc_now() >= self._next_tick_at:
                    self._fill_all()
                self._dispatch()
            except Exception as e:
                log.exception("Scheduler %s tick failed, retrying next tick", self.name)
                self.events.emit_base(EventKind.ERROR, e)
            self._wakeup.wait(self._seconds_until_next_wake())

    def tick(self) -> None:
        """One full pass: claim what capacity allows, then start what is due."""
        self._fill_all()
        self._dispatch()

    def _fill_all(self) -> None:
        now = utc_now()
        self._next_scan_at = now + timedelta(milliseconds=self.config.process_every)
        self._next_tick_at = self._next_scan_at
        for definition in self.registry:
            if self._stop_event.is_set():
                break
            try:
                self._fill_queue(definition.name)
            except StoreUnavailable as e:
                log.error("Job store unavailable, retrying next tick: %s", e)
                self.events.emit_base(EventKind.ERROR, e)
                break
            except Exception as e:
                log.exception("Could not fill queue for %s, retrying next tick", definition.name)
                self.events.emit_base(EventKind.ERROR, e)

    def _fill_queue(self, name: str) -> None:
        # lock-on-the-fly holds the mutex for a single claim, so wait it out
        with self.registry.fill_lock(name):
            while not self._stop_event.is_set():
                if not self.controller.try_reserve_lock(name):
                    break
                try:
                    job = locking.find_and_lock_next_job(
                        self.storage, name, self.registry.require(name), self._next_scan_at, self.config.sort,
                    )
                except Exception:
                    self.controller.release_lock(name)
                    raise
                if job is None:
                    self.controller.release_lock(name)
                    break
                self.queue.push(job)

    def _lock_on_the_fly(self, job: Job) -> None:
        if not self.is_running or job.disabled or job.locked_at is not None:
            return
        if job.next_run_at is None or job.next_run_at > utc_now():
            return
        if job.name not in self.registry:
            return
        fill_lock = self.registry.fill_lock(job.name)
        if not fill_lock.acquire(blocking=False):
            # queue filling holds the lock and may already have scanned; refill now
            self._next_tick_at = utc_now()
            self._wakeup.set()
            return
        try:
            if not self.controller.try_reserve_lock(job.name):
                return
            try:
                claimed = locking.lock_job_by_id(self.storage, job, self.registry.require(job.name))
            except StoreUnavailable as e:
                self.controller.release_lock(job.name)
                log.error("Could not lock job %s on the fly: %s", job.id, e)
                return
            except Exception:
                self.controller.release_lock(job.name)
                log.exception("Could not lock job %s on the fly", job.id)
                return
            if claimed is None:
                self.controller.release_lock(job.name)
                return
            self.queue.push(claimed)
        finally:
            fill_lock.release()
        self._wakeup.set()

    def _dispatch(self) -> None:
        now = utc_now()
        expired = self.queue.remove_where(
            lambda j: locking.lock_expired(j, self.registry.require(j.name).lock_lifetime, now)
        )
        for job in expired:
            log.warning("Lock on job %s (%s) expired before it could run; dropped", job.id, job.name)
            self.controller.release_lock(job.name)

        while not self._stop_event.is_set():
            job = self.queue.pop_next(now, lambda j: self.controller.try_start(j.name))
            if job is None:
                break
            self._spawn(job)

    def _spawn(self, job: Job) -> None:
        thread = threading.Thread(
            target=self._run_job, args=(job,), name=f"job-{job.name}-{job.id[:8]}", daemon=True,
        )
        with self._threads_lock:
            self._running_threads.add(thread)
        thread.start()

    def _run_job(self, job: Job) -> None:
        try:
            self.runner.run(job)
        except Exception:
            log.exception("Job %s (%s) could not be run", job.id, job.name)
        finally:
            self.controller.finish(job.name)
            with self._threads_lock:
                self._running_threads.discard(threading.current_thread())
            self._wakeup.set()

    def _seconds_until_next_wake(self) -> float:
        now = utc_now()
        wake_at = self._next_tick_at
        next_due = self.queue.next_due_at()
        if next_due is not None and now < next_due < wake_at:
            wake_at = next_due
        return max((wake_at - now).total_seconds(), 0.0)
