# worker.py
import asyncio
import inspect
import logging
import subprocess
import uuid
from datetime import timedelta

from errors import ScheduleParseError, StoreUnavailable
from job_events import EventKind
from models import Backoff
from recurrence import backoff_delay, utc_now

log = logging.getLogger("schedctl.worker")

OUTCOME_COLUMNS = (
    "data", "next_run_at", "last_finished_at", "locked_at", "failed_at",
    "fail_reason", "fail_count", "attempts_made", "result", "last_modified_by",
)


class CommandError(Exception):
    def __init__(self, exit_code, output):
        super().__init__(f"exit_code={exit_code}: {output.strip()[-500:]}")
        self.exit_code = exit_code
        self.output = output


def run_command(job):
    """Built-in processor: run job.data["command"] in a shell."""
    command = job.data.get("command")
    if not command:
        raise ValueError("job data has no 'command'")
    timeout = job.data.get("timeout_seconds")
    result = subprocess.run(
        command,
        shell=True,
        capture_output=True,
        text=True,
        timeout=timeout if timeout else None  # Enforce timeout if provided
    )
    output = (result.stdout or "") + (result.stderr or "")
    if result.returncode != 0:
        raise CommandError(result.returncode, output)
    return {"exit_code": result.returncode, "output": output}


async def _resolve(awaitable):
    return await awaitable


class JobRunner:
    """
    Runs one locked job and persists its outcome.

    Every write is conditional on the job still carrying the lock this
    worker took. If another worker took the lock over (ours expired), the
    outcome is dropped and logged instead of overwriting the new holder.
    """

    def __init__(self, storage, registry, events, worker_id=None):
        self.db = storage
        self.registry = registry
        self.events = events
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

    def _now(self):
        return utc_now()

    def _log_transition(self, job, old_state, new_state, extra=""):
        log.info("Job %s (%s): %s → %s %s", job.id, job.name, old_state, new_state, extra)

    def run(self, job) -> str:
        """Returns "success", "failed" or "lost" (lock taken over, nothing written)."""
        definition = self.registry.require(job.name)
        start_time = self._now()
        job.last_run_at = start_time
        job.last_modified_by = self.worker_id

        if not self.db.compare_and_set(job.id, job.locked_at, {
            "last_run_at": start_time, "last_modified_by": self.worker_id,
        }):
            log.warning("Job %s (%s) lost its lock before starting; skipped", job.id, job.name)
            return "lost"
        self._log_transition(job, "locked", "running", f"(claimed by {self.worker_id})")
        self.events.emit_job(EventKind.START, job)

        try:
            result = definition.processor(job)
            if inspect.isawaitable(result):
                result = asyncio.run(_resolve(result))
        except Exception as e:
            outcome = self._handle_failure(job, definition, start_time, e)
        else:
            outcome = self._handle_success(job, definition, start_time, result)

        self.events.emit_job(EventKind.COMPLETE, job)
        return outcome

    def _handle_success(self, job, definition, start_time, result):
        now = self._now()
        duration = (now - start_time).total_seconds()
        job.last_finished_at = now
        job.attempts_made = 0
        if definition.should_save_result or job.should_save_result:
            job.result = result
        try:
            job.next_run_at = job.compute_next_run_at(now) if job.is_recurring else None
        except ScheduleParseError as e:
            # a malformed recurrence edited into the row after creation
            job.next_run_at = None
            job.failed_at = now
            job.fail_reason = f"failed to calculate next run: {e}"
            job.fail_count += 1

        if not self._persist(job):
            return "lost"
        new_state = "scheduled" if job.next_run_at else "completed"
        self._log_transition(job, "running", new_state, f"(duration={duration:.3f}s)")
        self.events.emit_job(EventKind.SUCCESS, job)
        return "success"

    def _handle_failure(self, job, definition, start_time, error):
        now = self._now()
        duration = (now - start_time).total_seconds()
        job.fail_count += 1
        job.fail_reason = str(error) or error.__class__.__name__
        job.failed_at = now
        job.last_finished_at = now
        job.attempts_made += 1

        retry_in = None
        if definition.attempts > 0:
            if job.attempts_made < definition.attempts:
                backoff = job.backoff or definition.backoff or Backoff()
                retry_in = backoff_delay(backoff.type, backoff.delay, job.attempts_made)
                job.next_run_at = now + timedelta(milliseconds=retry_in)
            else:
                job.next_run_at = None
        elif job.is_recurring:
            try:
                job.next_run_at = job.compute_next_run_at(now)
            except ScheduleParseError:
                job.next_run_at = None
        else:
            job.next_run_at = None

        if not self._persist(job):
            return "lost"
        if retry_in is not None:
            new_state = "retry"
            extra = f"(attempts={job.attempts_made}/{definition.attempts}, retry_in={retry_in}ms, duration={duration:.3f}s, error={job.fail_reason})"
        else:
            new_state = "scheduled" if job.next_run_at else "failed"
            extra = f"(attempts={job.attempts_made}, duration={duration:.3f}s, error={job.fail_reason})"
        self._log_transition(job, "running", new_state, extra)
        self.events.emit_job(EventKind.FAIL, job, error)
        return "failed"

    def _persist(self, job) -> bool:
        # the processor may have renewed the lock with Scheduler.touch()
        expected = job.locked_at
        job.locked_at = None
        row = job.to_row()
        values = {col: row[col] for col in OUTCOME_COLUMNS}
        try:
            written = self.db.compare_and_set(job.id, expected, values)
        except StoreUnavailable:
            log.exception("Could not record outcome of job %s (%s); its lock will expire", job.id, job.name)
            self.events.emit_base(EventKind.ERROR, StoreUnavailable(f"outcome of job {job.id} not recorded"))
            return False
        if not written:
            log.warning("Job %s (%s) finished after its lock was taken over; outcome dropped", job.id, job.name)
        return written
