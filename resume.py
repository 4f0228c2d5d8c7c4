# resume.py
"""
Startup reconciliation of jobs stranded by a crash.

  * one-off jobs with no next run that never finished (including ones a
    crashed worker still holds locked) are scheduled for now
  * recurring jobs with no next run are rescheduled from their recurrence,
    relative to now
  * overdue unlocked jobs are already eligible and are left alone
  * stale locks are left to expire; another worker takes them over
  * finished one-off jobs are terminal and never resurrected

Each write is conditional on `next_run_at` still being NULL, so a second run
(or a concurrent worker doing the same) changes nothing.
"""
import logging

from errors import ScheduleParseError
from recurrence import compute_next_run_at, utc_now

log = logging.getLogger("schedctl.resume")

ORPHANED_ONE_OFF = (
    "repeat_interval IS NULL AND repeat_at IS NULL "
    "AND next_run_at IS NULL AND last_finished_at IS NULL"
)
ORPHANED_RECURRING = (
    "(repeat_interval IS NOT NULL OR repeat_at IS NOT NULL) AND next_run_at IS NULL"
)


def resume_on_restart(storage, now=None, modified_by=None) -> int:
    """Returns the number of jobs rescheduled."""
    now = now or utc_now()
    updated = 0

    for job in storage.find_where(ORPHANED_ONE_OFF):
        updated += _reschedule(storage, job, now, modified_by)

    for job in storage.find_where(ORPHANED_RECURRING):
        try:
            next_run_at = compute_next_run_at(now, job.repeat_interval, job.repeat_at, job.repeat_timezone)
        except ScheduleParseError as e:
            log.error("Cannot resume job %s (%s): %s", job.id, job.name, e)
            continue
        updated += _reschedule(storage, job, next_run_at, modified_by)

    if updated:
        log.info("Resumed %d job(s) after restart", updated)
    return updated


def _reschedule(storage, job, next_run_at, modified_by) -> int:
    values = {"next_run_at": next_run_at}
    if modified_by is not None:
        values["last_modified_by"] = modified_by
    count = storage.update_many({"id": job.id, "next_run_at": None}, values)
    if count:
        log.debug("Job %s (%s) rescheduled for %s", job.id, job.name, next_run_at.isoformat())
    return count
