# locking.py
"""
The distributed lock protocol.

A job may be claimed when it is not disabled and either it is unlocked and
due before the next scan, or its lock is older than the definition's lock
lifetime (the holder is presumed dead). The claim is a single atomic
find-and-update in the shared store; losing a race just returns None.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from models import Job, to_iso
from recurrence import utc_now

log = logging.getLogger("schedctl.locking")


def lock_deadline(lock_lifetime_ms: int, now: datetime) -> datetime:
    """Locks taken at or before this instant have expired."""
    return now - timedelta(milliseconds=lock_lifetime_ms)


def eligibility_filter(name: str, next_scan_at: datetime, deadline: datetime,
                       job_id: Optional[str] = None):
    where = (
        "name = ? AND (disabled IS NULL OR disabled = 0) AND ("
        "(locked_at IS NULL AND next_run_at IS NOT NULL AND next_run_at <= ?)"
        " OR locked_at <= ?)"
    )
    params = [name, to_iso(next_scan_at), to_iso(deadline)]
    if job_id is not None:
        where += " AND id = ?"
        params.append(job_id)
    return where, tuple(params)


def find_and_lock_next_job(storage, name: str, definition, next_scan_at: datetime,
                           sort: Dict[str, int], now: Optional[datetime] = None) -> Optional[Job]:
    """Claim the first eligible job of `name` in `sort` order, or None."""
    now = now or utc_now()
    filter = eligibility_filter(name, next_scan_at, lock_deadline(definition.lock_lifetime, now))
    job = storage.claim(filter, {"locked_at": now}, sort)
    if job is not None:
        log.debug("Locked job %s (%s), next_run_at=%s", job.id, name, to_iso(job.next_run_at))
    return job


def lock_job_by_id(storage, job: Job, definition, now: Optional[datetime] = None) -> Optional[Job]:
    """Claim one specific job that was just saved as due."""
    now = now or utc_now()
    filter = eligibility_filter(job.name, now, lock_deadline(definition.lock_lifetime, now), job_id=job.id)
    claimed = storage.claim(filter, {"locked_at": now})
    if claimed is not None:
        log.debug("Locked job %s (%s) on the fly", claimed.id, claimed.name)
    return claimed


def lock_expired(job: Job, lock_lifetime_ms: int, now: Optional[datetime] = None) -> bool:
    if job.locked_at is None:
        return True
    return job.locked_at <= lock_deadline(lock_lifetime_ms, now or utc_now())
