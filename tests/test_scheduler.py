import threading
import time
from datetime import timedelta

import pytest

from errors import UnknownJobError
from models import JOB_TYPE_SINGLE, Job
from recurrence import utc_now
from scheduler import Scheduler
from tests.conftest import wait_for


class Gate:
    """Processor that blocks until opened and records peak concurrency."""

    def __init__(self):
        self.opened = threading.Event()
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0
        self.calls = 0

    def __call__(self, job):
        with self.lock:
            self.running += 1
            self.calls += 1
            self.peak = max(self.peak, self.running)
        try:
            self.opened.wait(5)
        finally:
            with self.lock:
                self.running -= 1


@pytest.fixture
def make_scheduler(db_path):
    created = []

    def make(**overrides):
        options = {"name": f"w{len(created)}", "process_every": 100, "resume_on_restart": False}
        options.update(overrides)
        s = Scheduler(db_path=db_path, **options)
        created.append(s)
        return s

    yield make
    for s in created:
        s.stop(grace_period=5)
        s.storage.close()


class TestCreatingJobs:
    def test_create_copies_definition_policy(self, scheduler):
        scheduler.define("email", lambda job: None, priority="high", attempts=3, should_save_result=True)
        job = scheduler.create("email", {"to": "a@example.com"})
        assert job.id is None
        assert (job.priority, job.attempts, job.should_save_result) == (10, 3, True)
        assert job.backoff.type == "exponential"

    def test_every_skip_immediate(self, scheduler):
        scheduler.define("report", lambda job: None)
        before = utc_now()
        job = scheduler.every("1 week", "report", skip_immediate=True)
        assert job.type == JOB_TYPE_SINGLE
        assert before + timedelta(weeks=1) <= job.next_run_at <= utc_now() + timedelta(weeks=1)

    def test_every_twice_keeps_one_row(self, scheduler):
        scheduler.define("report", lambda job: None)
        scheduler.every("5 minutes", "report")
        scheduler.every("10 minutes", "report", data={"v": 2})
        jobs = scheduler.jobs({"name": "report"})
        assert len(jobs) == 1
        assert jobs[0].repeat_interval == "10 minutes"
        assert jobs[0].data == {"v": 2}

    def test_every_many_names(self, scheduler):
        jobs = scheduler.every("1 hour", ["a", "b"])
        assert [j.name for j in jobs] == ["a", "b"]
        assert scheduler.count_jobs() == 2

    def test_every_rejects_bad_interval(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.every("sometimes", "report")

    def test_schedule_in_the_future(self, scheduler):
        scheduler.define("email", lambda job: None)
        job = scheduler.schedule("in 5 minutes", "email", {"to": "x"})
        assert job.next_run_at > utc_now() + timedelta(minutes=4)
        scheduler.tick()
        assert scheduler.jobs({"locked_at": None})[0].id == job.id


class TestEndToEnd:
    def test_one_off_job_runs_and_clears(self, scheduler):
        ran = []
        scheduler.define("email", lambda job: ran.append(job.data["to"]), attempts=1)
        job = scheduler.schedule(utc_now() - timedelta(seconds=1), "email", {"to": "user@example.com"})

        scheduler.tick()
        assert scheduler.wait_until_idle(5)

        saved = scheduler.storage.get(job.id)
        assert ran == ["user@example.com"]
        assert saved.next_run_at is None
        assert saved.locked_at is None
        assert saved.last_modified_by == "test-worker"

    def test_started_scheduler_locks_new_jobs_on_the_fly(self, make_scheduler):
        s = make_scheduler(process_every="1 minute")
        ready = []
        s.events.on_base("ready", lambda: ready.append(True))
        s.define("email", lambda job: "ok", should_save_result=True)
        s.start()
        assert ready == [True]

        job = s.now("email")
        assert wait_for(lambda: s.storage.get(job.id).state == "completed")
        assert s.storage.get(job.id).result == "ok"

    def test_recurring_job_reschedules(self, make_scheduler):
        s = make_scheduler()
        calls = []
        s.define("poll", lambda job: calls.append(1))
        job = s.every("1 hour", "poll")
        s.start()
        assert wait_for(lambda: s.storage.get(job.id).last_finished_at is not None)
        saved = s.storage.get(job.id)
        assert saved.next_run_at == saved.last_run_at + timedelta(hours=1)
        assert len(calls) == 1

    def test_failing_job_emits_fail(self, scheduler):
        failures = []
        scheduler.define("email", lambda job: 1 / 0)
        scheduler.events.on_job("fail", lambda error, job: failures.append(type(error).__name__), name="email")
        scheduler.now("email")
        scheduler.tick()
        scheduler.wait_until_idle(5)
        assert failures == ["ZeroDivisionError"]

    def test_two_schedulers_share_the_table(self, make_scheduler):
        """Each job runs exactly once even with two schedulers claiming."""
        counts = {}
        lock = threading.Lock()

        def count(job):
            with lock:
                counts[job.id] = counts.get(job.id, 0) + 1

        a, b = make_scheduler(), make_scheduler()
        for s in (a, b):
            s.define("email", count, concurrency=3)
        ids = [a.create("email").schedule(utc_now() - timedelta(seconds=1)) for _ in range(20)]
        for job in ids:
            a.save_job(job)

        a.start()
        b.start()
        assert wait_for(lambda: len(counts) == 20, timeout=15)
        a.stop()
        b.stop()
        assert set(counts.values()) == {1}


class TestCapacity:
    def test_max_concurrency(self, make_scheduler):
        s = make_scheduler(max_concurrency=2)
        gate = Gate()
        s.define("email", gate, concurrency=5)
        for _ in range(4):
            s.now("email")

        s.tick()
        assert wait_for(lambda: gate.running == 2)
        assert s.controller.counts("email") == (2, 2)
        assert len(s.queue) == 2

        gate.opened.set()
        assert wait_for(lambda: s.controller.total_running == 0)
        s.tick()
        assert s.wait_until_idle(5)
        assert gate.calls == 4
        assert gate.peak <= 2

    def test_lock_limit(self, make_scheduler):
        s = make_scheduler()
        gate = Gate()
        s.define("email", gate, concurrency=5, lock_limit=1)
        for _ in range(3):
            s.now("email")

        s._fill_all()
        assert s.controller.counts("email") == (0, 1)
        assert s.storage.count({"name": "email"}) - s.storage.count({"locked_at": None}) == 1
        gate.opened.set()

    def test_per_definition_concurrency(self, make_scheduler):
        s = make_scheduler()
        gate = Gate()
        s.define("email", gate, concurrency=1)
        for _ in range(3):
            s.now("email")
        s.tick()
        assert wait_for(lambda: gate.running == 1)
        assert s.controller.counts("email") == (1, 0)
        gate.opened.set()

    def test_expired_lock_in_queue_is_dropped(self, make_scheduler):
        s = make_scheduler(max_concurrency=1)
        gate = Gate()
        s.define("email", gate, lock_lifetime=50)
        s.now("email")
        s.now("email")
        s.tick()
        assert wait_for(lambda: gate.running == 1)
        time.sleep(0.1)
        s._dispatch()
        assert len(s.queue) == 0
        assert s.controller.counts("email") == (1, 0)
        gate.opened.set()


class TestLifecycle:
    def test_stop_releases_queued_locks(self, make_scheduler):
        s = make_scheduler(max_concurrency=1)
        gate = Gate()
        s.define("email", gate)
        for _ in range(3):
            s.now("email")
        s.tick()
        assert wait_for(lambda: gate.running == 1)

        assert s.stop(grace_period=0.1) is False
        assert s.storage.count({"locked_at": None}) == 2
        assert s.controller.counts("email") == (1, 0)

        gate.opened.set()
        assert s.wait_until_idle(5)
        assert s.storage.count({"locked_at": None}) == 3

    def test_start_resumes_orphans(self, make_scheduler, storage):
        storage.insert(Job(name="report", repeat_interval="1 hour"))
        s = make_scheduler(resume_on_restart=True, process_every="1 minute")
        s.start()
        assert s.jobs({"name": "report"})[0].next_run_at is not None

    def test_context_manager(self, db_path):
        with Scheduler(db_path=db_path, process_every=100, resume_on_restart=False) as s:
            assert s.is_running
        assert not s.is_running
        s.storage.close()

    def test_store_error_does_not_raise(self, make_scheduler):
        s = make_scheduler()
        errors = []
        s.events.on_base("error", errors.append)
        s.define("email", lambda job: None)
        s.storage.close()
        s.tick()
        assert len(errors) == 1

    def test_malformed_row_does_not_stop_the_loop(self, make_scheduler):
        s = make_scheduler()
        errors = []
        ran = []
        s.events.on_base("error", errors.append)
        s.define("email", lambda job: None)
        s.define("report", lambda job: ran.append(job.id))
        bad = s.now("email")
        s.storage.conn.execute("UPDATE jobs SET created_at='x' WHERE id=?", (bad.id,))
        good = s.now("report")

        s.start()
        assert wait_for(lambda: ran == [good.id])
        assert s.is_running
        assert isinstance(errors[0], ValueError)
        assert wait_for(lambda: s.controller.counts("email") == (0, 0))

        later = s.now("report")
        assert wait_for(lambda: ran == [good.id, later.id])

    def test_failed_tick_keeps_loop_running(self, make_scheduler, monkeypatch):
        s = make_scheduler()
        errors = []
        s.events.on_base("error", errors.append)
        calls = []
        dispatch = s._dispatch

        def flaky_dispatch():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            dispatch()

        monkeypatch.setattr(s, "_dispatch", flaky_dispatch)
        s.start()
        assert wait_for(lambda: len(calls) > 1)
        assert s.is_running
        assert [type(e) for e in errors] == [RuntimeError]


class TestFillExclusion:
    def test_lock_on_the_fly_defers_to_queue_filling(self, make_scheduler):
        s = make_scheduler(process_every="1 minute")
        ran = []
        s.define("email", lambda job: ran.append(job.id))
        s.start()

        fill_lock = s.registry.fill_lock("email")
        fill_lock.acquire()
        try:
            job = s.now("email")
            time.sleep(0.2)
            assert s.storage.get(job.id).locked_at is None
            assert s.controller.counts("email") == (0, 0)
            assert ran == []
        finally:
            fill_lock.release()

        # runs long before the next scheduled tick
        assert wait_for(lambda: ran == [job.id])

    def test_concurrent_fill_and_lock_on_the_fly_keep_lock_limit(self, make_scheduler):
        s = make_scheduler(process_every="1 minute")
        gate = Gate()
        s.define("email", gate, concurrency=5, lock_limit=1)
        s.start()

        samples = []
        done = threading.Event()

        def fill():
            while not done.is_set():
                s._fill_queue("email")
                samples.append(s.controller.counts("email"))

        filler = threading.Thread(target=fill)
        filler.start()
        try:
            for _ in range(30):
                s.now("email")
                samples.append(s.controller.counts("email"))
        finally:
            done.set()
            filler.join()

        try:
            assert max(locked for _, locked in samples) <= 1
            assert max(running for running, _ in samples) <= 5
            store_locks = s.storage.count({"name": "email"}) - s.storage.count({"locked_at": None})
            running, locked = s.controller.counts("email")
            assert locked <= 1
            assert store_locks <= running + locked
        finally:
            gate.opened.set()


class TestManagingJobs:
    def test_cancel(self, scheduler):
        cancelled = []
        scheduler.events.on_job("cancel", lambda job: cancelled.append(job.name))
        scheduler.now("email")
        scheduler.now("sms")
        assert scheduler.cancel({"name": "email"}) == 1
        assert cancelled == ["email"]
        assert [j.name for j in scheduler.jobs()] == ["sms"]

    def test_cancel_releases_queued_reservation(self, make_scheduler):
        s = make_scheduler(max_concurrency=1)
        gate = Gate()
        s.define("email", gate)
        s.now("email")
        queued = s.now("email")
        s.tick()
        assert wait_for(lambda: gate.running == 1)
        s.cancel({"id": queued.id})
        assert s.controller.counts("email") == (1, 0)
        gate.opened.set()

    def test_disable_and_enable(self, scheduler):
        ran = []
        scheduler.define("email", lambda job: ran.append(job.id))
        scheduler.now("email")
        assert scheduler.disable({"name": "email"}) == 1
        scheduler.tick()
        scheduler.wait_until_idle(5)
        assert ran == []

        scheduler.enable({"name": "email"})
        scheduler.tick()
        scheduler.wait_until_idle(5)
        assert len(ran) == 1

    def test_purge(self, scheduler):
        scheduler.define("email", lambda job: None)
        scheduler.now("email")
        scheduler.now("legacy")
        assert scheduler.purge() == 1
        assert [j.name for j in scheduler.jobs()] == ["email"]

    def test_touch_renews_lock(self, scheduler):
        touched = []

        def long_job(job):
            before = job.locked_at
            touched.append(scheduler.touch(job))
            assert job.locked_at > before

        scheduler.define("report", long_job)
        job = scheduler.now("report")
        scheduler.tick()
        scheduler.wait_until_idle(5)
        assert touched == [True]
        assert scheduler.storage.get(job.id).state == "completed"

    def test_unknown_definition_is_not_claimed(self, scheduler):
        scheduler.now("nobody-defines-me")
        scheduler.tick()
        assert scheduler.storage.count({"locked_at": None}) == 1
        with pytest.raises(UnknownJobError):
            scheduler.registry.require("nobody-defines-me")


class TestConfig:
    def test_config_table_and_overrides(self, db_path, storage):
        storage.set_config("max_concurrency", "3")
        storage.set_config("process_every", "2 seconds")
        s = Scheduler(db_path=db_path, default_concurrency=7)
        try:
            assert s.config.max_concurrency == 3
            assert s.config.process_every == 2000
            assert s.config.default_concurrency == 7
            assert s.registry.define("x", lambda job: None).concurrency == 7
        finally:
            s.storage.close()

    def test_invalid_config(self, db_path):
        with pytest.raises(ValueError):
            Scheduler(db_path=db_path, max_concurrency=0)
