import pytest

from job_events import EventKind, JobEvents
from models import Job


class TestSubscriptions:
    def test_base_events(self):
        events = JobEvents()
        seen = []
        events.on_base("ready", lambda: seen.append("ready"))
        events.on_base(EventKind.ERROR, lambda e: seen.append(str(e)))
        events.emit_base(EventKind.READY)
        events.emit_base(EventKind.ERROR, RuntimeError("db down"))
        assert seen == ["ready", "db down"]

    def test_job_and_name_scoped(self):
        events = JobEvents()
        all_jobs, emails = [], []
        events.on_job("success", lambda j: all_jobs.append(j.name))
        events.on_job("success", lambda j: emails.append(j.name), name="email")
        events.emit_job(EventKind.SUCCESS, Job(name="email"))
        events.emit_job(EventKind.SUCCESS, Job(name="sms"))
        assert all_jobs == ["email", "sms"]
        assert emails == ["email"]

    def test_fail_receives_error_then_job(self):
        events = JobEvents()
        seen = []
        events.on_job("fail", lambda error, j: seen.append((str(error), j.name)))
        events.emit_job(EventKind.FAIL, Job(name="email"), ValueError("boom"))
        assert seen == [("boom", "email")]

    def test_wrong_kind_for_subscription(self):
        events = JobEvents()
        with pytest.raises(ValueError):
            events.on_base("start", lambda j: None)
        with pytest.raises(ValueError):
            events.on_job("ready", lambda: None)
        with pytest.raises(ValueError):
            events.on_job("finished", lambda j: None)

    def test_off(self):
        events = JobEvents()
        seen = []
        listener = events.on_job("start", lambda j: seen.append(j.name))
        events.off("start", listener)
        events.emit_job(EventKind.START, Job(name="email"))
        assert seen == []


class TestDelivery:
    def test_listeners_get_a_copy(self):
        events = JobEvents()
        events.on_job("start", lambda j: j.data.update(mutated=True))
        job = Job(name="email", data={"to": "x"})
        events.emit_job(EventKind.START, job)
        assert job.data == {"to": "x"}

    def test_listener_exception_is_contained(self, caplog):
        events = JobEvents()
        seen = []

        def broken(_job):
            raise RuntimeError("listener bug")

        events.on_job("complete", broken)
        events.on_job("complete", lambda j: seen.append(j.name))
        events.emit_job(EventKind.COMPLETE, Job(name="email"))
        assert seen == ["email"]
        assert "listener bug" in caplog.text
