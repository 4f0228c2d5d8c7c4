import pytest

from concurrency import ConcurrencyController
from definitions import DefinitionRegistry
from errors import CapacityInvariantError, UnknownJobError
from models import Backoff


def noop(job):
    return None


@pytest.fixture
def registry():
    return DefinitionRegistry(default_concurrency=5, default_lock_limit=0, default_lock_lifetime=600000)


class TestDefinitions:
    def test_defaults(self, registry):
        d = registry.define("email", noop)
        assert (d.concurrency, d.lock_limit, d.lock_lifetime, d.priority) == (5, 0, 600000, 0)
        assert d.backoff is None

    def test_attempts_get_default_backoff(self, registry):
        d = registry.define("email", noop, attempts=3)
        assert d.backoff == Backoff("exponential", 1000)

    def test_named_priority(self, registry):
        assert registry.define("email", noop, priority="high").priority == 10

    def test_redefinition_keeps_counters(self, registry):
        d = registry.define("email", noop)
        d.running, d.locked = 2, 1
        replaced = registry.define("email", noop, concurrency=9)
        assert replaced.concurrency == 9
        assert (replaced.running, replaced.locked) == (2, 1)
        assert registry.fill_lock("email") is registry.fill_lock("email")

    @pytest.mark.parametrize("options", [
        {"concurrency": 0}, {"lock_limit": -1}, {"lock_lifetime": 0}, {"attempts": -1},
    ])
    def test_invalid_options(self, registry, options):
        with pytest.raises(ValueError):
            registry.define("email", noop, **options)

    def test_processor_must_be_callable(self, registry):
        with pytest.raises(TypeError):
            registry.define("email", "not a function")

    def test_require_unknown(self, registry):
        with pytest.raises(UnknownJobError):
            registry.require("nope")


class TestConcurrencyController:
    def test_concurrency_bounds_running_plus_locked(self, registry):
        registry.define("email", noop, concurrency=2)
        c = ConcurrencyController(registry)
        assert c.try_reserve_lock("email")
        assert c.try_reserve_lock("email")
        assert not c.try_reserve_lock("email")
        assert c.counts("email") == (0, 2)

    def test_lock_limit(self, registry):
        registry.define("email", noop, concurrency=10, lock_limit=1)
        c = ConcurrencyController(registry)
        assert c.try_reserve_lock("email")
        assert not c.try_reserve_lock("email")
        assert c.available_lock_slots("email") == 0

    def test_process_lock_limit(self, registry):
        registry.define("email", noop)
        registry.define("sms", noop)
        c = ConcurrencyController(registry, lock_limit=1)
        assert c.try_reserve_lock("email")
        assert not c.try_reserve_lock("sms")

    def test_max_concurrency(self, registry):
        registry.define("email", noop)
        registry.define("sms", noop)
        c = ConcurrencyController(registry, max_concurrency=1)
        assert c.try_reserve_lock("email") and c.try_reserve_lock("sms")
        assert c.try_start("email")
        assert not c.try_start("sms")
        c.finish("email")
        assert c.try_start("sms")
        assert c.total_running == 1
        assert c.total_locked == 0

    def test_start_moves_locked_to_running(self, registry):
        registry.define("email", noop)
        c = ConcurrencyController(registry)
        c.try_reserve_lock("email")
        assert c.try_start("email")
        assert c.counts("email") == (1, 0)
        c.finish("email")
        assert c.counts("email") == (0, 0)

    def test_negative_counts_are_fatal(self, registry):
        registry.define("email", noop)
        c = ConcurrencyController(registry)
        with pytest.raises(CapacityInvariantError):
            c.finish("email")
        with pytest.raises(CapacityInvariantError):
            c.release_lock("email")
        with pytest.raises(CapacityInvariantError):
            c.try_start("email")
