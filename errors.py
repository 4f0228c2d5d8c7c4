# errors.py


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class ScheduleParseError(SchedulerError, ValueError):
    """An interval, cron expression, time of day or run time could not be parsed."""


class StoreUnavailable(SchedulerError):
    """The shared job table could not be reached or written."""


class UnknownJobError(SchedulerError, KeyError):
    """No definition is registered under the requested job name."""


class CapacityInvariantError(SchedulerError, RuntimeError):
    """A running/locked counter would go negative."""
