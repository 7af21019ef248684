from __future__ import annotations


class SchedulerError(Exception):
    """Base error for rad_scheduler."""


class ConfigError(SchedulerError):
    """Config validation error."""


class NotFoundError(SchedulerError):
    """Unknown job name or execution id."""


class InvalidScheduleError(SchedulerError):
    """Cron expression or timezone that cannot be evaluated."""


class BackendUnavailableError(SchedulerError):
    """Queue backend could not be reached."""


class HandlerFailure(SchedulerError):
    """A job handler is missing or returned something unusable."""


class NotificationSinkFailure(SchedulerError):
    """The notification sink raised while delivering a batch."""
