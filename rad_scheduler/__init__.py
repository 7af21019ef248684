"""
rad_scheduler: recurring job scheduling with a durable Redis work queue.
"""

from .errors import (
    BackendUnavailableError,
    ConfigError,
    HandlerFailure,
    InvalidScheduleError,
    NotFoundError,
    SchedulerError,
)
from .queue_manager import QueueManager
from .registry import BaseJob, JobRegistry
from .scheduler import Scheduler
from .store import JobStore
from .types import (
    JobContext,
    JobDefinition,
    JobNotification,
    JobResult,
    JobTargets,
    QueueConfig,
    QueueWorkItem,
)

__all__ = [
    "BackendUnavailableError",
    "BaseJob",
    "ConfigError",
    "HandlerFailure",
    "InvalidScheduleError",
    "JobContext",
    "JobDefinition",
    "JobNotification",
    "JobRegistry",
    "JobResult",
    "JobStore",
    "JobTargets",
    "NotFoundError",
    "QueueConfig",
    "QueueManager",
    "QueueWorkItem",
    "Scheduler",
    "SchedulerError",
]
