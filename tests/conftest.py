from __future__ import annotations

from typing import Callable, List, Optional

import fakeredis
import pytest

from rad_scheduler.cron import CronClock, parse_timezone, validate_schedule
from rad_scheduler.queue_manager import QueueManager
from rad_scheduler.registry import BaseJob, JobRegistry
from rad_scheduler.store import JobStore
from rad_scheduler.types import JobContext, JobNotification, JobResult, QueueConfig, RedisSettings


class WeeklyCheckJob(BaseJob):
    name = "weekly-check"
    display_name = "Weekly Check"
    description = "Friday evening check-in"
    default_schedule = "0 22 * * 5"
    default_config = {"message": "How was your week?"}

    def execute(self, context: JobContext) -> JobResult:
        user_ids = context.targets.final_user_ids if context.targets else []
        return JobResult(
            success=True,
            users_affected=len(user_ids),
            summary=f"Checked in with {len(user_ids)} users",
            notifications=[
                JobNotification(telegram_user_id=user_id, message=context.config["message"])
                for user_id in user_ids
            ],
        )


class FakeTrigger:
    def __init__(self, schedule: str, timezone_name: str, callback: Callable[[], None], name: str) -> None:
        self.schedule = schedule
        self.timezone_name = timezone_name
        self.callback = callback
        self.name = name
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

    def fire(self) -> None:
        self.callback()


class RecordingClock(CronClock):
    """Real next-fire arithmetic, but triggers never start threads."""

    def __init__(self) -> None:
        self.started: List[FakeTrigger] = []

    def start(self, schedule: str, timezone_name: str, callback: Callable[[], None], name: str = "") -> FakeTrigger:
        validate_schedule(schedule)
        parse_timezone(timezone_name)
        trigger = FakeTrigger(schedule, timezone_name, callback, name)
        self.started.append(trigger)
        return trigger

    def latest(self, name: str) -> Optional[FakeTrigger]:
        for trigger in reversed(self.started):
            if trigger.name == name:
                return trigger
        return None


@pytest.fixture
def offline_queue() -> QueueConfig:
    # Nothing listens on port 1, so connecting fails fast and the queue goes offline.
    return QueueConfig(redis=RedisSettings(host="127.0.0.1", port=1), connect_timeout_ms=200)


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> fakeredis.FakeServer:
    server = fakeredis.FakeServer()
    monkeypatch.setattr(QueueManager, "_connect", lambda self, config: fakeredis.FakeRedis(server=server))
    return server


@pytest.fixture
def store() -> JobStore:
    job_store = JobStore("sqlite://")
    job_store.init_db()
    yield job_store
    job_store.dispose()


@pytest.fixture
def registry() -> JobRegistry:
    job_registry = JobRegistry()
    job_registry.register(WeeklyCheckJob().to_definition())
    return job_registry


@pytest.fixture
def clock() -> RecordingClock:
    return RecordingClock()


@pytest.fixture
def queue_manager(registry: JobRegistry) -> QueueManager:
    manager = QueueManager(registry)
    yield manager
    manager.shutdown()
