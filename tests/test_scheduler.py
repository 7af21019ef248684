from __future__ import annotations

import json
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import List

import pytest

from rad_scheduler.builtin_jobs import register_builtin_jobs
from rad_scheduler.errors import NotFoundError, SchedulerError
from rad_scheduler.queue_manager import QueueManager
from rad_scheduler.registry import JobRegistry
from rad_scheduler.scheduler import Scheduler
from rad_scheduler.store import JobStore
from rad_scheduler.types import (
    BackoffPolicy,
    JobDefinition,
    JobOptions,
    JobResult,
    QueueConfig,
    QueueHandle,
    QueueWorkItem,
)


@pytest.fixture
def scheduler(store, registry, queue_manager, clock) -> Scheduler:
    sched = Scheduler(store, registry, queue_manager, clock=clock)
    yield sched
    sched.shutdown()


def _capture(monkeypatch: pytest.MonkeyPatch, queue_manager: QueueManager) -> List[QueueWorkItem]:
    items: List[QueueWorkItem] = []

    def add_job(item: QueueWorkItem, delay_ms=None, priority=None) -> QueueHandle:
        items.append(item)
        return QueueHandle(
            id=f"test-{len(items)}",
            job_name=item.job_name,
            execution_id=item.execution_id,
            persisted=True,
        )

    monkeypatch.setattr(queue_manager, "add_job", add_job)
    return items


def _seed_users(store: JobStore) -> None:
    for idx in range(1, 8):
        store.add_user(f"u{idx}")
    for user_id in ("u2", "u5", "u7"):
        store.assign_pack(user_id, "P1")


def test_initialize_seeds_catalog_and_schedules_enabled_jobs(
    scheduler: Scheduler, store: JobStore, clock, offline_queue: QueueConfig
) -> None:
    scheduler.initialize(offline_queue)

    record = store.get_job("weekly-check")
    assert record is not None
    assert record.schedule == "0 22 * * 5"
    assert record.timezone == "Asia/Tehran"
    assert record.job_type == "coded"
    assert record.enabled is True
    assert record.next_run_at is not None
    assert record.config_dict() == {"message": "How was your week?"}

    assert scheduler.is_active()
    assert scheduler.is_scheduled("weekly-check")
    assert clock.latest("weekly-check").schedule == "0 22 * * 5"


def test_initialize_twice_keeps_one_trigger(scheduler: Scheduler, clock, offline_queue: QueueConfig) -> None:
    scheduler.initialize(offline_queue)
    scheduler.initialize(offline_queue)
    assert len(clock.started) == 1


def test_restart_keeps_operator_changes_and_refreshes_metadata(
    store: JobStore, registry: JobRegistry, clock, offline_queue: QueueConfig
) -> None:
    first = Scheduler(store, registry, QueueManager(registry), clock=clock)
    first.initialize(offline_queue)
    first.update_job_config(
        "weekly-check",
        schedule="30 8 * * 6",
        enabled=False,
        config={"message": "Custom"},
    )
    assert not first.is_scheduled("weekly-check")
    first.shutdown()

    renamed = JobRegistry()
    renamed.register(
        replace(registry.get("weekly-check"), display_name="Weekly Check-in", description="Updated copy")
    )
    second = Scheduler(store, renamed, QueueManager(renamed), clock=clock)
    second.initialize(offline_queue)
    try:
        record = store.get_job("weekly-check")
        assert record.display_name == "Weekly Check-in"
        assert record.description == "Updated copy"
        assert record.schedule == "30 8 * * 6"
        assert record.enabled is False
        assert record.config_dict() == {"message": "Custom"}
        assert not second.is_scheduled("weekly-check")
        assert len(store.list_jobs()) == 1
    finally:
        second.shutdown()


def test_disabled_job_can_still_be_executed(
    scheduler: Scheduler,
    store: JobStore,
    queue_manager: QueueManager,
    offline_queue: QueueConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    scheduler.initialize(offline_queue)
    scheduler.update_job_config("weekly-check", enabled=False)
    items = _capture(monkeypatch, queue_manager)

    execution_id = scheduler.execute_job("weekly-check")

    assert [item.execution_id for item in items] == [execution_id]
    assert store.get_execution(execution_id).status == "pending"
    assert store.get_job("weekly-check").last_run_at is not None


def test_execute_job_resolves_targets_into_work_item(
    scheduler: Scheduler,
    store: JobStore,
    queue_manager: QueueManager,
    offline_queue: QueueConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _seed_users(store)
    scheduler.initialize(offline_queue)
    targets = scheduler.set_job_targets("weekly-check", exclude_user_ids=["u7"], pack_ids=["P1"])
    assert targets.final_user_ids == ["u2", "u5"]

    items = _capture(monkeypatch, queue_manager)
    scheduler.trigger_job("weekly-check")

    item = items[0]
    record = store.get_job("weekly-check")
    assert item.job_id == record.id
    assert item.job_key == "weekly-check"
    assert item.config == {"message": "How was your week?"}
    assert item.targets.final_user_ids == ["u2", "u5"]
    assert item.targets.exclude_user_ids == ["u7"]


def test_job_without_targeting_rules_reaches_everyone(scheduler: Scheduler, store: JobStore) -> None:
    _seed_users(store)
    scheduler.sync_job_catalog()
    record = store.get_job("weekly-check")
    assert scheduler.resolve_targets(record.id).final_user_ids == ["u1", "u2", "u3", "u4", "u5", "u6", "u7"]


def test_successful_run_is_recorded(
    scheduler: Scheduler,
    store: JobStore,
    queue_manager: QueueManager,
    offline_queue: QueueConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store.add_user("u1")
    store.add_user("u2")
    scheduler.initialize(offline_queue)
    items = _capture(monkeypatch, queue_manager)
    execution_id = scheduler.execute_job("weekly-check")

    queue_manager.process_item(items[0])

    execution = store.get_execution(execution_id)
    assert execution.status == "success"
    assert execution.users_affected == 2
    assert execution.attempts == 1
    assert execution.completed_at is not None
    assert execution.duration_ms is not None and execution.duration_ms >= 0
    assert json.loads(execution.result)["summary"] == "Checked in with 2 users"

    stats = scheduler.get_job_stats("weekly-check")
    assert stats.total_executions == 1
    assert stats.successful_executions == 1
    assert stats.failed_executions == 0
    assert stats.last_execution["id"] == execution_id


def test_retries_update_the_same_execution_until_failed(
    scheduler: Scheduler,
    store: JobStore,
    registry: JobRegistry,
    queue_manager: QueueManager,
    offline_queue: QueueConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unreliable(ctx) -> JobResult:
        raise RuntimeError(f"upstream timeout on attempt {ctx.attempt}")

    registry.register(
        JobDefinition(
            name="flaky-report",
            display_name="Flaky Report",
            description="",
            default_schedule="0 7 * * *",
            handler=unreliable,
        )
    )
    scheduler.initialize(offline_queue)
    items = _capture(monkeypatch, queue_manager)
    execution_id = scheduler.execute_job("flaky-report")

    with pytest.raises(RuntimeError):
        queue_manager.process_item(items[0], attempt=1, attempts_left=1)
    execution = store.get_execution(execution_id)
    assert execution.status == "running"
    assert execution.error == "Attempt 1 failed: upstream timeout on attempt 1"
    assert execution.completed_at is None

    with pytest.raises(RuntimeError):
        queue_manager.process_item(items[0], attempt=2, attempts_left=0)
    execution = store.get_execution(execution_id)
    assert execution.status == "failed"
    assert execution.error == "upstream timeout on attempt 2"
    assert execution.attempts == 2
    assert execution.completed_at is not None

    # Terminal state is written once.
    scheduler.update_execution_status(execution_id, "success", {"summary": "late"})
    assert store.get_execution(execution_id).status == "failed"
    assert scheduler.get_job_stats("flaky-report").failed_executions == 1


def test_offline_queue_leaves_execution_pending(
    scheduler: Scheduler, store: JobStore, offline_queue: QueueConfig
) -> None:
    scheduler.initialize(offline_queue)
    execution_id = scheduler.execute_job("weekly-check")
    assert store.get_execution(execution_id).status == "pending"


def test_unknown_job_raises_not_found(scheduler: Scheduler) -> None:
    with pytest.raises(NotFoundError):
        scheduler.execute_job("nope")
    with pytest.raises(NotFoundError):
        scheduler.trigger_job("nope")
    with pytest.raises(NotFoundError):
        scheduler.update_job_config("nope", enabled=False)
    with pytest.raises(NotFoundError):
        scheduler.get_job_stats("nope")
    with pytest.raises(NotFoundError):
        scheduler.set_job_targets("nope", include_user_ids=["u1"])


def test_update_execution_status_tolerates_bad_input(
    scheduler: Scheduler, caplog: pytest.LogCaptureFixture
) -> None:
    scheduler.update_execution_status("does-not-exist", "success", {"users_affected": 3})
    scheduler.update_execution_status("does-not-exist", "exploded")
    assert "not found" in caplog.text
    assert "unknown status" in caplog.text


def test_malformed_status_result_is_logged_not_raised(
    scheduler: Scheduler, store: JobStore, offline_queue: QueueConfig, caplog: pytest.LogCaptureFixture
) -> None:
    scheduler.initialize(offline_queue)
    first = scheduler.execute_job("weekly-check")
    second = scheduler.execute_job("weekly-check")

    scheduler.update_execution_status(first, "success", {"users_affected": "x", "attempts": "two", "summary": "ok"})
    scheduler.update_execution_status(second, "running", ["not", "a", "mapping"])

    execution = store.get_execution(first)
    assert execution.status == "success"
    assert execution.users_affected == 0
    assert json.loads(execution.result) == {"summary": "ok", "users_affected": 0}
    assert store.get_execution(second).status == "running"
    assert "non-numeric count" in caplog.text
    assert "non-mapping result" in caplog.text


def test_catalog_sync_keeps_operator_job_key(scheduler: Scheduler, store: JobStore) -> None:
    scheduler.sync_job_catalog()
    store.update_job("weekly-check", job_key="custom-message", job_type="custom")

    scheduler.sync_job_catalog()

    record = store.get_job("weekly-check")
    assert record.job_key == "custom-message"
    assert record.job_type == "custom"
    assert record.display_name == "Weekly Check"


def test_concurrent_reschedules_leave_one_live_trigger(
    tmp_path: Path, registry: JobRegistry, clock, monkeypatch: pytest.MonkeyPatch
) -> None:
    file_store = JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    file_store.init_db()
    sched = Scheduler(file_store, registry, QueueManager(registry), clock=clock)
    sched.sync_job_catalog()
    record = file_store.get_job("weekly-check")

    start = clock.start

    def slow_start(*args, **kwargs):
        time.sleep(0.2)
        return start(*args, **kwargs)

    monkeypatch.setattr(clock, "start", slow_start)
    threads = [threading.Thread(target=sched._start_job_cron, args=(record,)) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    live = [trigger for trigger in clock.started if trigger.name == "weekly-check" and not trigger.stopped]
    assert len(clock.started) == 2
    assert len(live) == 1
    assert sched._triggers["weekly-check"] is live[0]
    sched.shutdown()
    file_store.dispose()


def test_schedule_change_replaces_trigger(
    scheduler: Scheduler, store: JobStore, clock, offline_queue: QueueConfig
) -> None:
    scheduler.initialize(offline_queue)
    old = clock.latest("weekly-check")

    scheduler.update_job_config("weekly-check", schedule="15 7 * * *", timezone="UTC")

    new = clock.latest("weekly-check")
    assert old.stopped
    assert new is not old
    assert not new.stopped
    assert (new.schedule, new.timezone_name) == ("15 7 * * *", "UTC")
    assert store.get_job("weekly-check").next_run_at.strftime("%H:%M") == "07:15"


def test_disable_and_enable_toggle_trigger(
    scheduler: Scheduler, clock, offline_queue: QueueConfig
) -> None:
    scheduler.initialize(offline_queue)
    scheduler.update_job_config("weekly-check", enabled=False)
    assert not scheduler.is_scheduled("weekly-check")
    assert clock.latest("weekly-check").stopped

    scheduler.update_job_config("weekly-check", enabled=True)
    assert scheduler.is_scheduled("weekly-check")
    assert [job["is_active"] for job in scheduler.get_all_jobs()] == [True]


def test_update_before_initialize_does_not_start_triggers(scheduler: Scheduler, clock) -> None:
    scheduler.sync_job_catalog()
    scheduler.update_job_config("weekly-check", schedule="0 6 * * *")
    assert clock.started == []
    assert not scheduler.is_scheduled("weekly-check")


def test_invalid_schedule_leaves_job_stopped(
    scheduler: Scheduler,
    store: JobStore,
    clock,
    offline_queue: QueueConfig,
    caplog: pytest.LogCaptureFixture,
) -> None:
    scheduler.initialize(offline_queue)
    old = clock.latest("weekly-check")

    scheduler.update_job_config("weekly-check", schedule="every friday")

    assert old.stopped
    assert not scheduler.is_scheduled("weekly-check")
    assert store.get_job("weekly-check").next_run_at is None
    assert "Failed to schedule job weekly-check" in caplog.text


def test_missing_handler_leaves_job_stopped(
    scheduler: Scheduler, offline_queue: QueueConfig, caplog: pytest.LogCaptureFixture
) -> None:
    scheduler.initialize(offline_queue)
    record = scheduler.create_job("orphan", "0 9 * * *", job_key="ghost-handler")
    assert record.job_type == "custom"
    assert not scheduler.is_scheduled("orphan")
    assert "No handler registered" in caplog.text


def test_custom_job_reuses_registered_handler(
    scheduler: Scheduler, store: JobStore, registry: JobRegistry, offline_queue: QueueConfig
) -> None:
    register_builtin_jobs(registry)
    scheduler.initialize(offline_queue)
    assert store.get_job("custom-message") is None

    record = scheduler.create_job(
        "friday-promo",
        "0 18 * * 5",
        job_key="custom-message",
        display_name="Friday Promo",
        config={"message": "Weekend sale!"},
    )
    assert record.job_key == "custom-message"
    assert record.job_type == "custom"
    assert record.next_run_at is not None
    assert scheduler.is_scheduled("friday-promo")
    with pytest.raises(SchedulerError, match="already exists"):
        scheduler.create_job("friday-promo", "0 18 * * 5", job_key="custom-message")


def test_trigger_fire_submits_a_run(
    scheduler: Scheduler,
    clock,
    queue_manager: QueueManager,
    offline_queue: QueueConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    scheduler.initialize(offline_queue)
    items = _capture(monkeypatch, queue_manager)
    clock.latest("weekly-check").fire()
    assert [item.job_name for item in items] == ["weekly-check"]
    executions = scheduler.get_job_executions("weekly-check")
    assert executions[0]["id"] == items[0].execution_id
    assert executions[0]["job"]["name"] == "weekly-check"


def test_calculate_next_run(scheduler: Scheduler) -> None:
    nxt = scheduler.calculate_next_run("0 22 * * 5", "Asia/Tehran")
    assert nxt is not None
    assert scheduler.calculate_next_run("0 22 * *", "Asia/Tehran") is None
    assert scheduler.calculate_next_run("0 22 * * 5", "Nowhere/City") is None


def test_shutdown_before_initialize_is_safe(store: JobStore, registry: JobRegistry, clock) -> None:
    sched = Scheduler(store, registry, QueueManager(registry), clock=clock)
    sched.shutdown()
    assert not sched.is_active()


def test_shutdown_stops_all_triggers(scheduler: Scheduler, clock, offline_queue: QueueConfig) -> None:
    scheduler.initialize(offline_queue)
    trigger = clock.latest("weekly-check")
    scheduler.shutdown()
    assert trigger.stopped
    assert not scheduler.is_scheduled("weekly-check")
    assert not scheduler.is_active()


def test_throwing_handler_ends_failed_through_the_queue(
    fake_redis, tmp_path: Path, registry: JobRegistry, clock
) -> None:
    def broken(ctx) -> JobResult:
        raise RuntimeError("provider rejected the batch")

    registry.register(
        JobDefinition(
            name="broken-digest",
            display_name="Broken Digest",
            description="",
            default_schedule="0 5 * * *",
            handler=broken,
        )
    )
    # Worker threads write to the store, so use a file database.
    store = JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    sched = Scheduler(store, registry, QueueManager(registry), clock=clock)
    sched.initialize(
        QueueConfig(default_job_options=JobOptions(attempts=2, backoff=BackoffPolicy(type="fixed", delay_ms=1000)))
    )
    try:
        execution_id = sched.execute_job("broken-digest")
        deadline = time.monotonic() + 15
        while store.get_execution(execution_id).status != "failed" and time.monotonic() < deadline:
            time.sleep(0.05)

        execution = store.get_execution(execution_id)
        assert execution.status == "failed"
        assert execution.error == "provider rejected the batch"
        assert execution.attempts == 2
        assert not execution.users_affected
    finally:
        sched.shutdown()
        store.dispose()
