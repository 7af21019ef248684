from __future__ import annotations

from datetime import datetime, timezone

import pytest

from rad_scheduler.builtin_jobs import CustomMessageJob, register_builtin_jobs
from rad_scheduler.errors import HandlerFailure
from rad_scheduler.registry import JobRegistry
from rad_scheduler.types import JobContext, JobDefinition, JobResult, JobTargets

UTC = timezone.utc


def _context(job_key: str, config: dict = None, final_user_ids: list = None) -> JobContext:
    return JobContext(
        job_id="job-1",
        job_name=job_key,
        job_key=job_key,
        execution_id="exec-1",
        config=config or {},
        started_at=datetime(2026, 1, 2, 9, 0, tzinfo=UTC),
        targets=JobTargets(final_user_ids=final_user_ids or []),
    )


def _definition(name: str, handler, seed_on_startup: bool = True) -> JobDefinition:
    return JobDefinition(
        name=name,
        display_name=name.title(),
        description="",
        default_schedule="0 9 * * *",
        handler=handler,
        seed_on_startup=seed_on_startup,
    )


def test_register_get_and_has() -> None:
    registry = JobRegistry()
    registry.register(_definition("daily", lambda ctx: JobResult(True, 0, "ok")))
    assert registry.has("daily")
    assert not registry.has("weekly")
    assert registry.get("daily").display_name == "Daily"
    assert registry.get("weekly") is None
    assert [job.name for job in registry.get_all()] == ["daily"]


def test_register_twice_overwrites_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    registry = JobRegistry()
    registry.register(_definition("daily", lambda ctx: JobResult(True, 1, "first")))
    registry.register(_definition("daily", lambda ctx: JobResult(True, 2, "second")))
    assert len(registry.get_all()) == 1
    assert registry.execute("daily", _context("daily")).summary == "second"
    assert "already registered" in caplog.text


def test_execute_unknown_key_raises() -> None:
    with pytest.raises(HandlerFailure, match="not found"):
        JobRegistry().execute("missing", _context("missing"))


def test_execute_accepts_dict_results() -> None:
    registry = JobRegistry()
    registry.register(
        _definition(
            "dicty",
            lambda ctx: {
                "success": True,
                "users_affected": 2,
                "summary": "two",
                "notifications": [{"telegram_user_id": "u1", "message": "hi"}],
            },
        )
    )
    result = registry.execute("dicty", _context("dicty"))
    assert result.success
    assert result.users_affected == 2
    assert result.notifications[0].telegram_user_id == "u1"


def test_execute_rejects_invalid_results() -> None:
    registry = JobRegistry()
    registry.register(_definition("broken", lambda ctx: "done"))
    with pytest.raises(HandlerFailure, match="invalid result"):
        registry.execute("broken", _context("broken"))


def test_handler_exceptions_propagate() -> None:
    def explode(ctx: JobContext) -> JobResult:
        raise RuntimeError("boom")

    registry = JobRegistry()
    registry.register(_definition("explode", explode))
    with pytest.raises(RuntimeError, match="boom"):
        registry.execute("explode", _context("explode"))


def test_get_defaults_skips_unseeded_jobs() -> None:
    registry = JobRegistry()
    register_builtin_jobs(registry)
    registry.register(_definition("daily", lambda ctx: JobResult(True, 0, "ok")))
    assert registry.has("custom-message")
    assert [job.name for job in registry.get_defaults()] == ["daily"]


def test_custom_message_builds_one_notification_per_target() -> None:
    job = CustomMessageJob()
    result = job.execute(_context("custom-message", {"message": "Hello!"}, ["u1", "u2"]))
    assert result.success
    assert result.users_affected == 2
    assert [n.telegram_user_id for n in result.notifications] == ["u1", "u2"]
    assert all(n.message == "Hello!" for n in result.notifications)


def test_custom_message_requires_text() -> None:
    result = CustomMessageJob().execute(_context("custom-message", {"message": "  "}, ["u1"]))
    assert not result.success
    assert result.notifications == []
    assert result.errors
