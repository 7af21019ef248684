"""
Scheduler and execution tracker.

Owns the persisted job records and the live cron trigger for each enabled
job. A trigger firing only ever calls `execute_job`, which records a pending
execution, resolves recipients and hands a work item to the queue manager.
Status reports from the queue manager come back through
`update_execution_status`.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .cron import CronClock, CronTrigger
from .errors import InvalidScheduleError, NotFoundError, SchedulerError
from .models import ScheduledJob
from .queue_manager import QueueManager
from .registry import JobRegistry
from .store import JobStore
from .targets import resolve_targets as resolve_target_rules
from .types import (
    DEFAULT_TIMEZONE,
    JOB_TYPE_CODED,
    JOB_TYPE_CUSTOM,
    MODE_EXCLUDE,
    MODE_INCLUDE,
    TERMINAL_STATUSES,
    UTC,
    VALID_STATUSES,
    JobConfig,
    JobStats,
    JobTargets,
    QueueConfig,
    QueueWorkItem,
)

logger = logging.getLogger(__name__)


def _count(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric count %r", value)
        return 0


class Scheduler:
    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        queue_manager: QueueManager,
        clock: Optional[CronClock] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.queue_manager = queue_manager
        self.clock = clock or CronClock()
        self._triggers: Dict[str, CronTrigger] = {}
        self._lock = threading.RLock()
        self._initialized = False
        queue_manager.set_execution_listener(self.update_execution_status)

    # -- lifecycle ------------------------------------------------------

    def initialize(self, queue_config: Optional[QueueConfig] = None) -> None:
        if self._initialized:
            logger.info("Scheduler already initialized.")
            return

        logger.info("Initializing scheduler...")
        self.store.init_db()
        self.queue_manager.initialize(queue_config or QueueConfig())
        self.sync_job_catalog()
        self._schedule_enabled_jobs()
        self._initialized = True
        logger.info("Scheduler initialized with %s active trigger(s).", len(self._triggers))

    def is_active(self) -> bool:
        return self._initialized

    def is_scheduled(self, job_name: str) -> bool:
        with self._lock:
            return job_name in self._triggers

    def shutdown(self) -> None:
        logger.info("Shutting down scheduler...")
        with self._lock:
            triggers = list(self._triggers.items())
            self._triggers.clear()
        for name, trigger in triggers:
            trigger.stop()
            logger.info("Stopped job: %s", name)
        self.queue_manager.shutdown()
        self._initialized = False
        logger.info("Scheduler shutdown complete.")

    def sync_job_catalog(self) -> None:
        for definition in self.registry.get_defaults():
            existing = self.store.get_job(definition.name)
            if existing is None:
                self.store.create_job(
                    name=definition.name,
                    job_key=definition.name,
                    job_type=JOB_TYPE_CODED,
                    display_name=definition.display_name,
                    description=definition.description,
                    schedule=definition.default_schedule,
                    timezone=definition.default_timezone,
                    enabled=True,
                    config=dict(definition.default_config),
                    next_run_at=self.calculate_next_run(
                        definition.default_schedule, definition.default_timezone
                    ),
                )
                logger.info("Created job record: %s", definition.name)
                continue
            # Operator customizations (schedule, timezone, enabled, config, key) survive a restart.
            self.store.update_job(
                definition.name,
                display_name=definition.display_name,
                description=definition.description,
                job_key=existing.job_key or definition.name,
                job_type=existing.job_type or JOB_TYPE_CODED,
            )
            logger.info("Refreshed job metadata: %s", definition.name)

    def _schedule_enabled_jobs(self) -> None:
        for record in self.store.list_jobs(enabled=True):
            self._start_job_cron(record)

    # -- triggers -------------------------------------------------------

    def _start_job_cron(self, record: ScheduledJob) -> None:
        # Stop, start and insert as one step so a name never has two live triggers.
        with self._lock:
            self._stop_job_cron(record.name)

            if not self.registry.has(record.job_key):
                logger.warning(
                    "No handler registered for job %s (key=%s); leaving it stopped.",
                    record.name,
                    record.job_key,
                )
                return

            try:
                trigger = self.clock.start(
                    record.schedule,
                    record.timezone,
                    lambda job_name=record.name: self._on_trigger(job_name),
                    name=record.name,
                )
            except InvalidScheduleError as exc:
                logger.warning("Failed to schedule job %s: %s", record.name, exc)
                return

            self._triggers[record.name] = trigger
        self.store.update_job(
            record.name,
            next_run_at=self.calculate_next_run(record.schedule, record.timezone),
        )
        logger.info("Scheduled job %s: %s (%s)", record.name, record.schedule, record.timezone)

    def _stop_job_cron(self, job_name: str) -> None:
        with self._lock:
            trigger = self._triggers.pop(job_name, None)
        if trigger is not None:
            trigger.stop()
            logger.info("Stopped job: %s", job_name)

    def _on_trigger(self, job_name: str) -> None:
        logger.info("Cron triggered for job: %s", job_name)
        try:
            self.execute_job(job_name)
        except SchedulerError as exc:
            logger.error("Scheduled run of %s failed: %s", job_name, exc)

    # -- execution ------------------------------------------------------

    def execute_job(self, job_name: str) -> str:
        record = self.store.get_job(job_name)
        if record is None:
            raise NotFoundError(f"Job not found: {job_name}")
        if not record.enabled:
            logger.info("Job %s is disabled; running it on explicit request.", job_name)

        started_at = datetime.now(tz=UTC)
        execution = self.store.create_execution(record.id, started_at=started_at)
        logger.info("[%s] Executing job %s", execution.id, job_name)

        item = QueueWorkItem(
            job_name=record.name,
            job_key=record.job_key,
            job_id=record.id,
            execution_id=execution.id,
            config=record.config_dict(),
            started_at=started_at,
            targets=self.resolve_targets(record.id),
        )
        self.queue_manager.add_job(item)

        self.store.update_job(
            job_name,
            last_run_at=started_at,
            next_run_at=self.calculate_next_run(record.schedule, record.timezone),
        )
        return execution.id

    def trigger_job(self, job_name: str) -> str:
        """Manual run outside the cron schedule."""
        logger.info("Manually triggering job: %s", job_name)
        return self.execute_job(job_name)

    def resolve_targets(self, job_id: str) -> JobTargets:
        include_user_ids = self.store.list_target_user_ids(job_id, MODE_INCLUDE)
        exclude_user_ids = self.store.list_target_user_ids(job_id, MODE_EXCLUDE)
        pack_ids = self.store.list_target_pack_ids(job_id)
        pack_member_ids = self.store.list_pack_member_ids(pack_ids) if pack_ids else []
        all_user_ids: List[str] = []
        if not include_user_ids and not pack_member_ids:
            all_user_ids = self.store.list_user_ids()
        return resolve_target_rules(
            include_user_ids=include_user_ids,
            exclude_user_ids=exclude_user_ids,
            pack_ids=pack_ids,
            pack_member_ids=pack_member_ids,
            all_user_ids=all_user_ids,
        )

    def update_execution_status(
        self,
        execution_id: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        if status not in VALID_STATUSES:
            logger.error("Ignoring unknown status %r for execution %s", status, execution_id)
            return
        if result is not None and not isinstance(result, dict):
            logger.warning("Ignoring non-mapping result for execution %s: %r", execution_id, result)
            result = None
        result = result or {}
        try:
            execution = self.store.get_execution(execution_id)
            if execution is None:
                logger.warning("Execution %s not found; dropping status %s.", execution_id, status)
                return
            if execution.status in TERMINAL_STATUSES:
                logger.warning(
                    "Execution %s is already %s; ignoring status %s.",
                    execution_id,
                    execution.status,
                    status,
                )
                return

            fields: Dict[str, Any] = {"status": status}
            if status in TERMINAL_STATUSES:
                completed_at = datetime.now(tz=UTC)
                started_at = execution.started_at.replace(tzinfo=UTC)
                fields["completed_at"] = completed_at
                fields["duration_ms"] = max(0, int((completed_at - started_at).total_seconds() * 1000))
            if "users_affected" in result:
                fields["users_affected"] = _count(result.get("users_affected"))
            if "summary" in result:
                fields["result"] = json.dumps(
                    {"summary": result.get("summary"), "users_affected": _count(result.get("users_affected"))},
                    default=str,
                )
            if "error" in result:
                error = result.get("error")
                fields["error"] = None if error is None else str(error)
            if "attempts" in result:
                fields["attempts"] = _count(result.get("attempts"))
            self.store.update_execution(execution_id, **fields)
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            logger.error("Failed to update execution %s to %s: %s", execution_id, status, exc)
            return
        logger.info("[%s] Execution status: %s", execution_id, status)

    # -- configuration --------------------------------------------------

    def update_job_config(
        self,
        job_name: str,
        schedule: Optional[str] = None,
        enabled: Optional[bool] = None,
        config: Optional[JobConfig] = None,
        timezone: Optional[str] = None,
    ) -> ScheduledJob:
        record = self.store.get_job(job_name)
        if record is None:
            raise NotFoundError(f"Job not found: {job_name}")

        fields: Dict[str, Any] = {}
        if schedule is not None:
            fields["schedule"] = schedule
        if timezone is not None:
            fields["timezone"] = timezone
        if enabled is not None:
            fields["enabled"] = bool(enabled)
        if config is not None:
            fields["config"] = dict(config)
        fields["next_run_at"] = self.calculate_next_run(
            fields.get("schedule", record.schedule),
            fields.get("timezone", record.timezone),
        )
        updated = self.store.update_job(job_name, **fields)

        if not updated.enabled:
            self._stop_job_cron(job_name)
        elif self._initialized:
            self._start_job_cron(updated)
        logger.info("Updated job config: %s", job_name)
        return updated

    def create_job(
        self,
        name: str,
        schedule: str,
        job_key: Optional[str] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        timezone: str = DEFAULT_TIMEZONE,
        config: Optional[JobConfig] = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Create a user-authored job that reuses a registered handler."""
        if self.store.get_job(name) is not None:
            raise SchedulerError(f"Job already exists: {name}")
        key = job_key or name
        if not self.registry.has(key):
            logger.warning("Creating job %s for unregistered handler %s.", name, key)

        record = self.store.create_job(
            name=name,
            job_key=key,
            job_type=JOB_TYPE_CUSTOM,
            display_name=display_name or name,
            description=description,
            schedule=schedule,
            timezone=timezone,
            enabled=bool(enabled),
            config=dict(config or {}),
            next_run_at=self.calculate_next_run(schedule, timezone),
        )
        logger.info("Created custom job %s (key=%s)", name, key)
        if record.enabled and self._initialized:
            self._start_job_cron(record)
        return record

    def set_job_targets(
        self,
        job_name: str,
        include_user_ids: Iterable[str] = (),
        exclude_user_ids: Iterable[str] = (),
        pack_ids: Iterable[str] = (),
    ) -> JobTargets:
        record = self.store.get_job(job_name)
        if record is None:
            raise NotFoundError(f"Job not found: {job_name}")
        self.store.replace_targets(
            record.id,
            include_user_ids=include_user_ids,
            exclude_user_ids=exclude_user_ids,
            pack_ids=pack_ids,
        )
        return self.resolve_targets(record.id)

    def calculate_next_run(self, schedule: str, timezone: str) -> Optional[datetime]:
        try:
            return self.clock.next_fire_time(schedule, timezone)
        except InvalidScheduleError as exc:
            logger.error("Failed to calculate next run for %r (%s): %s", schedule, timezone, exc)
            return None

    # -- inspection -----------------------------------------------------

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for record in self.store.list_jobs():
            payload = record.to_dict()
            payload["is_active"] = self.is_scheduled(record.name)
            jobs.append(payload)
        return jobs

    def get_job_executions(
        self,
        job_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        rows = self.store.list_executions(job_name=job_name, limit=limit, offset=offset)
        out = []
        for row in rows:
            payload = row["execution"].to_dict()
            payload["job"] = row["job"]
            out.append(payload)
        return out

    def get_job_stats(self, job_name: str) -> JobStats:
        record = self.store.get_job(job_name)
        if record is None:
            raise NotFoundError(f"Job not found: {job_name}")
        counts = self.store.execution_counts(record.id)
        last = counts["last"]
        return JobStats(
            total_executions=counts["total"],
            successful_executions=counts["successful"],
            failed_executions=counts["failed"],
            average_duration_ms=counts["average_duration_ms"],
            last_execution=last.to_dict() if last is not None else None,
        )
