"""
Command line entry point: `python -m rad_scheduler <command>`.
"""

from __future__ import annotations

import argparse
import importlib
import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

from .builtin_jobs import register_builtin_jobs
from .config import DEFAULT_CONFIG, AppConfig, load_config
from .cron import CronClock, parse_timezone, validate_schedule
from .errors import ConfigError, NotFoundError, SchedulerError
from .log import setup_logging
from .queue_manager import NotificationSink, QueueManager
from .registry import JobRegistry
from .scheduler import Scheduler
from .store import JobStore
from .types import JobContext, JobNotification

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_COUNT = 5
DEFAULT_EXECUTIONS_LIMIT = 20
DAEMON_POLL_SECONDS = 1.0


def log_notifications(notifications: List[JobNotification], context: JobContext) -> None:
    for notification in notifications:
        logger.info(
            "[%s] Notification for %s from %s (%s chars)",
            context.execution_id,
            notification.telegram_user_id,
            context.job_name,
            len(notification.message),
        )


def build_registry(config: AppConfig) -> JobRegistry:
    registry = JobRegistry()
    register_builtin_jobs(registry)
    for module_name in config.jobs_modules:
        module = _import_jobs_module(module_name)
        register = getattr(module, "register_jobs", None)
        if not callable(register):
            raise ConfigError(f"Error: {module_name} does not define register_jobs(registry).")
        register(registry)
    return registry


def resolve_notification_sink(config: AppConfig) -> NotificationSink:
    for module_name in config.jobs_modules:
        sink = getattr(_import_jobs_module(module_name), "notification_sink", None)
        if callable(sink):
            return sink
    return log_notifications


def _import_jobs_module(module_name: str) -> Any:
    try:
        return importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Error: Failed to import jobs module {module_name}: {exc}") from exc


def build_scheduler(config: AppConfig, clock: Optional[CronClock] = None) -> Scheduler:
    registry = build_registry(config)
    queue_manager = QueueManager(registry, notification_sink=resolve_notification_sink(config))
    store = JobStore(config.database.url)
    return Scheduler(store, registry, queue_manager, clock=clock)


def _open_scheduler(config: AppConfig) -> Scheduler:
    scheduler = build_scheduler(config)
    scheduler.store.init_db()
    scheduler.sync_job_catalog()
    return scheduler


def command_validate(config: AppConfig) -> int:
    registry = build_registry(config)
    for definition in registry.get_all():
        validate_schedule(definition.default_schedule)
        parse_timezone(definition.default_timezone)
    print(f"Config valid: {config.source or 'built-in defaults'}")
    print(f"Database: {config.database.url}")
    redis_settings = config.queue.redis
    print(f"Queue: {config.queue.name} @ {redis_settings.host}:{redis_settings.port}/{redis_settings.db}")
    print(f"Registered jobs: {len(registry.get_all())}")
    for definition in registry.get_all():
        seeded = "" if definition.seed_on_startup else " (not seeded)"
        print(f"- {definition.name}: {definition.default_schedule} ({definition.default_timezone}){seeded}")
    return 0


def command_jobs(config: AppConfig) -> int:
    scheduler = _open_scheduler(config)
    try:
        jobs = scheduler.get_all_jobs()
        if not jobs:
            print("No jobs.")
        for job in jobs:
            print(
                f"- {job['name']} [{job['job_type']}] enabled={job['enabled']} "
                f"schedule={job['schedule']} ({job['timezone']}) next_run={job['next_run_at'] or '-'}"
            )
    finally:
        scheduler.store.dispose()
    return 0


def command_preview(config: AppConfig, job_name: Optional[str], count: int) -> int:
    scheduler = _open_scheduler(config)
    try:
        if job_name:
            record = scheduler.store.get_job(job_name)
            if record is None:
                raise NotFoundError(f"Job not found: {job_name}")
            records = [record]
        else:
            records = scheduler.store.list_jobs()

        for record in records:
            print("=" * 80)
            print(f"Job: {record.name} (enabled={bool(record.enabled)})")
            print(f"Schedule: {record.schedule} ({record.timezone})")
            print(f"Next {count} run(s):")
            runs = scheduler.clock.next_fire_times(record.schedule, record.timezone, count)
            if not runs:
                print("- none")
            tz = parse_timezone(record.timezone)
            for run_dt in runs:
                print(f"- {run_dt.astimezone(tz).isoformat()}")
        print("=" * 80)
    finally:
        scheduler.store.dispose()
    return 0


def command_trigger(config: AppConfig, job_name: str) -> int:
    scheduler = _open_scheduler(config)
    scheduler.queue_manager.initialize(config.queue, start_workers=False)
    try:
        execution_id = scheduler.trigger_job(job_name)
        if scheduler.queue_manager.is_offline:
            print(f"Execution {execution_id} recorded, but the queue is offline; it will not run.")
            return 1
        print(f"Queued execution {execution_id} for {job_name}")
    finally:
        scheduler.shutdown()
        scheduler.store.dispose()
    return 0


def command_update(
    config: AppConfig,
    job_name: str,
    schedule: Optional[str],
    timezone_name: Optional[str],
    enabled: Optional[bool],
) -> int:
    if schedule is None and timezone_name is None and enabled is None:
        raise SchedulerError("Nothing to update: pass --schedule, --timezone, --enable or --disable.")
    scheduler = _open_scheduler(config)
    try:
        record = scheduler.update_job_config(
            job_name,
            schedule=schedule,
            enabled=enabled,
            timezone=timezone_name,
        )
        payload = record.to_dict()
        print(
            f"Updated {payload['name']}: enabled={payload['enabled']} schedule={payload['schedule']} "
            f"({payload['timezone']}) next_run={payload['next_run_at'] or '-'}"
        )
    finally:
        scheduler.store.dispose()
    return 0


def command_executions(config: AppConfig, job_name: Optional[str], limit: int) -> int:
    scheduler = _open_scheduler(config)
    try:
        executions = scheduler.get_job_executions(job_name=job_name, limit=limit)
        if not executions:
            print("No executions.")
        for execution in executions:
            line = (
                f"- {execution['id']} {execution['job']['name']} {execution['status']} "
                f"started={execution['started_at']} duration_ms={execution['duration_ms']} "
                f"users={execution['users_affected']}"
            )
            if execution["error"]:
                line += f" error={execution['error']}"
            print(line)
    finally:
        scheduler.store.dispose()
    return 0


def command_stats(config: AppConfig, job_name: Optional[str]) -> int:
    scheduler = _open_scheduler(config)
    try:
        if job_name:
            stats = scheduler.get_job_stats(job_name)
            print(f"Job: {job_name}")
            print(f"Total executions: {stats.total_executions}")
            print(f"Successful: {stats.successful_executions}")
            print(f"Failed: {stats.failed_executions}")
            print(f"Average duration: {stats.average_duration_ms:.0f} ms")
        scheduler.queue_manager.initialize(config.queue, start_workers=False)
        queue_stats = scheduler.queue_manager.get_queue_stats()
        state = "offline" if scheduler.queue_manager.is_offline else "online"
        print(f"Queue ({state}): " + ", ".join(f"{k}={v}" for k, v in queue_stats.as_dict().items()))
    finally:
        scheduler.shutdown()
        scheduler.store.dispose()
    return 0


def command_daemon(config: AppConfig, sleep: Callable[[float], None] = time.sleep) -> int:
    scheduler = build_scheduler(config)
    try:
        scheduler.initialize(config.queue)
        logger.info("Daemon running; press Ctrl+C to stop.")
        while True:
            sleep(DAEMON_POLL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        scheduler.shutdown()
        scheduler.store.dispose()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="rad_scheduler recurring job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config (default: {DEFAULT_CONFIG} when present)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    config_help = f"Path to config (default: {DEFAULT_CONFIG})"

    validate_parser = subparsers.add_parser("validate", help="Validate config and registered jobs")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    jobs_parser = subparsers.add_parser("jobs", help="List scheduled job records")
    jobs_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    preview_parser = subparsers.add_parser("preview", help="Show the next fire times of jobs")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    trigger_parser = subparsers.add_parser("trigger", help="Queue one run of a job now")
    trigger_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    trigger_parser.add_argument("--job", required=True, help="Job name")

    update_parser = subparsers.add_parser("update", help="Change a job's schedule, timezone or enabled flag")
    update_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    update_parser.add_argument("--job", required=True, help="Job name")
    update_parser.add_argument("--schedule", help="New 5-field cron expression")
    update_parser.add_argument("--timezone", help="New IANA timezone")
    toggle = update_parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None, help="Enable the job")
    toggle.add_argument("--disable", dest="enabled", action="store_false", help="Disable the job")

    executions_parser = subparsers.add_parser("executions", help="List recent executions")
    executions_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    executions_parser.add_argument("--job", help="Only executions of this job")
    executions_parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_EXECUTIONS_LIMIT,
        help=f"Maximum rows (default: {DEFAULT_EXECUTIONS_LIMIT})",
    )

    stats_parser = subparsers.add_parser("stats", help="Show queue statistics and optional job stats")
    stats_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    stats_parser.add_argument("--job", help="Also show execution stats for this job")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler and queue workers")
    daemon_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config) if args.config else None

    try:
        config = load_config(config_path)
        setup_logging(config.logging.file, config.logging.level)
        if args.command == "validate":
            return command_validate(config)
        if args.command == "jobs":
            return command_jobs(config)
        if args.command == "preview":
            if args.count <= 0:
                raise SchedulerError("--count must be >= 1")
            return command_preview(config, job_name=args.job, count=args.count)
        if args.command == "trigger":
            return command_trigger(config, job_name=args.job)
        if args.command == "update":
            return command_update(
                config,
                job_name=args.job,
                schedule=args.schedule,
                timezone_name=args.timezone,
                enabled=args.enabled,
            )
        if args.command == "executions":
            if args.limit <= 0:
                raise SchedulerError("--limit must be >= 1")
            return command_executions(config, job_name=args.job, limit=args.limit)
        if args.command == "stats":
            return command_stats(config, job_name=args.job)
        if args.command == "daemon":
            return command_daemon(config)
        raise SchedulerError(f"Unsupported command: {args.command}")
    except SchedulerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1
