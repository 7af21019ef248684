"""
Value types shared by the scheduler, the queue manager and job handlers.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

UTC = timezone.utc

DEFAULT_TIMEZONE = "Asia/Tehran"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
VALID_STATUSES = {STATUS_PENDING, STATUS_RUNNING, STATUS_SUCCESS, STATUS_FAILED}
TERMINAL_STATUSES = {STATUS_SUCCESS, STATUS_FAILED}

MODE_INCLUDE = "include"
MODE_EXCLUDE = "exclude"

JOB_TYPE_CODED = "coded"
JOB_TYPE_CUSTOM = "custom"

JobConfig = Dict[str, Any]


@dataclass(frozen=True)
class JobTargets:
    include_user_ids: List[str] = field(default_factory=list)
    exclude_user_ids: List[str] = field(default_factory=list)
    pack_ids: List[str] = field(default_factory=list)
    final_user_ids: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, List[str]]:
        return {
            "include_user_ids": list(self.include_user_ids),
            "exclude_user_ids": list(self.exclude_user_ids),
            "pack_ids": list(self.pack_ids),
            "final_user_ids": list(self.final_user_ids),
        }

    @staticmethod
    def from_payload(payload: Optional[Dict[str, Any]]) -> Optional["JobTargets"]:
        if not payload:
            return None
        return JobTargets(
            include_user_ids=[str(v) for v in payload.get("include_user_ids", [])],
            exclude_user_ids=[str(v) for v in payload.get("exclude_user_ids", [])],
            pack_ids=[str(v) for v in payload.get("pack_ids", [])],
            final_user_ids=[str(v) for v in payload.get("final_user_ids", [])],
        )


@dataclass(frozen=True)
class JobNotification:
    telegram_user_id: str
    message: str
    parse_mode: Optional[str] = None
    silent: bool = False
    reply_markup: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class JobContext:
    job_id: str
    job_name: str
    job_key: str
    execution_id: str
    config: JobConfig
    started_at: datetime
    targets: Optional[JobTargets] = None
    attempt: int = 1


@dataclass
class JobResult:
    success: bool
    users_affected: int
    summary: str
    notifications: List[JobNotification] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @staticmethod
    def from_value(value: Any) -> "JobResult":
        if isinstance(value, JobResult):
            return value
        if not isinstance(value, dict):
            raise TypeError(f"Job handlers must return JobResult or dict, got {type(value).__name__}.")
        notifications = [
            item if isinstance(item, JobNotification) else JobNotification(**item)
            for item in value.get("notifications") or []
        ]
        return JobResult(
            success=bool(value.get("success", False)),
            users_affected=int(value.get("users_affected", 0) or 0),
            summary=str(value.get("summary", "")),
            notifications=notifications,
            details=dict(value.get("details") or {}),
            errors=[str(err) for err in value.get("errors") or []],
        )


JobHandler = Callable[[JobContext], Any]


@dataclass(frozen=True)
class JobDefinition:
    name: str
    display_name: str
    description: str
    default_schedule: str
    handler: JobHandler
    default_timezone: str = DEFAULT_TIMEZONE
    default_config: JobConfig = field(default_factory=dict)
    seed_on_startup: bool = True


@dataclass(frozen=True)
class QueueWorkItem:
    job_name: str
    job_key: str
    job_id: str
    execution_id: str
    config: JobConfig
    started_at: datetime
    targets: Optional[JobTargets] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "job_key": self.job_key,
            "job_id": self.job_id,
            "execution_id": self.execution_id,
            "config": dict(self.config),
            "started_at": self.started_at.astimezone(UTC).isoformat(),
            "targets": self.targets.to_payload() if self.targets else None,
        }

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "QueueWorkItem":
        started_at = datetime.fromisoformat(payload["started_at"])
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=UTC)
        return QueueWorkItem(
            job_name=payload["job_name"],
            job_key=payload["job_key"],
            job_id=payload["job_id"],
            execution_id=payload["execution_id"],
            config=dict(payload.get("config") or {}),
            started_at=started_at,
            targets=JobTargets.from_payload(payload.get("targets")),
        )


@dataclass(frozen=True)
class QueueHandle:
    id: str
    job_name: str
    execution_id: str
    persisted: bool


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class JobStats:
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_duration_ms: float
    last_execution: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class RedisSettings:
    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0


@dataclass(frozen=True)
class BackoffPolicy:
    type: str = "exponential"
    delay_ms: int = 5000

    def intervals(self, retries: int) -> List[int]:
        base = max(1, round(self.delay_ms / 1000.0))
        if self.type == "fixed":
            return [base] * retries
        return [base * (2 ** idx) for idx in range(retries)]


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    # True drops the record at once; an int keeps it for that many seconds.
    remove_on_complete: Any = 3600
    remove_on_fail: Any = 7 * 24 * 3600


@dataclass(frozen=True)
class QueueConfig:
    redis: RedisSettings = field(default_factory=RedisSettings)
    default_job_options: JobOptions = field(default_factory=JobOptions)
    name: str = "scheduled-jobs"
    connect_timeout_ms: int = 3000
