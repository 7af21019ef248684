"""
SQLAlchemy-backed persistent store for job records, executions, targeting
rules and the user snapshot used for targeting.

The store reference is handed to the scheduler at construction time; the
engine itself is only created on first use.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import NotFoundError
from .models import (
    Base,
    JobExecution,
    ScheduledJob,
    ScheduledJobTargetPack,
    ScheduledJobTargetUser,
    TelegramUser,
    UserPackAssignment,
    utcnow,
)
from .types import MODE_EXCLUDE, MODE_INCLUDE, STATUS_FAILED, STATUS_PENDING, STATUS_SUCCESS

DEFAULT_DATABASE_URL = "sqlite:///rad_scheduler.db"

JOB_FIELDS = {
    "job_key",
    "job_type",
    "display_name",
    "description",
    "schedule",
    "timezone",
    "enabled",
    "config",
    "last_run_at",
    "next_run_at",
}
EXECUTION_FIELDS = {
    "status",
    "completed_at",
    "duration_ms",
    "result",
    "users_affected",
    "error",
    "attempts",
}


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _dump_config(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


class JobStore:
    def __init__(self, database_url: str = DEFAULT_DATABASE_URL) -> None:
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._sessionmaker = None
        self._lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        self._connect()
        return self._engine

    def _connect(self) -> sessionmaker:
        with self._lock:
            if self._engine is None:
                kwargs: Dict[str, Any] = {"future": True, "echo": False, "pool_pre_ping": True}
                if self.database_url.startswith("sqlite:"):
                    # Triggers and workers touch the store from their own threads.
                    kwargs["connect_args"] = {"check_same_thread": False}
                    if self.database_url in {"sqlite://", "sqlite:///:memory:"}:
                        kwargs["poolclass"] = StaticPool
                self._engine = create_engine(self.database_url, **kwargs)
                self._sessionmaker = sessionmaker(
                    bind=self._engine, autoflush=False, expire_on_commit=False, future=True
                )
            return self._sessionmaker

    def _session(self):
        return self._connect()()

    def init_db(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    # -- scheduled jobs -------------------------------------------------

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        with self._session() as s:
            return s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()

    def get_job_by_id(self, job_id: str) -> Optional[ScheduledJob]:
        with self._session() as s:
            return s.get(ScheduledJob, job_id)

    def list_jobs(self, enabled: Optional[bool] = None) -> List[ScheduledJob]:
        with self._session() as s:
            q = select(ScheduledJob).order_by(ScheduledJob.name.asc())
            if enabled is not None:
                q = q.where(ScheduledJob.enabled.is_(enabled))
            return list(s.execute(q).scalars().all())

    def create_job(self, *, name: str, **fields: Any) -> ScheduledJob:
        unknown = set(fields) - JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        with self._session() as s:
            job = ScheduledJob(name=name)
            for key, value in fields.items():
                setattr(job, key, self._job_value(key, value))
            if not job.job_key:
                job.job_key = name
            s.add(job)
            s.commit()
            return job

    def update_job(self, name: str, **fields: Any) -> ScheduledJob:
        unknown = set(fields) - JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        with self._session() as s:
            job = s.execute(select(ScheduledJob).where(ScheduledJob.name == name)).scalar_one_or_none()
            if job is None:
                raise NotFoundError(f"Job not found: {name}")
            for key, value in fields.items():
                setattr(job, key, self._job_value(key, value))
            job.updated_at = utcnow()
            s.commit()
            return job

    @staticmethod
    def _job_value(key: str, value: Any) -> Any:
        if key == "config":
            return _dump_config(value)
        if key in {"last_run_at", "next_run_at"}:
            return _naive_utc(value)
        return value

    # -- executions -----------------------------------------------------

    def create_execution(self, job_id: str, started_at: Optional[datetime] = None) -> JobExecution:
        with self._session() as s:
            execution = JobExecution(
                job_id=job_id,
                status=STATUS_PENDING,
                started_at=_naive_utc(started_at) or utcnow(),
            )
            s.add(execution)
            s.commit()
            return execution

    def get_execution(self, execution_id: str) -> Optional[JobExecution]:
        with self._session() as s:
            return s.get(JobExecution, execution_id)

    def update_execution(self, execution_id: str, **fields: Any) -> Optional[JobExecution]:
        unknown = set(fields) - EXECUTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown execution fields: {sorted(unknown)}")
        with self._session() as s:
            execution = s.get(JobExecution, execution_id)
            if execution is None:
                return None
            for key, value in fields.items():
                if key == "completed_at":
                    value = _naive_utc(value)
                setattr(execution, key, value)
            s.commit()
            return execution

    def list_executions(
        self,
        job_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        with self._session() as s:
            q = (
                select(JobExecution, ScheduledJob.name, ScheduledJob.display_name)
                .join(ScheduledJob, ScheduledJob.id == JobExecution.job_id)
                .order_by(JobExecution.started_at.desc())
                .limit(int(limit))
                .offset(int(offset))
            )
            if job_name:
                q = q.where(ScheduledJob.name == job_name)
            rows = s.execute(q).all()
            return [
                {"execution": execution, "job": {"name": name, "display_name": display_name}}
                for execution, name, display_name in rows
            ]

    def execution_counts(self, job_id: str) -> Dict[str, Any]:
        with self._session() as s:
            total = s.execute(
                select(func.count(JobExecution.id)).where(JobExecution.job_id == job_id)
            ).scalar_one()
            successful = s.execute(
                select(func.count(JobExecution.id))
                .where(JobExecution.job_id == job_id)
                .where(JobExecution.status == STATUS_SUCCESS)
            ).scalar_one()
            failed = s.execute(
                select(func.count(JobExecution.id))
                .where(JobExecution.job_id == job_id)
                .where(JobExecution.status == STATUS_FAILED)
            ).scalar_one()
            average = s.execute(
                select(func.avg(JobExecution.duration_ms))
                .where(JobExecution.job_id == job_id)
                .where(JobExecution.duration_ms.is_not(None))
            ).scalar_one()
            last = s.execute(
                select(JobExecution)
                .where(JobExecution.job_id == job_id)
                .order_by(JobExecution.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return {
                "total": int(total or 0),
                "successful": int(successful or 0),
                "failed": int(failed or 0),
                "average_duration_ms": float(average or 0.0),
                "last": last,
            }

    # -- targeting rules ------------------------------------------------

    def list_target_user_ids(self, job_id: str, mode: str) -> List[str]:
        with self._session() as s:
            q = (
                select(ScheduledJobTargetUser.telegram_user_id)
                .where(ScheduledJobTargetUser.job_id == job_id)
                .where(ScheduledJobTargetUser.mode == mode)
                .order_by(ScheduledJobTargetUser.id.asc())
            )
            return [str(v) for v in s.execute(q).scalars().all()]

    def list_target_pack_ids(self, job_id: str, mode: str = MODE_INCLUDE) -> List[str]:
        with self._session() as s:
            q = (
                select(ScheduledJobTargetPack.pack_id)
                .where(ScheduledJobTargetPack.job_id == job_id)
                .where(ScheduledJobTargetPack.mode == mode)
                .order_by(ScheduledJobTargetPack.id.asc())
            )
            return [str(v) for v in s.execute(q).scalars().all()]

    def replace_targets(
        self,
        job_id: str,
        include_user_ids: Iterable[str] = (),
        exclude_user_ids: Iterable[str] = (),
        pack_ids: Iterable[str] = (),
    ) -> None:
        with self._session() as s:
            s.execute(delete(ScheduledJobTargetUser).where(ScheduledJobTargetUser.job_id == job_id))
            s.execute(delete(ScheduledJobTargetPack).where(ScheduledJobTargetPack.job_id == job_id))
            for mode, user_ids in ((MODE_INCLUDE, include_user_ids), (MODE_EXCLUDE, exclude_user_ids)):
                for user_id in dict.fromkeys(str(v) for v in user_ids):
                    s.add(ScheduledJobTargetUser(job_id=job_id, mode=mode, telegram_user_id=user_id))
            for pack_id in dict.fromkeys(str(v) for v in pack_ids):
                s.add(ScheduledJobTargetPack(job_id=job_id, mode=MODE_INCLUDE, pack_id=pack_id))
            s.commit()

    # -- user snapshot --------------------------------------------------

    def list_user_ids(self) -> List[str]:
        with self._session() as s:
            q = select(TelegramUser.id).order_by(TelegramUser.created_at.asc(), TelegramUser.id.asc())
            return [str(v) for v in s.execute(q).scalars().all()]

    def list_pack_member_ids(self, pack_ids: Iterable[str]) -> List[str]:
        ids = [str(v) for v in pack_ids]
        if not ids:
            return []
        with self._session() as s:
            q = (
                select(UserPackAssignment.telegram_user_id)
                .where(UserPackAssignment.pack_id.in_(ids))
                .order_by(UserPackAssignment.id.asc())
            )
            return [str(v) for v in s.execute(q).scalars().all()]

    def add_user(self, user_id: str, username: Optional[str] = None) -> None:
        with self._session() as s:
            if s.get(TelegramUser, str(user_id)) is None:
                s.add(TelegramUser(id=str(user_id), username=username))
                s.commit()

    def assign_pack(self, user_id: str, pack_id: str) -> None:
        with self._session() as s:
            assignment = s.execute(
                select(UserPackAssignment).where(UserPackAssignment.telegram_user_id == str(user_id))
            ).scalar_one_or_none()
            if assignment is None:
                s.add(UserPackAssignment(telegram_user_id=str(user_id), pack_id=str(pack_id)))
            else:
                assignment.pack_id = str(pack_id)
            s.commit()
