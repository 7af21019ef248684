from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    # Stored naive; every timestamp column holds UTC.
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(128), nullable=False, unique=True)
    job_key = Column(String(128), nullable=False)
    job_type = Column(String(32), default="coded", nullable=False)
    display_name = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    schedule = Column(String(128), nullable=False)
    timezone = Column(String(64), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    config = Column(Text, nullable=True)

    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def config_dict(self) -> Dict[str, Any]:
        return _safe_json_object(self.config)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "job_key": self.job_key,
            "job_type": self.job_type,
            "display_name": self.display_name,
            "description": self.description,
            "schedule": self.schedule,
            "timezone": self.timezone,
            "enabled": bool(self.enabled),
            "config": self.config_dict(),
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class JobExecution(Base):
    __tablename__ = "job_executions"

    id = Column(String(36), primary_key=True, default=_new_id)
    job_id = Column(String(36), nullable=False, index=True)
    status = Column(String(16), default="pending", nullable=False)

    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    result = Column(Text, nullable=True)
    users_affected = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "result": _safe_json_object(self.result) if self.result else None,
            "users_affected": self.users_affected,
            "error": self.error,
            "attempts": self.attempts,
        }


class ScheduledJobTargetUser(Base):
    __tablename__ = "scheduled_job_target_users"
    __table_args__ = (UniqueConstraint("job_id", "mode", "telegram_user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False, index=True)
    mode = Column(String(16), nullable=False)
    telegram_user_id = Column(String(64), nullable=False)


class ScheduledJobTargetPack(Base):
    __tablename__ = "scheduled_job_target_packs"
    __table_args__ = (UniqueConstraint("job_id", "mode", "pack_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False, index=True)
    mode = Column(String(16), nullable=False)
    pack_id = Column(String(64), nullable=False)


class TelegramUser(Base):
    __tablename__ = "telegram_users"

    id = Column(String(64), primary_key=True)
    username = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class UserPackAssignment(Base):
    __tablename__ = "user_pack_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_user_id = Column(String(64), nullable=False, unique=True)
    pack_id = Column(String(64), nullable=False, index=True)


def _safe_json_object(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}
