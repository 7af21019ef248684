"""
Job registry: the mapping from a stable job key to the code that runs it.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .errors import HandlerFailure
from .types import DEFAULT_TIMEZONE, JobConfig, JobContext, JobDefinition, JobResult

logger = logging.getLogger(__name__)


class JobRegistry:
    def __init__(self) -> None:
        self._jobs: Dict[str, JobDefinition] = {}

    def register(self, definition: JobDefinition) -> None:
        if definition.name in self._jobs:
            logger.warning("Job %s is already registered; overwriting.", definition.name)
        self._jobs[definition.name] = definition
        logger.info("Registered job %s", definition.name)

    def get(self, job_key: str) -> Optional[JobDefinition]:
        return self._jobs.get(job_key)

    def get_all(self) -> List[JobDefinition]:
        return list(self._jobs.values())

    def has(self, job_key: str) -> bool:
        return job_key in self._jobs

    def execute(self, job_key: str, context: JobContext) -> JobResult:
        definition = self.get(job_key)
        if definition is None:
            raise HandlerFailure(f'Job "{job_key}" not found in registry.')

        logger.info("[%s] Executing job %s", context.execution_id, job_key)
        try:
            raw = definition.handler(context)
        except Exception as exc:
            logger.error("[%s] Job %s raised: %s", context.execution_id, job_key, exc)
            raise
        try:
            result = JobResult.from_value(raw)
        except (TypeError, ValueError) as exc:
            raise HandlerFailure(f'Job "{job_key}" returned an invalid result: {exc}') from exc
        logger.info(
            "[%s] Job %s completed (success=%s, users_affected=%s)",
            context.execution_id,
            job_key,
            result.success,
            result.users_affected,
        )
        return result

    def get_defaults(self) -> List[JobDefinition]:
        """Definitions that catalog sync should seed into the store."""
        return [job for job in self._jobs.values() if job.seed_on_startup]


class BaseJob:
    """Subclass and implement `execute` to define a coded job."""

    name: str = ""
    display_name: str = ""
    description: str = ""
    default_schedule: str = ""
    default_timezone: str = DEFAULT_TIMEZONE
    default_config: JobConfig = {}
    seed_on_startup: bool = True

    def execute(self, context: JobContext) -> JobResult:
        raise NotImplementedError

    def to_definition(self) -> JobDefinition:
        return JobDefinition(
            name=self.name,
            display_name=self.display_name,
            description=self.description,
            default_schedule=self.default_schedule,
            default_timezone=self.default_timezone,
            default_config=dict(self.default_config),
            seed_on_startup=self.seed_on_startup,
            handler=self.execute,
        )
