"""
Jobs that ship with the scheduler itself.
"""

from __future__ import annotations

from .registry import BaseJob, JobRegistry
from .types import JobContext, JobNotification, JobResult


class CustomMessageJob(BaseJob):
    """Relays an operator-written message to every resolved target user."""

    name = "custom-message"
    display_name = "Custom Message"
    description = "Send a custom message to targeted users"
    default_schedule = "0 9 * * *"
    default_config = {"message": ""}
    # Only user-authored jobs point at this key; nothing is seeded for it.
    seed_on_startup = False

    def execute(self, context: JobContext) -> JobResult:
        message = str(context.config.get("message") or "")
        if not message.strip():
            return JobResult(
                success=False,
                users_affected=0,
                summary="Custom message is empty",
                errors=["Custom message text is required"],
            )

        targets = context.targets.final_user_ids if context.targets else []
        notifications = [
            JobNotification(
                telegram_user_id=user_id,
                message=message,
                parse_mode=context.config.get("parse_mode", "HTML"),
                silent=bool(context.config.get("silent", False)),
            )
            for user_id in targets
        ]
        return JobResult(
            success=True,
            users_affected=len(notifications),
            summary=f"Prepared {len(notifications)} custom notifications",
            notifications=notifications,
        )


def register_builtin_jobs(registry: JobRegistry) -> None:
    registry.register(CustomMessageJob().to_definition())
