"""Weekly check-in dispatch."""

import logging
from dataclasses import dataclass, field
from typing import Any

from alphamail.core.exceptions import AlphaMailException
from alphamail.core.resilience import CircuitBreakerOpen
from alphamail.db.store import ConversationStore
from alphamail.services.composer import (
    CHECKIN_SUBJECT,
    ResponseComposer,
    greeting_for,
    render_email,
)
from alphamail.services.email_service import Mailer

logger = logging.getLogger(__name__)


@dataclass
class CheckinRun:
    """Outcome of one weekly batch."""

    sent: int = 0
    errors: list[str] = field(default_factory=list)


class CheckinService:
    """Sends the Sunday check-in to every active sender with a goal."""

    def __init__(
        self,
        store: ConversationStore,
        mailer: Mailer,
        composer: ResponseComposer,
    ) -> None:
        self._store = store
        self._mailer = mailer
        self._composer = composer

    async def send_checkin(self, profile: dict[str, Any], goal: dict[str, Any]) -> str:
        """Send one check-in and record it as the first message of a new thread.

        Returns:
            Id of the recorded outbound message (which is also the thread id).
        """
        body = self._composer.checkin_prompt(goal["description"])
        rendered = render_email(body, greeting=greeting_for(profile.get("first_name")))
        await self._mailer.send(profile["email"], CHECKIN_SUBJECT, rendered.html, rendered.text)

        row = await self._store.insert_email(
            user_id=profile["user_id"],
            direction="outbound",
            subject=CHECKIN_SUBJECT,
            content=rendered.text,
        )
        await self._store.update_email(row["id"], {"thread_id": row["id"]})
        return str(row["id"])

    async def send_weekly_checkins(self) -> CheckinRun:
        """Send every due check-in. One recipient's failure does not stop the batch."""
        run = CheckinRun()
        profiles = await self._store.list_checkin_profiles()

        for profile in profiles:
            try:
                goal = await self._store.get_active_goal(profile["user_id"])
                if goal is None:
                    continue
                await self.send_checkin(profile, goal)
                run.sent += 1
            except (AlphaMailException, CircuitBreakerOpen):
                logger.exception(
                    "Failed to send check-in",
                    extra={"user_id": profile.get("user_id")},
                )
                run.errors.append(profile.get("email", ""))

        logger.info("Weekly check-ins sent", extra={"sent": run.sent, "failed": len(run.errors)})
        return run
