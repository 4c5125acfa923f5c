"""Journey summary regeneration.

The summary shown on the account page is rewritten after each reply. The
regeneration runs as a fire-and-forget task: it never blocks or fails the
request that scheduled it, and its errors are only logged.
"""

import asyncio
import logging
import math
from datetime import UTC, datetime

from alphamail.core.exceptions import NotFoundError
from alphamail.db.store import ConversationStore
from alphamail.models.conversation import HistoryMessage
from alphamail.services.fact_extractor import FactExtractor

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_HISTORY_LIMIT = 50


def weeks_active(created_at: str | None, now: datetime | None = None) -> int:
    """Whole weeks since signup, rounded up, never less than 1."""
    if not created_at:
        return 1
    try:
        started = datetime.fromisoformat(created_at)
    except ValueError:
        return 1
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    elapsed = (now or datetime.now(UTC)) - started
    return max(1, math.ceil(elapsed.total_seconds() / (7 * 24 * 3600)))


class JourneySummaryService:
    """Regenerates ``profiles.summary`` from recent history and goal counts."""

    def __init__(
        self,
        store: ConversationStore,
        extractor: FactExtractor,
        history_limit: int = DEFAULT_SUMMARY_HISTORY_LIMIT,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._history_limit = history_limit
        self._tasks: set[asyncio.Task[None]] = set()

    async def regenerate(self, user_id: str, first_name: str | None = None) -> str:
        """Compose and store a fresh summary.

        Raises:
            NotFoundError: If the user has no profile.
            AIUnavailableError: If the model could not write a summary.
        """
        profile = await self._store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Profile", user_id)

        name = first_name or profile.get("first_name") or "there"
        rows = await self._store.get_recent_messages(user_id, self._history_limit)
        history = [HistoryMessage.model_validate(r) for r in rows]

        goals = await self._store.list_goals(user_id)
        completed = sum(1 for g in goals if g.get("completed"))
        current = next((g for g in goals if not g.get("completed")), None)

        summary = await self._extractor.compose_journey_summary(
            first_name=name,
            history=history,
            goals_completed=completed,
            current_goal=current["description"] if current else None,
            weeks_active=weeks_active(profile.get("created_at")),
        )
        await self._store.update_profile(user_id, {"summary": summary})
        logger.info("Updated journey summary", extra={"user_id": user_id})
        return summary

    async def _regenerate_quietly(self, user_id: str, first_name: str | None) -> None:
        try:
            await self.regenerate(user_id, first_name)
        except Exception:
            logger.exception("Failed to update journey summary", extra={"user_id": user_id})

    def schedule_regeneration(self, user_id: str, first_name: str | None = None) -> asyncio.Task[None]:
        """Start a background regeneration and return its task."""
        task = asyncio.create_task(self._regenerate_quietly(user_id, first_name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
