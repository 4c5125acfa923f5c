"""Onboarding support: provisional-message migration and the first outbound emails."""

import logging

from alphamail.core.exceptions import NotFoundError
from alphamail.db.store import ConversationStore
from alphamail.security.sanitization import DEFAULT_SUBJECT
from alphamail.services.composer import (
    ONBOARDING_PROMPT,
    ONBOARDING_SUBJECT,
    greeting_for,
    render_email,
    signup_welcome_message,
)
from alphamail.services.email_service import Mailer

logger = logging.getLogger(__name__)


class OnboardingService:
    """Moves a new account's provisional messages in and sends the first prompt."""

    def __init__(self, store: ConversationStore, mailer: Mailer) -> None:
        self._store = store
        self._mailer = mailer

    async def link_pending_emails(self, user_id: str, email: str) -> int:
        """Migrate every provisional message for *email* into the user's messages.

        Subject, content and creation time are preserved. Each provisional
        thread becomes a new thread keyed by the id of its first migrated
        message. The provisional rows are deleted afterwards.

        Args:
            user_id: Owner of the migrated messages.
            email: Address the provisional messages were stored under.

        Returns:
            Number of migrated messages.
        """
        pending = await self._store.list_pending_emails(email)
        if not pending:
            return 0

        thread_map: dict[str, str] = {}
        migrated: list[str] = []
        for row in pending:
            old_thread = row.get("thread_id") or row["id"]
            new_thread = thread_map.get(old_thread)

            inserted = await self._store.insert_email(
                user_id=user_id,
                direction="inbound",
                subject=row.get("subject") or DEFAULT_SUBJECT,
                content=row.get("content") or "",
                thread_id=new_thread,
                created_at=row.get("created_at"),
            )
            if new_thread is None:
                thread_map[old_thread] = inserted["id"]
                await self._store.update_email(inserted["id"], {"thread_id": inserted["id"]})
            migrated.append(row["id"])

        await self._store.delete_pending_emails(migrated)
        logger.info(
            "Linked pending emails",
            extra={"user_id": user_id, "count": len(migrated), "threads": len(thread_map)},
        )
        return len(migrated)

    async def send_onboarding_prompt(self, user_id: str, email: str) -> str:
        """Ask a newly confirmed user for their name and a first goal.

        The prompt is recorded as an outbound message that starts a new thread.

        Returns:
            Provider message id.
        """
        rendered = render_email(ONBOARDING_PROMPT)
        message_id = await self._mailer.send(email, ONBOARDING_SUBJECT, rendered.html, rendered.text)

        row = await self._store.insert_email(
            user_id=user_id,
            direction="outbound",
            subject=ONBOARDING_SUBJECT,
            content=rendered.text,
        )
        await self._store.update_email(row["id"], {"thread_id": row["id"]})
        return message_id

    async def send_welcome_email(self, user_id: str) -> str:
        """Welcome a user who signed up on the web and name their newest goal.

        Recorded as an outbound message that starts a new thread.

        Raises:
            NotFoundError: The user has no profile.
        """
        profile = await self._store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Profile", user_id)

        goals = await self._store.list_goals(user_id)
        goal = goals[0]["description"] if goals else None
        subject = greeting_for(profile.get("first_name"))
        rendered = render_email(signup_welcome_message(goal), greeting=subject)
        message_id = await self._mailer.send(profile["email"], subject, rendered.html, rendered.text)

        row = await self._store.insert_email(
            user_id=user_id,
            direction="outbound",
            subject=subject,
            content=rendered.text,
        )
        await self._store.update_email(row["id"], {"thread_id": row["id"]})
        logger.info("Welcome email sent", extra={"user_id": user_id, "has_goal": goal is not None})
        return message_id
