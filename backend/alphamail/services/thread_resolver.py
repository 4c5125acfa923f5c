"""Thread resolution for inbound replies.

A thread is the id of its first message. A reply joins the newest thread of
the same sender whose subject contains the reply's subject once the leading
``re:`` marker is removed. Matching is a case-insensitive substring test,
so unrelated older threads that share a subject fragment can be picked up.
"""

import logging
import re
from typing import Protocol

logger = logging.getLogger(__name__)

_REPLY_MARKER = re.compile(r"^re:\s*", re.IGNORECASE)


class ThreadLookup(Protocol):
    """Store capability needed to resolve threads."""

    async def find_thread_by_subject(
        self, user_id: str, normalized_subject: str
    ) -> str | None: ...


def normalize_subject(subject: str | None) -> str:
    """Strip a leading ``re:`` marker and surrounding whitespace."""
    if not subject:
        return ""
    return _REPLY_MARKER.sub("", subject.strip()).strip()


def reply_subject(subject: str | None, default: str) -> str:
    """Subject for a reply that keeps the client's threading.

    Args:
        subject: Subject of the message being answered.
        default: Used when the inbound subject is empty.
    """
    if subject and subject.lower().startswith("re:"):
        return subject
    return f"re: {subject or default}"


class ThreadResolver:
    """Finds the thread an inbound message belongs to."""

    def __init__(self, store: ThreadLookup) -> None:
        self._store = store

    async def resolve(self, subject: str | None, sender_id: str) -> str | None:
        """Return the thread id for a reply, or None for a new thread.

        On None the caller sets the stored inbound message's thread id to
        its own id.
        """
        normalized = normalize_subject(subject)
        if not normalized:
            return None

        thread_id = await self._store.find_thread_by_subject(sender_id, normalized)
        logger.debug(
            "Thread resolution",
            extra={"user_id": sender_id, "matched": thread_id is not None},
        )
        return thread_id
