"""Record store for senders, goals, messages and provisional messages.

Every query runs through the Supabase circuit breaker. Failures surface as
:class:`DatabaseError`; callers decide whether a given write is critical.

Tables:
    profiles            one row per account (``user_id`` is the auth user id)
    goals               weekly goals, at most one incomplete per user in practice
    emails              inbound/outbound messages, grouped by ``thread_id``
    pending_emails      provisional messages from senders without an account
    groups              accountability groups
    group_members       (group_id, user_id) memberships
    processed_webhooks  delivery ids already handled
"""

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from alphamail.core.exceptions import DatabaseError
from alphamail.core.resilience import CircuitBreakerOpen, supabase_circuit_breaker
from alphamail.db.supabase import SupabaseClient
from supabase import Client

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def escape_like_pattern(value: str) -> str:
    """Escape LIKE/ILIKE wildcards so *value* matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _first(rows: Any) -> dict[str, Any] | None:
    if rows:
        return dict(rows[0])
    return None


class ConversationStore:
    """Async facade over the Supabase tables used by the conversation pipeline."""

    def __init__(self, client: Client | None = None) -> None:
        """Initialize the store.

        Args:
            client: Supabase client. Defaults to the process-wide singleton.
        """
        self._client = client

    @property
    def client(self) -> Client:
        """Get Supabase client."""
        if self._client is None:
            self._client = SupabaseClient.get_client()
        return self._client

    def _execute(
        self,
        action: str,
        build: Callable[[Client], Any],
        **context: Any,
    ) -> Any:
        """Execute a query builder and return ``response.data``.

        Args:
            action: Short description used in logs and the raised error.
            build: Callable returning an executable query for the client.
            **context: Extra fields attached to the failure log.

        Raises:
            CircuitBreakerOpen: If the store circuit is open.
            DatabaseError: If the query fails.
        """
        supabase_circuit_breaker.check()
        try:
            response = build(self.client).execute()
        except CircuitBreakerOpen:
            raise
        except Exception as e:
            supabase_circuit_breaker.record_failure()
            logger.exception("Error trying to %s", action, extra=context)
            raise DatabaseError(f"Failed to {action}: {e}") from e
        supabase_circuit_breaker.record_success()
        return response.data

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile_by_email(self, email: str) -> dict[str, Any] | None:
        """Fetch the profile for a sender address, if an account exists."""
        rows = self._execute(
            "fetch profile by email",
            lambda c: c.table("profiles").select("*").eq("email", email).limit(1),
            email=email,
        )
        return _first(rows)

    async def get_profile(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a profile by user id."""
        rows = self._execute(
            "fetch profile",
            lambda c: c.table("profiles").select("*").eq("user_id", user_id).limit(1),
            user_id=user_id,
        )
        return _first(rows)

    async def update_profile(self, user_id: str, fields: dict[str, Any]) -> None:
        """Update profile columns for a user."""
        self._execute(
            "update profile",
            lambda c: c.table("profiles").update(fields).eq("user_id", user_id),
            user_id=user_id,
        )

    async def find_profiles_by_first_names(self, names: list[str]) -> list[dict[str, Any]]:
        """Return profiles whose first name is one of *names* (exact match)."""
        if not names:
            return []
        rows = self._execute(
            "fetch profiles by first name",
            lambda c: c.table("profiles").select("user_id, email, first_name").in_("first_name", names),
        )
        return [dict(r) for r in rows or []]

    async def find_profiles_by_emails(self, emails: list[str]) -> list[dict[str, Any]]:
        """Return profiles registered under any of *emails*."""
        if not emails:
            return []
        rows = self._execute(
            "fetch profiles by email",
            lambda c: c.table("profiles").select("user_id, email, first_name").in_("email", emails),
        )
        return [dict(r) for r in rows or []]

    async def list_checkin_profiles(self) -> list[dict[str, Any]]:
        """Onboarded profiles whose address still accepts mail."""
        rows = self._execute(
            "list check-in profiles",
            lambda c: c.table("profiles")
            .select("user_id, email, first_name, email_status")
            .eq("onboarded", True)
            .eq("email_status", "active"),
        )
        return [dict(r) for r in rows or []]

    async def mark_email_status(self, email: str, status: str) -> int:
        """Set ``email_status`` for every profile on *email*.

        Returns:
            Number of profiles updated.
        """
        rows = self._execute(
            "update email status",
            lambda c: c.table("profiles")
            .update({"email_status": status, "email_status_updated_at": _now_iso()})
            .eq("email", email),
            email=email,
            status=status,
        )
        return len(rows or [])

    async def confirm_auth_email(self, user_id: str) -> None:
        """Mark the user's auth email as confirmed via the admin API."""
        supabase_circuit_breaker.check()
        try:
            self.client.auth.admin.update_user_by_id(user_id, {"email_confirm": True})
        except Exception as e:
            supabase_circuit_breaker.record_failure()
            raise DatabaseError(f"Failed to confirm auth email: {e}") from e
        supabase_circuit_breaker.record_success()

    async def get_user_for_token(self, token: str) -> dict[str, Any] | None:
        """Resolve a Supabase access token to ``{"id", "email"}``.

        Returns:
            The user, or None when the token is invalid.
        """
        try:
            response = self.client.auth.get_user(token)
        except Exception:
            logger.warning("Access token validation failed")
            return None
        if response is None or response.user is None:
            return None
        return {"id": str(response.user.id), "email": response.user.email}

    # ------------------------------------------------------------------
    # Provisional messages
    # ------------------------------------------------------------------

    async def get_latest_pending_email(self, email: str) -> dict[str, Any] | None:
        """Most recent provisional message for an address."""
        rows = self._execute(
            "fetch latest pending email",
            lambda c: c.table("pending_emails")
            .select("id, thread_id")
            .eq("email", email)
            .order("created_at", desc=True)
            .limit(1),
            email=email,
        )
        return _first(rows)

    async def insert_pending_email(
        self,
        email: str,
        subject: str,
        content: str,
        thread_id: str | None,
    ) -> dict[str, Any]:
        """Store a provisional message and return the inserted row."""
        rows = self._execute(
            "store pending email",
            lambda c: c.table("pending_emails").insert(
                {"email": email, "subject": subject, "content": content, "thread_id": thread_id}
            ),
            email=email,
        )
        row = _first(rows)
        if row is None:
            raise DatabaseError("Failed to store pending email")
        return row

    async def set_pending_thread(self, pending_id: str, thread_id: str) -> None:
        """Set a provisional message's thread key."""
        self._execute(
            "set pending email thread",
            lambda c: c.table("pending_emails").update({"thread_id": thread_id}).eq("id", pending_id),
        )

    async def list_pending_emails(self, email: str) -> list[dict[str, Any]]:
        """Unlinked provisional messages for an address, oldest first."""
        rows = self._execute(
            "list pending emails",
            lambda c: c.table("pending_emails")
            .select("*")
            .eq("email", email)
            .is_("linked_user_id", "null")
            .order("created_at"),
            email=email,
        )
        return [dict(r) for r in rows or []]

    async def delete_pending_emails(self, ids: list[str]) -> None:
        """Retire migrated provisional messages."""
        if not ids:
            return
        self._execute(
            "delete pending emails",
            lambda c: c.table("pending_emails").delete().in_("id", ids),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def insert_email(
        self,
        user_id: str,
        direction: str,
        subject: str,
        content: str,
        thread_id: str | None = None,
        created_at: str | None = None,
    ) -> dict[str, Any]:
        """Store a message and return the inserted row."""
        data: dict[str, Any] = {
            "user_id": user_id,
            "direction": direction,
            "subject": subject,
            "content": content,
            "thread_id": thread_id,
        }
        if created_at:
            data["created_at"] = created_at
        rows = self._execute(
            "store email",
            lambda c: c.table("emails").insert(data),
            user_id=user_id,
            direction=direction,
        )
        row = _first(rows)
        if row is None:
            raise DatabaseError("Failed to store email")
        return row

    async def update_email(self, email_id: str, fields: dict[str, Any]) -> None:
        """Update message columns (thread id, summary, mood)."""
        self._execute(
            "update email",
            lambda c: c.table("emails").update(fields).eq("id", email_id),
            email_id=email_id,
        )

    async def find_thread_by_subject(self, user_id: str, normalized_subject: str) -> str | None:
        """Thread id of the newest threaded message whose subject contains the text."""
        pattern = f"%{escape_like_pattern(normalized_subject)}%"
        rows = self._execute(
            "resolve thread",
            lambda c: c.table("emails")
            .select("thread_id")
            .eq("user_id", user_id)
            .ilike("subject", pattern)
            .not_.is_("thread_id", "null")
            .order("created_at", desc=True)
            .limit(1),
            user_id=user_id,
        )
        row = _first(rows)
        return row["thread_id"] if row else None

    async def get_thread_messages(
        self, user_id: str, thread_id: str, limit: int
    ) -> list[dict[str, Any]]:
        """The last *limit* messages of a thread, oldest first."""
        rows = self._execute(
            "fetch thread history",
            lambda c: c.table("emails")
            .select("direction, content, created_at")
            .eq("user_id", user_id)
            .eq("thread_id", thread_id)
            .order("created_at", desc=True)
            .limit(limit),
            user_id=user_id,
            thread_id=thread_id,
        )
        return list(reversed([dict(r) for r in rows or []]))

    async def get_recent_messages(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        """The user's last *limit* messages across threads, oldest first."""
        rows = self._execute(
            "fetch recent history",
            lambda c: c.table("emails")
            .select("direction, content, created_at")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit),
            user_id=user_id,
        )
        return list(reversed([dict(r) for r in rows or []]))

    async def get_recent_outbound(self, user_id: str, limit: int = 3) -> list[dict[str, Any]]:
        """The user's most recent outbound messages, newest first."""
        rows = self._execute(
            "fetch recent outbound",
            lambda c: c.table("emails")
            .select("content")
            .eq("user_id", user_id)
            .eq("direction", "outbound")
            .order("created_at", desc=True)
            .limit(limit),
            user_id=user_id,
        )
        return [dict(r) for r in rows or []]

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    async def get_active_goal(self, user_id: str) -> dict[str, Any] | None:
        """Most recently created incomplete goal."""
        rows = self._execute(
            "fetch active goal",
            lambda c: c.table("goals")
            .select("*")
            .eq("user_id", user_id)
            .eq("completed", False)
            .order("created_at", desc=True)
            .limit(1),
            user_id=user_id,
        )
        return _first(rows)

    async def insert_goal(self, user_id: str, description: str, due_date: date) -> dict[str, Any]:
        """Create a goal and return the inserted row."""
        rows = self._execute(
            "create goal",
            lambda c: c.table("goals").insert(
                {"user_id": user_id, "description": description, "due_date": due_date.isoformat()}
            ),
            user_id=user_id,
        )
        row = _first(rows)
        if row is None:
            raise DatabaseError("Failed to create goal")
        return row

    async def complete_goal(self, goal_id: str) -> bool:
        """Mark a goal complete unless it already is.

        Returns:
            True when this call flipped the flag, False when it was already set.
        """
        rows = self._execute(
            "complete goal",
            lambda c: c.table("goals")
            .update({"completed": True, "completed_at": _now_iso()})
            .eq("id", goal_id)
            .eq("completed", False),
            goal_id=goal_id,
        )
        return bool(rows)

    async def list_goals(self, user_id: str) -> list[dict[str, Any]]:
        """All goals of a user, newest first."""
        rows = self._execute(
            "list goals",
            lambda c: c.table("goals")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True),
            user_id=user_id,
        )
        return [dict(r) for r in rows or []]

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def list_group_ids(self, user_id: str) -> list[str]:
        """Ids of the groups a user belongs to."""
        rows = self._execute(
            "list groups",
            lambda c: c.table("group_members").select("group_id").eq("user_id", user_id),
            user_id=user_id,
        )
        return [r["group_id"] for r in rows or []]

    async def list_group_member_ids(self, group_id: str) -> list[str]:
        """User ids in a group."""
        rows = self._execute(
            "list group members",
            lambda c: c.table("group_members").select("user_id").eq("group_id", group_id),
            group_id=group_id,
        )
        return [r["user_id"] for r in rows or []]

    async def create_group(
        self, name: str, created_by: str, member_ids: list[str]
    ) -> dict[str, Any]:
        """Create a group with *created_by* and *member_ids* as members."""
        rows = self._execute(
            "create group",
            lambda c: c.table("groups").insert({"name": name, "created_by": created_by}),
            created_by=created_by,
        )
        group = _first(rows)
        if group is None:
            raise DatabaseError("Failed to create group")

        members = [
            {"group_id": group["id"], "user_id": uid}
            for uid in dict.fromkeys([created_by, *member_ids])
        ]
        self._execute(
            "add group members",
            lambda c: c.table("group_members").insert(members),
            group_id=group["id"],
        )
        return group

    # ------------------------------------------------------------------
    # Webhook deliveries
    # ------------------------------------------------------------------

    async def claim_delivery(self, delivery_id: str, event_type: str) -> bool:
        """Record a webhook delivery id.

        Returns:
            True if this is the first time the id is seen, False for a redelivery.
        """
        supabase_circuit_breaker.check()
        try:
            self.client.table("processed_webhooks").insert(
                {"id": delivery_id, "event_type": event_type}
            ).execute()
        except Exception as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION or UNIQUE_VIOLATION in str(e):
                # A duplicate key is a healthy response.
                supabase_circuit_breaker.record_success()
                return False
            supabase_circuit_breaker.record_failure()
            logger.exception("Error claiming webhook delivery", extra={"delivery_id": delivery_id})
            raise DatabaseError(f"Failed to claim webhook delivery: {e}") from e
        supabase_circuit_breaker.record_success()
        return True

    async def release_delivery(self, delivery_id: str) -> None:
        """Forget a claimed delivery id so a redelivery is processed again."""
        self._execute(
            "release webhook delivery",
            lambda c: c.table("processed_webhooks").delete().eq("id", delivery_id),
            delivery_id=delivery_id,
        )
