"""Shared fixtures for the AlphaMail test suite.

Required settings are seeded before anything imports ``alphamail.core.config``.
"""

import itertools
import os
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("APP_URL", "https://bealphamail.com")
os.environ.setdefault("RESEND_API_KEY", "")

import pytest  # noqa: E402

from alphamail.api.deps import Services  # noqa: E402
from alphamail.core.config import Settings  # noqa: E402
from alphamail.core.exceptions import DatabaseError, EmailSendError  # noqa: E402
from alphamail.core.resilience import RetryPolicy  # noqa: E402
from alphamail.services.checkin import CheckinService  # noqa: E402
from alphamail.services.composer import ResponseComposer  # noqa: E402
from alphamail.services.conversation import ConversationEngine  # noqa: E402
from alphamail.services.fact_extractor import FactExtractor  # noqa: E402
from alphamail.services.onboarding import OnboardingService  # noqa: E402
from alphamail.services.summary import JourneySummaryService  # noqa: E402
from alphamail.services.thread_resolver import ThreadResolver  # noqa: E402
from alphamail.services.webhook_verifier import WebhookVerifier  # noqa: E402

APP_URL = "https://bealphamail.com"
TODAY = date(2026, 3, 11)  # a Wednesday


class FakeStore:
    """In-memory stand-in for ConversationStore.

    Methods listed in ``fail_on`` raise DatabaseError.
    """

    def __init__(self) -> None:
        self.profiles: list[dict[str, Any]] = []
        self.goals: list[dict[str, Any]] = []
        self.emails: list[dict[str, Any]] = []
        self.pending: list[dict[str, Any]] = []
        self.groups: list[dict[str, Any]] = []
        self.group_members: list[dict[str, Any]] = []
        self.claimed: set[str] = set()
        self.tokens: dict[str, dict[str, Any]] = {}
        self.confirmed: list[str] = []
        self.fail_on: set[str] = set()
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)

    # helpers -----------------------------------------------------------

    def _id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _now(self) -> str:
        return (datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=next(self._ticks))).isoformat()

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise DatabaseError(f"Failed to {name}")

    def add_profile(
        self,
        email: str,
        first_name: str | None = None,
        onboarded: bool = True,
        user_id: str | None = None,
        created_at: str | None = None,
    ) -> dict[str, Any]:
        profile = {
            "user_id": user_id or self._id("user"),
            "email": email,
            "first_name": first_name,
            "onboarded": onboarded,
            "summary": None,
            "email_status": "active",
            "created_at": created_at or self._now(),
        }
        self.profiles.append(profile)
        return profile

    def add_goal(self, user_id: str, description: str) -> dict[str, Any]:
        goal = {
            "id": self._id("goal"),
            "user_id": user_id,
            "description": description,
            "due_date": "2026-03-15",
            "completed": False,
            "completed_at": None,
            "created_at": self._now(),
        }
        self.goals.append(goal)
        return goal

    def add_email(
        self, user_id: str, direction: str, subject: str, content: str, thread_id: str | None = None
    ) -> dict[str, Any]:
        row = {
            "id": self._id("email"),
            "user_id": user_id,
            "direction": direction,
            "subject": subject,
            "content": content,
            "created_at": self._now(),
        }
        row["thread_id"] = thread_id or row["id"]
        self.emails.append(row)
        return row

    def outbound(self, user_id: str) -> list[dict[str, Any]]:
        return [e for e in self.emails if e["user_id"] == user_id and e["direction"] == "outbound"]

    # profiles ----------------------------------------------------------

    async def get_profile_by_email(self, email: str) -> dict[str, Any] | None:
        self._check("get_profile_by_email")
        return next((dict(p) for p in self.profiles if p["email"] == email), None)

    async def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return next((dict(p) for p in self.profiles if p["user_id"] == user_id), None)

    async def update_profile(self, user_id: str, fields: dict[str, Any]) -> None:
        self._check("update_profile")
        for p in self.profiles:
            if p["user_id"] == user_id:
                p.update(fields)

    async def find_profiles_by_first_names(self, names: list[str]) -> list[dict[str, Any]]:
        return [dict(p) for p in self.profiles if p["first_name"] in names]

    async def find_profiles_by_emails(self, emails: list[str]) -> list[dict[str, Any]]:
        self._check("find_profiles_by_emails")
        return [dict(p) for p in self.profiles if p["email"] in emails]

    async def list_checkin_profiles(self) -> list[dict[str, Any]]:
        return [
            dict(p) for p in self.profiles if p["onboarded"] and p["email_status"] == "active"
        ]

    async def mark_email_status(self, email: str, status: str) -> int:
        matched = [p for p in self.profiles if p["email"] == email]
        for p in matched:
            p["email_status"] = status
        return len(matched)

    async def confirm_auth_email(self, user_id: str) -> None:
        self._check("confirm_auth_email")
        self.confirmed.append(user_id)

    async def get_user_for_token(self, token: str) -> dict[str, Any] | None:
        return self.tokens.get(token)

    # provisional messages ----------------------------------------------

    async def get_latest_pending_email(self, email: str) -> dict[str, Any] | None:
        rows = [p for p in self.pending if p["email"] == email]
        return dict(rows[-1]) if rows else None

    async def insert_pending_email(
        self, email: str, subject: str, content: str, thread_id: str | None
    ) -> dict[str, Any]:
        row = {
            "id": self._id("pending"),
            "email": email,
            "subject": subject,
            "content": content,
            "thread_id": thread_id,
            "linked_user_id": None,
            "created_at": self._now(),
        }
        self.pending.append(row)
        return dict(row)

    async def set_pending_thread(self, pending_id: str, thread_id: str) -> None:
        for p in self.pending:
            if p["id"] == pending_id:
                p["thread_id"] = thread_id

    async def list_pending_emails(self, email: str) -> list[dict[str, Any]]:
        return [dict(p) for p in self.pending if p["email"] == email and not p["linked_user_id"]]

    async def delete_pending_emails(self, ids: list[str]) -> None:
        self.pending = [p for p in self.pending if p["id"] not in ids]

    # messages ----------------------------------------------------------

    async def insert_email(
        self,
        user_id: str,
        direction: str,
        subject: str,
        content: str,
        thread_id: str | None = None,
        created_at: str | None = None,
    ) -> dict[str, Any]:
        self._check(f"insert_email:{direction}")
        row = {
            "id": self._id("email"),
            "user_id": user_id,
            "direction": direction,
            "subject": subject,
            "content": content,
            "thread_id": thread_id,
            "created_at": created_at or self._now(),
        }
        self.emails.append(row)
        return dict(row)

    async def update_email(self, email_id: str, fields: dict[str, Any]) -> None:
        if "thread_id" not in fields:
            self._check("annotate_email")
        for e in self.emails:
            if e["id"] == email_id:
                e.update(fields)

    async def find_thread_by_subject(self, user_id: str, normalized_subject: str) -> str | None:
        needle = normalized_subject.lower()
        matches = [
            e
            for e in self.emails
            if e["user_id"] == user_id and e["thread_id"] and needle in e["subject"].lower()
        ]
        if not matches:
            return None
        return max(matches, key=lambda e: e["created_at"])["thread_id"]

    async def get_thread_messages(
        self, user_id: str, thread_id: str, limit: int
    ) -> list[dict[str, Any]]:
        rows = [e for e in self.emails if e["user_id"] == user_id and e["thread_id"] == thread_id]
        return [dict(e) for e in rows[-limit:]]

    async def get_recent_messages(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        rows = [e for e in self.emails if e["user_id"] == user_id]
        return [dict(e) for e in rows[-limit:]]

    async def get_recent_outbound(self, user_id: str, limit: int = 3) -> list[dict[str, Any]]:
        return [dict(e) for e in reversed(self.outbound(user_id))][:limit]

    # goals -------------------------------------------------------------

    async def get_active_goal(self, user_id: str) -> dict[str, Any] | None:
        open_goals = [g for g in self.goals if g["user_id"] == user_id and not g["completed"]]
        return dict(open_goals[-1]) if open_goals else None

    async def insert_goal(self, user_id: str, description: str, due_date: date) -> dict[str, Any]:
        self._check("insert_goal")
        goal = {
            "id": self._id("goal"),
            "user_id": user_id,
            "description": description,
            "due_date": due_date.isoformat(),
            "completed": False,
            "completed_at": None,
            "created_at": self._now(),
        }
        self.goals.append(goal)
        return dict(goal)

    async def complete_goal(self, goal_id: str) -> bool:
        for g in self.goals:
            if g["id"] == goal_id and not g["completed"]:
                g["completed"] = True
                g["completed_at"] = self._now()
                return True
        return False

    async def list_goals(self, user_id: str) -> list[dict[str, Any]]:
        return [dict(g) for g in reversed(self.goals) if g["user_id"] == user_id]

    # groups ------------------------------------------------------------

    async def list_group_ids(self, user_id: str) -> list[str]:
        return [m["group_id"] for m in self.group_members if m["user_id"] == user_id]

    async def list_group_member_ids(self, group_id: str) -> list[str]:
        return [m["user_id"] for m in self.group_members if m["group_id"] == group_id]

    async def create_group(
        self, name: str, created_by: str, member_ids: list[str]
    ) -> dict[str, Any]:
        group = {"id": self._id("group"), "name": name, "created_by": created_by}
        self.groups.append(group)
        for uid in dict.fromkeys([created_by, *member_ids]):
            self.group_members.append({"group_id": group["id"], "user_id": uid})
        return group

    # deliveries --------------------------------------------------------

    async def claim_delivery(self, delivery_id: str, event_type: str) -> bool:
        if delivery_id in self.claimed:
            return False
        self.claimed.add(delivery_id)
        return True

    async def release_delivery(self, delivery_id: str) -> None:
        self.claimed.discard(delivery_id)


class FakeMailer:
    """Records outbound emails instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = False

    async def send(self, to: str, subject: str, html: str, text: str) -> str:
        if self.fail:
            raise EmailSendError("provider down", to=to)
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return f"resend-{len(self.sent)}"


class ScriptedModel:
    """Text model that replays canned responses in order.

    An Exception instance in the script is raised instead of returned.
    """

    def __init__(self, responses: Sequence[str | Exception] = ()) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def generate_response(
        self,
        messages: list[dict[str, str]],
        system_prompt: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> str:
        self.prompts.append(messages[-1]["content"])
        if not self.responses:
            raise RuntimeError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def composer() -> ResponseComposer:
    return ResponseComposer(APP_URL)


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def extractor(model: ScriptedModel) -> FactExtractor:
    return FactExtractor(model, RetryPolicy(max_attempts=3, initial_delay=0.0))


@pytest.fixture
def summaries() -> MagicMock:
    return MagicMock()


@pytest.fixture
def engine(
    store: FakeStore,
    mailer: FakeMailer,
    composer: ResponseComposer,
    extractor: FactExtractor,
    summaries: MagicMock,
) -> ConversationEngine:
    return ConversationEngine(
        store=store,  # type: ignore[arg-type]
        extractor=extractor,
        thread_resolver=ThreadResolver(store),
        mailer=mailer,
        composer=composer,
        onboarding=OnboardingService(store, mailer),  # type: ignore[arg-type]
        summaries=summaries,
        today=lambda: TODAY,
    )


@pytest.fixture
def services(
    store: FakeStore,
    mailer: FakeMailer,
    composer: ResponseComposer,
    extractor: FactExtractor,
    engine: ConversationEngine,
) -> Services:
    """Service graph for route tests: unsigned webhooks, cron secret set."""
    return Services(
        store=store,  # type: ignore[arg-type]
        engine=engine,
        verifier=WebhookVerifier(lambda endpoint: "", allow_unsigned=True),
        checkins=CheckinService(store, mailer, composer),  # type: ignore[arg-type]
        onboarding=OnboardingService(store, mailer),  # type: ignore[arg-type]
        summaries=JourneySummaryService(store, extractor),  # type: ignore[arg-type]
        settings=Settings(_env_file=None, CRON_SECRET="cron-secret"),
    )
