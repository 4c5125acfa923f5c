"""Inbound email state machine.

Every inbound email is classified from current sender and goal data into
exactly one :class:`SenderState`; there is no stored cursor. Each state has
one handler:

    UNKNOWN_SENDER      store a provisional message, send intro or reminder
    PENDING_ONBOARDING  re-read the onboarding conversation for name + goal
    ACTIVE_WITH_GOAL    group confirmation, else check-in extraction
    ACTIVE_NO_GOAL      group confirmation, else open conversation

Replies are sent first and recorded second. When the model is unavailable
a fixed fallback message is sent and recorded in the thread, and no goal
is touched.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from alphamail.core.exceptions import AIUnavailableError, DatabaseError
from alphamail.core.resilience import CircuitBreakerOpen
from alphamail.db.store import ConversationStore
from alphamail.models.conversation import (
    Direction,
    HistoryMessage,
    InboundEmailData,
    InboundResult,
)
from alphamail.security.sanitization import sanitize_content, sanitize_subject
from alphamail.services.composer import (
    DEFAULT_CHECKIN_REPLY_SUBJECT,
    DEFAULT_CLARIFICATION,
    DEFAULT_ONBOARDING_REPLY_SUBJECT,
    DEFAULT_UNKNOWN_REPLY_SUBJECT,
    FALLBACK_MESSAGE,
    ONBOARDING_FALLBACK_MESSAGE,
    ResponseComposer,
    greeting_for,
    render_email,
)
from alphamail.services.email_service import Mailer
from alphamail.services.fact_extractor import FactExtractor
from alphamail.services.intent import (
    detect_goal_intent,
    extract_group_names,
    is_group_affirmation,
    mentions_group_offer,
    next_sunday,
    parse_cc_emails,
)
from alphamail.services.onboarding import OnboardingService
from alphamail.services.summary import JourneySummaryService
from alphamail.services.thread_resolver import ThreadResolver, reply_subject

logger = logging.getLogger(__name__)

RECENT_OUTBOUND_FOR_GROUPS = 3


class SenderState(str, Enum):
    """Conversation state derived per inbound email."""

    UNKNOWN_SENDER = "unknown_sender"
    PENDING_ONBOARDING = "pending_onboarding"
    ACTIVE_NO_GOAL = "active_no_goal"
    ACTIVE_WITH_GOAL = "active_with_goal"


def classify(profile: dict[str, Any] | None, active_goal: dict[str, Any] | None) -> SenderState:
    """Derive the sender's state from their profile and active goal."""
    if profile is None:
        return SenderState.UNKNOWN_SENDER
    if not profile.get("onboarded"):
        return SenderState.PENDING_ONBOARDING
    if active_goal is None:
        return SenderState.ACTIVE_NO_GOAL
    return SenderState.ACTIVE_WITH_GOAL


@dataclass
class InboundMessage:
    """A sanitized inbound email."""

    sender_email: str
    subject: str
    content: str
    cc_emails: list[str] = field(default_factory=list)
    delivery_id: str | None = None

    @property
    def stored_subject(self) -> str:
        return sanitize_subject(self.subject)

    @classmethod
    def from_webhook(
        cls,
        data: InboundEmailData,
        delivery_id: str | None = None,
        own_addresses: Sequence[str] = (),
    ) -> "InboundMessage | None":
        """Build a message from webhook data, or None when there is no sender."""
        sender = data.sender_email
        if not sender:
            return None
        subject = data.subject.strip() if data.subject else ""
        return cls(
            sender_email=sender,
            subject=sanitize_subject(subject) if subject else "",
            content=sanitize_content(data.body),
            cc_emails=parse_cc_emails(data.cc_text, exclude=[sender, *own_addresses]),
            delivery_id=delivery_id or data.email_id,
        )


@dataclass
class SenderContext:
    """What is known about the sender of one inbound email."""

    message: InboundMessage
    profile: dict[str, Any] | None = None
    goal: dict[str, Any] | None = None

    @property
    def user_id(self) -> str:
        if self.profile is None:
            raise ValueError("Sender has no profile")
        return str(self.profile["user_id"])

    @property
    def first_name(self) -> str:
        return (self.profile or {}).get("first_name") or "there"

    @property
    def reply_to(self) -> str:
        return (self.profile or {}).get("email") or self.message.sender_email


@dataclass
class ThreadContext:
    """The thread an inbound email was stored in and the history before it."""

    thread_id: str
    inbound_id: str
    history: list[HistoryMessage]


class ConversationEngine:
    """Dispatches inbound emails to one handler per :class:`SenderState`."""

    def __init__(
        self,
        store: ConversationStore,
        extractor: FactExtractor,
        thread_resolver: ThreadResolver,
        mailer: Mailer,
        composer: ResponseComposer,
        onboarding: OnboardingService,
        summaries: JourneySummaryService,
        thread_history_limit: int = 20,
        recent_history_limit: int = 10,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._threads = thread_resolver
        self._mailer = mailer
        self._composer = composer
        self._onboarding = onboarding
        self._summaries = summaries
        self._thread_history_limit = thread_history_limit
        self._recent_history_limit = recent_history_limit
        self._today = today or (lambda: datetime.now(UTC).date())

        self._handlers: dict[SenderState, Callable[[SenderContext], Awaitable[InboundResult]]] = {
            SenderState.UNKNOWN_SENDER: self._handle_unknown_sender,
            SenderState.PENDING_ONBOARDING: self._handle_pending_onboarding,
            SenderState.ACTIVE_WITH_GOAL: self._handle_active_with_goal,
            SenderState.ACTIVE_NO_GOAL: self._handle_active_no_goal,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, message: InboundMessage) -> InboundResult:
        """Process one inbound email end to end.

        A delivery id that was already processed short-circuits with
        ``duplicate_ignored``. If processing fails, the claim is released so
        the provider's redelivery is handled.

        Raises:
            DatabaseError: If a critical write fails.
            EmailSendError: If the reply could not be sent.
        """
        if message.delivery_id:
            claimed = await self._store.claim_delivery(message.delivery_id, "email.received")
            if not claimed:
                logger.info(
                    "Duplicate webhook delivery ignored",
                    extra={"delivery_id": message.delivery_id},
                )
                return InboundResult(action="duplicate_ignored")
        else:
            logger.warning("Inbound email without delivery id; duplicate guard skipped")

        try:
            return await self.dispatch(message)
        except Exception:
            if message.delivery_id:
                await self._release_claim(message.delivery_id)
            raise

    async def dispatch(self, message: InboundMessage) -> InboundResult:
        """Classify the sender and run the matching handler."""
        profile = await self._store.get_profile_by_email(message.sender_email)
        goal = None
        if profile is not None and profile.get("onboarded"):
            goal = await self._store.get_active_goal(str(profile["user_id"]))

        state = classify(profile, goal)
        logger.info(
            "Dispatching inbound email",
            extra={
                "state": state.value,
                "user_id": profile.get("user_id") if profile else None,
                "cc_count": len(message.cc_emails),
            },
        )
        return await self._handlers[state](SenderContext(message, profile, goal))

    async def _release_claim(self, delivery_id: str) -> None:
        try:
            await self._store.release_delivery(delivery_id)
        except (DatabaseError, CircuitBreakerOpen):
            logger.error(
                "Could not release webhook claim; a redelivery will be ignored",
                extra={"delivery_id": delivery_id},
            )

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _handle_unknown_sender(self, ctx: SenderContext) -> InboundResult:
        message = ctx.message
        latest = await self._store.get_latest_pending_email(message.sender_email)
        existing_thread = latest.get("thread_id") if latest else None

        row = await self._store.insert_pending_email(
            email=message.sender_email,
            subject=message.stored_subject,
            content=message.content,
            thread_id=existing_thread,
        )
        if not existing_thread:
            await self._store.set_pending_thread(row["id"], row["id"])

        is_first_email = latest is None
        if is_first_email:
            text = self._composer.intro_message(message.sender_email)
        else:
            text = self._composer.reminder_message(message.sender_email)

        link = self._composer.signup_link(message.sender_email)
        rendered = render_email(text, link=link, link_label=f"{self._composer.app_url}/signup")
        await self._mailer.send(
            message.sender_email,
            reply_subject(message.subject, DEFAULT_UNKNOWN_REPLY_SUBJECT),
            rendered.html,
            rendered.text,
        )

        logger.info("Sent intro email to unknown sender", extra={"first_email": is_first_email})
        return InboundResult(action="intro_sent", is_first_email=is_first_email)

    async def _handle_pending_onboarding(self, ctx: SenderContext) -> InboundResult:
        message = ctx.message
        provisional = await self._store.list_pending_emails(message.sender_email)
        recent = await self._store.get_recent_messages(ctx.user_id, self._thread_history_limit)
        history = [
            HistoryMessage(direction=Direction.INBOUND, content=p.get("content") or "")
            for p in provisional
        ] + [HistoryMessage.model_validate(r) for r in recent]
        history = history[-self._thread_history_limit :]

        thread = await self._open_thread(ctx, history=history)

        try:
            turn = await self._extractor.extract_onboarding_turn(message.content, thread.history)
        except AIUnavailableError as e:
            logger.warning(
                "Onboarding extraction unavailable; sending fallback",
                extra={"user_id": ctx.user_id, "terminal": e.terminal},
            )
            await self._reply(
                ctx, thread, ONBOARDING_FALLBACK_MESSAGE, DEFAULT_ONBOARDING_REPLY_SUBJECT, greet=False
            )
            return InboundResult(action="onboarding_fallback")

        if not turn.complete or not turn.name or not turn.goal:
            reply = turn.reply.strip() or DEFAULT_CLARIFICATION
            await self._reply(ctx, thread, reply, DEFAULT_ONBOARDING_REPLY_SUBJECT, greet=False)
            return InboundResult(action="onboarding_clarification")

        await self._store.update_profile(ctx.user_id, {"first_name": turn.name, "onboarded": True})
        try:
            await self._store.confirm_auth_email(ctx.user_id)
        except DatabaseError:
            logger.warning("Could not confirm auth email", extra={"user_id": ctx.user_id})

        await self._store.insert_goal(ctx.user_id, turn.goal, next_sunday(self._today()))

        try:
            await self._onboarding.link_pending_emails(ctx.user_id, message.sender_email)
        except DatabaseError:
            logger.warning("Could not migrate pending emails", extra={"user_id": ctx.user_id})

        welcome = self._composer.welcome_message(turn.name, turn.goal)
        await self._reply(ctx, thread, welcome, DEFAULT_ONBOARDING_REPLY_SUBJECT, greet=False)

        logger.info("Onboarding complete", extra={"user_id": ctx.user_id})
        return InboundResult(action="onboarding_complete", complete=True)

    async def _handle_active_with_goal(self, ctx: SenderContext) -> InboundResult:
        goal = ctx.goal
        if goal is None:
            raise ValueError("Check-in reply handled without an active goal")
        thread = await self._open_thread(ctx)

        group_result = await self._confirm_group(ctx, thread)
        if group_result is not None:
            return group_result

        cc_note = await self._cc_note(ctx)
        goal_description = goal["description"]

        # Both model calls finish before any goal is mutated.
        try:
            extraction = await self._extractor.extract_checkin_reply(
                ctx.message.content, goal_description
            )
            reply = await self._extractor.compose_checkin_reply(
                ctx.first_name, goal_description, extraction, thread.history
            )
        except AIUnavailableError as e:
            return await self._send_fallback(ctx, thread, e)

        if extraction.completed:
            newly_completed = await self._store.complete_goal(goal["id"])
            if not newly_completed:
                logger.info("Goal already complete", extra={"goal_id": goal["id"]})
        if extraction.next_goal:
            await self._store.insert_goal(
                ctx.user_id, extraction.next_goal, next_sunday(self._today())
            )

        try:
            await self._store.update_email(
                thread.inbound_id,
                {"summary": extraction.progress, "mood": extraction.mood.value},
            )
        except DatabaseError:
            logger.warning("Could not annotate inbound email", extra={"email_id": thread.inbound_id})

        text = self._composer.checkin_response(reply, extraction, cc_note)
        await self._reply(ctx, thread, text, DEFAULT_CHECKIN_REPLY_SUBJECT)
        self._summaries.schedule_regeneration(ctx.user_id, ctx.first_name)

        logger.info(
            "Processed check-in reply",
            extra={"user_id": ctx.user_id, "completed": extraction.completed},
        )
        return InboundResult(action="checkin", parsed=extraction, thread_id=thread.thread_id)

    async def _handle_active_no_goal(self, ctx: SenderContext) -> InboundResult:
        thread = await self._open_thread(ctx)

        group_result = await self._confirm_group(ctx, thread)
        if group_result is not None:
            return group_result

        cc_note = await self._cc_note(ctx)

        try:
            reply_text = await self._extractor.compose_open_conversation_reply(
                ctx.first_name, ctx.message.content, thread.history, None
            )
        except AIUnavailableError as e:
            return await self._send_fallback(ctx, thread, e)

        goal_text = detect_goal_intent(ctx.message.content)
        if goal_text:
            await self._store.insert_goal(ctx.user_id, goal_text, next_sunday(self._today()))

        text = self._composer.conversation_response(reply_text, bool(goal_text), cc_note)
        await self._reply(ctx, thread, text, DEFAULT_CHECKIN_REPLY_SUBJECT)
        self._summaries.schedule_regeneration(ctx.user_id, ctx.first_name)

        return InboundResult(action="conversation", goal_created=bool(goal_text))

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _open_thread(
        self,
        ctx: SenderContext,
        history: list[HistoryMessage] | None = None,
    ) -> ThreadContext:
        """Resolve the thread, load history and store the inbound email.

        Storing the inbound email is critical and propagates failures.
        """
        thread_id = await self._threads.resolve(ctx.message.subject, ctx.user_id)

        if history is None:
            if thread_id:
                rows = await self._store.get_thread_messages(
                    ctx.user_id, thread_id, self._thread_history_limit
                )
            else:
                rows = await self._store.get_recent_messages(
                    ctx.user_id, self._recent_history_limit
                )
            history = [HistoryMessage.model_validate(r) for r in rows]

        inbound = await self._store.insert_email(
            user_id=ctx.user_id,
            direction="inbound",
            subject=ctx.message.stored_subject,
            content=ctx.message.content,
            thread_id=thread_id,
        )
        if not thread_id:
            thread_id = str(inbound["id"])
            await self._store.update_email(inbound["id"], {"thread_id": thread_id})

        return ThreadContext(thread_id=thread_id, inbound_id=str(inbound["id"]), history=history)

    async def _reply(
        self,
        ctx: SenderContext,
        thread: ThreadContext,
        text: str,
        default_subject: str,
        greet: bool = True,
    ) -> None:
        """Send a reply, then record it in the thread."""
        subject = reply_subject(ctx.message.subject, default_subject)
        rendered = render_email(text, greeting=greeting_for(ctx.first_name) if greet else None)
        await self._mailer.send(ctx.reply_to, subject, rendered.html, rendered.text)

        try:
            await self._store.insert_email(
                user_id=ctx.user_id,
                direction="outbound",
                subject=subject,
                content=text,
                thread_id=thread.thread_id,
            )
        except DatabaseError:
            logger.error(
                "Reply sent but not recorded",
                extra={"user_id": ctx.user_id, "thread_id": thread.thread_id},
            )

    async def _send_fallback(
        self, ctx: SenderContext, thread: ThreadContext, error: AIUnavailableError
    ) -> InboundResult:
        logger.warning(
            "AI unavailable; sending fallback",
            extra={
                "user_id": ctx.user_id,
                "operation": error.operation,
                "attempts": error.attempts,
                "terminal": error.terminal,
            },
        )
        await self._reply(ctx, thread, FALLBACK_MESSAGE, DEFAULT_CHECKIN_REPLY_SUBJECT)
        return InboundResult(action="fallback_sent")

    async def _confirm_group(
        self, ctx: SenderContext, thread: ThreadContext
    ) -> InboundResult | None:
        """Create a group when the email confirms a recent group offer.

        Returns:
            The ``group_created`` result, or None to continue normal handling.
        """
        content = ctx.message.content
        if not is_group_affirmation(content):
            return None

        recent = await self._store.get_recent_outbound(ctx.user_id, RECENT_OUTBOUND_FOR_GROUPS)
        recent_texts = [r.get("content") or "" for r in recent]
        if not mentions_group_offer(recent_texts):
            return None

        names = extract_group_names(content, recent_texts)
        if not names:
            return None

        profiles = [
            p
            for p in await self._store.find_profiles_by_first_names(names)
            if p.get("user_id") != ctx.user_id
        ]
        if not profiles:
            return None

        await self._store.create_group(
            name=f"{ctx.first_name}'s group",
            created_by=ctx.user_id,
            member_ids=[p["user_id"] for p in profiles],
        )
        member_names = [p.get("first_name") or p["email"].split("@")[0] for p in profiles]
        text = self._composer.group_created_message(member_names)
        await self._reply(ctx, thread, text, DEFAULT_CHECKIN_REPLY_SUBJECT)

        logger.info(
            "Created accountability group",
            extra={"user_id": ctx.user_id, "members": len(profiles)},
        )
        return InboundResult(action="group_created")

    async def _cc_note(self, ctx: SenderContext) -> str:
        """Note about CC'd addresses; empty when there is nothing to say."""
        cc_emails = ctx.message.cc_emails
        if not cc_emails:
            return ""

        try:
            profiles = [
                p
                for p in await self._store.find_profiles_by_emails(cc_emails)
                if p.get("user_id") != ctx.user_id
            ]
            known = {(p.get("email") or "").lower() for p in profiles}
            non_users = [e for e in cc_emails if e not in known]

            user_names: list[str] = []
            group_ids: list[str] = []
            if profiles:
                group_ids = await self._store.list_group_ids(ctx.user_id)
                all_grouped = False
                if group_ids:
                    members = set(await self._store.list_group_member_ids(group_ids[0]))
                    all_grouped = all(p["user_id"] in members for p in profiles)
                if not all_grouped:
                    user_names = [
                        p.get("first_name") or p["email"].split("@")[0] for p in profiles
                    ]
        except DatabaseError:
            logger.warning("Could not look up CC'd users", extra={"user_id": ctx.user_id})
            return ""

        return self._composer.cc_note(non_users, user_names, bool(group_ids))
