"""Fact extraction and reply composition through the language model.

Each operation sends a fixed prompt, expects one JSON object (or plain text
for free-form replies) and validates it against a Pydantic model. Output
that does not match is an :class:`ExtractionError`; the retry policy treats
it like any other retryable failure and raises :class:`AIUnavailableError`
once attempts run out.
"""

import json
import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from alphamail.core.exceptions import ExtractionError
from alphamail.core.llm import TextModel
from alphamail.core.resilience import RetryPolicy
from alphamail.models.conversation import (
    CheckinExtraction,
    CheckinReply,
    Direction,
    HistoryMessage,
    OnboardingExtraction,
    OnboardingTurn,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_MAX_HISTORY = 20
EXTRACTION_TEMPERATURE = 0.2
COMPOSITION_TEMPERATURE = 0.7

ALPHA_VOICE = (
    "You are Alpha, a casual and supportive AI accountability partner who talks "
    "to people over email. You write in lowercase, keep it brief and honest, and "
    "never use emojis or em-dashes."
)

CHECKIN_EXTRACTION_PROMPT = """You are parsing a user's reply to a weekly goal check-in email.

Their goal was: "{goal}"

Their reply:
\"\"\"
{message}
\"\"\"

Extract the following as JSON:
{{
  "progress": "brief summary of what they did or didn't do",
  "completed": true/false (did they complete or mostly complete the goal?),
  "nextGoal": "their next goal if mentioned, or null",
  "mood": "positive" | "neutral" | "negative" (based on their tone)
}}

For nextGoal:
- Look for phrases like "next week", "my next goal", "this week i want to", "planning to", "going to", "i'll", "i will", "i'm gonna"
- Future tense statements about what they want to accomplish count, even when not called a goal
- Clean the goal text up to be concise and actionable
- Use null when no next goal is mentioned

Only respond with valid JSON, nothing else."""

ONBOARDING_EXTRACTION_PROMPT = """You are parsing a new user's reply to an onboarding email. They were asked to share their name and a goal for the week.

Their reply:
\"\"\"
{message}
\"\"\"

Extract the following as JSON:
{{
  "name": "their first name (just the first name, not full name)",
  "goal": "their goal for the week, cleaned up to be concise and actionable",
  "parsed": true/false (true if you could extract BOTH name and goal),
  "clarificationMessage": "a casual message asking for what's missing (only if parsed is false)"
}}

Rules:
- Be generous in parsing, people write in all sorts of ways
- "i'm john and i want to run 3 times" gives name "John", goal "run 3 times this week"
- Just "sarah" with no goal: parsed false, ask for a goal
- Just a goal with no name: parsed false, ask for their name
- Unclear or off-topic: parsed false
- Write clarificationMessage as Alpha (casual, lowercase, friendly)

Only respond with valid JSON."""

ONBOARDING_TURN_PROMPT = """A new user is emailing you for the first time. You need to learn their name and a goal for the week through natural conversation, not by rigidly asking for fields.
{history}
User's latest message:
\"\"\"{message}\"\"\"

Look at the ENTIRE conversation (all messages, not just the latest) to figure out if you have both their name and a goal.

Respond as JSON:
{{
  "complete": true/false (true ONLY if you have BOTH a name and a goal from anywhere in the conversation),
  "name": "their first name if found anywhere in the conversation, or null",
  "goal": "their goal, cleaned up to be concise and actionable, or null",
  "reply": "your natural response as Alpha"
}}

Rules:
- Names and goals can come from ANY message in the conversation, not just the latest one.
- If you already know their name or goal from a previous message, don't ask again.
- When complete is true, make your reply a welcome/confirmation message.
- When complete is false, steer the conversation naturally. If they just said "hey", you might say "hey! i'm alpha. what's your name?"; if they gave their name, acknowledge it and ask what they're working on this week.
- Keep replies casual, lowercase, brief (2-3 sentences).

Only respond with valid JSON."""

CHECKIN_REPLY_PROMPT = """Write a short, personal response to a user's check-in reply.

User: {first_name}
Their current goal: "{goal}"
What they just said: "{progress}"
Did they complete their goal: {completed}
Their mood seems: {mood}
{next_goal_line}
{history}

Write a response that:
1. Is casual and personal (lowercase, friendly)
2. Acknowledges what they said honestly (don't be fake positive)
3. Is brief (2-4 sentences max)
4. References past conversations naturally if relevant
5. {closing_instruction}

Also indicate if you need to ask for their next goal.

Respond as JSON:
{{
  "message": "your response here",
  "askForNextGoal": true/false
}}

Only respond with valid JSON."""

OPEN_CONVERSATION_PROMPT = """You're having an ongoing email conversation with {first_name}.

{goal_line}

Their latest message:
"{message}"
{history}

Respond naturally as Alpha:
1. Be a real friend, supportive but honest
2. Keep it brief (2-4 sentences usually)
3. Remember past conversations and reference them naturally
4. If they seem to be sharing something important, be a good listener
5. If it seems like they're done with their goal or want a new one, gently bring it up

Just respond with your message text, no JSON."""

JOURNEY_SUMMARY_PROMPT = """Write a brief, personal summary of this user's journey with Alpha. This will be shown on their account page.

User: {first_name}
Weeks active: {weeks_active}
Goals completed: {goals_completed}
Current goal: {current_goal}

{history}

Write 2-3 sentences that:
1. Feel personal and specific to them (reference actual things they've shared)
2. Are encouraging but honest
3. Use casual lowercase style like Alpha's emails
4. Focus on their progress and journey, not stats

Just write the summary text, nothing else."""


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse model output as a single JSON object, stripping markdown fences.

    Raises:
        ValueError: If the text is not a JSON object.
    """
    text = raw.strip()

    if text.startswith("```"):
        lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
        text = "\n".join(lines).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning(
            "Failed to parse LLM JSON response",
            extra={"raw_length": len(raw), "first_100": raw[:100]},
        )
        raise ValueError(f"LLM response is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError("LLM response is not a JSON object")
    return data


def format_history(
    history: Sequence[HistoryMessage],
    inbound_speaker: str,
    heading: str,
    limit: int = DEFAULT_MAX_HISTORY,
) -> str:
    """Render the last *limit* messages as a speaker-labelled transcript."""
    recent = list(history)[-limit:] if limit > 0 else []
    if not recent:
        return ""
    lines = [f"\n{heading}:", "---"]
    for msg in recent:
        speaker = inbound_speaker if msg.direction == Direction.INBOUND else "Alpha"
        lines.append(f"{speaker}: {msg.content}")
        lines.append("---")
    return "\n".join(lines)


class FactExtractor:
    """Structured extraction and reply composition over an injected text model."""

    def __init__(
        self,
        llm: TextModel,
        retry_policy: RetryPolicy | None = None,
        max_history: int = DEFAULT_MAX_HISTORY,
    ) -> None:
        """Initialize the extractor.

        Args:
            llm: Text model used for every call.
            retry_policy: Policy wrapping each call. Defaults to 3 attempts.
            max_history: Most messages of history included in any prompt.
        """
        self._llm = llm
        self._retry = retry_policy or RetryPolicy()
        self._max_history = max_history

    async def _request(
        self,
        prompt: str,
        temperature: float,
        max_tokens: int,
        system_prompt: str | None = None,
    ) -> str:
        return await self._llm.generate_response(
            messages=[{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
        )

    async def _request_model(
        self,
        operation: str,
        prompt: str,
        model_cls: type[ModelT],
        temperature: float = EXTRACTION_TEMPERATURE,
        system_prompt: str | None = None,
    ) -> ModelT:
        raw = await self._request(prompt, temperature, 500, system_prompt)
        try:
            return model_cls.model_validate(parse_json_object(raw))
        except (ValueError, PydanticValidationError) as exc:
            raise ExtractionError(operation, str(exc)) from exc

    async def _request_text(
        self,
        operation: str,
        prompt: str,
        max_tokens: int = 500,
    ) -> str:
        raw = await self._request(prompt, COMPOSITION_TEMPERATURE, max_tokens, ALPHA_VOICE)
        text = raw.strip()
        if not text:
            raise ExtractionError(operation, "Empty model response")
        return text

    def _history(self, history: Sequence[HistoryMessage], speaker: str, heading: str) -> str:
        return format_history(history, speaker, heading, self._max_history)

    async def extract_checkin_reply(
        self, message: str, goal_description: str
    ) -> CheckinExtraction:
        """Extract progress, completion, next goal and mood from a check-in reply.

        Raises:
            AIUnavailableError: If no valid result could be obtained.
        """
        prompt = CHECKIN_EXTRACTION_PROMPT.format(goal=goal_description, message=message)
        return await self._retry.run(
            "extract_checkin_reply",
            self._request_model,
            "extract_checkin_reply",
            prompt,
            CheckinExtraction,
        )

    async def extract_onboarding_reply(self, message: str) -> OnboardingExtraction:
        """Extract a name and goal from a single onboarding reply."""
        prompt = ONBOARDING_EXTRACTION_PROMPT.format(message=message)
        return await self._retry.run(
            "extract_onboarding_reply",
            self._request_model,
            "extract_onboarding_reply",
            prompt,
            OnboardingExtraction,
        )

    async def extract_onboarding_turn(
        self, latest_message: str, history: Sequence[HistoryMessage]
    ) -> OnboardingTurn:
        """Re-evaluate the whole onboarding conversation for a name and a goal.

        Args:
            latest_message: The message just received.
            history: Earlier messages of the onboarding conversation, oldest first.
        """
        prompt = ONBOARDING_TURN_PROMPT.format(
            history=self._history(history, "User", "Conversation so far (oldest first)"),
            message=latest_message,
        )
        return await self._retry.run(
            "extract_onboarding_turn",
            self._request_model,
            "extract_onboarding_turn",
            prompt,
            OnboardingTurn,
            EXTRACTION_TEMPERATURE,
            ALPHA_VOICE,
        )

    async def compose_checkin_reply(
        self,
        first_name: str,
        goal_description: str,
        extraction: CheckinExtraction,
        history: Sequence[HistoryMessage],
    ) -> CheckinReply:
        """Write Alpha's reply to a check-in and say whether to ask for a next goal."""
        if extraction.next_goal:
            next_goal_line = f'They mentioned their next goal: "{extraction.next_goal}"'
            closing = "Acknowledges their next goal"
        else:
            next_goal_line = "They didn't mention a next goal yet."
            closing = (
                "If their goal is complete and they haven't mentioned a next goal, "
                "gently ask what's next"
            )
        prompt = CHECKIN_REPLY_PROMPT.format(
            first_name=first_name,
            goal=goal_description,
            progress=extraction.progress,
            completed=str(extraction.completed).lower(),
            mood=extraction.mood.value,
            next_goal_line=next_goal_line,
            history=self._history(
                history, first_name, "Previous conversation with this user (oldest first)"
            ),
            closing_instruction=closing,
        )
        return await self._retry.run(
            "compose_checkin_reply",
            self._request_model,
            "compose_checkin_reply",
            prompt,
            CheckinReply,
            COMPOSITION_TEMPERATURE,
            ALPHA_VOICE,
        )

    async def compose_open_conversation_reply(
        self,
        first_name: str,
        message: str,
        history: Sequence[HistoryMessage],
        goal_description: str | None = None,
    ) -> str:
        """Write a free-form conversational reply."""
        goal_line = (
            f'Their current goal: "{goal_description}"'
            if goal_description
            else "They don't have an active goal right now."
        )
        prompt = OPEN_CONVERSATION_PROMPT.format(
            first_name=first_name,
            goal_line=goal_line,
            message=message,
            history=self._history(history, first_name, "Conversation history (oldest first)"),
        )
        return await self._retry.run(
            "compose_open_conversation_reply",
            self._request_text,
            "compose_open_conversation_reply",
            prompt,
        )

    async def compose_journey_summary(
        self,
        first_name: str,
        history: Sequence[HistoryMessage],
        goals_completed: int,
        current_goal: str | None,
        weeks_active: int,
    ) -> str:
        """Write the short journey summary shown on the account page."""
        prompt = JOURNEY_SUMMARY_PROMPT.format(
            first_name=first_name,
            weeks_active=weeks_active,
            goals_completed=goals_completed,
            current_goal=current_goal or "None right now",
            history=self._history(history, first_name, "Recent conversations"),
        )
        return await self._retry.run(
            "compose_journey_summary",
            self._request_text,
            "compose_journey_summary",
            prompt,
            300,
        )
