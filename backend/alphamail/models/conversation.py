"""Conversation-related Pydantic models for AlphaMail.

Covers the structured records the language model must return, stored
message history, the inbound webhook envelope and the inbound result body.
Model-facing fields keep their camelCase wire names as aliases.
"""

from email.utils import parseaddr
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator, model_validator

from alphamail.security.sanitization import (
    MAX_GOAL_LENGTH,
    sanitize_first_name,
    sanitize_goal,
)


class Mood(str, Enum):
    """Tone of a check-in reply."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Direction(str, Enum):
    """Direction of a stored message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class _ModelOutput(BaseModel):
    """Base for records parsed from model output."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CheckinExtraction(_ModelOutput):
    """Facts extracted from a reply to a weekly check-in.

    ``nextGoal`` must be present; an explicit null means no next goal was named.
    """

    progress: str
    completed: StrictBool
    next_goal: str | None = Field(..., alias="nextGoal")
    mood: Mood

    @field_validator("next_goal")
    @classmethod
    def clean_next_goal(cls, v: str | None) -> str | None:
        """Drop control characters and cap the length."""
        return sanitize_goal(v, MAX_GOAL_LENGTH)


class OnboardingExtraction(_ModelOutput):
    """Single-shot name and goal extraction from one onboarding reply."""

    name: str | None = None
    goal: str | None = None
    parsed: StrictBool
    clarification_message: str | None = Field(None, alias="clarificationMessage")

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str | None) -> str | None:
        """Sanitize the first name."""
        return sanitize_first_name(v)

    @field_validator("goal")
    @classmethod
    def clean_goal(cls, v: str | None) -> str | None:
        """Sanitize the goal description."""
        return sanitize_goal(v)

    @model_validator(mode="after")
    def require_fields_when_parsed(self) -> "OnboardingExtraction":
        """A parsed result must carry both a name and a goal."""
        if self.parsed and not (self.name and self.goal):
            raise ValueError("parsed is true but name or goal is missing")
        return self


class OnboardingTurn(_ModelOutput):
    """Result of re-evaluating a whole onboarding conversation."""

    complete: StrictBool
    name: str | None = None
    goal: str | None = None
    reply: str = ""

    @field_validator("name")
    @classmethod
    def clean_name(cls, v: str | None) -> str | None:
        """Sanitize the first name."""
        return sanitize_first_name(v)

    @field_validator("goal")
    @classmethod
    def clean_goal(cls, v: str | None) -> str | None:
        """Sanitize the goal description."""
        return sanitize_goal(v)

    @model_validator(mode="after")
    def require_fields_when_complete(self) -> "OnboardingTurn":
        """A complete turn must carry both a name and a goal."""
        if self.complete and not (self.name and self.goal):
            raise ValueError("complete is true but name or goal is missing")
        return self


class CheckinReply(_ModelOutput):
    """Composed reply to a check-in."""

    message: str
    ask_for_next_goal: StrictBool = Field(..., alias="askForNextGoal")


class HistoryMessage(BaseModel):
    """One stored message as fed to the model."""

    model_config = ConfigDict(extra="ignore")

    direction: Direction
    content: str = ""
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Webhook envelope
# ---------------------------------------------------------------------------


class InboundEmailData(BaseModel):
    """``data`` of an ``email.received`` event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email_id: str | None = None
    from_: str | dict[str, Any] | None = Field(None, alias="from")
    to: Any = None
    subject: str | None = None
    text: str | None = None
    html: str | None = None
    headers: dict[str, Any] = Field(default_factory=dict)
    cc: list[Any] | str | None = None

    @field_validator("headers", mode="before")
    @classmethod
    def normalize_headers(cls, v: Any) -> dict[str, Any]:
        """Accept a header map or a list of ``{name, value}`` pairs; lowercase keys."""
        if not v:
            return {}
        if isinstance(v, list):
            pairs = ((h.get("name"), h.get("value")) for h in v if isinstance(h, dict))
            return {str(k).lower(): val for k, val in pairs if k}
        if isinstance(v, dict):
            return {str(k).lower(): val for k, val in v.items()}
        return {}

    @property
    def sender_email(self) -> str | None:
        """Lowercased sender address, if one can be read."""
        raw = self.from_
        if isinstance(raw, dict):
            raw = raw.get("email")
        if not raw or not isinstance(raw, str):
            return None
        address = parseaddr(raw)[1] or raw
        return address.strip().lower() or None

    @property
    def body(self) -> str:
        """Plain-text body, else the HTML body."""
        return self.text or self.html or ""

    @property
    def cc_text(self) -> str:
        """CC list flattened to text for address scanning."""
        source: Any = self.cc if self.cc else self.headers.get("cc")
        if not source:
            return ""
        if isinstance(source, list):
            parts = [
                item.get("email", "") if isinstance(item, dict) else str(item) for item in source
            ]
            return ", ".join(parts)
        return str(source)


class WebhookEvent(BaseModel):
    """Resend webhook envelope."""

    model_config = ConfigDict(extra="ignore")

    type: str = ""
    created_at: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def inbound_email(self) -> InboundEmailData:
        """Parse ``data`` as an inbound email."""
        return InboundEmailData.model_validate(self.data)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class InboundResult(BaseModel):
    """Body returned to the webhook caller for a processed inbound email."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    action: str
    is_first_email: bool | None = Field(None, alias="isFirstEmail")
    complete: bool | None = None
    goal_created: bool | None = Field(None, alias="goalCreated")
    parsed: CheckinExtraction | None = None
    thread_id: str | None = Field(None, alias="threadId")

    def to_response(self) -> dict[str, Any]:
        """Serialize with wire names, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
