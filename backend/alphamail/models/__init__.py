"""Pydantic models for AlphaMail."""

from alphamail.models.conversation import (
    CheckinExtraction,
    CheckinReply,
    Direction,
    HistoryMessage,
    InboundEmailData,
    InboundResult,
    Mood,
    OnboardingExtraction,
    OnboardingTurn,
    WebhookEvent,
)

__all__ = [
    "CheckinExtraction",
    "CheckinReply",
    "Direction",
    "HistoryMessage",
    "InboundEmailData",
    "InboundResult",
    "Mood",
    "OnboardingExtraction",
    "OnboardingTurn",
    "WebhookEvent",
]
