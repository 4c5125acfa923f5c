"""Input sanitization for inbound email fields and model-extracted values.

Inbound mail and model output are untrusted. Values are cleaned before they
reach the store or a prompt, and truncated rather than rejected.
"""

import re

MAX_CONTENT_LENGTH = 50_000
MAX_SUBJECT_LENGTH = 200
MAX_FIRST_NAME_LENGTH = 50
MAX_GOAL_LENGTH = 500

DEFAULT_SUBJECT = "No subject"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_NAME_UNSAFE_CHARS = re.compile(r"[<>\"'`\\]")


def sanitize_content(value: str | None) -> str:
    """Strip null bytes and cap the body length. Empty bodies are allowed."""
    if not value:
        return ""
    return value.replace("\x00", "")[:MAX_CONTENT_LENGTH]


def sanitize_subject(value: str | None) -> str:
    """Trim, drop control characters and cap a subject line.

    Returns:
        The cleaned subject, or ``DEFAULT_SUBJECT`` when nothing is left.
    """
    if not value:
        return DEFAULT_SUBJECT
    cleaned = _CONTROL_CHARS.sub("", value.strip())[:MAX_SUBJECT_LENGTH]
    return cleaned or DEFAULT_SUBJECT


def sanitize_first_name(value: str | None) -> str | None:
    """Clean a first name pulled from free text.

    Returns:
        The cleaned name, or None when nothing usable remains.
    """
    if not value:
        return None
    cleaned = _CONTROL_CHARS.sub("", _NAME_UNSAFE_CHARS.sub("", value.strip()))
    cleaned = cleaned[:MAX_FIRST_NAME_LENGTH].strip()
    return cleaned or None


def sanitize_goal(value: str | None, max_length: int = MAX_GOAL_LENGTH) -> str | None:
    """Clean a goal description.

    Returns:
        The cleaned description, or None when nothing usable remains.
    """
    if not value:
        return None
    cleaned = _CONTROL_CHARS.sub("", value.strip())[:max_length].strip()
    return cleaned or None
