"""Lexical heuristics over raw message text.

Pure functions with no I/O: goal-intent detection, group-confirmation
detection, CC address scanning and week-boundary dates.
"""

import re
from collections.abc import Iterable
from datetime import date, timedelta

GOAL_INTENT_MAX_LENGTH = 200

GOAL_INTENT_PATTERN = re.compile(r"(?:goal|want to|going to|plan to|trying to|will)\s+(.+)")

GROUP_AFFIRMATION_PATTERN = re.compile(
    r"^(?:yes|yeah|yep|sure|ok|okay|let'?s do it|add them|create.*group)\b",
    re.IGNORECASE,
)

# Phrases only Alpha's own group offers contain
GROUP_OFFER_MARKERS = ("group accountability", "group goals", "cc'd")

_ADD_NAMES_PATTERN = re.compile(r"(?:add|with|include)\s+([\w\s,]+)", re.IGNORECASE)
_CCD_NAMES_PATTERN = re.compile(r"cc'd\s+([\w\s,]+?)\s*[-–—]", re.IGNORECASE)
_NAME_SPLIT = re.compile(r"[,\s]+")
_NAME_STOPWORDS = frozenset({"and", "me", "them", "us"})

EMAIL_ADDRESS_PATTERN = re.compile(r"[\w.+-]+@[\w.-]+\.[a-zA-Z]{2,}")


def detect_goal_intent(message: str) -> str | None:
    """Return the goal phrase in a message, if it states one.

    Matches phrasing such as "my goal is ...", "i want to ...", "going to ...".

    Returns:
        The text after the intent phrase, trimmed and capped, or None.
    """
    match = GOAL_INTENT_PATTERN.search(message.lower())
    if not match:
        return None
    goal = match.group(1).strip()[:GOAL_INTENT_MAX_LENGTH].strip()
    return goal or None


def next_sunday(today: date) -> date:
    """The upcoming week boundary: the next Sunday strictly after *today*."""
    days_since_sunday = (today.weekday() + 1) % 7
    return today + timedelta(days=7 - days_since_sunday)


def is_group_affirmation(message: str) -> bool:
    """True when a message opens with an affirmation such as "yes" or "let's do it"."""
    return bool(GROUP_AFFIRMATION_PATTERN.match(message.lower().strip()))


def mentions_group_offer(outbound_texts: Iterable[str]) -> bool:
    """True when any recent outbound text offered group accountability."""
    combined = " ".join(outbound_texts)
    return any(marker in combined for marker in GROUP_OFFER_MARKERS)


def _split_names(raw: str) -> list[str]:
    return [
        n for n in _NAME_SPLIT.split(raw) if len(n) > 1 and n.lower() not in _NAME_STOPWORDS
    ]


def capitalize_name(name: str) -> str:
    """Capitalize a name the way first names are stored ("jOHN" -> "John")."""
    return name[:1].upper() + name[1:].lower()


def extract_group_names(message: str, outbound_texts: Iterable[str]) -> list[str]:
    """First names a group confirmation refers to.

    Names come from "add/with/include <names>" in the message, else from the
    "cc'd <names> -" phrase of a recent group offer.

    Returns:
        Capitalized names, de-duplicated in order of appearance.
    """
    names: list[str] = []
    match = _ADD_NAMES_PATTERN.search(message.lower())
    if match:
        names = _split_names(match.group(1))

    if not names:
        cc_match = _CCD_NAMES_PATTERN.search(" ".join(outbound_texts))
        if cc_match:
            names = _split_names(cc_match.group(1))

    return list(dict.fromkeys(capitalize_name(n) for n in names))


def parse_cc_emails(text: str | None, exclude: Iterable[str] = ()) -> list[str]:
    """Scan text for email addresses.

    Args:
        text: CC header text or a flattened CC list.
        exclude: Addresses to leave out (e.g. the sender and Alpha itself).

    Returns:
        Lowercased addresses, de-duplicated in order of appearance.
    """
    if not text:
        return []
    skip = {e.lower() for e in exclude if e}
    found = (m.lower() for m in EMAIL_ADDRESS_PATTERN.findall(text))
    return [e for e in dict.fromkeys(found) if e not in skip]
