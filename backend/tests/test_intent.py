"""Tests for lexical message heuristics."""

from datetime import date

import pytest

from alphamail.services.intent import (
    capitalize_name,
    detect_goal_intent,
    extract_group_names,
    is_group_affirmation,
    mentions_group_offer,
    next_sunday,
    parse_cc_emails,
)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("My goal is to read 2 books", "is to read 2 books"),
        ("I want to run 3 times", "run 3 times"),
        ("going to call mom", "call mom"),
        ("just saying hi", None),
    ],
)
def test_detect_goal_intent(message: str, expected: str | None) -> None:
    assert detect_goal_intent(message) == expected


def test_goal_intent_is_capped() -> None:
    goal = detect_goal_intent("i want to " + "x" * 500)
    assert goal is not None
    assert len(goal) == 200


@pytest.mark.parametrize(
    ("today", "expected"),
    [
        (date(2026, 3, 11), date(2026, 3, 15)),  # Wednesday
        (date(2026, 3, 14), date(2026, 3, 15)),  # Saturday
        (date(2026, 3, 15), date(2026, 3, 22)),  # Sunday rolls a full week
        (date(2026, 3, 16), date(2026, 3, 22)),  # Monday
    ],
)
def test_next_sunday(today: date, expected: date) -> None:
    assert next_sunday(today) == expected


def test_group_affirmation() -> None:
    assert is_group_affirmation("Yes, add John")
    assert is_group_affirmation("  let's do it")
    assert is_group_affirmation("create a group please")
    assert not is_group_affirmation("no thanks, yes maybe later")
    assert not is_group_affirmation("yesterday i ran with maya")
    assert not is_group_affirmation("surely not")
    assert not is_group_affirmation("okra for dinner")


def test_mentions_group_offer() -> None:
    assert mentions_group_offer(["want to start a group accountability session together?"])
    assert not mentions_group_offer(["nice work this week"])


def test_group_names_from_message() -> None:
    assert extract_group_names("yes add john and MARY", []) == ["John", "Mary"]


def test_group_names_fall_back_to_offer() -> None:
    offer = "i see you cc'd John, Mary - they're already using alphamail!"
    assert extract_group_names("yes", [offer]) == ["John", "Mary"]


def test_group_names_empty_without_source() -> None:
    assert extract_group_names("yes", ["nice work"]) == []


def test_capitalize_name() -> None:
    assert capitalize_name("jOHN") == "John"


def test_parse_cc_emails_excludes_and_dedupes() -> None:
    text = "Pat <Pat@X.com>, sam@x.com, alpha@alphamail.ai, pat@x.com"
    assert parse_cc_emails(text, exclude=["SAM@x.com", "alpha@alphamail.ai"]) == ["pat@x.com"]


def test_parse_cc_emails_empty() -> None:
    assert parse_cc_emails(None) == []
    assert parse_cc_emails("no addresses here") == []
