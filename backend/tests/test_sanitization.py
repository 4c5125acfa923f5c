"""Tests for input sanitization."""

from alphamail.security.sanitization import (
    DEFAULT_SUBJECT,
    MAX_CONTENT_LENGTH,
    MAX_FIRST_NAME_LENGTH,
    MAX_SUBJECT_LENGTH,
    sanitize_content,
    sanitize_first_name,
    sanitize_goal,
    sanitize_subject,
)


class TestSanitizeContent:
    def test_strips_null_bytes(self) -> None:
        assert sanitize_content("a\x00b") == "ab"

    def test_truncates(self) -> None:
        assert len(sanitize_content("x" * (MAX_CONTENT_LENGTH + 10))) == MAX_CONTENT_LENGTH

    def test_empty(self) -> None:
        assert sanitize_content(None) == ""


class TestSanitizeSubject:
    def test_drops_control_characters(self) -> None:
        assert sanitize_subject("  hi\r\nthere  ") == "hithere"

    def test_truncates(self) -> None:
        assert len(sanitize_subject("s" * 500)) == MAX_SUBJECT_LENGTH

    def test_defaults_when_blank(self) -> None:
        assert sanitize_subject(None) == DEFAULT_SUBJECT
        assert sanitize_subject("\x01\x02") == DEFAULT_SUBJECT


class TestSanitizeFirstName:
    def test_removes_markup_characters(self) -> None:
        assert sanitize_first_name(' <Sam>"') == "Sam"

    def test_truncates(self) -> None:
        name = sanitize_first_name("a" * 80)
        assert name is not None
        assert len(name) == MAX_FIRST_NAME_LENGTH

    def test_none_when_nothing_left(self) -> None:
        assert sanitize_first_name("<>") is None
        assert sanitize_first_name(None) is None


def test_sanitize_goal() -> None:
    assert sanitize_goal("  run 3x\x07 ") == "run 3x"
    assert sanitize_goal("abcdef", max_length=3) == "abc"
    assert sanitize_goal("   ") is None
