"""Tests for the Supabase-backed conversation store."""

from datetime import date
from typing import Any
from unittest.mock import MagicMock

import pytest

from alphamail.core.exceptions import DatabaseError
from alphamail.core.resilience import supabase_circuit_breaker
from alphamail.db.store import ConversationStore, escape_like_pattern

_BUILDER_METHODS = ("select", "eq", "limit", "order", "insert", "update", "delete", "in_", "is_", "ilike")


def _mock_client(data: Any = None) -> tuple[MagicMock, MagicMock]:
    """Client whose query builder returns itself for every chained call."""
    query = MagicMock()
    for name in _BUILDER_METHODS:
        getattr(query, name).return_value = query
    query.not_ = query
    query.execute.return_value = MagicMock(data=data)

    client = MagicMock()
    client.table.return_value = query
    return client, query


@pytest.fixture(autouse=True)
def reset_breaker() -> None:
    supabase_circuit_breaker.reset()


def test_escape_like_pattern() -> None:
    assert escape_like_pattern("100%_done\\") == "100\\%\\_done\\\\"


@pytest.mark.asyncio
async def test_get_profile_by_email() -> None:
    client, query = _mock_client([{"user_id": "u1", "email": "sam@x.com"}])
    store = ConversationStore(client)

    profile = await store.get_profile_by_email("sam@x.com")

    assert profile == {"user_id": "u1", "email": "sam@x.com"}
    client.table.assert_called_with("profiles")
    query.eq.assert_called_with("email", "sam@x.com")


@pytest.mark.asyncio
async def test_missing_profile_is_none() -> None:
    client, _ = _mock_client([])
    assert await ConversationStore(client).get_profile("u1") is None


@pytest.mark.asyncio
async def test_query_failure_raises_database_error() -> None:
    client, query = _mock_client()
    query.execute.side_effect = RuntimeError("connection reset")

    with pytest.raises(DatabaseError, match="fetch active goal"):
        await ConversationStore(client).get_active_goal("u1")
    assert supabase_circuit_breaker._failure_count == 1


@pytest.mark.asyncio
async def test_active_goal_is_newest_incomplete() -> None:
    client, query = _mock_client([{"id": "g2"}])

    goal = await ConversationStore(client).get_active_goal("u1")

    assert goal == {"id": "g2"}
    query.eq.assert_any_call("completed", False)
    query.order.assert_called_with("created_at", desc=True)


@pytest.mark.asyncio
async def test_complete_goal_only_flips_incomplete() -> None:
    client, query = _mock_client([{"id": "g1"}])

    assert await ConversationStore(client).complete_goal("g1") is True
    query.eq.assert_any_call("id", "g1")
    query.eq.assert_any_call("completed", False)
    update = query.update.call_args.args[0]
    assert update["completed"] is True
    assert "completed_at" in update


@pytest.mark.asyncio
async def test_complete_goal_already_complete() -> None:
    client, _ = _mock_client([])
    assert await ConversationStore(client).complete_goal("g1") is False


@pytest.mark.asyncio
async def test_insert_goal_serializes_due_date() -> None:
    client, query = _mock_client([{"id": "g1"}])

    await ConversationStore(client).insert_goal("u1", "run 3x", date(2026, 3, 15))

    query.insert.assert_called_with(
        {"user_id": "u1", "description": "run 3x", "due_date": "2026-03-15"}
    )


@pytest.mark.asyncio
async def test_insert_email_without_row_raises() -> None:
    client, _ = _mock_client([])

    with pytest.raises(DatabaseError):
        await ConversationStore(client).insert_email("u1", "inbound", "hi", "body")


@pytest.mark.asyncio
async def test_insert_email_keeps_created_at() -> None:
    client, query = _mock_client([{"id": "e1"}])

    await ConversationStore(client).insert_email(
        "u1", "inbound", "hi", "body", thread_id="t1", created_at="2026-01-01T00:00:00+00:00"
    )

    inserted = query.insert.call_args.args[0]
    assert inserted["thread_id"] == "t1"
    assert inserted["created_at"] == "2026-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_thread_history_is_oldest_first() -> None:
    client, query = _mock_client([{"content": "newest"}, {"content": "older"}])

    rows = await ConversationStore(client).get_thread_messages("u1", "t1", limit=20)

    assert [r["content"] for r in rows] == ["older", "newest"]
    query.limit.assert_called_with(20)


@pytest.mark.asyncio
async def test_find_thread_by_subject_escapes_wildcards() -> None:
    client, query = _mock_client([{"thread_id": "t9"}])

    thread = await ConversationStore(client).find_thread_by_subject("u1", "50% off")

    assert thread == "t9"
    query.ilike.assert_called_with("subject", "%50\\% off%")


@pytest.mark.asyncio
async def test_claim_delivery_first_time() -> None:
    client, query = _mock_client([{"id": "msg_1"}])

    assert await ConversationStore(client).claim_delivery("msg_1", "email.received") is True
    query.insert.assert_called_with({"id": "msg_1", "event_type": "email.received"})


@pytest.mark.asyncio
async def test_claim_delivery_duplicate() -> None:
    client, query = _mock_client()

    class UniqueViolation(Exception):
        code = "23505"

    query.execute.side_effect = UniqueViolation("duplicate key value")

    assert await ConversationStore(client).claim_delivery("msg_1", "email.received") is False
    assert supabase_circuit_breaker._failure_count == 0


@pytest.mark.asyncio
async def test_claim_delivery_other_failure() -> None:
    client, query = _mock_client()
    query.execute.side_effect = RuntimeError("timeout")

    with pytest.raises(DatabaseError):
        await ConversationStore(client).claim_delivery("msg_1", "email.received")


@pytest.mark.asyncio
async def test_create_group_adds_creator_once() -> None:
    client, query = _mock_client([{"id": "grp1", "name": "Sam's group"}])

    group = await ConversationStore(client).create_group("Sam's group", "u1", ["u2", "u1"])

    assert group["id"] == "grp1"
    members = query.insert.call_args.args[0]
    assert members == [
        {"group_id": "grp1", "user_id": "u1"},
        {"group_id": "grp1", "user_id": "u2"},
    ]


@pytest.mark.asyncio
async def test_mark_email_status_counts_rows() -> None:
    client, query = _mock_client([{"user_id": "u1"}, {"user_id": "u2"}])

    assert await ConversationStore(client).mark_email_status("sam@x.com", "bounced") == 2
    assert query.update.call_args.args[0]["email_status"] == "bounced"


@pytest.mark.asyncio
async def test_get_user_for_token() -> None:
    client, _ = _mock_client()
    client.auth.get_user.return_value = MagicMock(user=MagicMock(id="u1", email="sam@x.com"))

    assert await ConversationStore(client).get_user_for_token("tok") == {
        "id": "u1",
        "email": "sam@x.com",
    }


@pytest.mark.asyncio
async def test_get_user_for_invalid_token() -> None:
    client, _ = _mock_client()
    client.auth.get_user.side_effect = RuntimeError("invalid JWT")

    assert await ConversationStore(client).get_user_for_token("bad") is None


@pytest.mark.asyncio
async def test_confirm_auth_email_failure() -> None:
    client, _ = _mock_client()
    client.auth.admin.update_user_by_id.side_effect = RuntimeError("denied")

    with pytest.raises(DatabaseError):
        await ConversationStore(client).confirm_auth_email("u1")
