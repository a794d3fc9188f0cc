from datetime import datetime, timezone

import pytest

from bridge_core.domain.conversation import conversation_key
from bridge_core.domain.models import Conversation, Message, TargetSpec, parse_timestamp


def test_conversation_key():
    assert conversation_key("abc") == "default_abc"
    assert conversation_key("abc", "bob") == "bob_abc"


def test_record_layout_uses_camel_case():
    now = datetime(2026, 5, 4, 3, 2, 1, tzinfo=timezone.utc)
    conv = Conversation(
        conversation_id="default_abc",
        character_id="abc",
        display_name="Abc",
        created_at=now,
        updated_at=now,
        chain_pointer="t9",
        messages=[Message(id="m1", role="assistant", content="yo", created_at=now, turn_id="t9", candidate_id="c9")],
    )
    record = conv.to_record()
    assert set(record) == {
        "conversationId", "characterId", "displayName", "chainPointer", "messages", "createdAt", "updatedAt",
    }
    assert record["createdAt"] == "2026-05-04T03:02:01Z"
    assert record["messages"][0] == {
        "id": "m1",
        "role": "assistant",
        "content": "yo",
        "createdAt": "2026-05-04T03:02:01Z",
        "turnId": "t9",
        "candidateId": "c9",
    }
    assert Conversation.from_record(record) == conv


def test_legacy_record_is_loaded():
    legacy = {
        "conversationId": "default_abc",
        "characterId": "abc",
        "characterName": "Old Name",
        "historyId": "h1",
        "messages": [
            {"role": "user", "content": "hi", "timestamp": "2025-01-01T00:00:00.000Z"},
            {"id": "x", "role": "char", "data": "hello", "time": 1735689600000},
            {"id": "x", "role": "user", "content": "again", "time": 1735689600001},
        ],
        "createdAt": "2025-01-01T00:00:00.000Z",
    }
    conv = Conversation.from_record(legacy)
    assert conv.display_name == "Old Name"
    assert conv.chain_pointer == "h1"
    assert [m.role for m in conv.messages] == ["user", "assistant", "user"]
    assert conv.messages[1].content == "hello"
    assert conv.messages[1].created_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
    ids = [m.id for m in conv.messages]
    assert len(set(ids)) == 3
    assert conv.messages[1].id == "x"


def test_parse_timestamp_variants():
    expected = datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1735689600000) == expected
    assert parse_timestamp("1735689600000") == expected
    assert parse_timestamp("2025-01-01T00:00:00Z") == expected
    assert parse_timestamp(datetime(2025, 1, 1)) == expected
    with pytest.raises(ValueError):
        parse_timestamp("not a time")


def test_answer_to_and_last_user_index():
    now = datetime.now(timezone.utc)
    conv = Conversation(
        conversation_id="k", character_id="c", display_name="c", created_at=now, updated_at=now,
        messages=[
            Message(id="1", role="user", content="q", created_at=now),
            Message(id="2", role="assistant", content="a", created_at=now, turn_id="t"),
            Message(id="3", role="user", content="q2", created_at=now),
        ],
    )
    assert conv.answer_to(0).id == "2"
    assert conv.answer_to(2) is None
    assert conv.last_user_index() == 2
    assert conv.messages[1].confirmed


def test_target_spec_from_dict():
    assert TargetSpec.from_dict(None) is None
    spec = TargetSpec.from_dict({"index": "2", "id": "m1"})
    assert spec.index == 2 and spec.id == "m1" and spec.time is None
    assert TargetSpec().is_empty()
