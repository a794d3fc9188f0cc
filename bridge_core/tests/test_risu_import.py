import json
import tempfile
from pathlib import Path

import pytest

from bridge_core.domain.exceptions import ValidationError
from bridge_core.domain.models import SessionInfo, TurnResult
from bridge_core.infrastructure.storage.json_store import JsonConversationStore
from bridge_core.tasks import import_and_sync


EXPORT = {
    "type": "risuChat",
    "data": [
        {
            "message": [
                {"role": "user", "data": "你好", "time": 1735689600000},
                {"role": "char", "data": "你好呀", "time": 1735689601000},
                {"role": "user", "data": "今天天气怎么样？", "time": 1735689602000},
            ]
        }
    ],
}


class FakeAdapter:
    name = "fake"

    def __init__(self):
        self.starts = []

    def start_turn(self, character_id, text, prior_turn_id):
        self.starts.append((text, prior_turn_id))
        return TurnResult(text=f"re:{text}", turn_id=f"t{len(self.starts)}")

    def regenerate_turn(self, turn_id):
        raise AssertionError("not used")

    def delete_turn(self, turn_id):
        raise AssertionError("imported replies have no turn id")

    def get_session_info(self, character_id):
        return SessionInfo(display_name=character_id)

    def check_health(self):
        return True


def _write_export(d, payload=EXPORT):
    path = Path(d) / "risu.json"
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    return path


def test_import_without_token_only_merges():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / "conversations")
        path = _write_export(d)

        report = import_and_sync(path, "default_abc", "abc", store)
        assert report.merged == 3 and report.total == 3 and report.synced is False

        again = import_and_sync(path, "default_abc", "abc", store)
        assert again.merged == 0
        conv = store.load("default_abc")
        assert [m.role for m in conv.messages] == ["user", "assistant", "user"]
        assert all(m.turn_id is None for m in conv.messages)


def test_import_and_sync_replays_user_messages():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / "conversations")
        adapter = FakeAdapter()

        report = import_and_sync(_write_export(d), "default_abc", "abc", store, adapter)

        assert report.synced is True
        assert adapter.starts == [("你好", None), ("今天天气怎么样？", "t1")]
        conv = store.load("default_abc")
        assert [m.content for m in conv.messages] == ["你好", "re:你好", "今天天气怎么样？", "re:今天天气怎么样？"]
        assert conv.chain_pointer == "t2"


def test_invalid_export():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / "conversations")
        with pytest.raises(ValidationError):
            import_and_sync(_write_export(d, {"data": []}), "default_abc", "abc", store)
        with pytest.raises(ValidationError):
            import_and_sync(Path(d) / "missing.json", "default_abc", "abc", store)


def test_reimport_with_adapter_does_not_resend():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / "conversations")
        adapter = FakeAdapter()
        path = _write_export(d)

        first = import_and_sync(path, "default_abc", "abc", store, adapter)
        second = import_and_sync(path, "default_abc", "abc", store, adapter)

        assert first.merged == 3
        assert second.merged == 0
        assert len(adapter.starts) == 2
        conv = store.load("default_abc")
        assert [m.content for m in conv.messages] == ["你好", "re:你好", "今天天气怎么样？", "re:今天天气怎么样？"]
