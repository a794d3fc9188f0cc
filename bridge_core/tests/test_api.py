"""HTTP 层与 ChatService。"""

import tempfile
import threading
import time
from pathlib import Path

from fastapi.testclient import TestClient

from bridge_core.api.app import create_app
from bridge_core.api.service import ChatService, KeyedLocks
from bridge_core.domain.exceptions import ApiError
from bridge_core.domain.models import ChatTurn, OperationRequest, SessionInfo, TurnResult
from bridge_core.infrastructure.storage.json_store import JsonConversationStore


AUTH = {"Authorization": "Bearer secret-token"}


class FakeAdapter:
    name = "fake"

    def __init__(self, state):
        self._state = state

    def start_turn(self, character_id, text, prior_turn_id):
        state = self._state
        with state["lock"]:
            state["in_flight"] += 1
            state["max_in_flight"] = max(state["max_in_flight"], state["in_flight"])
        try:
            time.sleep(state["delay"])
            if text == "explode":
                raise ApiError(code="API_ERROR", message="remote exploded")
            with state["lock"]:
                state["issued"] += 1
                n = state["issued"]
            return TurnResult(text=f"reply to {text}", turn_id=f"t{n}")
        finally:
            with state["lock"]:
                state["in_flight"] -= 1

    def regenerate_turn(self, turn_id):
        return TurnResult(text="regenerated", turn_id=turn_id)

    def delete_turn(self, turn_id):
        self._state["deleted"].append(turn_id)

    def get_session_info(self, character_id):
        return SessionInfo(display_name="Alice")

    def check_health(self):
        return True


def _new_state(delay=0.0):
    return {
        "lock": threading.Lock(),
        "in_flight": 0,
        "max_in_flight": 0,
        "issued": 0,
        "delay": delay,
        "deleted": [],
        "tokens": [],
    }


def _service(d, state):
    store = JsonConversationStore(root=Path(d) / "conversations")

    def factory(token):
        state["tokens"].append(token)
        return FakeAdapter(state)

    return ChatService(store, adapter_factory=factory, default_user="default")


def _send(client, text, **extra):
    body = {"model": "alice", "messages": [{"role": "user", "content": text}]}
    body.update(extra)
    return client.post("/v1/chat/completions", json=body, headers=AUTH)


def test_send_returns_openai_envelope():
    with tempfile.TemporaryDirectory() as d:
        state = _new_state()
        client = TestClient(create_app(_service(d, state)))
        resp = _send(client, "hi")

        assert resp.status_code == 200
        data = resp.json()
        assert data["object"] == "chat.completion"
        assert data["model"] == "Alice"
        assert data["choices"][0]["message"] == {"role": "assistant", "content": "reply to hi"}
        assert data["choices"][0]["finish_reason"] == "stop"
        assert state["tokens"] == ["secret-token"]
        assert (Path(d) / "conversations" / "default_alice.json").exists()


def test_send_accepts_content_parts_and_user_field():
    with tempfile.TemporaryDirectory() as d:
        client = TestClient(create_app(_service(d, _new_state())))
        body = {
            "model": "alice",
            "user": "bob",
            "messages": [{"role": "user", "content": [{"type": "text", "text": "hey"}]}],
        }
        resp = client.post("/v1/chat/completions", json=body, headers=AUTH)
        assert resp.json()["choices"][0]["message"]["content"] == "reply to hey"
        assert (Path(d) / "conversations" / "bob_alice.json").exists()


def test_send_stream():
    with tempfile.TemporaryDirectory() as d:
        client = TestClient(create_app(_service(d, _new_state())))
        resp = _send(client, "hi", stream=True)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = [line for line in resp.text.split("\n\n") if line]
        assert len(events) == 3
        assert '"content": "reply to hi"' in events[0]
        assert '"finish_reason": "stop"' in events[1]
        assert events[2] == "data: [DONE]"


def test_missing_auth_is_rejected_before_load():
    with tempfile.TemporaryDirectory() as d:
        state = _new_state()
        client = TestClient(create_app(_service(d, state)))
        resp = client.post("/v1/chat/completions", json={"model": "alice", "messages": [{"role": "user", "content": "x"}]})

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"
        assert state["tokens"] == []
        assert not list((Path(d) / "conversations").glob("*.json"))


def test_request_validation_errors():
    with tempfile.TemporaryDirectory() as d:
        client = TestClient(create_app(_service(d, _new_state())))
        resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "x"}]}, headers=AUTH)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_model"

        resp = client.post(
            "/v1/chat/completions",
            json={"model": "alice", "messages": [{"role": "assistant", "content": "x"}]},
            headers=AUTH,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "invalid_request_error"

        resp = client.post("/v1/chat/completions", json={"model": "alice", "operation": "edit"}, headers=AUTH)
        assert resp.json()["error"]["code"] == "target_required"

        resp = client.post("/v1/chat/completions", json={"model": "alice", "operation": "rewind"}, headers=AUTH)
        assert resp.json()["error"]["code"] == "invalid_operation"


def test_edit_delete_regenerate_return_conversation():
    with tempfile.TemporaryDirectory() as d:
        state = _new_state()
        client = TestClient(create_app(_service(d, state)))
        _send(client, "one")
        _send(client, "two")

        resp = client.post(
            "/v1/chat/completions",
            json={"model": "alice", "operation": "edit", "target": {"index": 0}, "new_content": "uno"},
            headers=AUTH,
        )
        assert resp.status_code == 200
        conv = resp.json()["conversation"]
        assert [m["content"] for m in conv["messages"]] == ["uno", "reply to uno", "two", "reply to two"]
        assert state["deleted"] == ["t1", "t2"]

        resp = client.post(
            "/v1/chat/completions",
            json={"model": "alice", "operation": "regenerate"},
            headers=AUTH,
        )
        assert resp.json()["conversation"]["messages"][-1]["content"] == "regenerated"

        first_user_id = conv["messages"][0]["id"]
        resp = client.post(
            "/v1/chat/completions",
            json={"model": "alice", "operation": "delete", "target": {"id": first_user_id}},
            headers=AUTH,
        )
        conv = resp.json()["conversation"]
        assert [m["content"] for m in conv["messages"]] == ["two", "reply to two"]


def test_remote_failure_maps_to_502():
    with tempfile.TemporaryDirectory() as d:
        client = TestClient(create_app(_service(d, _new_state())))
        resp = _send(client, "explode")
        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["type"] == "remote_service_error"
        assert error["details"]["conversation_id"] == "default_alice"

        resp = client.get("/v1/conversations/default_alice")
        messages = resp.json()["conversation"]["messages"]
        assert [(m["role"], m["content"]) for m in messages] == [("user", "explode")]


def test_health_and_listing():
    with tempfile.TemporaryDirectory() as d:
        client = TestClient(create_app(_service(d, _new_state())))
        assert client.get("/health").json()["remote_status"] == "no_token_provided"
        _send(client, "hi")

        health = client.get("/api/health", headers=AUTH).json()
        assert health["status"] == "ok"
        assert health["remote_status"] == "connected"
        assert health["storage"]["conversations_count"] == 1

        assert client.get("/v1/conversations").json()["data"] == ["default_alice"]
        assert client.get("/v1/conversations/default_bob").status_code == 404
        assert client.get("/").json()["status"] == "running"

        resp = client.get("/nowhere")
        assert resp.status_code == 404
        assert "/v1/chat/completions" in resp.json()["available_endpoints"]
        assert "/v1/conversations" in resp.json()["available_endpoints"]


def test_service_serialises_operations_per_key():
    with tempfile.TemporaryDirectory() as d:
        state = _new_state(delay=0.05)
        service = _service(d, state)
        errors = []

        def worker(text):
            try:
                service.handle(
                    OperationRequest(character_id="alice", messages=[ChatTurn(role="user", content=text)]),
                    "Bearer secret-token",
                )
            except Exception as e:  # 测试中记录线程内异常
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"m{i}",)) for i in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert state["max_in_flight"] == 1
        conv = service.get_conversation("default_alice")
        assert len(conv.messages) == 6
        assert conv.chain_pointer == "t3"


def test_keyed_locks_release_idle_keys():
    locks = KeyedLocks()
    with locks.hold("default_alice"):
        with locks.hold("default_bob"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0
