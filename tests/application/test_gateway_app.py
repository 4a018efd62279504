import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from gateway.application.runtime import GatewayRuntime
from gateway.application.websocket.ws_server import create_app
from gateway.domain.errors import TransportError, TransportErrorKind
from tests.conftest import ScriptedCompletionClient, text_turn, tool_turn

SECRET = "s3cret"
AUTH = {"Authorization": f"Bearer {SECRET}"}

CLOCK_TOOL = {
    "name": "get_local_time",
    "description": "Current time on the worker machine",
    "parameters": {"type": "object", "properties": {}}
}


@pytest.fixture
def make_client(settings):
    clients = []

    def factory(turns=(), **overrides):
        completion = ScriptedCompletionClient(turns)
        runtime = GatewayRuntime(
            settings.model_copy(update={"secret_token": SECRET, **overrides}),
            completion_client=completion,
            embedding_factory=lambda: None,
            watch_memory=False,
            enable_heartbeats=False
        )
        client = TestClient(create_app(runtime=runtime))
        client.__enter__()
        clients.append(client)
        return client, completion

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


def receive_until(ws, event_type):
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events


def tool_names(client):
    return [tool["name"] for tool in client.get("/api/v1/tools", headers=AUTH).json()["tools"]]


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestRestSurface:
    """Health, auth and REST endpoints"""

    def test_health_is_public(self, make_client):
        client, _ = make_client()
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_api_requires_secret(self, make_client):
        client, _ = make_client()

        assert client.get("/api/v1/tools").status_code == 401
        wrong = client.get("/api/v1/tools", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401
        assert wrong.json() == {"error": "Unauthorized: Invalid Secret Token"}

        response = client.get("/api/v1/tools", headers=AUTH)
        assert response.status_code == 200
        builtin = {t["name"] for t in response.json()["tools"] if t["source"] == "builtin"}
        assert builtin == {"memory_search", "memory_get", "save_to_memory"}

    def test_chat(self, make_client):
        client, completion = make_client([text_turn("<think>easy</think>", "Hello there!")])

        response = client.post("/api/v1/agent/chat", headers=AUTH, json={
            "messages": [{"role": "user", "content": "hi"}],
            "agentId": "luna",
            "sessionId": "rest-1"
        })

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "Hello there!"
        assert body["reasoning"] is None
        assert body["status"] == "done"
        assert body["iterations"] == 1
        assert completion.requests[0][0].content == "You are Luna."

    def test_chat_with_summary(self, make_client):
        client, completion = make_client([text_turn("Sure, here is a plan.")])

        response = client.post("/api/v1/agent/chat", headers=AUTH, json={
            "messages": [{"role": "user", "content": "plan my day"}],
            "should_summarize": True
        })

        assert response.json()["summary"] == "Short chat summary"
        assert "ASSISTANT: Sure, here is a plan." in completion.completions[0][1].content

    def test_chat_rejects_empty_messages(self, make_client):
        client, _ = make_client()
        response = client.post("/api/v1/agent/chat", headers=AUTH, json={"messages": []})
        assert response.status_code == 400

    def test_chat_upstream_failure(self, make_client):
        client, _ = make_client([TransportError(TransportErrorKind.TIMEOUT, "read timed out")])
        response = client.post("/api/v1/agent/chat", headers=AUTH, json={
            "messages": [{"role": "user", "content": "hi"}]
        })
        assert response.status_code == 502
        assert response.json()["detail"] == (
            "Connection to LLM provider timed out. Please check your network connection."
        )

    def test_chat_without_provider(self, make_client):
        client, _ = make_client(providers=[])
        response = client.post("/api/v1/agent/chat", headers=AUTH, json={
            "messages": [{"role": "user", "content": "hi"}]
        })
        assert response.status_code == 502
        assert response.json()["detail"] == "No LLM provider configured. Please add a provider in settings."

    def test_memory_search(self, make_client, settings):
        agent_dir = settings.agent_dir("luna")
        agent_dir.mkdir(parents=True, exist_ok=True)
        (agent_dir / "MEMORY.md").write_text("The office wifi password is on the fridge.")
        client, _ = make_client()

        response = client.post("/api/v1/agents/luna/memory/search", headers=AUTH, json={"query": "wifi password"})

        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["location"] == "MEMORY.md:1-1"
        assert "wifi password" in results[0]["text"]


class TestWebSocketChat:
    """Chat clients on /ws"""

    def test_invalid_token_is_closed_with_policy_violation(self, make_client):
        client, _ = make_client()
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=wrong") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_streams_deltas_then_done(self, make_client):
        client, _ = make_client([text_turn("The weather ", "is sunny ", "today.")])

        with client.websocket_connect(f"/ws?token={SECRET}&hostname=phone") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connection"
            assert connected["status"] == "connected"

            ws.send_json({"messages": [{"role": "user", "content": "weather?"}], "sessionId": "s-1"})
            events = receive_until(ws, "done")

        deltas = [e["content"] for e in events if e["type"] == "delta"]
        assert "".join(deltas) == "The weather is sunny today."
        assert events[-1]["content"] == "The weather is sunny today."
        assert all(e["session_id"] == "s-1" for e in events)

    def test_error_event(self, make_client):
        client, _ = make_client([TransportError(TransportErrorKind.REFUSED, "connection refused")])

        with client.websocket_connect(f"/ws?token={SECRET}") as ws:
            ws.receive_json()
            ws.send_json({"messages": [{"role": "user", "content": "hi"}]})
            event = ws.receive_json()

        assert event["type"] == "error"
        assert event["message"] == (
            "Unable to connect to LLM provider. Please ensure the provider is running and accessible."
        )

    def test_summary_follows_done(self, make_client):
        client, _ = make_client([text_turn("Booked the table.")])

        with client.websocket_connect(f"/ws?token={SECRET}") as ws:
            ws.receive_json()
            ws.send_json({"messages": [{"role": "user", "content": "book dinner"}], "shouldSummarize": True})
            receive_until(ws, "done")
            summary = ws.receive_json()

        assert summary["type"] == "summary"
        assert summary["content"] == "Short chat summary"

    def test_invalid_json(self, make_client):
        client, _ = make_client()
        with client.websocket_connect(f"/ws?token={SECRET}") as ws:
            ws.receive_json()
            ws.send_text("{broken")
            event = ws.receive_json()
        assert event["type"] == "error"
        assert event["message"] == "Invalid JSON message"


class TestRemoteWorkers:
    """Workers registering tools over /ws"""

    def test_tools_follow_worker_lifetime(self, make_client):
        client, _ = make_client()

        with client.websocket_connect(f"/ws?token={SECRET}&hostname=laptop") as worker:
            worker.receive_json()
            worker.send_json({"type": "register_tools", "tools": [CLOCK_TOOL]})
            assert wait_for(lambda: "get_local_time" in tool_names(client))

            clients = client.get("/api/v1/clients", headers=AUTH).json()["clients"]
            assert [c["hostname"] for c in clients] == ["laptop"]

        assert wait_for(lambda: "get_local_time" not in tool_names(client))

    def test_model_calls_worker_tool(self, make_client):
        client, completion = make_client([
            tool_turn(("call_clock", "get_local_time", {})),
            text_turn("It is 09:30 on the laptop."),
        ])

        with client.websocket_connect(f"/ws?token={SECRET}&hostname=laptop") as worker:
            worker.receive_json()
            worker.send_json({"type": "register_tools", "tools": [CLOCK_TOOL]})
            assert wait_for(lambda: "get_local_time" in tool_names(client))

            with client.websocket_connect(f"/ws?token={SECRET}&hostname=phone") as chat:
                chat.receive_json()
                chat.send_json({"messages": [{"role": "user", "content": "what time is it at home?"}]})

                call = worker.receive_json()
                assert call["type"] == "call_tool"
                assert call["name"] == "get_local_time"
                worker.send_json({"type": "tool_result", "id": call["id"], "result": {"time": "09:30"}})

                events = receive_until(chat, "done")

        assert events[-1]["content"] == "It is 09:30 on the laptop."
        assert "get_local_time" in completion.tools_seen[0]
        tool_message = completion.requests[1][-1]
        assert tool_message.tool_call_id == "call_clock"
        assert tool_message.content == '{"time": "09:30"}'
