import json
import logging

import pytest
from fastapi.testclient import TestClient

from chatrelay import main
from chatrelay.agent import ToolInvoker
from chatrelay.events import BroadcastLogHandler, EventBus
from chatrelay.services.chat_service import ChatService
from chatrelay.services.session_store import SessionStore
from chatrelay.settings import Settings

from fakes import FailingModel, FakeModel, text_turn


def _install(model, settings: Settings) -> ChatService:
    bus = EventBus()
    service = ChatService(
        store=SessionStore(),
        model=model,
        invoker=ToolInvoker([], events=bus),
        settings=settings,
        events=bus,
    )
    main.app.state.events = bus
    main.app.state.chat_service = service
    return service


@pytest.fixture
def client() -> TestClient:
    return TestClient(main.app)


def _sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_chat_requires_messages(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([]), settings)

    for body in ({}, {"messages": "hello"}, {"messages": []}, {"messages": [{"role": "user"}]}):
        response = client.post("/api/chat", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "Messages array is required"
        assert "example" in response.json()


def test_chat_buffered(client: TestClient, settings: Settings) -> None:
    service = _install(FakeModel([text_turn("Hel", "lo")]), settings)

    response = client.post(
        "/api/chat", json={"messages": [{"role": "user", "content": "hi"}], "chatId": "c1"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["response"] == "Hello"
    assert data["sessionId"] == "c1"
    assert len(service.store.get("c1")) == 2


def test_chat_generates_session_id(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([text_turn("ok")]), settings)

    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.json()["sessionId"].startswith("chat_")


def test_chat_streaming_via_query_flag(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([text_turn("Hel", "lo")]), settings)

    response = client.post(
        "/api/chat?stream=true",
        json={"messages": [{"role": "user", "content": "hi"}], "sessionId": "s1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert _sse_events(response.text) == [
        {"type": "chunk", "content": "Hel", "sessionId": "s1"},
        {"type": "chunk", "content": "lo", "sessionId": "s1"},
        {"type": "done", "fullResponse": "Hello", "sessionId": "s1"},
    ]


def test_chat_streaming_via_accept_header(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([[]]), settings)

    response = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "sessionId": "s1"},
        headers={"Accept": "text/event-stream"},
    )

    events = _sse_events(response.text)
    assert events[-1] == {"type": "done", "fullResponse": "FALLBACK", "sessionId": "s1"}


def test_chat_failure_returns_generic_error(client: TestClient, settings: Settings) -> None:
    _install(FailingModel(RuntimeError("provider down")), settings)

    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to process chat request"
    assert response.json()["message"] == "provider down"


def test_chat_streaming_failure_emits_error_event(client: TestClient, settings: Settings) -> None:
    _install(FailingModel(RuntimeError("provider down")), settings)

    response = client.post(
        "/api/chat?stream=true",
        json={"messages": [{"role": "user", "content": "hi"}], "sessionId": "s1"},
    )

    assert _sse_events(response.text) == [
        {"type": "error", "message": "provider down", "sessionId": "s1"}
    ]


def test_messages_endpoint(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([text_turn("Hi!")]), settings)

    response = client.post("/api/messages", json={"message": "Hello"})

    data = response.json()
    assert data["response"] == "Hi!"
    assert data["received"] == "Hello"
    assert data["sessionId"].startswith("simple_")


def test_messages_endpoint_requires_message(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([]), settings)

    response = client.post("/api/messages", json={})

    assert response.status_code == 400
    assert response.json() == {"error": "Message is required"}


def test_session_info(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([]), settings)

    response = client.get("/api/session/unknown")

    data = response.json()
    assert data["success"] is True
    assert data["sessionId"] == "unknown"
    assert data["messageCount"] == 0
    assert data["hasHistory"] is False


def test_session_stats_and_log_stats(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([]), settings)

    assert client.get("/api/sessions/stats").json()["active_sessions"] == 0
    assert client.get("/api/logs/stats").json()["connectedClients"] == 0


def test_unknown_api_path(client: TestClient) -> None:
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "API endpoint not found", "path": "/api/nope"}


def test_new_session_id_format() -> None:
    sid = main.new_session_id("chat")
    prefix, stamp, suffix = sid.split("_")
    assert prefix == "chat"
    assert stamp.isdigit()
    assert len(suffix) == 9
    assert main.new_session_id("simple", random_length=0).count("_") == 1


def test_broadcast_log_handler_publishes_records() -> None:
    bus = EventBus()
    logger = logging.getLogger("chatrelay.tests.broadcast")
    handler = BroadcastLogHandler(bus)
    logger.addHandler(handler)
    try:
        with bus.subscribe() as sub:
            logger.warning("cache miss for %s", "s1")
            event = sub.get_nowait()
        assert bus.subscriber_count == 0
    finally:
        logger.removeHandler(handler)

    assert event["type"] == "log"
    assert event["level"] == "warning"
    assert event["message"] == "cache miss for s1"


def test_log_stats_reports_dropped_events(client: TestClient, settings: Settings) -> None:
    _install(FakeModel([]), settings)
    bus = EventBus(queue_size=1)
    main.app.state.events = bus

    with bus.subscribe() as sub:
        bus.emit("tool_called", name="search")
        bus.emit("tool_completed", name="search")
        assert sub.dropped == 1
        assert sub.get_nowait()["type"] == "tool_called"

        stats = client.get("/api/logs/stats").json()

    assert stats["connectedClients"] == 1
    assert stats["droppedEvents"] == 1
