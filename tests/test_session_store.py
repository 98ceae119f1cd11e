import asyncio

import pytest

from chatrelay.models import Message
from chatrelay.services.session_store import SessionStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def user(text: str) -> Message:
    return Message(role="user", content=text)


def assistant(text: str) -> Message:
    return Message(role="assistant", content=text)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> SessionStore:
    return SessionStore(max_history_length=5, timeout_seconds=100, clock=clock)


def test_get_unknown_session_returns_empty_list(store: SessionStore) -> None:
    """get on an unknown id is an empty history, not an error."""
    assert store.get("missing") == []
    assert store.get("") == []
    assert "" not in store


def test_get_returns_copy(store: SessionStore) -> None:
    """Mutating the returned list does not touch stored history."""
    store.append("s1", [user("hi")])
    history = store.get("s1")
    history.append(assistant("injected"))
    assert store.get("s1") == [user("hi")]


def test_append_empty_is_noop(store: SessionStore) -> None:
    store.append("s1", [])
    assert "s1" not in store


def test_append_preserves_order(store: SessionStore) -> None:
    store.append("s1", [user("a"), assistant("b")])
    store.append("s1", [user("c")])
    assert [m.content for m in store.get("s1")] == ["a", "b", "c"]


def test_cap_keeps_most_recent_without_system(store: SessionStore) -> None:
    store.append("s1", [user(str(i)) for i in range(8)])
    assert [m.content for m in store.get("s1")] == ["3", "4", "5", "6", "7"]


def test_cap_keeps_leading_system_message(store: SessionStore) -> None:
    """A leading system message survives any number of further appends."""
    system = Message(role="system", content="rules")
    store.append("s1", [system, user("0")])
    for i in range(1, 30):
        store.append("s1", [user(str(i)), assistant(f"r{i}")])
        history = store.get("s1")
        assert len(history) <= 5
        assert history[0] == system

    assert [m.content for m in store.get("s1")][1:] == ["28", "r28", "29", "r29"]


def test_cap_keeps_system_message_that_is_not_first(clock: FakeClock) -> None:
    """A system message anywhere in history survives a bulk append over the cap."""
    store = SessionStore(max_history_length=3, clock=clock)
    system = Message(role="system", content="rules")
    store.append("s1", [user("hello"), system])
    store.append("s1", [user("0"), user("1"), user("2")])

    history = store.get("s1")
    assert [m.role for m in history] == ["system", "user", "user"]
    assert [m.content for m in history] == ["rules", "1", "2"]

    for i in range(3, 10):
        store.append("s1", [user(str(i))])
        assert store.get("s1")[0] == system
        assert len(store.get("s1")) == 3


def test_cap_keeps_system_message_still_within_recent_window(clock: FakeClock) -> None:
    store = SessionStore(max_history_length=3, clock=clock)
    system = Message(role="system", content="rules")
    store.append("s1", [user("0"), user("1"), system, user("2")])
    assert [m.content for m in store.get("s1")] == ["1", "rules", "2"]


def test_cap_of_one_with_system_message(clock: FakeClock) -> None:
    store = SessionStore(max_history_length=1, clock=clock)
    store.append("s1", [Message(role="system", content="rules"), user("a"), user("b")])
    assert [m.role for m in store.get("s1")] == ["system"]


def test_evict_removes_idle_sessions_only(store: SessionStore, clock: FakeClock) -> None:
    """Idle past the timeout is evicted; a session touched just before survives."""
    store.append("idle", [user("x")])
    store.append("active", [user("y")])

    clock.now = 99
    store.get("active")

    clock.now = 150
    removed = store.evict()

    assert removed == 1
    assert "idle" not in store
    assert "active" in store
    assert store.get("idle") == []
    assert store.get("active") == [user("y")]


def test_evict_at_exact_timeout_keeps_session(store: SessionStore, clock: FakeClock) -> None:
    store.append("s1", [user("x")])
    clock.now = 100
    assert store.evict() == 0
    assert "s1" in store


def test_stats(store: SessionStore, clock: FakeClock) -> None:
    assert store.stats() == {
        "active_sessions": 0,
        "oldest_session_idle_minutes": None,
        "newest_session_idle_minutes": None,
        "average_messages_per_session": 0,
    }

    store.append("a", [user("1"), assistant("2"), user("3")])
    clock.now = 60 * 10
    store.append("b", [user("1")])
    clock.now = 60 * 12

    stats = store.stats()
    assert stats["active_sessions"] == 2
    assert stats["oldest_session_idle_minutes"] == 12
    assert stats["newest_session_idle_minutes"] == 2
    assert stats["average_messages_per_session"] == 2
    # read-only: nothing was refreshed
    assert store.stats() == stats


def test_lock_is_per_session(store: SessionStore) -> None:
    assert store.lock("a") is store.lock("a")
    assert store.lock("a") is not store.lock("b")


@pytest.mark.asyncio
async def test_sweeper_evicts_in_background(clock: FakeClock) -> None:
    store = SessionStore(timeout_seconds=10, cleanup_interval_seconds=0.01, clock=clock)
    store.append("s1", [user("x")])
    clock.now = 11

    await store.start()
    try:
        await asyncio.sleep(0.05)
    finally:
        await store.stop()

    assert "s1" not in store
