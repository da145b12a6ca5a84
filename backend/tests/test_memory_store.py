import pytest

from config import MemoryStoreLimits
from memory import SessionMemoryStore, create_memory_key


class _Clock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def _store(clock: _Clock, **limits) -> SessionMemoryStore:
    return SessionMemoryStore(MemoryStoreLimits(**limits), clock_ms=clock)


def test_get_or_create_reuses_state_and_extends_expiry() -> None:
    clock = _Clock()
    store = _store(clock)

    state = store.get_or_create("session-a", "user-1", clock.now_ms + 5_000)
    assert state.key == create_memory_key("session-a", "user-1") == "user-1::session-a"
    assert state.revision == 0

    again = store.get_or_create("session-a", "user-1", clock.now_ms + 60_000)
    assert again is state
    assert state.expires_at_ms == clock.now_ms + 60_000

    store.get_or_create("session-a", "user-1", clock.now_ms + 1_000)
    assert state.expires_at_ms == clock.now_ms + 60_000


def test_get_or_create_never_creates_already_expired_state() -> None:
    clock = _Clock()
    store = _store(clock)
    state = store.get_or_create("session-a", "user-1", clock.now_ms - 10_000)
    assert state.expires_at_ms == clock.now_ms + 1_000


def test_identifiers_are_required() -> None:
    store = _store(_Clock())
    with pytest.raises(ValueError):
        store.get_or_create(" ", "user-1", 0)
    with pytest.raises(ValueError):
        store.clear("session-a", "")


def test_mutations_bump_revision_and_enforce_caps() -> None:
    clock = _Clock()
    store = _store(
        clock,
        max_base_truth_entries=3,
        max_turn_log_entries=2,
        max_raw_window_messages=4,
        max_summary_chars=8,
        max_raw_message_chars=32,
    )
    state = store.get_or_create("session-a", "user-1", clock.now_ms + 60_000)

    store.set_base_truth(state, ["a", "B", "b", "c", "d", "  "])
    assert state.base_truth == ["B", "c", "d"]
    assert state.revision == 1

    for index in range(3):
        store.append_turn_summary(
            state,
            user_summary=f"user asked {index}",
            assistant_summary=f"answer {index}",
        )
    assert [entry.turn for entry in state.turn_log] == [2, 3]
    assert state.turn_log[-1].user_summary == "user ask"

    for index in range(3):
        store.append_raw_exchange(
            state, user_message=f"question {index}", assistant_message=f"reply {index}"
        )
    assert len(state.raw_window) == 4
    assert [m.role for m in state.raw_window] == ["user", "assistant", "user", "assistant"]
    assert state.raw_window[0].content == "question 1"
    assert state.revision == 7
    assert state.last_updated_ts.endswith("Z")


def test_odd_raw_window_limit_is_rounded_down_to_pairs() -> None:
    clock = _Clock()
    store = _store(clock, max_raw_window_messages=5)
    state = store.get_or_create("session-a", "user-1", clock.now_ms + 60_000)
    for index in range(4):
        store.append_raw_exchange(state, user_message=f"q{index}", assistant_message=f"a{index}")
    assert len(state.raw_window) == 4
    assert state.raw_window[0].role == "user"


def test_turn_numbers_keep_increasing_after_trim() -> None:
    clock = _Clock()
    store = _store(clock, max_turn_log_entries=1)
    state = store.get_or_create("session-a", "user-1", clock.now_ms + 60_000)
    turns = [
        store.append_turn_summary(state, user_summary="u", assistant_summary="a").turn
        for _ in range(4)
    ]
    assert turns == [1, 2, 3, 4]


def test_expired_state_is_unreachable_after_sweep() -> None:
    clock = _Clock()
    store = _store(clock)
    store.get_or_create("session-a", "user-1", clock.now_ms + 5_000)
    store.get_or_create("session-b", "user-1", clock.now_ms + 60_000)

    clock.now_ms += 10_000
    assert store.evict_expired() == 1
    assert store.get("session-a", "user-1") is None
    assert store.get("session-b", "user-1") is not None


def test_get_drops_expired_state_lazily() -> None:
    clock = _Clock()
    store = _store(clock)
    store.get_or_create("session-a", "user-1", clock.now_ms + 5_000)
    clock.now_ms += 5_000
    assert store.get("session-a", "user-1") is None
    assert store.stats()["sessions"] == 0


def test_clear_removes_state_regardless_of_expiry() -> None:
    clock = _Clock()
    store = _store(clock)
    state = store.get_or_create("session-a", "user-1", clock.now_ms + 3_600_000)
    store.set_base_truth(state, ["Name: Ada"])

    assert store.clear("session-a", "user-1") is True
    assert store.get("session-a", "user-1") is None
    assert store.clear("session-a", "user-1") is False


def test_sessions_are_isolated_per_user() -> None:
    clock = _Clock()
    store = _store(clock)
    mine = store.get_or_create("session-a", "user-1", clock.now_ms + 60_000)
    theirs = store.get_or_create("session-a", "user-2", clock.now_ms + 60_000)
    store.set_base_truth(mine, ["Mine"])
    assert theirs.base_truth == []
    assert store.stats() == {
        "sessions": 2,
        "total_base_truth_entries": 1,
        "total_turn_log_entries": 0,
        "total_raw_window_messages": 0,
    }
