"""
In-process store of per-(user, session) conversation memory.

State lives in a plain dict for the lifetime of the process. Horizontally
scaled deployments do not share it; every instance keeps its own copy.
"""

import re
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from config import MemoryStoreLimits

from .diff import dedupe_preserve_order
from .types import MemoryRawMessage, MemoryTurnSummary, SessionMemoryState

_MIN_LIFETIME_MS = 1_000


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_iso_ts(value: Optional[str]) -> str:
    if not value:
        return _utc_iso_now()
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return _utc_iso_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_text(value: str, max_chars: int) -> str:
    cleaned = re.sub(r"\s+", " ", (value or "").strip())
    if not cleaned:
        return ""
    return cleaned[: min(32_000, max(1, max_chars))]


def _trim_to_max(values: List, max_entries: int) -> List:
    if len(values) <= max_entries:
        return values
    return values[len(values) - max_entries :]


def _require_identifiers(session_id: str, user_id: str) -> None:
    if not (session_id or "").strip():
        raise ValueError("session_id is required.")
    if not (user_id or "").strip():
        raise ValueError("user_id is required.")


def create_memory_key(session_id: str, user_id: str) -> str:
    return f"{user_id.strip()}::{session_id.strip()}"


class SessionMemoryStore:
    def __init__(
        self,
        default_limits: Optional[MemoryStoreLimits] = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self._default_limits = (default_limits or MemoryStoreLimits()).clamped()
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._sessions: Dict[str, SessionMemoryState] = {}

    def _limits(self, limits: Optional[MemoryStoreLimits]) -> MemoryStoreLimits:
        return limits.clamped() if limits is not None else self._default_limits

    @staticmethod
    def _touch(state: SessionMemoryState) -> None:
        state.revision += 1
        state.last_updated_ts = _utc_iso_now()

    def get(
        self, session_id: str, user_id: str, now_ms: Optional[int] = None
    ) -> Optional[SessionMemoryState]:
        _require_identifiers(session_id, user_id)
        key = create_memory_key(session_id, user_id)
        existing = self._sessions.get(key)
        if existing is None:
            return None
        now = self._clock_ms() if now_ms is None else now_ms
        if existing.expires_at_ms <= now:
            del self._sessions[key]
            return None
        return existing

    def get_or_create(
        self, session_id: str, user_id: str, expires_at_ms: int
    ) -> SessionMemoryState:
        _require_identifiers(session_id, user_id)
        now = self._clock_ms()
        self.evict_expired(now)

        safe_expiry = max(now + _MIN_LIFETIME_MS, int(expires_at_ms))
        key = create_memory_key(session_id, user_id)
        existing = self._sessions.get(key)
        if existing is not None:
            existing.expires_at_ms = max(existing.expires_at_ms, safe_expiry)
            return existing

        state = SessionMemoryState(
            key=key,
            session_id=session_id.strip(),
            user_id=user_id.strip(),
            expires_at_ms=safe_expiry,
            last_updated_ts=_utc_iso_now(),
        )
        self._sessions[key] = state
        return state

    def set_base_truth(
        self,
        state: SessionMemoryState,
        facts: Iterable[str],
        limits: Optional[MemoryStoreLimits] = None,
    ) -> List[str]:
        safe = self._limits(limits)
        normalized = [
            fact for fact in (_normalize_text(value, safe.max_fact_chars) for value in facts) if fact
        ]
        state.base_truth = _trim_to_max(
            dedupe_preserve_order(normalized), safe.max_base_truth_entries
        )
        self._touch(state)
        return state.base_truth

    def append_turn_summary(
        self,
        state: SessionMemoryState,
        *,
        user_summary: str,
        assistant_summary: str,
        ts: Optional[str] = None,
        limits: Optional[MemoryStoreLimits] = None,
    ) -> MemoryTurnSummary:
        safe = self._limits(limits)
        next_turn = (state.turn_log[-1].turn if state.turn_log else 0) + 1
        entry = MemoryTurnSummary(
            turn=next_turn,
            user_summary=_normalize_text(user_summary, safe.max_summary_chars),
            assistant_summary=_normalize_text(assistant_summary, safe.max_summary_chars),
            ts=_normalize_iso_ts(ts),
        )
        state.turn_log.append(entry)
        state.turn_log = _trim_to_max(state.turn_log, safe.max_turn_log_entries)
        self._touch(state)
        return entry

    def append_raw_exchange(
        self,
        state: SessionMemoryState,
        *,
        user_message: str,
        assistant_message: str,
        user_ts: Optional[str] = None,
        assistant_ts: Optional[str] = None,
        limits: Optional[MemoryStoreLimits] = None,
    ) -> List[MemoryRawMessage]:
        safe = self._limits(limits)
        state.raw_window.append(
            MemoryRawMessage(
                role="user",
                content=_normalize_text(user_message, safe.max_raw_message_chars),
                ts=_normalize_iso_ts(user_ts),
            )
        )
        state.raw_window.append(
            MemoryRawMessage(
                role="assistant",
                content=_normalize_text(assistant_message, safe.max_raw_message_chars),
                ts=_normalize_iso_ts(assistant_ts),
            )
        )
        state.raw_window = _trim_to_max(state.raw_window, safe.max_raw_window_messages)
        self._touch(state)
        return state.raw_window

    def clear(self, session_id: str, user_id: str) -> bool:
        _require_identifiers(session_id, user_id)
        return self._sessions.pop(create_memory_key(session_id, user_id), None) is not None

    def evict_expired(self, now_ms: Optional[int] = None) -> int:
        now = self._clock_ms() if now_ms is None else now_ms
        expired = [key for key, state in self._sessions.items() if state.expires_at_ms <= now]
        for key in expired:
            del self._sessions[key]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "total_base_truth_entries": sum(len(s.base_truth) for s in self._sessions.values()),
            "total_turn_log_entries": sum(len(s.turn_log) for s in self._sessions.values()),
            "total_raw_window_messages": sum(len(s.raw_window) for s in self._sessions.values()),
        }

    def reset(self) -> None:
        self._sessions.clear()
