"""
Best-effort usage accounting.

Events are kept in a bounded, process-local ledger. Recording never raises into
the request path; the admin summary aggregates whatever the ledger still holds.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

DEFAULT_LEDGER_CAPACITY = 5000
_MODES = ("classic", "tiered")


def _utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


@dataclass(frozen=True)
class UsageEvent:
    request_id: str
    user_id: str
    username: str
    use_case_id: str
    memory_mode: str
    model: str
    input_tokens: int
    output_tokens: int
    event_ts: datetime


def _empty_totals() -> Dict[str, int]:
    return {"requests": 0, "input_tokens": 0, "output_tokens": 0}


def _accumulate(totals: Dict[str, int], event: UsageEvent) -> None:
    totals["requests"] += 1
    totals["input_tokens"] += event.input_tokens
    totals["output_tokens"] += event.output_tokens


class UsageLedger:
    def __init__(self, capacity: int = DEFAULT_LEDGER_CAPACITY) -> None:
        self._events: Deque[UsageEvent] = deque(maxlen=max(1, capacity))
        self._guard = asyncio.Lock()

    async def record(
        self,
        *,
        request_id: str,
        user_id: str,
        username: str,
        use_case_id: str,
        memory_mode: str,
        model: str,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
        event_ts: Optional[datetime] = None,
    ) -> UsageEvent:
        event = UsageEvent(
            request_id=request_id,
            user_id=user_id,
            username=username,
            use_case_id=use_case_id,
            memory_mode=memory_mode if memory_mode in _MODES else "classic",
            model=model,
            input_tokens=_non_negative_int(input_tokens),
            output_tokens=_non_negative_int(output_tokens),
            event_ts=event_ts or datetime.now(timezone.utc),
        )
        async with self._guard:
            self._events.append(event)
        return event

    async def summary(
        self,
        *,
        window_days: int = 30,
        max_users: int = 25,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        window_days = min(365, max(1, int(window_days)))
        max_users = min(100, max(1, int(max_users)))
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=window_days)

        async with self._guard:
            events = [event for event in self._events if event.event_ts >= since]

        totals = _empty_totals()
        totals_by_mode = {mode: _empty_totals() for mode in _MODES}
        users: Dict[str, Dict[str, Any]] = {}
        for event in events:
            _accumulate(totals, event)
            _accumulate(totals_by_mode[event.memory_mode], event)
            row = users.get(event.user_id)
            if row is None:
                row = {
                    "user_id": event.user_id,
                    "username": event.username,
                    **_empty_totals(),
                    "mode_breakdown": {mode: _empty_totals() for mode in _MODES},
                    "last_seen": event.event_ts,
                }
                users[event.user_id] = row
            _accumulate(row, event)
            _accumulate(row["mode_breakdown"][event.memory_mode], event)
            row["last_seen"] = max(row["last_seen"], event.event_ts)

        ranked: List[Dict[str, Any]] = sorted(
            users.values(),
            key=lambda item: (item["requests"], item["last_seen"]),
            reverse=True,
        )[:max_users]
        for row in ranked:
            row["last_seen"] = _utc_iso(row["last_seen"])

        return {
            "ok": True,
            "window_days": window_days,
            "generated_at": _utc_iso(now),
            "totals": {**totals, "active_users": len(users)},
            "totals_by_mode": totals_by_mode,
            "users": ranked,
        }

    async def size(self) -> int:
        async with self._guard:
            return len(self._events)

    def reset(self) -> None:
        self._events.clear()
