"""
Post-reply memory commit for one conversational turn.

The whole read-summarize-merge-write sequence runs inside the session lock, so
two overlapping turns for one session never summarize against the same stale
fact list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import AiConfig, MemoryStoreLimits
from errors import MemoryCommitFailure

from .diff import apply_base_truth_diff
from .locks import SessionLockTable
from .store import SessionMemoryStore
from .summarizer import SummaryBackend, summarize_turn
from .types import DiffStats


@dataclass
class CommitResult:
    session_id: str
    turn: int
    revision: int
    summary_mode: str
    complexity: str
    stats: DiffStats

    def as_log_meta(self) -> Dict[str, Any]:
        return {
            "turn": self.turn,
            "revision": self.revision,
            "summary_mode": self.summary_mode,
            "complexity": self.complexity,
            "facts_added": self.stats.added,
            "facts_updated": self.stats.updated,
            "facts_removed": self.stats.removed,
        }


async def commit_turn_memory(
    store: SessionMemoryStore,
    locks: SessionLockTable,
    *,
    session_id: str,
    user_id: str,
    expires_at_ms: int,
    user_message: str,
    assistant_message: str,
    ai: AiConfig,
    limits: MemoryStoreLimits,
    user_ts: Optional[str] = None,
    assistant_ts: Optional[str] = None,
    backend: Optional[SummaryBackend] = None,
) -> CommitResult:
    safe = limits.clamped()
    async with locks.hold(session_id, user_id):
        state = store.get_or_create(session_id, user_id, expires_at_ms)

        try:
            summary = await summarize_turn(
                user_message,
                assistant_message,
                state.base_truth,
                ai=ai,
                max_summary_chars=safe.max_summary_chars,
                backend=backend,
            )
        except Exception as exc:
            raise MemoryCommitFailure(
                f"summarizer raised {type(exc).__name__}", stage="summarize"
            ) from exc

        try:
            next_facts, stats = apply_base_truth_diff(
                state.base_truth,
                summary.diff,
                max_base_truth_entries=safe.max_base_truth_entries,
                max_fact_chars=safe.max_fact_chars,
            )
            store.set_base_truth(state, next_facts, safe)
            entry = store.append_turn_summary(
                state,
                user_summary=summary.user_summary,
                assistant_summary=summary.assistant_summary,
                ts=assistant_ts,
                limits=safe,
            )
            store.append_raw_exchange(
                state,
                user_message=user_message,
                assistant_message=assistant_message,
                user_ts=user_ts,
                assistant_ts=assistant_ts,
                limits=safe,
            )
        except (ValueError, TypeError) as exc:
            raise MemoryCommitFailure(str(exc), stage="store") from exc

        return CommitResult(
            session_id=state.session_id,
            turn=entry.turn,
            revision=state.revision,
            summary_mode=summary.mode,
            complexity=summary.complexity,
            stats=stats,
        )
