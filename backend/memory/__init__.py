"""Tiered conversational memory: facts, turn summaries and a rolling raw window."""

from .commit import CommitResult, commit_turn_memory
from .context import build_tiered_messages, build_tiered_system_prompt
from .diff import apply_base_truth_diff, normalize_base_truth_diff
from .locks import SessionLockTable
from .policy import classify_turn_complexity, should_extract_diff
from .store import SessionMemoryStore, create_memory_key
from .summarizer import TurnSummary, summarize_turn
from .types import (
    BaseTruthDiff,
    DiffStats,
    MemoryRawMessage,
    MemoryTurnSummary,
    SessionMemoryState,
)

__all__ = [
    "BaseTruthDiff",
    "CommitResult",
    "DiffStats",
    "MemoryRawMessage",
    "MemoryTurnSummary",
    "SessionLockTable",
    "SessionMemoryState",
    "SessionMemoryStore",
    "TurnSummary",
    "apply_base_truth_diff",
    "build_tiered_messages",
    "build_tiered_system_prompt",
    "classify_turn_complexity",
    "commit_turn_memory",
    "create_memory_key",
    "normalize_base_truth_diff",
    "should_extract_diff",
    "summarize_turn",
]
