from dataclasses import dataclass, field
from typing import List


@dataclass
class MemoryRawMessage:
    role: str
    content: str
    ts: str


@dataclass
class MemoryTurnSummary:
    turn: int
    user_summary: str
    assistant_summary: str
    ts: str


@dataclass
class BaseTruthDiff:
    add: List[str] = field(default_factory=list)
    update: List[str] = field(default_factory=list)
    remove: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.add or self.update or self.remove)


@dataclass
class DiffStats:
    removed: int = 0
    updated: int = 0
    added: int = 0


@dataclass
class SessionMemoryState:
    """Conversation memory for one (user, session) pair.

    Mutated only through SessionMemoryStore while the session lock is held.
    """

    key: str
    session_id: str
    user_id: str
    expires_at_ms: int
    revision: int = 0
    base_truth: List[str] = field(default_factory=list)
    turn_log: List[MemoryTurnSummary] = field(default_factory=list)
    raw_window: List[MemoryRawMessage] = field(default_factory=list)
    last_updated_ts: str = ""
