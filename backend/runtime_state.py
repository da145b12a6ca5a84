"""
Process-local runtime state for the chat gateway.

This module provides:
1) Issuer key-set cache used by identity verification.
2) Tiered session memory store plus its per-session lock table.
3) Memory commit runner that isolates summarization failures from replies.
4) Respond-route rate limiter and the usage ledger.

Nothing here is shared between processes; each worker keeps its own copy.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from access import JwksCache
from errors import MemoryCommitFailure
from logging_utils import get_logger
from memory import CommitResult, SessionLockTable, SessionMemoryStore
from rate_limit import SlidingWindowRateLimiter
from usage import UsageLedger

logger = get_logger("runtime_state")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MemoryCommitRunner:
    """Runs memory commits and swallows their failures after logging them."""

    def __init__(self) -> None:
        self._succeeded = 0
        self._failed = 0
        self._in_flight = 0
        self._last_failure_at: Optional[str] = None
        self._last_duration_ms = 0

    async def run(
        self,
        task: Callable[[], Awaitable[CommitResult]],
        *,
        request_id: str = "",
        session_prefix: str = "",
    ) -> Optional[CommitResult]:
        self._in_flight += 1
        started = time.monotonic()
        try:
            result = await task()
        except Exception as exc:
            self._failed += 1
            self._last_failure_at = _utc_iso_now()
            logger.error(
                "memory.commit.failed",
                request_id=request_id,
                session_prefix=session_prefix,
                stage=exc.stage if isinstance(exc, MemoryCommitFailure) else "unexpected",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        finally:
            self._in_flight = max(0, self._in_flight - 1)
            self._last_duration_ms = int((time.monotonic() - started) * 1000)

        self._succeeded += 1
        logger.info(
            "memory.commit.success",
            request_id=request_id,
            session_prefix=session_prefix,
            duration_ms=self._last_duration_ms,
            **result.as_log_meta(),
        )
        return result

    def status(self) -> Dict[str, Any]:
        return {
            "succeeded": self._succeeded,
            "failed": self._failed,
            "in_flight": self._in_flight,
            "last_failure_at": self._last_failure_at,
            "last_duration_ms": self._last_duration_ms,
        }

    def reset(self) -> None:
        self._succeeded = 0
        self._failed = 0
        self._in_flight = 0
        self._last_failure_at = None
        self._last_duration_ms = 0


class RuntimeState:
    def __init__(self) -> None:
        self.jwks_cache = JwksCache()
        self.memory_store = SessionMemoryStore()
        self.memory_locks = SessionLockTable()
        self.memory_commits = MemoryCommitRunner()
        self.rate_limiter = SlidingWindowRateLimiter()
        self.usage_ledger = UsageLedger()
        self._started_at: Optional[str] = None

    async def ensure_started(self) -> None:
        if self._started_at is not None:
            return
        self._started_at = _utc_iso_now()
        logger.info("runtime.started")

    async def shutdown(self) -> None:
        evicted = self.memory_store.evict_expired()
        logger.info(
            "runtime.shutdown",
            evicted_sessions=evicted,
            commits=self.memory_commits.status(),
        )
        self._started_at = None

    async def status(self) -> Dict[str, Any]:
        return {
            "started_at": self._started_at,
            "memory_store": self.memory_store.stats(),
            "memory_locks": self.memory_locks.status(),
            "memory_commits": self.memory_commits.status(),
            "jwks_cache": self.jwks_cache.status(),
            "rate_limiter": await self.rate_limiter.status(),
            "usage_events": await self.usage_ledger.size(),
        }

    def reset(self) -> None:
        self.jwks_cache.clear()
        self.jwks_cache.set_fetcher(None)
        self.memory_store.reset()
        self.memory_locks.reset()
        self.memory_commits.reset()
        self.rate_limiter.reset()
        self.usage_ledger.reset()


runtime_state = RuntimeState()
