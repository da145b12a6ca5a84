from datetime import datetime, timedelta, timezone

import pytest

from config import RateLimitConfig
from errors import RateLimitError
from rate_limit import SlidingWindowRateLimiter, respond_rate_limit_key
from usage import UsageLedger


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_burst_window_rejects_then_recovers() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    config = RateLimitConfig(burst_limit=2, burst_window_seconds=10, minute_limit=0)
    key = respond_rate_limit_key("subject-1")

    await limiter.hit(key, config)
    await limiter.hit(key, config)
    with pytest.raises(RateLimitError) as exc_info:
        await limiter.hit(key, config)
    assert exc_info.value.code == "RATE_LIMITED_BURST"
    assert exc_info.value.status == 429

    clock.now += 10.5
    await limiter.hit(key, config)
    await limiter.hit(respond_rate_limit_key("subject-2"), config)


@pytest.mark.asyncio
async def test_minute_window_applies_after_burst_window() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    config = RateLimitConfig(
        burst_limit=2, burst_window_seconds=1, minute_limit=3, minute_window_seconds=60
    )
    key = respond_rate_limit_key("subject-1")

    for _ in range(3):
        await limiter.hit(key, config)
        clock.now += 2
    with pytest.raises(RateLimitError) as exc_info:
        await limiter.hit(key, config)
    assert exc_info.value.code == "RATE_LIMITED"
    assert (await limiter.status())["rejected"] == 1


@pytest.mark.asyncio
async def test_zero_limits_disable_rate_limiting() -> None:
    limiter = SlidingWindowRateLimiter()
    config = RateLimitConfig(burst_limit=0, minute_limit=0)
    for _ in range(50):
        await limiter.hit("respond:any", config)
    assert (await limiter.status())["tracked_keys"] == 0


@pytest.mark.asyncio
async def test_idle_subjects_stop_being_tracked() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    config = RateLimitConfig(burst_limit=2, burst_window_seconds=10, minute_limit=0)

    await limiter.hit(respond_rate_limit_key("subject-1"), config)
    assert (await limiter.status())["tracked_keys"] == 1

    clock.now += 70
    await limiter.hit(respond_rate_limit_key("subject-2"), config)
    assert (await limiter.status())["tracked_keys"] == 1

    clock.now += 11
    await limiter.hit(respond_rate_limit_key("subject-2"), config)
    assert (await limiter.status())["tracked_keys"] == 1


@pytest.mark.asyncio
async def test_usage_summary_aggregates_by_user_and_mode() -> None:
    ledger = UsageLedger()
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)

    await ledger.record(
        request_id="r1", user_id="u1", username="ada", use_case_id="gen",
        memory_mode="classic", model="m", input_tokens=10, output_tokens=5,
        event_ts=now - timedelta(hours=2),
    )
    await ledger.record(
        request_id="r2", user_id="u1", username="ada", use_case_id="gen",
        memory_mode="tiered", model="m", input_tokens=20, output_tokens=None,
        event_ts=now - timedelta(hours=1),
    )
    await ledger.record(
        request_id="r3", user_id="u2", username="bob", use_case_id="cat",
        memory_mode="bogus", model="m", input_tokens=-4, output_tokens=3,
        event_ts=now - timedelta(minutes=5),
    )
    await ledger.record(
        request_id="old", user_id="u3", username="old", use_case_id="gen",
        memory_mode="classic", model="m", input_tokens=99, output_tokens=99,
        event_ts=now - timedelta(days=40),
    )

    summary = await ledger.summary(window_days=30, max_users=10, now=now)

    assert summary["totals"] == {
        "requests": 3,
        "input_tokens": 30,
        "output_tokens": 8,
        "active_users": 2,
    }
    assert summary["totals_by_mode"]["classic"]["requests"] == 2
    assert summary["totals_by_mode"]["tiered"]["input_tokens"] == 20
    assert [row["user_id"] for row in summary["users"]] == ["u1", "u2"]
    assert summary["users"][0]["mode_breakdown"]["tiered"]["requests"] == 1
    assert summary["users"][0]["last_seen"] == "2026-02-28T23:00:00Z"


@pytest.mark.asyncio
async def test_usage_ledger_is_bounded() -> None:
    ledger = UsageLedger(capacity=2)
    for index in range(5):
        await ledger.record(
            request_id=f"r{index}", user_id="u1", username="ada", use_case_id="gen",
            memory_mode="classic", model="m", input_tokens=1, output_tokens=1,
        )
    assert await ledger.size() == 2
