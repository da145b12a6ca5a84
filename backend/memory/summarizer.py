"""
Turn summarizer: one exchange in, two short summaries and a fact diff out.

The summarization model is asked for strict JSON. Unparsable output is retried
once; after that the turn falls back to truncated copies of the messages and
an empty diff, so a summarizer outage never blocks the conversation.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import llm_client
from config import AiConfig

from .diff import normalize_base_truth_diff
from .policy import classify_turn_complexity, should_extract_diff
from .types import BaseTruthDiff

MODE_MODEL = "model"
MODE_FALLBACK = "fallback"
_MAX_ATTEMPTS = 2

DEFAULT_SUMMARIZER_SYSTEM_PROMPT = """You maintain long-term memory for a chat session.
You receive JSON with `base_truth` (facts already established), `user_message`
and `assistant_reply` for the latest turn.

Respond with JSON only, no prose and no code fences:
{
  "user_summary": "<one sentence: what the user asked or stated>",
  "assistant_summary": "<one sentence: what the assistant answered>",
  "base_truth_diff": {
    "add": ["<new durable fact>"],
    "update": ["<key>: <new value for an existing fact with the same key>"],
    "remove": ["<short token identifying facts that are no longer true>"]
  }
}

Rules:
- Facts are short, self-contained and written as `Topic: value` where possible.
- Only record durable facts: user preferences, constraints, decisions, names.
- Use `update` when a fact with the same topic already exists in base_truth.
- Leave lists empty when nothing changed."""

SummaryBackend = Callable[[str, List[Dict[str, str]]], Awaitable[Optional[str]]]

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass
class TurnSummary:
    user_summary: str
    assistant_summary: str
    diff: BaseTruthDiff = field(default_factory=BaseTruthDiff)
    mode: str = MODE_MODEL
    complexity: str = ""


def _normalize_text(value: str, max_chars: int) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())[: max(1, max_chars)]


def _fallback_summary(text: str, max_chars: int) -> str:
    return _normalize_text(text, max_chars) or "(empty)"


def extract_json_candidate(raw: str) -> str:
    """Pull the most plausible JSON object out of a model reply."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return ""
    try:
        json.loads(trimmed)
        return trimmed
    except ValueError:
        pass

    fenced = _FENCE_PATTERN.search(trimmed)
    if fenced and fenced.group(1):
        return fenced.group(1).strip()

    first_brace = trimmed.find("{")
    last_brace = trimmed.rfind("}")
    if first_brace >= 0 and last_brace > first_brace:
        return trimmed[first_brace : last_brace + 1]
    return ""


def parse_summarizer_payload(raw: str, max_summary_chars: int) -> Optional[TurnSummary]:
    candidate = extract_json_candidate(raw)
    if not candidate:
        return None
    try:
        parsed: Any = json.loads(candidate)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None

    user_summary = parsed.get("user_summary")
    assistant_summary = parsed.get("assistant_summary")
    user_summary = (
        _normalize_text(user_summary, max_summary_chars) if isinstance(user_summary, str) else ""
    )
    assistant_summary = (
        _normalize_text(assistant_summary, max_summary_chars)
        if isinstance(assistant_summary, str)
        else ""
    )
    if not user_summary or not assistant_summary:
        return None

    return TurnSummary(
        user_summary=user_summary,
        assistant_summary=assistant_summary,
        diff=normalize_base_truth_diff(
            parsed.get("base_truth_diff"), max_fact_chars=max_summary_chars
        ),
    )


def build_summarizer_messages(
    user_message: str, assistant_message: str, base_truth: Sequence[str]
) -> List[Dict[str, str]]:
    payload = {
        "base_truth": list(base_truth),
        "user_message": user_message,
        "assistant_reply": assistant_message,
    }
    return [{"role": "user", "content": json.dumps(payload, indent=2, ensure_ascii=False)}]


def _default_backend(ai: AiConfig) -> SummaryBackend:
    async def _call(system_prompt: str, messages: List[Dict[str, str]]) -> Optional[str]:
        return await llm_client.request_summary(ai, system_prompt, messages)

    return _call


async def summarize_turn(
    user_message: str,
    assistant_message: str,
    base_truth: Sequence[str],
    *,
    ai: AiConfig,
    max_summary_chars: int,
    backend: Optional[SummaryBackend] = None,
) -> TurnSummary:
    complexity = classify_turn_complexity(user_message, assistant_message)
    call = backend or _default_backend(ai)
    system_prompt = ai.summarizer.system_prompt_override or DEFAULT_SUMMARIZER_SYSTEM_PROMPT
    messages = build_summarizer_messages(user_message, assistant_message, base_truth)

    parsed: Optional[TurnSummary] = None
    for _ in range(_MAX_ATTEMPTS):
        raw = await call(system_prompt, messages)
        parsed = parse_summarizer_payload(raw or "", max_summary_chars)
        if parsed is not None:
            break

    if parsed is not None:
        if not should_extract_diff(complexity):
            parsed.diff = BaseTruthDiff()
        parsed.mode = MODE_MODEL
        parsed.complexity = complexity
        return parsed

    return TurnSummary(
        user_summary=_fallback_summary(user_message, max_summary_chars),
        assistant_summary=_fallback_summary(assistant_message, max_summary_chars),
        diff=BaseTruthDiff(),
        mode=MODE_FALLBACK,
        complexity=complexity,
    )
