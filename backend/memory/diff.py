"""
Fact-diff engine for the base-truth list.

Apply order is fixed: remove, then update, then add. An update may re-introduce
a fact that a removal just dropped, and adds must not collide with updates.
"""

import re
from typing import Any, Iterable, List, Optional, Tuple

from config import MemoryStoreLimits

from .types import BaseTruthDiff, DiffStats

DEFAULT_MAX_ENTRIES_PER_OPERATION = 30
_UPDATE_KEY_FALLBACK_CHARS = 48
_DEFAULTS = MemoryStoreLimits()


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return min(maximum, max(minimum, int(value)))


def normalize_fact(value: str, max_chars: int) -> str:
    cleaned = re.sub(r"\s+", " ", (value or "").strip())
    if not cleaned:
        return ""
    return cleaned[: _clamp(max_chars, 8, 10_000)]


def _normalize_string_list(value: Any, max_entries: int, max_fact_chars: int) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    normalized: List[str] = []
    seen = set()
    for item in value:
        if not isinstance(item, str):
            continue
        clean = normalize_fact(item, max_fact_chars)
        if not clean:
            continue
        key = clean.lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(clean)
        if len(normalized) >= max_entries:
            break
    return normalized


def update_key(fact: str) -> str:
    """Text before the first colon, else the leading characters, lowercased."""
    colon_index = fact.find(":")
    prefix = fact[:colon_index] if colon_index > 0 else fact[:_UPDATE_KEY_FALLBACK_CHARS]
    return prefix.strip().lower()


def dedupe_preserve_order(values: Iterable[str]) -> List[str]:
    seen = set()
    deduped: List[str] = []
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        deduped.append(value)
    return deduped


def normalize_base_truth_diff(
    raw: Any,
    *,
    max_entries_per_operation: int = DEFAULT_MAX_ENTRIES_PER_OPERATION,
    max_fact_chars: int = _DEFAULTS.max_fact_chars,
) -> BaseTruthDiff:
    """Coerce arbitrary summarizer output into a bounded, de-duplicated diff."""
    max_entries = _clamp(max_entries_per_operation, 1, 200)
    fact_chars = _clamp(max_fact_chars, 8, 10_000)
    if not isinstance(raw, dict):
        return BaseTruthDiff()
    return BaseTruthDiff(
        add=_normalize_string_list(raw.get("add"), max_entries, fact_chars),
        update=_normalize_string_list(raw.get("update"), max_entries, fact_chars),
        remove=_normalize_string_list(raw.get("remove"), max_entries, fact_chars),
    )


def apply_base_truth_diff(
    base_truth: Iterable[str],
    diff: BaseTruthDiff,
    *,
    max_base_truth_entries: Optional[int] = None,
    max_fact_chars: Optional[int] = None,
) -> Tuple[List[str], DiffStats]:
    fact_chars = _clamp(
        _DEFAULTS.max_fact_chars if max_fact_chars is None else max_fact_chars, 8, 10_000
    )
    max_entries = _clamp(
        _DEFAULTS.max_base_truth_entries
        if max_base_truth_entries is None
        else max_base_truth_entries,
        1,
        5000,
    )

    facts = dedupe_preserve_order(
        fact for fact in (normalize_fact(value, fact_chars) for value in base_truth) if fact
    )
    stats = DiffStats()

    # Substring containment is coarse; removal tokens are short topic anchors.
    remove_tokens = [token.lower() for token in diff.remove if token]
    if remove_tokens:
        before = len(facts)
        facts = [
            fact
            for fact in facts
            if not any(token in fact.lower() for token in remove_tokens)
        ]
        stats.removed = before - len(facts)

    for replacement_raw in diff.update:
        replacement = normalize_fact(replacement_raw, fact_chars)
        if not replacement:
            continue
        key = update_key(replacement)
        index = next(
            (position for position, fact in enumerate(facts) if update_key(fact) == key),
            -1,
        )
        if index >= 0:
            facts[index] = replacement
            stats.updated += 1
        else:
            facts.append(replacement)
            stats.added += 1

    for fact_raw in diff.add:
        fact = normalize_fact(fact_raw, fact_chars)
        if not fact:
            continue
        lowered = fact.lower()
        if any(existing.lower() == lowered for existing in facts):
            continue
        facts.append(fact)
        stats.added += 1

    facts = dedupe_preserve_order(facts)
    if len(facts) > max_entries:
        facts = facts[len(facts) - max_entries :]
    return facts, stats
