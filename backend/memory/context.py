"""Render session memory into the chat model's system prompt and message list."""

from typing import Dict, List, Optional

from .types import SessionMemoryState

_NONE_YET = "- (none yet)"

_TEMPLATE = """{base_prompt}

## Conversation memory
The conversation is long, so older turns are summarized below. Treat the
established facts as true unless the user corrects them.

### Established facts
{facts}

### Turn summaries
{turns}"""


def render_base_truth_block(memory: SessionMemoryState) -> str:
    if not memory.base_truth:
        return _NONE_YET
    return "\n".join(f"- {fact}" for fact in memory.base_truth)


def render_turn_summary_block(memory: SessionMemoryState) -> str:
    if not memory.turn_log:
        return _NONE_YET
    return "\n".join(
        f"- Turn {entry.turn}: User: {entry.user_summary} | You: {entry.assistant_summary}"
        for entry in memory.turn_log
    )


def build_tiered_system_prompt(base_prompt: str, memory: SessionMemoryState) -> str:
    return _TEMPLATE.format(
        base_prompt=base_prompt.strip(),
        facts=render_base_truth_block(memory),
        turns=render_turn_summary_block(memory),
    ).strip()


def build_tiered_messages(
    memory: Optional[SessionMemoryState], latest_user_message: str
) -> List[Dict[str, str]]:
    """Rolling raw window followed by the user message being answered."""
    messages: List[Dict[str, str]] = []
    if memory is not None:
        messages.extend(
            {"role": entry.role, "content": entry.content} for entry in memory.raw_window
        )
    messages.append({"role": "user", "content": latest_user_message})
    return messages
