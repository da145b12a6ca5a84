"""
OpenAI-compatible chat-completions client.

Two call shapes share one transport:
- ``complete_chat`` produces the user-visible reply; any failure is an
  ``UpstreamError``.
- ``request_summary`` feeds the memory summarizer; failures return ``None`` so
  the caller can degrade to fallback summaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import AiConfig, ChatModelConfig, SummarizerConfig
from errors import UpstreamError
from logging_utils import get_logger

logger = get_logger("llm_client")

_COMPLETIONS_ENDPOINT = "/chat/completions"


@dataclass(frozen=True)
class ChatCompletion:
    content: str
    model: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def usage(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _first_choice_content(data: Dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return max(0, value)


async def _post_json(
    base: str,
    endpoint: str,
    payload: Dict[str, Any],
    *,
    api_key: str,
    timeout_ms: int,
) -> Dict[str, Any]:
    url = _join_api_url(base, endpoint)
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    timeout = httpx.Timeout(timeout_ms / 1000.0)
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        parsed = response.json()
    if not isinstance(parsed, dict):
        raise ValueError("completion response is not an object")
    return parsed


def _completion_payload(
    model: str,
    system_prompt: str,
    messages: Sequence[Dict[str, str]],
    temperature: float,
    max_output_tokens: int,
) -> Dict[str, Any]:
    return {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt}]
        + [{"role": m["role"], "content": m["content"]} for m in messages],
        "temperature": temperature,
        "max_completion_tokens": max_output_tokens,
    }


async def complete_chat(
    ai: AiConfig,
    system_prompt: str,
    messages: Sequence[Dict[str, str]],
    *,
    chat: Optional[ChatModelConfig] = None,
) -> ChatCompletion:
    """Generate the assistant reply. Raises UpstreamError on any failure."""
    chat = chat or ai.chat
    if not ai.api_key:
        raise UpstreamError("Upstream provider is not configured.")

    payload = _completion_payload(
        chat.model, system_prompt, messages, chat.temperature, chat.max_output_tokens
    )
    try:
        data = await _post_json(
            ai.api_base,
            _COMPLETIONS_ENDPOINT,
            payload,
            api_key=ai.api_key,
            timeout_ms=chat.timeout_ms,
        )
    except httpx.TimeoutException as exc:
        raise UpstreamError(
            "Upstream provider timed out.", meta={"model": chat.model}
        ) from exc
    except httpx.HTTPStatusError as exc:
        raise UpstreamError(
            "Upstream provider request failed.",
            meta={"model": chat.model, "upstream_status": exc.response.status_code},
        ) from exc
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
        raise UpstreamError(
            "Upstream provider request failed.", meta={"model": chat.model}
        ) from exc

    content = _first_choice_content(data)
    if not content:
        raise UpstreamError("Upstream provider returned an empty response.")

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    return ChatCompletion(
        content=content,
        model=chat.model,
        input_tokens=_optional_int(usage.get("prompt_tokens")),
        output_tokens=_optional_int(usage.get("completion_tokens")),
    )


async def request_summary(
    ai: AiConfig,
    system_prompt: str,
    messages: List[Dict[str, str]],
    *,
    summarizer: Optional[SummarizerConfig] = None,
) -> Optional[str]:
    """Return the raw summarizer output, or None when the call fails."""
    summarizer = summarizer or ai.summarizer
    if not ai.api_key:
        return None

    payload = _completion_payload(
        summarizer.model,
        system_prompt,
        messages,
        summarizer.temperature,
        summarizer.max_output_tokens,
    )
    try:
        data = await _post_json(
            ai.api_base,
            _COMPLETIONS_ENDPOINT,
            payload,
            api_key=ai.api_key,
            timeout_ms=summarizer.timeout_ms,
        )
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
        logger.warning(
            "memory.summarizer.request_failed",
            model=summarizer.model,
            error_type=type(exc).__name__,
        )
        return None

    return _first_choice_content(data) or None
