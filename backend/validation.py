"""
Request body validation for the chat routes.

Pydantic handles the structural shape; the checks that depend on configured
limits run afterwards so every rejection carries a short, user-facing message.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, StrictStr
from pydantic import ValidationError as PydanticValidationError

from config import RequestLimits
from errors import ValidationError
from use_case_lock import MEMORY_MODES

USE_CASE_ID_PATTERN = re.compile(r"^[a-z0-9_-]{1,64}$")
USE_CASE_LOCK_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")
SESSION_ID_MIN_LENGTH = 8
SESSION_ID_MAX_LENGTH = 256


class ChatMessageIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant"]
    content: StrictStr
    ts: StrictStr


class RespondRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: StrictStr
    messages: List[ChatMessageIn]
    use_case_id: Optional[StrictStr] = None
    memory_mode: Optional[StrictStr] = None
    use_case_lock_token: Optional[StrictStr] = None

    @property
    def latest_user_message(self) -> ChatMessageIn:
        return self.messages[-1]

    @property
    def is_first_turn(self) -> bool:
        return (
            sum(1 for m in self.messages if m.role == "user") == 1
            and not any(m.role == "assistant" for m in self.messages)
        )


class ResetRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: StrictStr


def _message_from_pydantic(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Malformed request body."
    loc = errors[0].get("loc") or ()
    if not loc:
        return "Malformed request body."
    if loc[0] == "messages":
        if len(loc) >= 2 and isinstance(loc[1], int):
            field_name = loc[2] if len(loc) > 2 else None
            if field_name in {"role", "content"}:
                return f"Invalid message {field_name} at index {loc[1]}."
            if field_name == "ts":
                return f"Invalid message timestamp at index {loc[1]}."
            return f"Invalid message at index {loc[1]}."
        return "Messages must be a non-empty array."
    if loc[0] == "session_id":
        return "Invalid session id."
    return f"Invalid {loc[0]}."


def _parse(model: type, body: Any) -> Any:
    if not isinstance(body, dict):
        raise ValidationError("Malformed request body.")
    try:
        return model.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(_message_from_pydantic(exc)) from exc


def validate_session_id(session_id: str) -> str:
    trimmed = session_id.strip()
    if not SESSION_ID_MIN_LENGTH <= len(trimmed) <= SESSION_ID_MAX_LENGTH:
        raise ValidationError("Invalid session id length.")
    return trimmed


def _validate_optional(value: Optional[str], pattern: "re.Pattern[str]", name: str) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed or not pattern.match(trimmed):
        raise ValidationError(f"Invalid {name} format.")
    return trimmed


def _is_iso_timestamp(value: str) -> bool:
    text = value.strip()
    if not text:
        return False
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def validate_reset_payload(body: Any) -> ResetRequest:
    parsed = _parse(ResetRequest, body)
    return parsed.model_copy(update={"session_id": validate_session_id(parsed.session_id)})


def validate_respond_payload(body: Any, limits: RequestLimits) -> RespondRequest:
    if isinstance(body, dict) and (
        not isinstance(body.get("messages"), list) or not body.get("messages")
    ):
        raise ValidationError("Messages must be a non-empty array.")
    parsed = _parse(RespondRequest, body)

    session_id = validate_session_id(parsed.session_id)
    use_case_id = _validate_optional(parsed.use_case_id, USE_CASE_ID_PATTERN, "use_case_id")
    lock_token = _validate_optional(
        parsed.use_case_lock_token, USE_CASE_LOCK_TOKEN_PATTERN, "use_case_lock_token"
    )
    memory_mode = parsed.memory_mode.strip() if parsed.memory_mode is not None else None
    if memory_mode is not None and memory_mode not in MEMORY_MODES:
        raise ValidationError("Invalid memory_mode.")

    if len(parsed.messages) > limits.max_context_messages * 2:
        raise ValidationError("Too many messages in context.")

    messages: List[ChatMessageIn] = []
    for index, message in enumerate(parsed.messages):
        content = message.content.strip()
        if not content:
            raise ValidationError(f"Empty message content at index {index}.")
        if message.role == "user" and len(content) > limits.max_user_chars:
            raise ValidationError(f"User message at index {index} exceeds max length.")
        if not _is_iso_timestamp(message.ts):
            raise ValidationError(f"Invalid message timestamp at index {index}.")
        messages.append(ChatMessageIn(role=message.role, content=content, ts=message.ts.strip()))

    if sum(1 for m in messages if m.role == "user") > limits.max_turns:
        raise ValidationError("Maximum turn limit exceeded.")
    if sum(len(m.content) for m in messages) > limits.max_context_chars:
        raise ValidationError("Context payload too large.")
    if messages[-1].role != "user":
        raise ValidationError("Last message must be from user.")

    return RespondRequest(
        session_id=session_id,
        messages=messages,
        use_case_id=use_case_id,
        memory_mode=memory_mode,
        use_case_lock_token=lock_token,
    )
