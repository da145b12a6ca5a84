"""
Signed, session-bound tokens that pin a use case and memory mode.

Token layout: ``<base64url(json payload)>.<base64url(hmac-sha256(payload))>``.
The payload carries the session id, so a token minted for one session never
verifies against another.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Optional

MEMORY_MODES = ("classic", "tiered")

USE_CASE_LOCK_COOKIE = "chat_use_case_lock"
USE_CASE_LOCK_COOKIE_PATH = "/api/chat"


@dataclass(frozen=True)
class UseCaseLock:
    use_case_id: str
    memory_mode: str
    expires_at: int


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _sign(secret: str, encoded_payload: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), encoded_payload.encode("ascii"), hashlib.sha256
    ).digest()
    return _b64url_encode(digest)


def mint_lock_token(
    secret: str,
    session_id: str,
    use_case_id: str,
    memory_mode: str,
    expires_at: int,
) -> str:
    if memory_mode not in MEMORY_MODES:
        raise ValueError(f"unsupported memory mode: {memory_mode}")
    payload = {
        "sid": session_id,
        "uc": use_case_id,
        "mm": memory_mode,
        "exp": int(expires_at),
    }
    encoded_payload = _b64url_encode(
        json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    )
    return f"{encoded_payload}.{_sign(secret, encoded_payload)}"


def _parse_payload(encoded_payload: str) -> Optional[dict]:
    try:
        parsed = json.loads(_b64url_decode(encoded_payload).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, binascii.Error):
        return None
    if not isinstance(parsed, dict):
        return None
    if not isinstance(parsed.get("sid"), str) or not isinstance(parsed.get("uc"), str):
        return None
    exp = parsed.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int):
        return None
    if parsed.get("mm") not in MEMORY_MODES:
        return None
    return parsed


def verify_lock_token(
    secret: str, token: Optional[str], expected_session_id: str, now: int
) -> Optional[UseCaseLock]:
    """Return the locked selection, or None for any invalid, foreign or expired token."""
    if not token:
        return None
    encoded_payload, separator, signature = token.strip().partition(".")
    if not separator or not encoded_payload or not signature or "." in signature:
        return None

    try:
        expected_signature = _sign(secret, encoded_payload)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(
        signature.encode("ascii", "replace"), expected_signature.encode("ascii")
    ):
        return None

    payload = _parse_payload(encoded_payload)
    if payload is None:
        return None
    if not hmac.compare_digest(
        payload["sid"].encode("utf-8"), expected_session_id.encode("utf-8")
    ):
        return None
    if payload["exp"] <= now:
        return None

    return UseCaseLock(
        use_case_id=payload["uc"],
        memory_mode=payload["mm"],
        expires_at=payload["exp"],
    )
