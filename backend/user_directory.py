"""
Mapping from a verified email to an internal identity record.

With USER_DIRECTORY_JSON configured the lookup is explicit and strict: an
allowlisted email without an entry is an authorization gap. Without a
directory the identity is derived deterministically from the email.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{3,64}$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]{2,64}$")
ALIAS_PATTERN = re.compile(r"^[A-Za-z0-9._ -]{1,64}$")
ROLE_VALUES = {"admin", "member"}


class DirectoryError(ValueError):
    """USER_DIRECTORY_JSON is malformed or has no entry for an email."""


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str
    alias: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


_cached_raw = ""
_cached_directory: Optional[Dict[str, Identity]] = None


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def _normalize_alias(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())


def parse_directory(raw: str) -> Dict[str, Identity]:
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise DirectoryError("USER_DIRECTORY_JSON is not valid JSON.") from exc
    if not isinstance(parsed, list):
        raise DirectoryError("USER_DIRECTORY_JSON must be an array.")

    directory: Dict[str, Identity] = {}
    for entry in parsed:
        candidate: Mapping[str, Any] = entry if isinstance(entry, dict) else {}
        email = (
            normalize_email(candidate["email"])
            if isinstance(candidate.get("email"), str)
            else ""
        )
        user_id = (
            candidate["user_id"].strip() if isinstance(candidate.get("user_id"), str) else ""
        )
        username = (
            candidate["username"].strip()
            if isinstance(candidate.get("username"), str)
            else ""
        )
        alias_raw = candidate.get("alias") if isinstance(candidate.get("alias"), str) else username
        alias = _normalize_alias(alias_raw)
        role = (
            candidate["role"].strip().lower()
            if isinstance(candidate.get("role"), str)
            else "member"
        )

        if not email or "@" not in email:
            raise DirectoryError("USER_DIRECTORY_JSON contains invalid email value.")
        if not USER_ID_PATTERN.match(user_id):
            raise DirectoryError("USER_DIRECTORY_JSON contains invalid user_id value.")
        if not USERNAME_PATTERN.match(username):
            raise DirectoryError("USER_DIRECTORY_JSON contains invalid username value.")
        if not ALIAS_PATTERN.match(alias):
            raise DirectoryError("USER_DIRECTORY_JSON contains invalid alias value.")
        if role not in ROLE_VALUES:
            raise DirectoryError("USER_DIRECTORY_JSON contains invalid role value.")
        if email in directory:
            raise DirectoryError("USER_DIRECTORY_JSON contains duplicate email value.")

        directory[email] = Identity(
            user_id=user_id, username=username, alias=alias, role=role
        )
    return directory


def get_directory(raw: str) -> Optional[Dict[str, Identity]]:
    """Parse the directory once per distinct raw value."""
    global _cached_raw, _cached_directory
    value = (raw or "").strip()
    if not value:
        return None
    if _cached_directory is not None and value == _cached_raw:
        return _cached_directory
    parsed = parse_directory(value)
    _cached_raw = value
    _cached_directory = parsed
    return parsed


def derive_user_id(email: str) -> str:
    digest = hashlib.sha256(normalize_email(email).encode("utf-8")).digest()
    return f"user_{digest[:12].hex()}"


def fallback_username(email: str, name_hint: Optional[str]) -> str:
    from_name = (name_hint or "").strip()
    if from_name:
        candidate = re.sub(r"\s+", "_", from_name)
        if USERNAME_PATTERN.match(candidate):
            return candidate

    local = (email.split("@")[0] if email else "").strip() or "authorized_user"
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", local)
    return cleaned[:64] or "authorized_user"


def resolve_identity(
    email: str, *, name_hint: Optional[str] = None, directory_json: str = ""
) -> Identity:
    normalized = normalize_email(email)
    directory = get_directory(directory_json)
    if directory is not None:
        mapped = directory.get(normalized)
        if mapped is None:
            raise DirectoryError("No user directory entry for allowlisted email.")
        return mapped

    username = fallback_username(normalized, name_hint)
    return Identity(
        user_id=derive_user_id(normalized),
        username=username,
        alias=username,
        role="member",
    )
