"""
Runtime configuration for the chat gateway.

Settings are read from the environment (and an optional .env file) once and
frozen into dataclasses. Every numeric limit is clamped to documented bounds;
unparsable values fall back to the default instead of failing startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSY_ENV_VALUES = {"0", "false", "no", "off", "disabled"}
_LOG_LEVELS = {"debug", "info", "warn", "error"}
_COMMIT_MODES = {"background", "inline"}

DEFAULT_ASSERTION_HEADER = "Cf-Access-Jwt-Assertion"
DEFAULT_OPENAI_API_BASE = "https://api.openai.com/v1"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name) or default).strip()


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    return min(maximum, max(minimum, value))


def _env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if value != value:  # NaN
        return default
    return min(maximum, max(minimum, value))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY_ENV_VALUES:
        return True
    if value in _FALSY_ENV_VALUES:
        return False
    return default


def _env_csv(name: str) -> Tuple[str, ...]:
    return tuple(
        item.strip().lower()
        for item in (os.getenv(name) or "").split(",")
        if item.strip()
    )


def sanitize_team_domain(team_domain: str) -> str:
    value = (team_domain or "").strip()
    lowered = value.lower()
    for scheme in ("https://", "http://"):
        if lowered.startswith(scheme):
            value = value[len(scheme):]
            break
    return value.rstrip("/")


@dataclass(frozen=True)
class RequestLimits:
    max_user_chars: int = 2000
    max_context_messages: int = 12
    max_context_chars: int = 12000
    max_turns: int = 30


@dataclass(frozen=True)
class ChatModelConfig:
    model: str = DEFAULT_CHAT_MODEL
    temperature: float = 0.3
    timeout_ms: int = 15000
    max_output_tokens: int = 400


@dataclass(frozen=True)
class SummarizerConfig:
    model: str = DEFAULT_CHAT_MODEL
    temperature: float = 0.1
    timeout_ms: int = 8000
    max_output_tokens: int = 400
    system_prompt_override: str = ""


@dataclass(frozen=True)
class AiConfig:
    api_base: str = DEFAULT_OPENAI_API_BASE
    api_key: str = ""
    chat: ChatModelConfig = field(default_factory=ChatModelConfig)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)


@dataclass(frozen=True)
class MemoryStoreLimits:
    max_base_truth_entries: int = 120
    max_turn_log_entries: int = 300
    max_raw_window_messages: int = 12
    max_fact_chars: int = 240
    max_summary_chars: int = 360
    max_raw_message_chars: int = 4000

    def clamped(self) -> "MemoryStoreLimits":
        """Return a copy with every limit forced into its documented range."""
        raw_window = min(200, max(2, int(self.max_raw_window_messages)))
        if raw_window % 2:
            # The raw window holds user/assistant pairs.
            raw_window -= 1
        return MemoryStoreLimits(
            max_base_truth_entries=min(5000, max(1, int(self.max_base_truth_entries))),
            max_turn_log_entries=min(10000, max(1, int(self.max_turn_log_entries))),
            max_raw_window_messages=raw_window,
            max_fact_chars=min(10000, max(8, int(self.max_fact_chars))),
            max_summary_chars=min(12000, max(8, int(self.max_summary_chars))),
            max_raw_message_chars=min(100000, max(32, int(self.max_raw_message_chars))),
        )


@dataclass(frozen=True)
class TieredMemoryConfig:
    enabled: bool = False
    commit_mode: str = "background"
    store_limits: MemoryStoreLimits = field(default_factory=MemoryStoreLimits)


@dataclass(frozen=True)
class AccessConfig:
    team_domain: str = ""
    audience: str = ""
    jwks_url: str = ""
    assertion_header: str = DEFAULT_ASSERTION_HEADER
    allowed_emails: FrozenSet[str] = frozenset()
    user_directory_json: str = ""

    @property
    def expected_issuer(self) -> str:
        domain = sanitize_team_domain(self.team_domain)
        return f"https://{domain}" if domain else ""

    @property
    def resolved_jwks_url(self) -> str:
        if self.jwks_url:
            return self.jwks_url
        domain = sanitize_team_domain(self.team_domain)
        return f"https://{domain}/cdn-cgi/access/certs" if domain else ""


@dataclass(frozen=True)
class RateLimitConfig:
    burst_limit: int = 5
    burst_window_seconds: int = 10
    minute_limit: int = 30
    minute_window_seconds: int = 60


@dataclass(frozen=True)
class Settings:
    session_hmac_secret: str = ""
    access: AccessConfig = field(default_factory=AccessConfig)
    limits: RequestLimits = field(default_factory=RequestLimits)
    ai: AiConfig = field(default_factory=AiConfig)
    memory: TieredMemoryConfig = field(default_factory=TieredMemoryConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    allowed_origins: Tuple[str, ...] = ()
    log_level: str = "info"

    @property
    def use_case_lock_secret(self) -> str:
        return f"{self.session_hmac_secret}:use-case-lock"

    def missing_auth_settings(self) -> Tuple[str, ...]:
        missing = []
        if not self.session_hmac_secret:
            missing.append("SESSION_HMAC_SECRET")
        if not self.access.expected_issuer:
            missing.append("ACCESS_TEAM_DOMAIN")
        if not self.access.audience:
            missing.append("ACCESS_API_AUD")
        return tuple(missing)


def _load_ai_config() -> AiConfig:
    chat_model = _env_str("OPENAI_MODEL", DEFAULT_CHAT_MODEL) or DEFAULT_CHAT_MODEL
    chat = ChatModelConfig(
        model=chat_model,
        temperature=_env_float("OPENAI_TEMPERATURE", 0.3, 0.0, 2.0),
        timeout_ms=_env_int("OPENAI_TIMEOUT_MS", 15000, 1000, 60000),
        max_output_tokens=_env_int("MAX_OUTPUT_TOKENS", 400, 50, 4000),
    )
    summarizer = SummarizerConfig(
        model=_env_str("OPENAI_SUMMARIZER_MODEL") or chat_model,
        temperature=_env_float("OPENAI_SUMMARIZER_TEMPERATURE", 0.1, 0.0, 2.0),
        timeout_ms=_env_int("OPENAI_SUMMARIZER_TIMEOUT_MS", 8000, 1000, 60000),
        max_output_tokens=_env_int(
            "OPENAI_SUMMARIZER_MAX_OUTPUT_TOKENS", 400, 50, 4000
        ),
        system_prompt_override=_env_str("TIERED_MEMORY_SUMMARIZER_PROMPT"),
    )
    return AiConfig(
        api_base=(_env_str("OPENAI_API_BASE", DEFAULT_OPENAI_API_BASE) or DEFAULT_OPENAI_API_BASE).rstrip("/"),
        api_key=_env_str("OPENAI_API_KEY"),
        chat=chat,
        summarizer=summarizer,
    )


def _load_memory_config() -> TieredMemoryConfig:
    defaults = MemoryStoreLimits()
    limits = MemoryStoreLimits(
        max_base_truth_entries=_env_int(
            "MEMORY_MAX_BASE_TRUTH_ENTRIES", defaults.max_base_truth_entries, 1, 5000
        ),
        max_turn_log_entries=_env_int(
            "MEMORY_MAX_TURN_LOG_ENTRIES", defaults.max_turn_log_entries, 1, 10000
        ),
        max_raw_window_messages=_env_int(
            "MEMORY_MAX_RAW_WINDOW_MESSAGES", defaults.max_raw_window_messages, 2, 200
        ),
        max_fact_chars=_env_int("MEMORY_MAX_FACT_CHARS", defaults.max_fact_chars, 8, 10000),
        max_summary_chars=_env_int(
            "MEMORY_MAX_SUMMARY_CHARS", defaults.max_summary_chars, 8, 12000
        ),
        max_raw_message_chars=_env_int(
            "MEMORY_MAX_RAW_MESSAGE_CHARS", defaults.max_raw_message_chars, 32, 100000
        ),
    ).clamped()
    commit_mode = _env_str("TIERED_MEMORY_COMMIT_MODE", "background").lower()
    if commit_mode not in _COMMIT_MODES:
        commit_mode = "background"
    return TieredMemoryConfig(
        enabled=_env_bool("ENABLE_TIERED_MEMORY", False),
        commit_mode=commit_mode,
        store_limits=limits,
    )


def load_settings() -> Settings:
    """Build a fresh, validated settings object from the current environment."""
    log_level = _env_str("LOG_LEVEL", "info").lower()
    if log_level not in _LOG_LEVELS:
        log_level = "info"

    access = AccessConfig(
        team_domain=sanitize_team_domain(_env_str("ACCESS_TEAM_DOMAIN")),
        audience=_env_str("ACCESS_API_AUD"),
        jwks_url=_env_str("ACCESS_JWKS_URL"),
        assertion_header=_env_str("ACCESS_ASSERTION_HEADER", DEFAULT_ASSERTION_HEADER)
        or DEFAULT_ASSERTION_HEADER,
        allowed_emails=frozenset(_env_csv("ALLOWED_EMAILS")),
        user_directory_json=_env_str("USER_DIRECTORY_JSON"),
    )
    limits = RequestLimits(
        max_user_chars=_env_int("MAX_USER_CHARS", 2000, 1, 8000),
        max_context_messages=_env_int("MAX_CONTEXT_MESSAGES", 12, 1, 40),
        max_context_chars=_env_int("MAX_CONTEXT_CHARS", 12000, 100, 60000),
        max_turns=_env_int("MAX_TURNS", 30, 1, 200),
    )
    rate_limits = RateLimitConfig(
        burst_limit=_env_int("RESPOND_BURST_LIMIT", 5, 0, 1000),
        minute_limit=_env_int("RESPOND_MINUTE_LIMIT", 30, 0, 10000),
    )
    return Settings(
        session_hmac_secret=_env_str("SESSION_HMAC_SECRET"),
        access=access,
        limits=limits,
        ai=_load_ai_config(),
        memory=_load_memory_config(),
        rate_limits=rate_limits,
        allowed_origins=_env_csv("ALLOWED_ORIGINS"),
        log_level=log_level,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def get_optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None
