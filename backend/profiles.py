"""Use-case prompt profiles and memory modes offered to the chat client."""

from dataclasses import dataclass
from typing import Dict, List, Optional

from config import get_optional_env


@dataclass(frozen=True)
class PromptProfile:
    id: str
    display_name: str
    system_prompt: str


@dataclass(frozen=True)
class _ProfileDefinition:
    id: str
    display_name: str
    default_prompt: str
    env_key: Optional[str] = None


@dataclass(frozen=True)
class MemoryModeDefinition:
    id: str
    display_name: str
    requires_tiered: bool


# Ids are part of issued lock tokens; keep them stable across deploys.
_PROFILES: List[_ProfileDefinition] = [
    _ProfileDefinition(
        id="gen",
        display_name="JackOfAllTrades",
        default_prompt=(
            "You are a concise general assistant. Provide direct, accurate, safe "
            "answers. Keep responses short unless asked for detail."
        ),
        env_key="USE_CASE_PROMPT_GEN",
    ),
    _ProfileDefinition(
        id="cat",
        display_name="CAT",
        default_prompt=(
            "You are a CAT exam coach. Explain quantitative, verbal and logical "
            "reasoning problems step by step and point out faster methods."
        ),
        env_key="USE_CASE_PROMPT_CAT",
    ),
    _ProfileDefinition(
        id="upsc",
        display_name="UPSC",
        default_prompt=(
            "You are a UPSC preparation mentor. Give structured, balanced answers "
            "grounded in the syllabus and flag where facts should be verified."
        ),
        env_key="USE_CASE_PROMPT_UPSC",
    ),
]

_MEMORY_MODES: List[MemoryModeDefinition] = [
    MemoryModeDefinition(id="classic", display_name="Speak Small", requires_tiered=False),
    MemoryModeDefinition(id="tiered", display_name="Speak Long", requires_tiered=True),
]


def default_use_case_id() -> str:
    return _PROFILES[0].id


def default_memory_mode() -> str:
    return _MEMORY_MODES[0].id


def get_prompt_profile(use_case_id: str) -> Optional[PromptProfile]:
    for definition in _PROFILES:
        if definition.id != use_case_id:
            continue
        override = get_optional_env(definition.env_key) if definition.env_key else None
        return PromptProfile(
            id=definition.id,
            display_name=definition.display_name,
            system_prompt=override or definition.default_prompt,
        )
    return None


def list_use_cases_for_client() -> List[Dict[str, str]]:
    return [{"id": item.id, "display_name": item.display_name} for item in _PROFILES]


def is_memory_mode_available(memory_mode: str, tiered_enabled: bool) -> bool:
    for mode in _MEMORY_MODES:
        if mode.id == memory_mode:
            return tiered_enabled or not mode.requires_tiered
    return False


def list_memory_modes_for_client(tiered_enabled: bool) -> List[Dict[str, str]]:
    return [
        {"id": mode.id, "display_name": mode.display_name}
        for mode in _MEMORY_MODES
        if tiered_enabled or not mode.requires_tiered
    ]
