"""
Provider capability table.

Each conversation source is described by data rather than by per-provider
code paths; callers look capabilities up by provider key.
"""

from dataclasses import dataclass
from typing import Optional

from retain.models.db import Provider, SourceType


@dataclass(frozen=True)
class ProviderConfig:
    """Static capabilities of a conversation provider."""

    key: str
    display_name: str
    source_type: str
    is_web: bool = False
    strips_blank_system_messages: bool = False  # Post-merge cleanup
    supports_project_path: bool = False


PROVIDERS: dict[str, ProviderConfig] = {
    Provider.CLAUDE_CODE.value: ProviderConfig(
        key=Provider.CLAUDE_CODE.value,
        display_name="Claude Code",
        source_type=SourceType.CLI.value,
        supports_project_path=True,
    ),
    Provider.CLAUDE_WEB.value: ProviderConfig(
        key=Provider.CLAUDE_WEB.value,
        display_name="Claude",
        source_type=SourceType.WEB.value,
        is_web=True,
    ),
    Provider.CHATGPT_WEB.value: ProviderConfig(
        key=Provider.CHATGPT_WEB.value,
        display_name="ChatGPT",
        source_type=SourceType.WEB.value,
        is_web=True,
        strips_blank_system_messages=True,
    ),
    Provider.CODEX.value: ProviderConfig(
        key=Provider.CODEX.value,
        display_name="Codex",
        source_type=SourceType.CLI.value,
        supports_project_path=True,
    ),
    Provider.GEMINI.value: ProviderConfig(
        key=Provider.GEMINI.value,
        display_name="Gemini CLI",
        source_type=SourceType.CLI.value,
        supports_project_path=True,
    ),
}


def get_provider_config(provider: str) -> Optional[ProviderConfig]:
    """Look up capabilities for a provider key, or None if unknown."""
    return PROVIDERS.get(provider)
