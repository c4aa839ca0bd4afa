"""
What a provider can do, and whether a step may use tools with it.

Capabilities start from per-type defaults and are refined by the bundled
model registry. ``ToolingPolicy`` combines them with the tooling a step (or
its provider) asks for and decides what is actually granted.
"""

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from importlib import resources
from typing import Any, Dict, Iterable, List, Optional

from ..transforms.models import (
    TOOL_SERVER_NAME,
    ProviderType,
    ToolingConfiguration,
    ToolServerConfiguration,
)

logger = logging.getLogger(__name__)

REGISTRY_RESOURCE = "models_llm_providers.json"


class ToolReliability(str, Enum):
    NONE = "none"
    EXPERIMENTAL = "experimental"
    STABLE = "stable"


@dataclass(frozen=True)
class LLMProviderCapabilities:
    supports_tool_calling: bool
    supports_streaming: bool
    max_context_tokens: Optional[int]
    tool_reliability: ToolReliability
    requires_network: bool


_DEFAULT_CAPABILITIES: Dict[ProviderType, LLMProviderCapabilities] = {
    ProviderType.CLAUDE_CODE: LLMProviderCapabilities(
        supports_tool_calling=True,
        supports_streaming=False,
        max_context_tokens=200_000,
        tool_reliability=ToolReliability.STABLE,
        requires_network=True,
    ),
    ProviderType.OLLAMA: LLMProviderCapabilities(
        supports_tool_calling=False,
        supports_streaming=True,
        max_context_tokens=None,
        tool_reliability=ToolReliability.NONE,
        requires_network=False,
    ),
    ProviderType.ANTHROPIC_API: LLMProviderCapabilities(
        supports_tool_calling=True,
        supports_streaming=True,
        max_context_tokens=None,
        tool_reliability=ToolReliability.EXPERIMENTAL,
        requires_network=True,
    ),
}
_DEFAULT_CAPABILITIES[ProviderType.OPENAI] = _DEFAULT_CAPABILITIES[ProviderType.ANTHROPIC_API]


def default_capabilities(provider_type: ProviderType) -> LLMProviderCapabilities:
    return _DEFAULT_CAPABILITIES[provider_type]


@dataclass(frozen=True)
class ModelMetadata:
    """One registry entry: a model offered by a provider type."""

    provider: str
    model: str
    display_name: Optional[str] = None
    context: Optional[int] = None
    supports_tool_calling: Optional[bool] = None
    tool_reliability: Optional[ToolReliability] = None

    @property
    def label(self) -> str:
        return self.display_name or self.model

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelMetadata":
        reliability = data.get("toolReliability")
        return cls(
            provider=str(data["provider"]),
            model=str(data["model"]),
            display_name=data.get("displayName"),
            context=data.get("context"),
            supports_tool_calling=data.get("supportsToolCalling"),
            tool_reliability=ToolReliability(reliability) if reliability is not None else None,
        )


class ModelRegistry:
    """Known models per provider type, keyed by model id."""

    def __init__(self, entries: Iterable[ModelMetadata] = ()):
        self._entries: Dict[str, Dict[str, ModelMetadata]] = {}
        for entry in entries:
            self._entries.setdefault(entry.provider, {})[entry.model] = entry

    @classmethod
    def from_json(cls, text: str) -> "ModelRegistry":
        """
        Build a registry from the JSON document format.

        Malformed data is logged and produces an empty registry, so
        capability lookups fall back to the per-type defaults.
        """
        try:
            raw = json.loads(text)
            if not isinstance(raw, list):
                raise ValueError("expected a list of model entries")
            entries = [ModelMetadata.from_dict(item) for item in raw]
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load {REGISTRY_RESOURCE}; capabilities will use defaults: {e}")
            return cls()
        return cls(entries)

    @classmethod
    def bundled(cls) -> "ModelRegistry":
        try:
            text = resources.files(__package__).joinpath("data", REGISTRY_RESOURCE).read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to read {REGISTRY_RESOURCE}; capabilities will use defaults: {e}")
            return cls()
        return cls.from_json(text)

    def metadata(self, provider_type: ProviderType, model_id: Optional[str]) -> Optional[ModelMetadata]:
        if not model_id:
            return None
        return self._entries.get(provider_type.value, {}).get(model_id)

    def models(self, provider_type: ProviderType) -> List[ModelMetadata]:
        entries = self._entries.get(provider_type.value, {}).values()
        return sorted(entries, key=lambda entry: entry.label.casefold())


_bundled_registry: Optional[ModelRegistry] = None


def bundled_registry() -> ModelRegistry:
    """The registry shipped with the package, loaded on first use."""
    global _bundled_registry
    if _bundled_registry is None:
        _bundled_registry = ModelRegistry.bundled()
    return _bundled_registry


def resolve_capabilities(
    provider_type: ProviderType,
    model_id: Optional[str] = None,
    registry: Optional[ModelRegistry] = None,
) -> LLMProviderCapabilities:
    """
    Capabilities for a provider type running ``model_id``.

    Registry metadata overrides the defaults field by field; fields the
    entry leaves unset keep their default.
    """
    capabilities = default_capabilities(provider_type)
    metadata = (registry or bundled_registry()).metadata(provider_type, model_id)
    if metadata is None:
        return capabilities

    overrides: Dict[str, Any] = {}
    if metadata.supports_tool_calling is not None:
        overrides["supports_tool_calling"] = metadata.supports_tool_calling
    if metadata.context is not None:
        overrides["max_context_tokens"] = metadata.context
    if metadata.tool_reliability is not None:
        overrides["tool_reliability"] = metadata.tool_reliability
    return replace(capabilities, **overrides)


@dataclass(frozen=True)
class ToolingPolicy:
    """
    The tooling granted to one LLM step.

    ``effective_tooling`` is what the provider may use; ``disabled_reason``
    explains why requested tooling was withheld.
    """

    capabilities: LLMProviderCapabilities
    requested_tooling: Optional[ToolingConfiguration] = None
    effective_tooling: Optional[ToolingConfiguration] = None
    disabled_reason: Optional[str] = None

    @classmethod
    def evaluate(
        cls,
        capabilities: LLMProviderCapabilities,
        step_tooling: Optional[ToolingConfiguration] = None,
        provider_tooling: Optional[ToolingConfiguration] = None,
    ) -> "ToolingPolicy":
        requested = step_tooling or provider_tooling

        if capabilities.supports_tool_calling and capabilities.tool_reliability != ToolReliability.NONE:
            return cls(capabilities, requested, requested)

        if requested is None:
            return cls(capabilities)

        if not capabilities.supports_tool_calling:
            reason = "provider does not support tool calling"
        else:
            reason = f"tool reliability set to {capabilities.tool_reliability.value}"
        return cls(capabilities, requested, None, reason)

    @property
    def server_configuration(self) -> Optional[ToolServerConfiguration]:
        if self.effective_tooling is None:
            return None
        return self.effective_tooling.server_configuration()

    @property
    def should_start_tool_server(self) -> bool:
        return self.server_configuration is not None

    def allowed_tool_identifiers(self, server_name: str = TOOL_SERVER_NAME) -> List[str]:
        configuration = self.server_configuration
        if configuration is None:
            return []
        identifiers = set()
        for group in configuration.enabled_tool_groups:
            identifiers.update(group.tool_identifiers(server_name))
        return sorted(identifiers)
