"""
Configuration records for transformation modes, pipelines and LLM providers.

Every record round-trips through the JSON configuration file: keys on disk
are camelCase, attributes in Python are snake_case, and either spelling is
accepted when constructing a model.
"""

import os
import re
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

CURRENT_SCHEMA_VERSION = 4
INPUT_PLACEHOLDER = "{{input}}"
PREFERRED_PROVIDER_ID = "preferred-provider"
TOOL_SERVER_NAME = "dictation-tools"


def _new_id() -> str:
    return str(uuid.uuid4())


class ConfigModel(BaseModel):
    """Base for records stored in the configuration file."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> Dict[str, Any]:
        """Encode with on-disk key names, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -- Tool groups ---------------------------------------------------------------


class ToolGroup(str, Enum):
    """A bundle of automation tools that is enabled or disabled as a unit."""

    APP_CONTROL = "app-control"
    APP_DISCOVERY = "app-discovery"
    CONTEXT = "context"

    @property
    def description(self) -> str:
        return _GROUP_DESCRIPTIONS[self]

    @property
    def tool_names(self) -> List[str]:
        return list(_GROUP_TOOLS[self])

    def tool_identifiers(self, server_name: str = TOOL_SERVER_NAME) -> List[str]:
        """Tool names as an MCP client addresses them, e.g. ``mcp__dictation-tools__openURL``."""
        return [f"mcp__{server_name}__{name}" for name in self.tool_names]

    @classmethod
    def for_tool(cls, tool_name: str) -> Optional["ToolGroup"]:
        for group, names in _GROUP_TOOLS.items():
            if tool_name in names:
                return group
        return None


_GROUP_TOOLS = {
    ToolGroup.APP_CONTROL: ("openApplication", "openURL"),
    ToolGroup.APP_DISCOVERY: ("listApplications",),
    ToolGroup.CONTEXT: ("getSelectedText", "getClipboardText"),
}

_GROUP_DESCRIPTIONS = {
    ToolGroup.APP_CONTROL: "Launches or focuses applications and opens URLs.",
    ToolGroup.APP_DISCOVERY: "Lists installed applications so models can find bundle identifiers.",
    ToolGroup.CONTEXT: "Reads selected text or clipboard contents without disturbing the user.",
}


class ToolServerConfiguration(ConfigModel):
    enabled_tool_groups: List[ToolGroup] = Field(default_factory=list)
    instructions: Optional[str] = None


class ToolingConfiguration(ConfigModel):
    """Tool groups an LLM step (or provider) asks for."""

    enabled_tool_groups: List[ToolGroup] = Field(default_factory=list)
    instructions: Optional[str] = None

    def server_configuration(self) -> Optional[ToolServerConfiguration]:
        if not self.enabled_tool_groups:
            return None
        return ToolServerConfiguration(
            enabled_tool_groups=list(self.enabled_tool_groups),
            instructions=self.instructions,
        )


class ToolServerEndpoint(ConfigModel):
    """Where a provider subprocess can reach the tool server."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(alias="baseURL")
    server_name: str = TOOL_SERVER_NAME
    instructions: Optional[str] = None


# -- Providers -------------------------------------------------------------------


class ProviderType(str, Enum):
    CLAUDE_CODE = "claude_code"
    OLLAMA = "ollama"
    ANTHROPIC_API = "anthropic_api"
    OPENAI = "openai"


class SecretReference(ConfigModel):
    """An API key given literally or by environment variable name."""

    storage: Literal["literal", "environment"] = "environment"
    value: str

    def resolve(self, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
        if self.storage == "literal":
            return self.value
        env = os.environ if environ is None else environ
        return env.get(self.value)


class LLMProvider(ConfigModel):
    """A configured LLM backend. ``type`` selects the runtime that executes it."""

    id: str
    display_name: Optional[str] = None
    type: ProviderType

    # CLI providers
    binary_path: Optional[str] = None
    working_directory: Optional[str] = None

    # Shared
    default_model: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    # Hosted API providers
    base_url: Optional[str] = Field(default=None, alias="baseURL")
    api_key: Optional[SecretReference] = None
    organization: Optional[str] = None

    tooling: Optional[ToolingConfiguration] = Field(
        default=None,
        validation_alias=AliasChoices("tooling", "toolingConfig"),
    )


class LLMProviderPreferences(ConfigModel):
    """User-selected provider/model, honoured by the ``preferred-provider`` id."""

    preferred_provider_id: Optional[str] = Field(default=None, alias="preferredProviderID")
    preferred_model_id: Optional[str] = Field(default=None, alias="preferredModelID")


# -- Transformations -------------------------------------------------------------

SimpleKind = Literal[
    "uppercase",
    "lowercase",
    "capitalize",
    "capitalizeFirst",
    "spongebobCase",
    "trimWhitespace",
    "removeExtraSpaces",
]


class SimpleOperation(ConfigModel):
    kind: SimpleKind


class AffixOperation(ConfigModel):
    kind: Literal["addPrefix", "addSuffix"]
    text: str


class ReplaceTextConfig(ConfigModel):
    kind: Literal["replaceText"] = "replaceText"
    id: str = Field(default_factory=_new_id)
    pattern: str
    replacement: str = ""
    case_sensitive: bool = False
    use_regex: bool = False

    @model_validator(mode="after")
    def _check_regex(self) -> "ReplaceTextConfig":
        if self.use_regex:
            flags = 0 if self.case_sensitive else re.IGNORECASE
            try:
                re.compile(self.pattern, flags)
            except re.error as exc:
                raise ValueError(f"invalid regular expression {self.pattern!r}: {exc}") from exc
        return self


class LLMTransformationConfig(ConfigModel):
    """An LLM step: which provider to call and how to phrase the request."""

    kind: Literal["llm"] = "llm"
    provider_id: str = Field(alias="providerID")
    prompt_template: str
    tooling: Optional[ToolingConfiguration] = None

    @field_validator("prompt_template")
    @classmethod
    def _single_placeholder(cls, value: str) -> str:
        count = value.count(INPUT_PLACEHOLDER)
        if count != 1:
            raise ValueError(
                f"promptTemplate must contain {INPUT_PLACEHOLDER} exactly once (found {count})"
            )
        return value

    def render(self, text: str) -> str:
        return self.prompt_template.replace(INPUT_PLACEHOLDER, text)


TransformationType = Annotated[
    Union[SimpleOperation, AffixOperation, ReplaceTextConfig, LLMTransformationConfig],
    Field(discriminator="kind"),
]


def _from_keyed(key: str, value: Any) -> Any:
    # Older files encode the step as {"<kind>": payload}.
    if value is True:
        return {"kind": key}
    if key in ("addPrefix", "addSuffix") and isinstance(value, str):
        return {"kind": key, "text": value}
    if isinstance(value, dict):
        return {"kind": key, **value}
    return {key: value}


class Transformation(ConfigModel):
    id: str = Field(default_factory=_new_id)
    is_enabled: bool = True
    type: TransformationType

    @model_validator(mode="before")
    @classmethod
    def _accept_keyed_type(cls, data: Any) -> Any:
        if isinstance(data, dict):
            step = data.get("type")
            if isinstance(step, dict) and "kind" not in step and len(step) == 1:
                ((key, value),) = step.items()
                data = {**data, "type": _from_keyed(key, value)}
        return data

    @property
    def is_llm(self) -> bool:
        return isinstance(self.type, LLMTransformationConfig)

    @property
    def name(self) -> str:
        step = self.type
        if isinstance(step, ReplaceTextConfig):
            return f"Replace: {step.pattern}"
        if isinstance(step, AffixOperation):
            label = "Prefix" if step.kind == "addPrefix" else "Suffix"
            return f"{label}: {step.text}"
        if isinstance(step, LLMTransformationConfig):
            return f"LLM: {step.provider_id}"
        return _SIMPLE_NAMES[step.kind]


_SIMPLE_NAMES = {
    "uppercase": "UPPERCASE",
    "lowercase": "lowercase",
    "capitalize": "Title Case",
    "capitalizeFirst": "Capitalize first",
    "spongebobCase": "sPoNgEbOb cAsE",
    "trimWhitespace": "Trim whitespace",
    "removeExtraSpaces": "Remove extra spaces",
}


class Pipeline(ConfigModel):
    is_enabled: bool = True
    transformations: List[Transformation] = Field(default_factory=list)

    @property
    def enabled_transformations(self) -> List[Transformation]:
        if not self.is_enabled:
            return []
        return [step for step in self.transformations if step.is_enabled]


class TransformationMode(ConfigModel):
    """A named pipeline selected by voice prefix and/or frontmost application."""

    id: str = Field(default_factory=_new_id)
    name: str
    voice_prefixes: List[str] = Field(default_factory=list)
    applies_to_bundle_identifiers: List[str] = Field(default_factory=list)
    pipeline: Pipeline = Field(default_factory=Pipeline)
    auto_send_command: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_single_prefix(cls, data: Any) -> Any:
        if isinstance(data, dict) and "voicePrefixes" not in data and "voice_prefixes" not in data:
            prefix = data.get("voicePrefix")
            if isinstance(prefix, str):
                data = {**data, "voicePrefixes": [prefix]}
        return data

    @property
    def is_general(self) -> bool:
        return not self.voice_prefixes and not self.applies_to_bundle_identifiers

    def applies_to(self, bundle_identifier: Optional[str]) -> bool:
        if not bundle_identifier:
            return False
        lowered = bundle_identifier.lower()
        return any(candidate.lower() == lowered for candidate in self.applies_to_bundle_identifiers)


def general_mode() -> TransformationMode:
    return TransformationMode(name="General")


class TransformationsConfig(ConfigModel):
    """Root of the configuration file."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    modes: List[TransformationMode] = Field(
        default_factory=list,
        alias="modes",
        validation_alias=AliasChoices("modes", "stacks"),
    )
    providers: List[LLMProvider] = Field(default_factory=list)
    last_selected_mode_id: Optional[str] = Field(
        default=None,
        alias="lastSelectedModeID",
        validation_alias=AliasChoices("lastSelectedModeID", "lastSelectedStackID"),
    )

    @model_validator(mode="after")
    def _ensure_fallback_mode(self) -> "TransformationsConfig":
        if not self.modes:
            self.modes = [general_mode()]
        if self.last_selected_mode_id is None:
            fallback = next((mode for mode in self.modes if not mode.applies_to_bundle_identifiers), self.modes[0])
            self.last_selected_mode_id = fallback.id
        return self

    def provider(self, provider_id: str) -> Optional[LLMProvider]:
        return next((provider for provider in self.providers if provider.id == provider_id), None)

    def mode(self, mode_id: Optional[str]) -> Optional[TransformationMode]:
        if mode_id is None:
            return None
        return next((mode for mode in self.modes if mode.id == mode_id), None)
