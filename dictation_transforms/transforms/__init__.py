"""Transformation modes, pipelines and their configuration file."""

from .models import (
    LLMProvider,
    LLMProviderPreferences,
    LLMTransformationConfig,
    Pipeline,
    ProviderType,
    ReplaceTextConfig,
    ToolGroup,
    ToolingConfiguration,
    ToolServerConfiguration,
    ToolServerEndpoint,
    Transformation,
    TransformationMode,
    TransformationsConfig,
)
from .modes import ModeMatch, MatchTier, match_mode
from .pipeline import PipelineExecutor, apply_local

__all__ = [
    "LLMProvider",
    "LLMProviderPreferences",
    "LLMTransformationConfig",
    "MatchTier",
    "ModeMatch",
    "Pipeline",
    "PipelineExecutor",
    "ProviderType",
    "ReplaceTextConfig",
    "ToolGroup",
    "ToolServerConfiguration",
    "ToolServerEndpoint",
    "ToolingConfiguration",
    "Transformation",
    "TransformationMode",
    "TransformationsConfig",
    "apply_local",
    "match_mode",
]
