"""
LLM execution: locating provider binaries, resolving what a provider can
do, deciding whether tools are allowed, and running provider processes.
"""

from .errors import (
    ExecutableNotFoundError,
    InvalidConfigurationError,
    InvalidOutputError,
    LLMExecutionError,
    LLMTimeoutError,
    ProcessFailedError,
    ProviderNotFoundError,
    RequestFailedError,
    UnsupportedProviderError,
)

__all__ = [
    "ExecutableNotFoundError",
    "InvalidConfigurationError",
    "InvalidOutputError",
    "LLMExecutionError",
    "LLMTimeoutError",
    "ProcessFailedError",
    "ProviderNotFoundError",
    "RequestFailedError",
    "UnsupportedProviderError",
]
