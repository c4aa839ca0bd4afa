"""
Errors raised while executing an LLM transformation step.

Each error carries a ``kind`` so callers can word their message (and
suggest a fix) without matching on exception classes.
"""

from typing import Optional


class LLMExecutionError(Exception):
    """Base class for LLM step failures."""

    kind = "llm"


class InvalidConfigurationError(LLMExecutionError):
    kind = "configuration"

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"LLM provider configuration error: {message}")


class ProviderNotFoundError(InvalidConfigurationError):
    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        LLMExecutionError.__init__(self, f"LLM provider not found: {provider_id}")
        self.message = str(self)


class UnsupportedProviderError(InvalidConfigurationError):
    def __init__(self, provider_type: str):
        self.provider_type = provider_type
        LLMExecutionError.__init__(self, f"LLM provider type {provider_type} is not supported")
        self.message = str(self)


class ExecutableNotFoundError(InvalidConfigurationError):
    """No executable could be located for a CLI provider."""

    def __init__(self, provider_id: str, binary_name: str, hint: Optional[str] = None):
        self.provider_id = provider_id
        self.binary_name = binary_name
        self.hint = hint or f"Install {binary_name} or set binaryPath for provider '{provider_id}'."
        super().__init__(f"{binary_name} binary not found. {self.hint}")


class LLMTimeoutError(LLMExecutionError):
    kind = "timeout"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"LLM execution timed out after {timeout_seconds:g}s")


class ProcessFailedError(LLMExecutionError):
    """The provider process exited non-zero; ``stderr`` is kept verbatim."""

    kind = "process"

    def __init__(self, stderr: str, returncode: Optional[int] = None):
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"LLM process failed: {stderr}")


class RequestFailedError(LLMExecutionError):
    """A hosted API rejected or failed the request."""

    kind = "request"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(f"LLM request failed: {message}")


class InvalidOutputError(LLMExecutionError):
    """The provider succeeded but produced nothing usable."""

    kind = "output"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__("LLM returned invalid output" + (f": {detail}" if detail else ""))
