"""
Provider runtimes: executing one LLM step against a configured backend.

CLI providers (Claude Code, Ollama) run as subprocesses with the prompt on
stdin. Hosted API providers (Anthropic, OpenAI) use their SDKs, called in a
worker thread so the event loop stays responsive.
"""

import asyncio
import json
import logging
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Type

import anthropic
import openai

from ..transforms.models import (
    TOOL_SERVER_NAME,
    LLMProvider,
    LLMTransformationConfig,
    ProviderType,
    ToolServerEndpoint,
)
from .capabilities import LLMProviderCapabilities, ToolingPolicy
from .errors import (
    ExecutableNotFoundError,
    InvalidConfigurationError,
    InvalidOutputError,
    LLMTimeoutError,
    ProcessFailedError,
    RequestFailedError,
    UnsupportedProviderError,
)
from .locator import ExecutableLocator
from .output import parse_output
from .process import ProcessResult, run_process

logger = logging.getLogger(__name__)

OUTPUT_ONLY_INSTRUCTION = (
    "IMPORTANT: Output ONLY the final result. Do not include explanations, "
    "preambles, quotes or formatting around the answer."
)
API_MAX_TOKENS = 4096


def build_user_prompt(config: LLMTransformationConfig, input_text: str) -> str:
    """Render the step's template around ``input_text``."""
    return f"{config.render(input_text)}\n\n{OUTPUT_ONLY_INSTRUCTION}"


class LLMProviderRuntime(ABC):
    """Executes LLM steps for one provider type."""

    default_timeout: float = 60.0

    def __init__(
        self,
        locator: Optional[ExecutableLocator] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.locator = locator or ExecutableLocator(environ)
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def timeout_for(self, provider: LLMProvider) -> float:
        return provider.timeout_seconds or self.default_timeout

    def working_directory_for(self, provider: LLMProvider) -> Optional[str]:
        if not provider.working_directory:
            return None
        path = os.path.expanduser(provider.working_directory)
        if not os.path.isdir(path):
            raise InvalidConfigurationError(
                f"working directory for provider '{provider.id}' does not exist: {path}"
            )
        return path

    @abstractmethod
    async def run(
        self,
        config: LLMTransformationConfig,
        input_text: str,
        provider: LLMProvider,
        policy: ToolingPolicy,
        endpoint: Optional[ToolServerEndpoint],
        capabilities: LLMProviderCapabilities,
    ) -> str:
        """
        Run one step and return the model's answer.

        Raises:
            LLMExecutionError: A typed failure (configuration, timeout,
                process, request or output).
        """


def _failure_message(result: ProcessResult, program: str) -> str:
    message = result.stderr.strip()
    return message or f"{program} exited with code {result.returncode}"


# -- Claude Code -------------------------------------------------------------------


@dataclass
class ClaudeWorkspace:
    """Scratch directory for one Claude CLI invocation."""

    root: str
    debug_log: str
    mcp_config_path: Optional[str] = None

    @classmethod
    def create(cls, endpoint: Optional[ToolServerEndpoint]) -> "ClaudeWorkspace":
        root = tempfile.mkdtemp(prefix="dictation-claude-")
        debug_dir = os.path.join(root, "debug")
        os.makedirs(debug_dir, exist_ok=True)
        debug_log = os.path.join(debug_dir, "claude.log")
        open(debug_log, "a").close()

        mcp_config_path = None
        if endpoint is not None:
            mcp_config_path = os.path.join(root, ".mcp.json")
            document = {"mcpServers": {endpoint.server_name: {"type": "http", "url": endpoint.base_url}}}
            with open(mcp_config_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
        return cls(root=root, debug_log=debug_log, mcp_config_path=mcp_config_path)

    def cleanup(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


class ClaudeCodeProviderRuntime(LLMProviderRuntime):
    """Runs the ``claude`` CLI in print mode with JSON output."""

    default_timeout = 20.0

    def build_arguments(
        self,
        binary: str,
        provider: LLMProvider,
        policy: ToolingPolicy,
        workspace: ClaudeWorkspace,
        endpoint: Optional[ToolServerEndpoint],
    ) -> List[str]:
        argv = [binary, "-p", "--output-format", "json"]
        if provider.default_model:
            argv += ["--model", provider.default_model]
        if workspace.mcp_config_path:
            argv += ["--mcp-config", workspace.mcp_config_path]

        server_name = endpoint.server_name if endpoint is not None else TOOL_SERVER_NAME
        allowed = policy.allowed_tool_identifiers(server_name)
        if allowed:
            joined = ",".join(sorted(allowed))
            logger.info(f"Allowing Claude tools: {joined}")
            argv += ["--allowed-tools", joined]

        if endpoint is not None and endpoint.instructions:
            argv += ["--append-system-prompt", endpoint.instructions]
        argv += ["--permission-mode", "bypassPermissions"]
        return argv

    async def run(
        self,
        config: LLMTransformationConfig,
        input_text: str,
        provider: LLMProvider,
        policy: ToolingPolicy,
        endpoint: Optional[ToolServerEndpoint],
        capabilities: LLMProviderCapabilities,
    ) -> str:
        binary = self.locator.resolve(provider)
        if binary is None:
            raise ExecutableNotFoundError(
                provider.id, "claude", "Install Claude Code or set binaryPath for this provider."
            )

        cwd = self.working_directory_for(provider)
        prompt = build_user_prompt(config, input_text)
        workspace = ClaudeWorkspace.create(endpoint)
        preserve_workspace = False
        try:
            argv = self.build_arguments(binary, provider, policy, workspace, endpoint)
            env = dict(self.environ)
            env["CLAUDE_CODE_SKIP_UPDATE_CHECK"] = "1"
            env["CLAUDE_CODE_DEBUG_LOGS_DIR"] = workspace.debug_log
            env["PATH"] = self.locator.executable_search_path(env.get("PATH"))

            timeout = self.timeout_for(provider)
            logger.info(f"Launching Claude CLI provider: {provider.id}")

            result = await run_process(argv, prompt, env=env, cwd=cwd, timeout=timeout)

            if result.returncode != 0:
                preserve_workspace = True
                message = _failure_message(result, "Claude CLI")
                logger.error(f"Claude CLI failed ({result.returncode}): {message}")
                raise ProcessFailedError(message, result.returncode)

            text = parse_output(result.stdout)
            logger.info(f"Claude returned {len(text)} chars in {result.duration:.2f}s")
            return text
        finally:
            if preserve_workspace:
                logger.error(f"Preserving Claude temp files for debugging at {workspace.root}")
            else:
                workspace.cleanup()


# -- Ollama ------------------------------------------------------------------------


class OllamaProviderRuntime(LLMProviderRuntime):
    """Runs ``ollama run <model>``; text in, text out."""

    default_timeout = 60.0

    async def run(
        self,
        config: LLMTransformationConfig,
        input_text: str,
        provider: LLMProvider,
        policy: ToolingPolicy,
        endpoint: Optional[ToolServerEndpoint],
        capabilities: LLMProviderCapabilities,
    ) -> str:
        model = (provider.default_model or "").strip()
        if not model:
            raise InvalidConfigurationError("Ollama provider missing defaultModel")

        if capabilities.supports_tool_calling:
            logger.info("Ollama provider marked as tool-capable but runtime is text-only")
        if policy.disabled_reason:
            logger.info(f"Tooling disabled for Ollama provider {provider.id}: {policy.disabled_reason}")

        binary = self.locator.resolve(provider)
        if binary is None:
            raise ExecutableNotFoundError(provider.id, "ollama", "Install Ollama or set binaryPath for this provider.")

        env = dict(self.environ)
        env["PATH"] = self.locator.executable_search_path(env.get("PATH"))
        cwd = self.working_directory_for(provider)

        result = await run_process(
            [binary, "run", model],
            build_user_prompt(config, input_text),
            env=env,
            cwd=cwd,
            timeout=self.timeout_for(provider),
        )

        if result.returncode != 0:
            message = _failure_message(result, "Ollama")
            logger.error(f"Ollama failed ({result.returncode}): {message}")
            raise ProcessFailedError(message, result.returncode)

        output = result.stdout.strip()
        if not output:
            raise InvalidOutputError("empty response")
        logger.info(f"Ollama returned {len(output)} chars in {result.duration:.2f}s")
        return output


# -- Hosted APIs ---------------------------------------------------------------------


class HostedAPIProviderRuntime(LLMProviderRuntime):
    """Shared plumbing for SDK-backed providers."""

    default_timeout = 30.0
    api_key_env_var = ""
    label = ""

    def api_key(self, provider: LLMProvider) -> str:
        key = provider.api_key.resolve(self.environ) if provider.api_key else self.environ.get(self.api_key_env_var)
        if not key:
            raise InvalidConfigurationError(
                f"{self.label} provider '{provider.id}' has no API key (set apiKey or {self.api_key_env_var})"
            )
        return key

    def model(self, provider: LLMProvider) -> str:
        if not provider.default_model:
            raise InvalidConfigurationError(f"{self.label} provider '{provider.id}' missing defaultModel")
        return provider.default_model

    @abstractmethod
    def _complete(self, provider: LLMProvider, api_key: str, model: str, prompt: str, timeout: float) -> str:
        """Blocking SDK call; runs in a worker thread."""

    async def run(
        self,
        config: LLMTransformationConfig,
        input_text: str,
        provider: LLMProvider,
        policy: ToolingPolicy,
        endpoint: Optional[ToolServerEndpoint],
        capabilities: LLMProviderCapabilities,
    ) -> str:
        api_key = self.api_key(provider)
        model = self.model(provider)
        if policy.effective_tooling is not None and policy.effective_tooling.enabled_tool_groups:
            logger.warning(f"{self.label} runtime is text-only; tool groups for '{provider.id}' are ignored")

        timeout = self.timeout_for(provider)
        prompt = build_user_prompt(config, input_text)
        start_time = time.time()

        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(None, self._complete, provider, api_key, model, prompt, timeout)

        text = (text or "").strip()
        if not text:
            raise InvalidOutputError("empty response")
        logger.info(f"{self.label} returned {len(text)} chars in {time.time() - start_time:.2f}s")
        return text


class AnthropicAPIProviderRuntime(HostedAPIProviderRuntime):
    api_key_env_var = "ANTHROPIC_API_KEY"
    label = "Anthropic"

    def _complete(self, provider: LLMProvider, api_key: str, model: str, prompt: str, timeout: float) -> str:
        client = anthropic.Anthropic(api_key=api_key, base_url=provider.base_url, timeout=timeout)
        try:
            response = client.messages.create(
                model=model,
                max_tokens=API_MAX_TOKENS,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as e:
            raise LLMTimeoutError(timeout) from e
        except anthropic.APIStatusError as e:
            raise RequestFailedError(str(e), e.status_code) from e
        except anthropic.APIError as e:
            raise RequestFailedError(str(e)) from e

        return "\n".join(block.text for block in response.content if getattr(block, "type", None) == "text")


class OpenAIProviderRuntime(HostedAPIProviderRuntime):
    api_key_env_var = "OPENAI_API_KEY"
    label = "OpenAI"

    def _complete(self, provider: LLMProvider, api_key: str, model: str, prompt: str, timeout: float) -> str:
        client = openai.OpenAI(
            api_key=api_key,
            base_url=provider.base_url,
            organization=provider.organization,
            timeout=timeout,
        )
        try:
            response = client.chat.completions.create(
                model=model,
                max_tokens=API_MAX_TOKENS,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.APITimeoutError as e:
            raise LLMTimeoutError(timeout) from e
        except openai.APIStatusError as e:
            raise RequestFailedError(str(e), e.status_code) from e
        except openai.APIError as e:
            raise RequestFailedError(str(e)) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


RUNTIMES: Dict[ProviderType, Type[LLMProviderRuntime]] = {
    ProviderType.CLAUDE_CODE: ClaudeCodeProviderRuntime,
    ProviderType.OLLAMA: OllamaProviderRuntime,
    ProviderType.ANTHROPIC_API: AnthropicAPIProviderRuntime,
    ProviderType.OPENAI: OpenAIProviderRuntime,
}


def runtime_for(
    provider: LLMProvider,
    locator: Optional[ExecutableLocator] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LLMProviderRuntime:
    """
    Instantiate the runtime for ``provider.type``.

    Raises:
        UnsupportedProviderError: If no runtime handles the type.
    """
    runtime_cls = RUNTIMES.get(provider.type)
    if runtime_cls is None:
        raise UnsupportedProviderError(str(provider.type))
    return runtime_cls(locator=locator, environ=environ)
