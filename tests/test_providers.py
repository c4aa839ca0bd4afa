"""
Tests for the provider runtimes.

CLI providers are exercised against shell scripts that record how they were
invoked; the hosted API clients are patched.
"""

import json
import os
import shutil
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import anthropic
import httpx
import openai
import pytest

from dictation_transforms.llm.capabilities import ToolingPolicy, default_capabilities
from dictation_transforms.llm.errors import (
    ExecutableNotFoundError,
    InvalidConfigurationError,
    InvalidOutputError,
    LLMTimeoutError,
    ProcessFailedError,
    RequestFailedError,
    UnsupportedProviderError,
)
from dictation_transforms.llm.locator import ExecutableLocator
from dictation_transforms.llm.providers import (
    OUTPUT_ONLY_INSTRUCTION,
    AnthropicAPIProviderRuntime,
    ClaudeCodeProviderRuntime,
    ClaudeWorkspace,
    OllamaProviderRuntime,
    OpenAIProviderRuntime,
    build_user_prompt,
    runtime_for,
)
from dictation_transforms.transforms.models import (
    LLMProvider,
    LLMTransformationConfig,
    ProviderType,
    SecretReference,
    ToolGroup,
    ToolingConfiguration,
    ToolServerEndpoint,
)

ENDPOINT = ToolServerEndpoint(base_url="http://127.0.0.1:4321/mcp", instructions="Prefer the tools.")


def step(template="Fix: {{input}}", tooling=None):
    return LLMTransformationConfig(provider_id="p", prompt_template=template, tooling=tooling)


def policy_for(provider_type, *groups):
    tooling = ToolingConfiguration(enabled_tool_groups=list(groups)) if groups else None
    return ToolingPolicy.evaluate(default_capabilities(provider_type), tooling)


def recording_script(write_script, record_dir, name, tail):
    """A stub CLI that writes its argv, stdin and a few env vars under ``record_dir``."""
    record_dir.mkdir(exist_ok=True)
    body = f"""
for arg in "$@"; do printf '%s\\n' "$arg" >> "{record_dir}/argv"; done
prev=""
for arg in "$@"; do
  if [ "$prev" = "--mcp-config" ]; then cp "$arg" "{record_dir}/mcp.json"; fi
  prev="$arg"
done
cat > "{record_dir}/stdin"
printf '%s\\n' "$CLAUDE_CODE_SKIP_UPDATE_CHECK" "$CLAUDE_CODE_DEBUG_LOGS_DIR" "$PATH" > "{record_dir}/env"
{tail}
"""
    return write_script(name, body)


def read_lines(path):
    return path.read_text().splitlines()


class TestPrompt:
    def test_prompt_wraps_template(self):
        prompt = build_user_prompt(step(), "teh text")
        assert prompt.startswith("Fix: teh text\n\n")
        assert prompt.endswith(OUTPUT_ONLY_INSTRUCTION)


class TestClaudeWorkspace:
    def test_writes_mcp_config(self):
        workspace = ClaudeWorkspace.create(ENDPOINT)
        try:
            with open(workspace.mcp_config_path) as f:
                document = json.load(f)
            assert document == {"mcpServers": {"dictation-tools": {"type": "http", "url": ENDPOINT.base_url}}}
            assert os.path.isfile(workspace.debug_log)
        finally:
            workspace.cleanup()
        assert not os.path.exists(workspace.root)

    def test_no_endpoint_no_config(self):
        workspace = ClaudeWorkspace.create(None)
        try:
            assert workspace.mcp_config_path is None
        finally:
            workspace.cleanup()


@pytest.mark.asyncio
class TestClaudeCodeRuntime:
    def runtime(self, environ, home):
        return ClaudeCodeProviderRuntime(locator=ExecutableLocator(environ, home=home), environ=environ)

    async def test_success_with_tools(self, write_script, isolated_environ, tmp_path):
        record = tmp_path / "record"
        script = recording_script(write_script, record, "claude", """echo '{"type":"result","result":"Fixed text."}'""")
        provider = LLMProvider(id="p", type=ProviderType.CLAUDE_CODE, binary_path=script, default_model="sonnet")
        policy = policy_for(ProviderType.CLAUDE_CODE, ToolGroup.CONTEXT)

        runtime = self.runtime(isolated_environ, tmp_path)
        result = await runtime.run(step(), "teh text", provider, policy, ENDPOINT, policy.capabilities)

        assert result == "Fixed text."
        argv = read_lines(record / "argv")
        assert argv[:3] == ["-p", "--output-format", "json"]
        assert argv[argv.index("--model") + 1] == "sonnet"
        assert argv[argv.index("--allowed-tools") + 1] == (
            "mcp__dictation-tools__getClipboardText,mcp__dictation-tools__getSelectedText"
        )
        assert argv[argv.index("--append-system-prompt") + 1] == "Prefer the tools."
        assert argv[-2:] == ["--permission-mode", "bypassPermissions"]

        mcp = json.loads((record / "mcp.json").read_text())
        assert mcp["mcpServers"]["dictation-tools"]["url"] == ENDPOINT.base_url

        stdin = (record / "stdin").read_text()
        assert stdin.startswith("Fix: teh text")

        skip_update, debug_log, path = read_lines(record / "env")
        assert skip_update == "1"
        assert debug_log.endswith(os.path.join("debug", "claude.log"))
        assert not os.path.exists(debug_log)
        assert "/usr/local/bin" in path.split(os.pathsep)

    async def test_no_tools_without_endpoint(self, write_script, isolated_environ, tmp_path):
        record = tmp_path / "record"
        script = recording_script(write_script, record, "claude", "echo plain answer")
        provider = LLMProvider(id="p", type=ProviderType.CLAUDE_CODE, binary_path=script)
        policy = policy_for(ProviderType.CLAUDE_CODE)

        result = await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

        assert result == "plain answer"
        argv = read_lines(record / "argv")
        assert "--mcp-config" not in argv
        assert "--allowed-tools" not in argv
        assert "--model" not in argv

    async def test_failure_preserves_workspace(self, write_script, isolated_environ, tmp_path):
        record = tmp_path / "record"
        script = recording_script(write_script, record, "claude", 'echo "rate limited" >&2; exit 1')
        provider = LLMProvider(id="p", type=ProviderType.CLAUDE_CODE, binary_path=script)
        policy = policy_for(ProviderType.CLAUDE_CODE)

        with pytest.raises(ProcessFailedError) as exc_info:
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

        assert exc_info.value.stderr == "rate limited"
        assert exc_info.value.returncode == 1
        assert str(exc_info.value) == "LLM process failed: rate limited"
        debug_log = read_lines(record / "env")[1]
        assert os.path.exists(debug_log)
        shutil.rmtree(os.path.dirname(os.path.dirname(debug_log)))

    async def test_silent_failure_reports_exit_code(self, write_script, isolated_environ, tmp_path):
        script = write_script("claude", "cat >/dev/null; exit 3")
        provider = LLMProvider(id="p", type=ProviderType.CLAUDE_CODE, binary_path=script)
        policy = policy_for(ProviderType.CLAUDE_CODE)

        with pytest.raises(ProcessFailedError, match="exited with code 3"):
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

    async def test_timeout_from_provider(self, write_script, isolated_environ, tmp_path):
        script = write_script("claude", "exec sleep 30")
        provider = LLMProvider(id="p", type=ProviderType.CLAUDE_CODE, binary_path=script, timeout_seconds=0.3)
        policy = policy_for(ProviderType.CLAUDE_CODE)

        with pytest.raises(LLMTimeoutError):
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

    async def test_missing_binary(self, isolated_environ, tmp_path):
        runtime = self.runtime(isolated_environ, tmp_path)
        provider = LLMProvider(id="p", type=ProviderType.CLAUDE_CODE)
        policy = policy_for(ProviderType.CLAUDE_CODE)

        with patch.object(runtime.locator, "resolve", return_value=None):
            with pytest.raises(ExecutableNotFoundError) as exc_info:
                await runtime.run(step(), "x", provider, policy, None, policy.capabilities)
        assert exc_info.value.binary_name == "claude"
        assert exc_info.value.kind == "configuration"

    async def test_missing_working_directory(self, write_script, isolated_environ, tmp_path):
        script = write_script("claude", "echo never")
        provider = LLMProvider(
            id="p", type=ProviderType.CLAUDE_CODE, binary_path=script, working_directory=str(tmp_path / "gone")
        )
        policy = policy_for(ProviderType.CLAUDE_CODE)

        with pytest.raises(InvalidConfigurationError, match="does not exist"):
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)


@pytest.mark.asyncio
class TestOllamaRuntime:
    def runtime(self, environ, home):
        return OllamaProviderRuntime(locator=ExecutableLocator(environ, home=home), environ=environ)

    async def test_runs_model_and_returns_raw_text(self, write_script, isolated_environ, tmp_path):
        record = tmp_path / "record"
        script = recording_script(write_script, record, "ollama", "printf '  Fixed text.  \\n'")
        provider = LLMProvider(id="p", type=ProviderType.OLLAMA, binary_path=script, default_model="llama3.1:8b")
        policy = policy_for(ProviderType.OLLAMA, ToolGroup.CONTEXT)

        result = await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

        assert result == "Fixed text."
        assert read_lines(record / "argv") == ["run", "llama3.1:8b"]
        assert policy.disabled_reason == "provider does not support tool calling"

    async def test_json_is_not_unwrapped(self, write_script, isolated_environ, tmp_path):
        script = write_script("ollama", """cat >/dev/null; echo '{"result": "x"}'""")
        provider = LLMProvider(id="p", type=ProviderType.OLLAMA, binary_path=script, default_model="m")
        policy = policy_for(ProviderType.OLLAMA)

        result = await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)
        assert result == '{"result": "x"}'

    async def test_missing_model(self, isolated_environ, tmp_path):
        provider = LLMProvider(id="p", type=ProviderType.OLLAMA, default_model="  ")
        policy = policy_for(ProviderType.OLLAMA)
        with pytest.raises(InvalidConfigurationError, match="missing defaultModel"):
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

    async def test_failure(self, write_script, isolated_environ, tmp_path):
        script = write_script("ollama", 'cat >/dev/null; echo "model not found" >&2; exit 1')
        provider = LLMProvider(id="p", type=ProviderType.OLLAMA, binary_path=script, default_model="m")
        policy = policy_for(ProviderType.OLLAMA)
        with pytest.raises(ProcessFailedError, match="model not found"):
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

    async def test_empty_output(self, write_script, isolated_environ, tmp_path):
        script = write_script("ollama", "cat >/dev/null; echo")
        provider = LLMProvider(id="p", type=ProviderType.OLLAMA, binary_path=script, default_model="m")
        policy = policy_for(ProviderType.OLLAMA)
        with pytest.raises(InvalidOutputError):
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)

    async def test_missing_working_directory(self, write_script, isolated_environ, tmp_path):
        script = write_script("ollama", "echo never")
        provider = LLMProvider(
            id="p", type=ProviderType.OLLAMA, binary_path=script, default_model="m", working_directory="/nonexistent/dir"
        )
        policy = policy_for(ProviderType.OLLAMA)
        with pytest.raises(InvalidConfigurationError) as exc_info:
            await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)
        assert exc_info.value.kind == "configuration"

    async def test_working_directory_is_used(self, write_script, isolated_environ, tmp_path):
        workdir = tmp_path / "work"
        workdir.mkdir()
        script = write_script("ollama", "cat >/dev/null; pwd")
        provider = LLMProvider(
            id="p", type=ProviderType.OLLAMA, binary_path=script, default_model="m", working_directory=str(workdir)
        )
        policy = policy_for(ProviderType.OLLAMA)
        result = await self.runtime(isolated_environ, tmp_path).run(step(), "x", provider, policy, None, policy.capabilities)
        assert os.path.realpath(result) == os.path.realpath(str(workdir))


def _request():
    return httpx.Request("POST", "https://api.example.test/v1")


@pytest.mark.asyncio
class TestAnthropicRuntime:
    provider = LLMProvider(
        id="p",
        type=ProviderType.ANTHROPIC_API,
        default_model="claude-3-5-haiku-latest",
        api_key=SecretReference(storage="environment", value="MY_ANTHROPIC_KEY"),
    )

    async def run(self, environ=None, provider=None):
        runtime = AnthropicAPIProviderRuntime(environ=environ if environ is not None else {"MY_ANTHROPIC_KEY": "sk-test"})
        policy = policy_for(ProviderType.ANTHROPIC_API)
        return await runtime.run(step(), "teh text", provider or self.provider, policy, None, policy.capabilities)

    async def test_returns_text_blocks(self):
        response = SimpleNamespace(
            content=[SimpleNamespace(type="text", text=" Fixed "), SimpleNamespace(type="tool_use", id="t1")]
        )
        with patch("dictation_transforms.llm.providers.anthropic.Anthropic") as client_cls:
            client_cls.return_value.messages.create.return_value = response
            result = await self.run()

        assert result == "Fixed"
        client_cls.assert_called_once_with(api_key="sk-test", base_url=None, timeout=30.0)
        kwargs = client_cls.return_value.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-3-5-haiku-latest"
        assert kwargs["messages"][0]["content"].startswith("Fix: teh text")

    async def test_default_env_var_key(self):
        provider = self.provider.model_copy(update={"api_key": None})
        with patch("dictation_transforms.llm.providers.anthropic.Anthropic") as client_cls:
            client_cls.return_value.messages.create.return_value = SimpleNamespace(
                content=[SimpleNamespace(type="text", text="ok")]
            )
            assert await self.run({"ANTHROPIC_API_KEY": "from-env"}, provider) == "ok"
        assert client_cls.call_args.kwargs["api_key"] == "from-env"

    async def test_missing_key(self):
        with pytest.raises(InvalidConfigurationError, match="no API key"):
            await self.run({})

    async def test_missing_model(self):
        provider = self.provider.model_copy(update={"default_model": None})
        with pytest.raises(InvalidConfigurationError, match="missing defaultModel"):
            await self.run(provider=provider)

    async def test_status_error_maps_to_request_failure(self):
        error = anthropic.RateLimitError(
            "rate limited", response=httpx.Response(429, request=_request()), body=None
        )
        with patch("dictation_transforms.llm.providers.anthropic.Anthropic") as client_cls:
            client_cls.return_value.messages.create.side_effect = error
            with pytest.raises(RequestFailedError) as exc_info:
                await self.run()
        assert exc_info.value.status_code == 429
        assert exc_info.value.kind == "request"

    async def test_timeout_maps_to_timeout_error(self):
        with patch("dictation_transforms.llm.providers.anthropic.Anthropic") as client_cls:
            client_cls.return_value.messages.create.side_effect = anthropic.APITimeoutError(request=_request())
            with pytest.raises(LLMTimeoutError):
                await self.run()

    async def test_empty_reply(self):
        with patch("dictation_transforms.llm.providers.anthropic.Anthropic") as client_cls:
            client_cls.return_value.messages.create.return_value = SimpleNamespace(content=[])
            with pytest.raises(InvalidOutputError):
                await self.run()


@pytest.mark.asyncio
class TestOpenAIRuntime:
    provider = LLMProvider(
        id="p",
        type=ProviderType.OPENAI,
        default_model="gpt-4o-mini",
        base_url="http://localhost:8080/v1",
        organization="org-1",
        timeout_seconds=12,
        api_key=SecretReference(storage="literal", value="sk-literal"),
    )

    async def run(self):
        runtime = OpenAIProviderRuntime(environ={})
        policy = policy_for(ProviderType.OPENAI, ToolGroup.APP_CONTROL)
        return await runtime.run(step(), "text", self.provider, policy, None, policy.capabilities)

    async def test_returns_first_choice(self):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=" Done. "))])
        with patch("dictation_transforms.llm.providers.openai.OpenAI") as client_cls:
            client_cls.return_value.chat.completions.create.return_value = response
            assert await self.run() == "Done."
        client_cls.assert_called_once_with(
            api_key="sk-literal", base_url="http://localhost:8080/v1", organization="org-1", timeout=12.0
        )

    async def test_no_choices_is_invalid_output(self):
        with patch("dictation_transforms.llm.providers.openai.OpenAI") as client_cls:
            client_cls.return_value.chat.completions.create.return_value = SimpleNamespace(choices=[])
            with pytest.raises(InvalidOutputError):
                await self.run()

    async def test_status_error(self):
        error = openai.AuthenticationError(
            "bad key", response=httpx.Response(401, request=_request()), body=None
        )
        with patch("dictation_transforms.llm.providers.openai.OpenAI") as client_cls:
            client_cls.return_value.chat.completions.create.side_effect = error
            with pytest.raises(RequestFailedError) as exc_info:
                await self.run()
        assert exc_info.value.status_code == 401


class TestRuntimeFor:
    @pytest.mark.parametrize(
        "provider_type,runtime_cls",
        [
            (ProviderType.CLAUDE_CODE, ClaudeCodeProviderRuntime),
            (ProviderType.OLLAMA, OllamaProviderRuntime),
            (ProviderType.ANTHROPIC_API, AnthropicAPIProviderRuntime),
            (ProviderType.OPENAI, OpenAIProviderRuntime),
        ],
    )
    def test_known_types(self, provider_type, runtime_cls):
        locator = MagicMock(spec=ExecutableLocator)
        runtime = runtime_for(LLMProvider(id="p", type=provider_type), locator=locator)
        assert isinstance(runtime, runtime_cls)
        assert runtime.locator is locator

    def test_unknown_type(self):
        provider = LLMProvider.model_construct(id="p", type="carrier-pigeon")
        with pytest.raises(UnsupportedProviderError):
            runtime_for(provider)

    def test_timeouts(self):
        assert ClaudeCodeProviderRuntime().timeout_for(LLMProvider(id="p", type=ProviderType.CLAUDE_CODE)) == 20.0
        assert OllamaProviderRuntime().timeout_for(LLMProvider(id="p", type=ProviderType.OLLAMA, timeout_seconds=5)) == 5
