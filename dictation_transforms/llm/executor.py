"""
Executing a single LLM step: provider lookup, capability and tooling
decisions, tool server startup and runtime dispatch.
"""

import logging
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

from ..transforms.models import (
    PREFERRED_PROVIDER_ID,
    LLMProvider,
    LLMProviderPreferences,
    LLMTransformationConfig,
    ToolServerEndpoint,
)
from .capabilities import ModelRegistry, ToolingPolicy, resolve_capabilities
from .errors import InvalidConfigurationError, ProviderNotFoundError
from .locator import ExecutableLocator
from .providers import LLMProviderRuntime, runtime_for

if TYPE_CHECKING:
    from ..tools.server import ToolServer

logger = logging.getLogger(__name__)


class LLMExecutor:
    """
    Runs LLM transformation steps against configured providers.

    One executor serves every LLM step of an app; it keeps no per-step
    state, so concurrent pipeline runs can share it.
    """

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        tool_server: Optional["ToolServer"] = None,
        preferences: Optional[LLMProviderPreferences] = None,
        locator: Optional[ExecutableLocator] = None,
        registry: Optional[ModelRegistry] = None,
    ):
        self.providers = list(providers)
        self.tool_server = tool_server
        self.preferences = preferences or LLMProviderPreferences()
        self.locator = locator or ExecutableLocator()
        self.registry = registry

    def _find(self, provider_id: Optional[str]) -> Optional[LLMProvider]:
        if not provider_id:
            return None
        return next((provider for provider in self.providers if provider.id == provider_id), None)

    def _with_preferred_model(self, provider: LLMProvider) -> LLMProvider:
        model = self.preferences.preferred_model_id
        if model and model != provider.default_model:
            return provider.model_copy(update={"default_model": model})
        return provider

    def resolve_provider(self, provider_id: str) -> Tuple[LLMProvider, str]:
        """
        Pick the provider that will run a step naming ``provider_id``.

        Returns:
            ``(provider, how)`` where ``how`` describes which rule matched.

        Raises:
            ProviderNotFoundError: If no providers are configured at all.
        """
        exact = self._find(provider_id)
        if exact is not None:
            return exact, "exact"

        preferred = self._find(self.preferences.preferred_provider_id)
        if provider_id == PREFERRED_PROVIDER_ID and preferred is not None:
            return self._with_preferred_model(preferred), "preferred"

        if preferred is not None:
            logger.warning(f"Provider '{provider_id}' not found; using preferred provider '{preferred.id}'")
            return preferred, "preferred-fallback"

        if self.providers:
            first = self.providers[0]
            logger.warning(f"Provider '{provider_id}' not found; using first configured provider '{first.id}'")
            return first, "first-fallback"

        raise ProviderNotFoundError(provider_id)

    async def run(self, config: LLMTransformationConfig, input_text: str) -> str:
        """
        Run one LLM step over ``input_text``.

        Raises:
            LLMExecutionError: From provider resolution, tool server
                startup or the runtime. Nothing is retried.
        """
        provider, _ = self.resolve_provider(config.provider_id)
        capabilities = resolve_capabilities(provider.type, provider.default_model, self.registry)
        policy = ToolingPolicy.evaluate(capabilities, config.tooling, provider.tooling)
        if policy.disabled_reason:
            logger.info(f"Tooling disabled for provider '{provider.id}': {policy.disabled_reason}")

        endpoint: Optional[ToolServerEndpoint] = None
        server_configuration = policy.server_configuration
        if server_configuration is not None:
            if self.tool_server is None:
                raise InvalidConfigurationError(
                    f"provider '{provider.id}' requested tools but no tool server is available"
                )
            endpoint = await self.tool_server.ensure_server(server_configuration)

        runtime = self.runtime_for(provider)
        logger.info(f"Dispatching LLM step to provider '{provider.id}' ({provider.type.value})")
        return await runtime.run(config, input_text, provider, policy, endpoint, capabilities)

    def runtime_for(self, provider: LLMProvider) -> LLMProviderRuntime:
        return runtime_for(provider, locator=self.locator)
