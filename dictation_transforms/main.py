"""
Main application entry point for LLM Dictation Transforms.

This module provides the command-line interface and wires mode matching,
the pipeline executor, LLM execution and the tool server together.
"""

import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import click
import pyperclip
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .llm.capabilities import ModelRegistry, bundled_registry, resolve_capabilities
from .llm.errors import LLMExecutionError
from .llm.executor import LLMExecutor
from .llm.locator import BINARY_NAMES, ExecutableLocator
from .tools.automation import ApplicationAutomation
from .tools.errors import ToolServerError
from .tools.server import ToolServer
from .transforms.models import (
    LLMProviderPreferences,
    ToolGroup,
    ToolServerConfiguration,
    TransformationMode,
    TransformationsConfig,
)
from .transforms.modes import match_mode
from .transforms.pipeline import PipelineExecutor
from .transforms.store import ConfigurationError, default_config_path, editing_guide, load_config
from .ui.terminal import TerminalUI

logger = logging.getLogger(__name__)

TRANSFORM_ERRORS = (LLMExecutionError, ConfigurationError, ToolServerError)


@dataclass
class TransformationOutcome:
    """Result of running dictated text through the matched mode."""

    text: str
    original_text: str
    mode: Optional[TransformationMode] = None
    matched_prefix: Optional[str] = None
    processing_time: float = 0.0


class TransformationApp:
    """
    Coordinates mode matching, pipelines and LLM execution.

    The app owns the tool server it is given and shuts it down in
    ``aclose``; the server itself only starts when an LLM step asks for
    tools.
    """

    def __init__(
        self,
        config: TransformationsConfig,
        tool_server: Optional[ToolServer] = None,
        preferences: Optional[LLMProviderPreferences] = None,
        locator: Optional[ExecutableLocator] = None,
        registry: Optional[ModelRegistry] = None,
    ):
        self.config = config
        self.tool_server = tool_server
        self.executor = LLMExecutor(
            config.providers,
            tool_server=tool_server,
            preferences=preferences,
            locator=locator,
            registry=registry,
        )
        self.pipeline_executor = PipelineExecutor(self.executor.run)

    async def process(self, text: str, bundle_identifier: Optional[str] = None) -> TransformationOutcome:
        """
        Transform dictated ``text`` typed into ``bundle_identifier``.

        Returns:
            The outcome; text passes through unchanged when no mode matches.

        Raises:
            LLMExecutionError: The first failing step's error.
        """
        start_time = time.time()
        match = match_mode(self.config.modes, text, bundle_identifier)
        if match is None:
            return TransformationOutcome(text=text, original_text=text, processing_time=time.time() - start_time)

        result = await self.pipeline_executor.process(match.mode.pipeline, match.text)
        return TransformationOutcome(
            text=result,
            original_text=text,
            mode=match.mode,
            matched_prefix=match.matched_prefix,
            processing_time=time.time() - start_time,
        )

    async def aclose(self) -> None:
        if self.tool_server is not None:
            await self.tool_server.shutdown()

    async def __aenter__(self) -> "TransformationApp":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


def _copy_to_clipboard(ui: TerminalUI, text: str) -> None:
    try:
        pyperclip.copy(text)
        ui.show_success("Copied to clipboard.")
    except pyperclip.PyperclipException as e:
        ui.console.print(f"[yellow]Could not copy to clipboard: {e}[/yellow]")


async def _frontmost_bundle_identifier() -> Optional[str]:
    try:
        frontmost = await ApplicationAutomation().frontmost_application()
    except ToolServerError as e:
        logger.warning(f"Frontmost application unavailable: {e}")
        return None
    return frontmost.bundle_identifier


async def run_transform(
    config: TransformationsConfig,
    text: str,
    bundle_identifier: Optional[str],
    preferences: LLMProviderPreferences,
    detect_frontmost: bool = False,
) -> TransformationOutcome:
    if detect_frontmost and not bundle_identifier:
        bundle_identifier = await _frontmost_bundle_identifier()
    async with TransformationApp(config, ToolServer(), preferences) as app:
        return await app.process(text, bundle_identifier)


def _load(config_path: Optional[str]) -> Tuple[TransformationsConfig, Path]:
    path = Path(config_path).expanduser() if config_path else default_config_path()
    return load_config(path), path


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """
    LLM Dictation Transforms - app-aware post-processing for dictated text.

    Runs dictated text through the transformation mode matching its voice
    prefix or target application. LLM steps call Claude Code, Ollama or a
    hosted API, optionally with access to a local automation tool server.
    """


@cli.command()
@click.argument("text", required=False)
@click.option("--app", "bundle_identifier", help="Bundle identifier of the target application")
@click.option("--frontmost", is_flag=True, help="Use the frontmost application as the target")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Configuration file")
@click.option("--provider", "provider_id", help="Preferred provider id (used by 'preferred-provider' steps)")
@click.option("--model", "model_id", help="Preferred model id for the preferred provider")
@click.option("--copy", "copy_result", is_flag=True, help="Copy the result to the clipboard")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging and match details")
def transform(
    text: Optional[str],
    bundle_identifier: Optional[str],
    frontmost: bool,
    config_path: Optional[str],
    provider_id: Optional[str],
    model_id: Optional[str],
    copy_result: bool,
    verbose: bool,
) -> None:
    """Transform TEXT (or stdin) with the matching mode."""
    configure_logging(verbose)
    ui = TerminalUI()

    if text is None:
        text = click.get_text_stream("stdin").read().rstrip("\n")

    preferences = LLMProviderPreferences(preferred_provider_id=provider_id, preferred_model_id=model_id)
    try:
        config, _ = _load(config_path)
        outcome = asyncio.run(run_transform(config, text, bundle_identifier, preferences, frontmost))
    except TRANSFORM_ERRORS as e:
        logger.debug("Transformation failed", exc_info=True)
        ui.show_error(e)
        ui.emit_text(text)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nTransformation interrupted by user.", err=True)
        ui.emit_text(text)
        sys.exit(130)

    ui.show_outcome(outcome, verbose=verbose)
    if copy_result:
        _copy_to_clipboard(ui, outcome.text)


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Configuration file")
def modes(config_path: Optional[str]) -> None:
    """List configured transformation modes."""
    configure_logging()
    ui = TerminalUI()
    try:
        config, _ = _load(config_path)
    except ConfigurationError as e:
        ui.show_error(e)
        sys.exit(1)
    ui.show_modes(config)


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Configuration file")
def providers(config_path: Optional[str]) -> None:
    """List configured providers with their binaries and capabilities."""
    configure_logging()
    ui = TerminalUI()
    try:
        config, _ = _load(config_path)
    except ConfigurationError as e:
        ui.show_error(e)
        sys.exit(1)

    locator = ExecutableLocator()
    registry = bundled_registry()
    rows = []
    for provider in config.providers:
        capabilities = resolve_capabilities(provider.type, provider.default_model, registry)
        binary = locator.resolve(provider) if provider.type in BINARY_NAMES else "(hosted API)"
        tools = capabilities.tool_reliability.value if capabilities.supports_tool_calling else "none"
        rows.append(
            {
                "id": provider.id,
                "type": provider.type.value,
                "model": provider.default_model,
                "binary": binary,
                "tools": tools,
                "context": capabilities.max_context_tokens,
            }
        )
    ui.show_providers(rows)
    ui.show_tool_groups()


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Configuration file")
def guide(config_path: Optional[str]) -> None:
    """Print the configuration editing guide."""
    path = Path(config_path).expanduser() if config_path else default_config_path()
    TerminalUI().show_guide(editing_guide(path))


async def _serve_tools(ui: TerminalUI, groups: List[ToolGroup], instructions: Optional[str]) -> None:
    server = ToolServer()
    try:
        endpoint = await server.ensure_server(
            ToolServerConfiguration(enabled_tool_groups=groups, instructions=instructions)
        )
        ui.show_server(endpoint.base_url, [group.value for group in groups])
        await server.wait_closed()
    finally:
        await server.shutdown()


@cli.command("serve-tools")
@click.option(
    "--group",
    "-g",
    "groups",
    multiple=True,
    type=click.Choice([group.value for group in ToolGroup]),
    help="Tool group to enable (repeatable)",
)
@click.option("--instructions", help="Instructions advertised with the endpoint")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def serve_tools(groups: Tuple[str, ...], instructions: Optional[str], verbose: bool) -> None:
    """Run the MCP tool server until interrupted."""
    configure_logging(verbose)
    ui = TerminalUI()
    try:
        asyncio.run(_serve_tools(ui, [ToolGroup(group) for group in groups], instructions))
    except KeyboardInterrupt:
        click.echo("\nTool server stopped.", err=True)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
