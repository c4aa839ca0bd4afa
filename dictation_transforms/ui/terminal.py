"""
Rich-based terminal output for the command-line interface.

Results go to stdout as plain text so the CLI composes with pipes; panels,
tables and errors are rendered on the console (stderr by default).
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..transforms.models import ToolGroup, TransformationsConfig

if TYPE_CHECKING:
    from ..main import TransformationOutcome

GUIDANCE: Dict[str, str] = {
    "configuration": "Check the provider and mode settings in your configuration file (see `dictation-transforms guide`).",
    "timeout": "Raise timeoutSeconds for the provider, or try again - the model might be slow to load.",
    "process": "Run the provider CLI by hand with the same prompt to see the full error.",
    "output": "The model answered with nothing usable; adjust the step's prompt template.",
    "request": "Check your internet connection and API keys.",
    "permission": "Enable the tool group in the step's tooling configuration.",
}


def guidance_for(error: BaseException) -> Optional[str]:
    return GUIDANCE.get(getattr(error, "kind", ""))


class TerminalUI:
    """
    Terminal presentation of transformation results and configuration.

    Args:
        console: Console for panels and tables; stderr when omitted
        output: Console the transformed text is written to; stdout when omitted
    """

    def __init__(self, console: Optional[Console] = None, output: Optional[Console] = None):
        self.console = console or Console(stderr=True)
        self.output = output or Console(highlight=False, soft_wrap=True)

    def emit_text(self, text: str) -> None:
        """Write transformed (or original) text to the output stream, unstyled."""
        self.output.print(text, markup=False, emoji=False, highlight=False)

    def show_outcome(self, outcome: "TransformationOutcome", verbose: bool = False) -> None:
        if verbose:
            mode = outcome.mode.name if outcome.mode else "none (pass-through)"
            details = Text()
            details.append("Mode: ", style="bold")
            details.append(mode)
            if outcome.matched_prefix:
                details.append("\nPrefix: ", style="bold")
                details.append(outcome.matched_prefix)
            details.append("\nTime: ", style="bold")
            details.append(f"{outcome.processing_time:.2f}s")
            self.console.print(
                Panel(details, title="Transformation", title_align="left", border_style="cyan", padding=(0, 1))
            )
        self.emit_text(outcome.text)

    def show_error(self, error: BaseException) -> None:
        """
        Display an error with guidance matched to its kind.

        Args:
            error: Exception to display
        """
        message = Text(f"transformation failed: {error}", style="red")
        guidance = guidance_for(error)
        if guidance:
            message.append(f"\n\n{guidance}", style="yellow")

        self.console.print(
            Panel(message, title="Error", title_align="center", border_style="red", padding=(1, 2))
        )

    def show_success(self, message: str) -> None:
        self.console.print(f"[green]{message}[/green]")

    def show_modes(self, config: TransformationsConfig) -> None:
        table = Table(
            title="Transformation Modes",
            title_style="bold cyan",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold white",
        )
        table.add_column("Name", style="magenta")
        table.add_column("Voice prefixes", style="cyan")
        table.add_column("Applications", style="white")
        table.add_column("Steps", style="green")

        for mode in config.modes:
            steps = ", ".join(step.name for step in mode.pipeline.enabled_transformations) or "-"
            table.add_row(
                mode.name,
                ", ".join(mode.voice_prefixes) or "-",
                ", ".join(mode.applies_to_bundle_identifiers) or "any",
                steps,
            )
        self.console.print(table)

    def show_providers(self, rows: List[Dict[str, Any]]) -> None:
        table = Table(
            title="LLM Providers",
            title_style="bold cyan",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold white",
        )
        table.add_column("ID", style="magenta")
        table.add_column("Type", style="cyan")
        table.add_column("Model", style="white")
        table.add_column("Binary", style="white")
        table.add_column("Tools", style="green")
        table.add_column("Context", style="yellow")

        for row in rows:
            table.add_row(
                row["id"],
                row["type"],
                row.get("model") or "-",
                row.get("binary") or "[red]not found[/red]",
                row["tools"],
                str(row["context"]) if row.get("context") else "-",
            )
        self.console.print(table)

    def show_tool_groups(self) -> None:
        table = Table(title="Tool Groups", title_style="bold cyan", box=box.ROUNDED)
        table.add_column("Group", style="magenta")
        table.add_column("Tools", style="cyan")
        table.add_column("Description", style="white")
        for group in ToolGroup:
            table.add_row(group.value, ", ".join(group.tool_names), group.description)
        self.console.print(table)

    def show_guide(self, guide: str) -> None:
        self.output.print(guide, markup=False, highlight=False)

    def show_server(self, base_url: str, groups: List[str]) -> None:
        content = Text()
        content.append("Endpoint: ", style="bold")
        content.append(base_url)
        content.append("\nTool groups: ", style="bold")
        content.append(", ".join(groups) or "none")
        content.append("\n\nPress Ctrl+C to stop.", style="dim")
        self.console.print(
            Panel(content, title="MCP Tool Server", title_align="center", border_style="green", padding=(1, 2))
        )
