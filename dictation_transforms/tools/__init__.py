"""
Automation tools and the MCP server that exposes them to LLM providers.
"""

from .automation import ApplicationAutomation
from .clipboard import Clipboard, ClipboardState, PyperclipClipboard
from .server import ToolServer, ToolService

__all__ = [
    "ApplicationAutomation",
    "Clipboard",
    "ClipboardState",
    "PyperclipClipboard",
    "ToolServer",
    "ToolService",
]
