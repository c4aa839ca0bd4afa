"""
Clipboard access for the context tools.

Tools talk to a ``Clipboard``; the system backend wraps pyperclip and tests
use an in-memory implementation.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import pyperclip

from .errors import ClipboardUnavailableError

logger = logging.getLogger(__name__)

PLAIN_TEXT_TYPE = "public.utf8-plain-text"


@dataclass
class ClipboardState:
    """Every item on the clipboard, each as ``{type: data}``."""

    items: List[Dict[str, bytes]] = field(default_factory=list)


class Clipboard(Protocol):
    def change_count(self) -> int: ...

    def read_text(self) -> Optional[str]: ...

    def available_types(self) -> List[str]: ...

    def snapshot(self) -> ClipboardState: ...

    def restore(self, state: ClipboardState) -> None: ...


class PyperclipClipboard:
    """
    System clipboard via pyperclip.

    pyperclip only exposes plain text, so snapshots hold a single text
    representation. There is no native change counter either: the count
    advances whenever a read observes different content than the last one.
    """

    def __init__(self):
        self._count = 0
        self._last: Optional[str] = None

    def _paste(self) -> str:
        try:
            return pyperclip.paste()
        except pyperclip.PyperclipException as e:
            logger.error(f"Clipboard read failed: {e}")
            raise ClipboardUnavailableError() from e

    def _observe(self) -> str:
        text = self._paste()
        if text != self._last:
            if self._last is not None:
                self._count += 1
            self._last = text
        return text

    def change_count(self) -> int:
        self._observe()
        return self._count

    def read_text(self) -> Optional[str]:
        text = self._observe()
        return text or None

    def available_types(self) -> List[str]:
        return [PLAIN_TEXT_TYPE] if self._observe() else []

    def snapshot(self) -> ClipboardState:
        text = self._observe()
        if not text:
            return ClipboardState()
        return ClipboardState(items=[{PLAIN_TEXT_TYPE: text.encode("utf-8")}])

    def restore(self, state: ClipboardState) -> None:
        text = ""
        for item in state.items:
            data = item.get(PLAIN_TEXT_TYPE)
            if data is not None:
                text = data.decode("utf-8", errors="replace")
                break
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            logger.error(f"Clipboard restore failed: {e}")
            raise ClipboardUnavailableError() from e
        self._observe()
