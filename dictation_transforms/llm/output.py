"""
Extracting the model's answer from provider CLI output.
"""

import json
from typing import Any, Optional

from .errors import InvalidOutputError


def _text_from_message(message: Any) -> Optional[str]:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    parts = [item["text"] for item in content if isinstance(item, dict) and isinstance(item.get("text"), str)]
    text = "\n".join(parts).strip()
    return text or None


def text_from_envelope(envelope: Any) -> Optional[str]:
    """
    Pull text out of a CLI JSON envelope.

    Accepted shapes: ``{"result": "..."}``, ``{"message": {"content": [{"text": ...}]}}``
    and ``{"content": [{"text": ...}]}``.
    """
    if not isinstance(envelope, dict):
        return None
    result = envelope.get("result")
    if isinstance(result, str) and result.strip():
        return result.strip()
    return _text_from_message(envelope.get("message")) or _text_from_message(envelope)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def parse_output(stdout: str) -> str:
    """
    Return the answer contained in ``stdout``.

    Tried in order: the whole output as one JSON envelope, the last line as
    a JSON envelope (streamed output), then the trimmed raw text.

    Raises:
        InvalidOutputError: If nothing usable is left.
    """
    text = text_from_envelope(_loads(stdout))
    if text:
        return text

    lines = [line for line in stdout.splitlines() if line.strip()]
    if lines:
        text = text_from_envelope(_loads(lines[-1]))
        if text:
            return text

    raw = stdout.strip()
    if not raw:
        raise InvalidOutputError("empty response")
    return raw
