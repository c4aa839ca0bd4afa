"""
Loading and saving the transformations configuration file.

The file is a single JSON document that humans and LLM agents edit in
place: load the whole structure, change it, write it back. Older schema
versions are migrated on load; saves always use the current version.
"""

import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .models import CURRENT_SCHEMA_VERSION, TransformationsConfig, general_mode

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DICTATION_TRANSFORMS_CONFIG"
APP_DIRECTORY_NAME = "dictation-transforms"
CONFIG_FILE_NAME = "text_transformations.json"


class ConfigurationError(Exception):
    """The configuration file could not be read or is invalid."""

    kind = "configuration"

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


def default_config_path() -> Path:
    """Resolve where the configuration file lives on this machine."""
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()

    if sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.getenv("XDG_CONFIG_HOME") or Path.home() / ".config")
    return base / APP_DIRECTORY_NAME / CONFIG_FILE_NAME


def migrate(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring a decoded document up to the current schema.

    Args:
        raw: The JSON object as read from disk

    Returns:
        A new dictionary in current-schema shape.
    """
    version = raw.get("schemaVersion", 0)
    if not isinstance(version, int):
        raise ValueError(f"schemaVersion must be an integer, got {version!r}")

    migrated = dict(raw)
    if version < 2:
        legacy_pipeline = migrated.pop("pipeline", None) or {}
        migrated["modes"] = [{**general_mode().to_json_dict(), "pipeline": legacy_pipeline}]
        migrated.pop("stacks", None)
    if version < 3:
        migrated.pop("providers", None)

    if version != CURRENT_SCHEMA_VERSION:
        logger.info(f"Migrating transformations config from schema {version} to {CURRENT_SCHEMA_VERSION}")
    migrated["schemaVersion"] = max(version, CURRENT_SCHEMA_VERSION)
    return migrated


def parse_config(raw: Dict[str, Any], path: Optional[Path] = None) -> TransformationsConfig:
    if not isinstance(raw, dict):
        raise ConfigurationError("top-level JSON value must be an object", path)
    try:
        return TransformationsConfig.model_validate(migrate(raw))
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(str(e), path) from e


def load_config(path: Optional[Union[str, Path]] = None) -> TransformationsConfig:
    """
    Read the configuration file.

    A missing file is not an error: the default configuration (a single
    general mode with an empty pipeline) is returned instead.

    Args:
        path: File to read; defaults to ``default_config_path()``

    Returns:
        The validated configuration.

    Raises:
        ConfigurationError: If the file is unreadable, not JSON, or invalid.
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    if not config_path.exists():
        logger.info(f"No transformations config at {config_path}; using defaults")
        return TransformationsConfig()

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"cannot read file ({e})", config_path) from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid JSON ({e})", config_path) from e

    config = parse_config(raw, config_path)
    logger.debug(
        f"Loaded {len(config.modes)} modes and {len(config.providers)} providers from {config_path}"
    )
    return config


def save_config(config: TransformationsConfig, path: Optional[Union[str, Path]] = None) -> Path:
    """
    Write the whole configuration back, atomically.

    Returns:
        The path that was written.
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    document = config.to_json_dict()
    document["schemaVersion"] = CURRENT_SCHEMA_VERSION
    payload = json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    fd, tmp_name = tempfile.mkstemp(prefix=".text_transformations.", dir=config_path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, config_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return config_path


EDITING_GUIDE = """\
Configuration lives at:
{path}

Schema essentials:
- `schemaVersion` must stay {version}.
- `providers` supports `claude_code`, `ollama`, `anthropic_api` and `openai` entries.
  - `claude_code` entries auto-detect the Claude Code CLI under `~/.claude/local/...`
    (plus PATH, Homebrew and nvm). Binaries inside a `.app` bundle are never used, so
    install Claude Code or set `binaryPath` when discovery fails. `workingDirectory`
    is optional.
  - `ollama` entries point to the `ollama` CLI (auto-detected when omitted) and set
    `defaultModel` to a tag such as `llama3.1:8b`.
  - `anthropic_api` / `openai` entries need `defaultModel` and an `apiKey`
    (`{{"storage": "environment", "value": "ANTHROPIC_API_KEY"}}`).
  - Text-only providers (Ollama and the hosted APIs) ignore `tooling` blocks.
- Add `tooling.enabledToolGroups` when Claude should call the local tools, and include
  a short `instructions` note explaining why tools are enabled. Tool groups:
  - `app-control`: launch or focus apps by bundle id and open URLs (`openApplication`, `openURL`)
  - `app-discovery`: list installed apps and bundle identifiers (`listApplications`)
  - `context`: read the selected text or clipboard without disturbing the user
    (`getSelectedText`, `getClipboardText`)
- `modes` is an ordered list:
  - `voicePrefixes`: trigger by saying a prefix (e.g. "hex, what's 2+2?")
  - `appliesToBundleIdentifiers`: match by frontmost app bundle id
  - Precedence: prefix+app > prefix alone > app alone > general fallback; ties go to
    the earlier mode. A mode with both prefixes and bundle ids also matches by app
    alone, or by prefix alone in any other app.
- Matching is case-insensitive and several bundle ids are allowed
  (Messages uses `com.apple.MobileSMS`, older builds use `com.apple.iChat`).
- Each `pipeline` holds ordered `transformations`; `llm` steps need a `providerID`
  and a `promptTemplate` containing `{{{{input}}}}` exactly once.
- Use `"providerID": "preferred-provider"` to honour the user's preferred provider/model.
- The spoken prefix is stripped before processing ("hex, calculate 10+5" -> "calculate 10+5").
- When a step performs an action (opening apps or URLs), instruct the LLM to return an
  empty string unless the user asked for text, so nothing stray gets pasted.

When editing via an LLM:
1. Load the file, modify the JSON structurally, and write it back intact.
2. Preserve existing ids unless you add a new mode or transformation.
3. Prefer adding bundle ids over renaming modes.
4. Keep prompts concise and explicit about output format; name the tool groups a mode relies on.
"""


def editing_guide(path: Optional[Path] = None) -> str:
    return EDITING_GUIDE.format(path=path or default_config_path(), version=CURRENT_SCHEMA_VERSION)
