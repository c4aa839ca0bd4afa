"""
Finding the executable for a CLI-based LLM provider.

An explicit ``binaryPath`` wins when it points at an executable. Otherwise
a fixed list of candidates is searched: version-manager and package-manager
locations, the standard ``bin`` directories and ``$PATH``. Not finding
anything is a normal outcome; runtimes turn it into a configuration error.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from ..transforms.models import LLMProvider, ProviderType

logger = logging.getLogger(__name__)

BINARY_NAMES: Dict[ProviderType, str] = {
    ProviderType.CLAUDE_CODE: "claude",
    ProviderType.OLLAMA: "ollama",
}

HOMEBREW_OPT_PREFIXES = ("/usr/local/opt", "/opt/homebrew/opt")
APP_BUNDLE_MARKER = ".app/contents/macos/"


def normalize_path(path: str, home: Optional[Path] = None) -> str:
    if path == "~" or path.startswith("~/"):
        base = str(home) if home is not None else os.path.expanduser("~")
        path = base + path[1:]
    return os.path.normpath(path)


def dedupe_paths(paths: Iterable[str], home: Optional[Path] = None) -> List[str]:
    """Normalize, drop blanks and duplicates, keep first-seen order."""
    seen = set()
    ordered = []
    for path in paths:
        trimmed = path.strip()
        if not trimmed:
            continue
        normalized = normalize_path(trimmed, home)
        if normalized not in seen:
            seen.add(normalized)
            ordered.append(normalized)
    return ordered


def is_executable_file(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def is_app_bundle_executable(path: str) -> bool:
    """True for binaries living inside a GUI ``.app`` bundle."""
    return APP_BUNDLE_MARKER in path.lower()


class ExecutableLocator:
    """
    Resolves provider binaries.

    The environment and home directory are injectable so lookups are
    reproducible in tests; by default the live process environment is used.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, home: Optional[Path] = None):
        self._environ = environ
        self._home = home

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    @property
    def home(self) -> Path:
        return self._home if self._home is not None else Path.home()

    def resolve(self, provider: LLMProvider) -> Optional[str]:
        """
        Resolve an absolute, executable path for ``provider``.

        Returns:
            The path, or None when nothing suitable exists.
        """
        if provider.binary_path:
            explicit = normalize_path(provider.binary_path, self.home)
            if is_executable_file(explicit):
                return explicit
            logger.error(
                f"Configured binary missing for provider {provider.id} at {explicit}; "
                f"falling back to auto-discovery"
            )

        for candidate in self.candidate_paths(provider.type):
            if not is_executable_file(candidate):
                continue
            if provider.type == ProviderType.CLAUDE_CODE and is_app_bundle_executable(candidate):
                logger.debug(f"Skipping app bundle executable {candidate}")
                continue
            logger.info(f"Auto-detected {provider.type.value} provider binary at {candidate}")
            return candidate

        return None

    def candidate_paths(self, provider_type: ProviderType) -> List[str]:
        """Every path tried for ``provider_type``, in priority order."""
        binary_name = BINARY_NAMES.get(provider_type)
        if binary_name is None:
            return []

        path_entries = self._path_directories(self.environ.get("PATH"))
        if provider_type == ProviderType.CLAUDE_CODE:
            candidates = self._claude_preferred_paths()
            directories = dedupe_paths(self._claude_fallback_directories() + path_entries, self.home)
        else:
            candidates = []
            directories = dedupe_paths(path_entries + self._standard_directories(), self.home)

        candidates.extend(self._join_binary(directories, binary_name))
        return dedupe_paths(candidates, self.home)

    def executable_search_path(self, existing_path: Optional[str] = None) -> str:
        """
        Build the ``PATH`` handed to provider subprocesses.

        Version-manager and package-manager directories come first so the
        CLI can find helpers (``node``, ``git``...) even when the caller's
        own ``PATH`` is minimal.
        """
        entries = self._claude_fallback_directories() + self._path_directories(existing_path)
        return os.pathsep.join(dedupe_paths(entries, self.home))

    def _claude_preferred_paths(self) -> List[str]:
        paths: List[str] = []
        hints = self.environ.get("CLAUDE_CODE_BINARY_HINT")
        if hints:
            paths.extend(hint for hint in hints.split(os.pathsep) if hint.strip())

        override_root = self.environ.get("CLAUDE_CODE_ROOT")
        if override_root:
            paths.extend(self._claude_root_candidates(override_root))

        if self.environ.get("CLAUDE_CODE_SKIP_DEFAULT") != "1":
            paths.extend(self._claude_root_candidates(str(self.home / ".claude" / "local")))
        return paths

    def _claude_root_candidates(self, root: str) -> List[str]:
        normalized = normalize_path(root, self.home)
        return [
            os.path.join(normalized, "claude"),
            os.path.join(normalized, "bin", "claude"),
            os.path.join(normalized, "node_modules", ".bin", "claude"),
        ]

    def _claude_fallback_directories(self) -> List[str]:
        directories = self._nvm_directories()
        for prefix in HOMEBREW_OPT_PREFIXES:
            candidate = os.path.join(prefix, "claude", "bin")
            if os.path.isdir(candidate):
                directories.append(candidate)
        directories.extend(self._standard_directories())
        return directories

    def _standard_directories(self) -> List[str]:
        home = str(self.home)
        return [
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/usr/bin",
            "/bin",
            os.path.join(home, ".local", "bin"),
            os.path.join(home, "bin"),
        ]

    def _nvm_directories(self) -> List[str]:
        versions_dir = self.home / ".nvm" / "versions" / "node"
        directories = []
        current = versions_dir / "current" / "bin"
        if current.is_dir():
            directories.append(str(current))

        try:
            versions = sorted(os.listdir(versions_dir), reverse=True)
        except OSError:
            versions = []
        for version in versions:
            if version.startswith(".") or version == "current":
                continue
            directories.append(str(versions_dir / version / "bin"))
        return directories

    def _path_directories(self, path: Optional[str]) -> List[str]:
        if not path:
            return []
        return [entry.strip() for entry in path.split(os.pathsep) if entry.strip()]

    @staticmethod
    def _join_binary(directories: Iterable[str], binary_name: str) -> List[str]:
        suffix = os.sep + binary_name
        return [path if path.endswith(suffix) else os.path.join(path, binary_name) for path in directories]
