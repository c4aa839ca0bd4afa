"""
Desktop automation behind the tool server: launching apps, opening URLs,
listing installed apps and reading the selection or clipboard.

External programs (``open``, ``osascript``, ``xdg-open``, ``xdotool``) are
run through an injectable command runner, and the clipboard is an injected
``Clipboard``, so every tool can be exercised without touching the desktop.
"""

import asyncio
import logging
import os
import plistlib
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import psutil

from .clipboard import Clipboard, PyperclipClipboard
from .errors import (
    ApplicationNotFoundError,
    AutomationFailedError,
    EmptySelectionError,
    FrontmostAppUnavailableError,
    InvalidBundleIdentifierError,
    InvalidURLError,
    LaunchFailedError,
    SelectionTimeoutError,
    URLOpenFailedError,
)

logger = logging.getLogger(__name__)

MIN_LIST_LIMIT = 1
MAX_LIST_LIMIT = 200
MIN_SELECTION_TIMEOUT_MS = 100
MAX_SELECTION_TIMEOUT_MS = 2000
CLIPBOARD_POLL_INTERVAL = 0.025

COPY_SHORTCUT_SCRIPT = """
if application "System Events" is not running then
    tell application "System Events" to launch
    delay 0.05
end if
tell application "System Events"
    keystroke "c" using {command down}
end tell
"""

FRONTMOST_APP_SCRIPT = (
    'tell application "System Events" to get '
    "{name, bundle identifier} of first application process whose frontmost is true"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_application_directories() -> List[str]:
    return ["/Applications", "/System/Applications", os.path.expanduser("~/Applications")]


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[[Sequence[str]], Awaitable[CommandResult]]


async def run_command(argv: Sequence[str]) -> CommandResult:
    """Run a short helper command and capture its output."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(127, "", f"{argv[0]}: command not found")
    stdout, stderr = await process.communicate()
    return CommandResult(
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


@dataclass
class InstalledApplicationInfo:
    bundle_identifier: str
    name: str
    path: str
    version: Optional[str] = None
    is_running: bool = False
    last_modified: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundleIdentifier": self.bundle_identifier,
            "name": self.name,
            "path": self.path,
            "version": self.version,
            "isRunning": self.is_running,
            "lastModified": self.last_modified,
        }


@dataclass
class ClipboardSnapshot:
    plain_text: Optional[str]
    available_types: List[str]
    change_count: int
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plainText": self.plain_text,
            "availableTypes": self.available_types,
            "changeCount": self.change_count,
            "timestamp": self.timestamp,
        }


@dataclass
class SelectedTextResult:
    text: str
    source_bundle_identifier: Optional[str]
    source_application_name: Optional[str]
    clipboard_restored: bool = True
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "sourceBundleIdentifier": self.source_bundle_identifier,
            "sourceApplicationName": self.source_application_name,
            "timestamp": self.timestamp,
            "clipboardRestored": self.clipboard_restored,
        }


@dataclass
class FrontmostApplication:
    name: Optional[str]
    bundle_identifier: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.bundle_identifier or "current app"


def sanitize_url(value: str) -> str:
    """
    Normalize a user- or model-supplied URL.

    Raises:
        InvalidURLError: Unless the result is http(s) with a host.
    """
    trimmed = value.strip()
    if not trimmed:
        raise InvalidURLError(value)
    if "://" not in trimmed:
        trimmed = f"https://{trimmed}"
    parsed = urlparse(trimmed)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise InvalidURLError(value)
    return trimmed


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(value, upper))


def _bundle_root(executable: str) -> Optional[str]:
    marker = ".app" + os.sep
    index = executable.find(marker)
    if index < 0:
        return None
    return executable[: index + len(".app")]


def read_bundle_info(app_path: str) -> Optional[Dict[str, Any]]:
    """Info.plist contents of an ``.app`` bundle, or None if unreadable."""
    plist_path = os.path.join(app_path, "Contents", "Info.plist")
    try:
        with open(plist_path, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return None
    return info if isinstance(info, dict) else None


class ApplicationAutomation:
    """The operations behind each automation tool."""

    def __init__(
        self,
        clipboard: Optional[Clipboard] = None,
        runner: Optional[CommandRunner] = None,
        application_directories: Optional[Sequence[str]] = None,
        platform: Optional[str] = None,
    ):
        self.clipboard = clipboard or PyperclipClipboard()
        self.runner = runner or run_command
        self.application_directories = list(application_directories or default_application_directories())
        self.platform = platform or sys.platform

    @property
    def is_macos(self) -> bool:
        return self.platform == "darwin"

    # -- Applications ---------------------------------------------------------------

    def running_applications(self) -> Dict[str, str]:
        """Bundle identifier to bundle path for every running ``.app``."""
        running: Dict[str, str] = {}
        for process in psutil.process_iter(["exe"]):
            executable = process.info.get("exe")
            if not executable:
                continue
            root = _bundle_root(executable)
            if root is None or root in running.values():
                continue
            info = read_bundle_info(root)
            bundle_id = info.get("CFBundleIdentifier") if info else None
            if bundle_id:
                running.setdefault(bundle_id, root)
        return running

    def _launch_command(self, target: str, activate: bool, is_url: bool = False) -> List[str]:
        if self.is_macos:
            argv = ["open"]
            if not activate:
                argv.append("-g")
            if not is_url:
                argv.append("-b")
            return argv + [target]
        return ["xdg-open", target]

    async def open_application(self, bundle_identifier: str, activate: bool = True) -> str:
        trimmed = bundle_identifier.strip()
        if not trimmed:
            raise InvalidBundleIdentifierError()

        running = {key.lower(): key for key in self.running_applications()}
        if trimmed.lower() in running:
            if activate:
                result = await self.runner(self._launch_command(running[trimmed.lower()], activate=True))
                if result.returncode != 0:
                    logger.error(f"Activating {trimmed} failed: {result.stderr.strip()}")
                    raise LaunchFailedError(trimmed)
                return f"Activated running application '{trimmed}'."
            return f"Application '{trimmed}' is already running."

        installed = await self._scan_applications()
        app = next((a for a in installed if a.bundle_identifier.lower() == trimmed.lower()), None)
        if app is None:
            raise ApplicationNotFoundError(trimmed)

        result = await self.runner(self._launch_command(app.bundle_identifier if self.is_macos else app.path, activate))
        if result.returncode != 0:
            logger.error(f"Launching {trimmed} failed: {result.stderr.strip()}")
            raise LaunchFailedError(trimmed)

        logger.info(f"Launched application {trimmed}")
        return f"Launched application '{trimmed}'."

    async def open_url(self, url: str, activate: bool = True) -> str:
        target = sanitize_url(url)
        result = await self.runner(self._launch_command(target, activate, is_url=True))
        if result.returncode != 0:
            logger.error(f"Opening {target} failed: {result.stderr.strip()}")
            raise URLOpenFailedError(target)
        return f"Opened URL '{target}'" + (" and activated the handler." if activate else ".")

    def _scan_directories(self) -> List[InstalledApplicationInfo]:
        seen = set()
        results = []
        for directory in self.application_directories:
            if not os.path.isdir(directory):
                continue
            for root, dirs, _ in os.walk(directory):
                bundles = [d for d in dirs if d.lower().endswith(".app")]
                dirs[:] = [d for d in dirs if not d.startswith(".") and d not in bundles]
                for bundle in sorted(bundles):
                    path = os.path.join(root, bundle)
                    info = read_bundle_info(path)
                    bundle_id = info.get("CFBundleIdentifier") if info else None
                    if not bundle_id or bundle_id in seen:
                        continue
                    seen.add(bundle_id)
                    name = info.get("CFBundleDisplayName") or info.get("CFBundleName") or bundle[: -len(".app")]
                    try:
                        modified = datetime.fromtimestamp(os.path.getmtime(path), timezone.utc).isoformat()
                    except OSError:
                        modified = None
                    results.append(
                        InstalledApplicationInfo(
                            bundle_identifier=bundle_id,
                            name=str(name),
                            path=path,
                            version=info.get("CFBundleShortVersionString"),
                            last_modified=modified,
                        )
                    )
        return results

    async def _scan_applications(self) -> List[InstalledApplicationInfo]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._scan_directories)

    async def list_applications(self, query: Optional[str] = None, limit: int = 50) -> List[InstalledApplicationInfo]:
        """
        Installed applications, sorted by name.

        Args:
            query: Case-insensitive substring matched against name and bundle id
            limit: Maximum results, clamped to 1..200
        """
        limit = _clamp(limit, MIN_LIST_LIMIT, MAX_LIST_LIMIT)
        needle = ("" if query is None else str(query)).strip().lower()
        running = set(self.running_applications())

        results = []
        for app in await self._scan_applications():
            if needle and needle not in f"{app.name.lower()} {app.bundle_identifier.lower()}":
                continue
            app.is_running = app.bundle_identifier in running
            results.append(app)

        results.sort(key=lambda app: app.name.casefold())
        return results[:limit]

    # -- Context ----------------------------------------------------------------------

    def read_clipboard(self) -> ClipboardSnapshot:
        return ClipboardSnapshot(
            plain_text=self.clipboard.read_text(),
            available_types=sorted(set(self.clipboard.available_types())),
            change_count=self.clipboard.change_count(),
        )

    async def frontmost_application(self) -> FrontmostApplication:
        if self.is_macos:
            result = await self.runner(["osascript", "-e", FRONTMOST_APP_SCRIPT])
            if result.returncode != 0 or not result.stdout.strip():
                raise FrontmostAppUnavailableError()
            name, _, bundle_id = result.stdout.strip().rpartition(", ")
            if not name:
                name, bundle_id = bundle_id, ""
            return FrontmostApplication(name=name or None, bundle_identifier=bundle_id or None)

        result = await self.runner(["xdotool", "getactivewindow", "getwindowname"])
        if result.returncode != 0 or not result.stdout.strip():
            raise FrontmostAppUnavailableError()
        return FrontmostApplication(name=result.stdout.strip())

    async def _send_copy_shortcut(self) -> None:
        if self.is_macos:
            argv = ["osascript", "-e", COPY_SHORTCUT_SCRIPT]
        else:
            argv = ["xdotool", "key", "--clearmodifiers", "ctrl+c"]
        result = await self.runner(argv)
        if result.returncode != 0:
            raise AutomationFailedError(f"Copy shortcut failed: {result.stderr.strip() or result.returncode}")

    async def _wait_for_clipboard_change(self, baseline: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.clipboard.change_count() > baseline:
                return True
            await asyncio.sleep(CLIPBOARD_POLL_INTERVAL)
        return self.clipboard.change_count() > baseline

    async def read_selected_text(self, timeout_ms: int = 400) -> SelectedTextResult:
        """
        Copy the frontmost app's selection and return it.

        The clipboard is snapshotted first and restored afterwards on every
        path, so the user's clipboard is left as it was.

        Raises:
            FrontmostAppUnavailableError: No frontmost application.
            SelectionTimeoutError: The copy did not change the clipboard in time.
            EmptySelectionError: The copy produced no text.
        """
        frontmost = await self.frontmost_application()
        timeout = _clamp(timeout_ms, MIN_SELECTION_TIMEOUT_MS, MAX_SELECTION_TIMEOUT_MS) / 1000.0

        snapshot = self.clipboard.snapshot()
        try:
            baseline = self.clipboard.change_count()
            await self._send_copy_shortcut()
            if not await self._wait_for_clipboard_change(baseline, timeout):
                raise SelectionTimeoutError()
            copied = self.clipboard.read_text() or ""
        finally:
            self.clipboard.restore(snapshot)

        if not copied:
            raise EmptySelectionError(frontmost.display_name)

        return SelectedTextResult(
            text=copied,
            source_bundle_identifier=frontmost.bundle_identifier,
            source_application_name=frontmost.name,
        )
