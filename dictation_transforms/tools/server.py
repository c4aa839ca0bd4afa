"""
Loopback MCP tool server exposing automation tools to provider CLIs.

The server speaks MCP over streamable HTTP (with SSE) at ``/mcp`` on an
OS-assigned port. Which tool groups are callable is decided per LLM step;
every call re-checks the current allow-list, whatever the client was told.
"""

import asyncio
import contextlib
import json
import logging
import socket
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import uvicorn
from mcp.server import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from mcp.types import TextContent, Tool
from starlette.applications import Starlette
from starlette.routing import Route

from ..transforms.models import TOOL_SERVER_NAME, ToolGroup, ToolServerConfiguration, ToolServerEndpoint
from .automation import ApplicationAutomation
from .errors import InvalidToolArgumentError, ToolGroupDisabledError, ToolServerError, UnknownToolError

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
ENDPOINT_PATH = "/mcp"
STARTUP_POLL_INTERVAL = 0.05


TOOL_DEFINITIONS: List[Tool] = [
    Tool(
        name="openApplication",
        description="Launches or focuses an application by bundle identifier.",
        inputSchema={
            "type": "object",
            "properties": {
                "bundleIdentifier": {"type": "string", "description": "Bundle identifier, e.g. com.apple.Safari"},
                "activate": {"type": "boolean", "default": True},
            },
            "required": ["bundleIdentifier"],
        },
    ),
    Tool(
        name="openURL",
        description="Opens a URL using the system default handler (e.g., browser).",
        inputSchema={
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "activate": {"type": "boolean", "default": True},
            },
            "required": ["url"],
        },
    ),
    Tool(
        name="listApplications",
        description="Lists installed applications with names, bundle identifiers, and paths.",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Case-insensitive filter on name or bundle identifier"},
                "limit": {"type": "integer", "default": 50, "minimum": 1},
            },
        },
    ),
    Tool(
        name="getSelectedText",
        description=(
            "Captures the currently selected text from the frontmost application "
            "without leaving clipboard residue."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "timeoutMilliseconds": {"type": "integer", "default": 400},
            },
        },
    ),
    Tool(
        name="getClipboardText",
        description="Reads the current clipboard's plain-text contents along with available data types.",
        inputSchema={"type": "object", "properties": {}},
    ),
]


def _integer_argument(args: Dict[str, Any], name: str, default: int) -> int:
    value = args.get(name, default)
    if isinstance(value, bool):
        raise InvalidToolArgumentError(name, "an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidToolArgumentError(name, "an integer") from None


class ToolService:
    """
    The tool surface: schemas, allow-list enforcement and dispatch.

    Args:
        automation: Implementation of the tools
        allowed_groups: Returns the current allow-list; read once per call
    """

    def __init__(self, automation: ApplicationAutomation, allowed_groups: Callable[[], FrozenSet[ToolGroup]]):
        self.automation = automation
        self._allowed_groups = allowed_groups

    def list_tools(self) -> List[Tool]:
        return list(TOOL_DEFINITIONS)

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run tool ``name`` and return its JSON result.

        Raises:
            UnknownToolError: If no such tool exists.
            ToolGroupDisabledError: If the tool's group is not allowed right now.
            ToolServerError: Whatever the tool itself raised.
        """
        group = ToolGroup.for_tool(name)
        if group is None:
            raise UnknownToolError(name)

        allowed = self._allowed_groups()
        if group not in allowed:
            logger.warning(f"Rejected call to {name}: group {group.value} is disabled")
            raise ToolGroupDisabledError(group.value)

        args = arguments or {}
        logger.info(f"Tool call: {name}")
        if name == "openApplication":
            message = await self.automation.open_application(
                str(args.get("bundleIdentifier", "")), bool(args.get("activate", True))
            )
            return {"message": message}
        if name == "openURL":
            message = await self.automation.open_url(str(args.get("url", "")), bool(args.get("activate", True)))
            return {"message": message}
        if name == "listApplications":
            query = args.get("query")
            apps = await self.automation.list_applications(
                None if query is None else str(query), _integer_argument(args, "limit", 50)
            )
            return {"applications": [app.to_dict() for app in apps]}
        if name == "getSelectedText":
            result = await self.automation.read_selected_text(_integer_argument(args, "timeoutMilliseconds", 400))
            return result.to_dict()
        return self.automation.read_clipboard().to_dict()

    def build_mcp_server(self, name: str = TOOL_SERVER_NAME) -> Server:
        server = Server(name)

        @server.list_tools()
        async def list_tools() -> List[Tool]:
            return self.list_tools()

        @server.call_tool()
        async def call_tool(tool_name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            # Errors raised here reach the client as tool errors carrying str(exc).
            result = await self.call(tool_name, arguments)
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        return server


class _SessionEndpoint:
    """ASGI adapter so the ``/mcp`` route accepts every HTTP method."""

    def __init__(self, manager: StreamableHTTPSessionManager):
        self.manager = manager

    async def __call__(self, scope, receive, send) -> None:
        await self.manager.handle_request(scope, receive, send)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ToolServer:
    """
    Lazily started, shared MCP server with a swappable allow-list.

    One instance is owned by the application and handed to whatever needs
    it. ``ensure_server`` and ``shutdown`` are serialized by a lock.
    """

    def __init__(
        self,
        automation: Optional[ApplicationAutomation] = None,
        server_name: str = TOOL_SERVER_NAME,
        host: str = LOOPBACK_HOST,
    ):
        self.server_name = server_name
        self.host = host
        self.service = ToolService(automation or ApplicationAutomation(), lambda: self._allowed)
        self._allowed: FrozenSet[ToolGroup] = frozenset()
        self._lock = asyncio.Lock()
        self._endpoint: Optional[ToolServerEndpoint] = None
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional["asyncio.Task[None]"] = None

    @property
    def is_running(self) -> bool:
        return self._endpoint is not None

    @property
    def allowed_groups(self) -> FrozenSet[ToolGroup]:
        return self._allowed

    @property
    def endpoint(self) -> Optional[ToolServerEndpoint]:
        return self._endpoint

    def set_allowed_groups(self, groups: Iterable[ToolGroup]) -> None:
        requested = frozenset(groups)
        if requested != self._allowed:
            names = ", ".join(sorted(group.value for group in requested)) or "none"
            logger.info(f"Configuring MCP server tool groups: {names}")
            self._allowed = requested

    async def ensure_server(self, configuration: Optional[ToolServerConfiguration] = None) -> ToolServerEndpoint:
        """
        Start the server if needed and apply ``configuration``'s groups.

        Returns:
            The endpoint, carrying ``configuration``'s instructions.
        """
        async with self._lock:
            endpoint = self._endpoint or await self._start()
            self.set_allowed_groups(configuration.enabled_tool_groups if configuration else ())
            instructions = configuration.instructions if configuration else None
            return endpoint.model_copy(update={"instructions": instructions})

    def build_app(self) -> Starlette:
        session_manager = StreamableHTTPSessionManager(
            app=self.service.build_mcp_server(self.server_name),
            json_response=False,
            stateless=True,
        )

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette):
            async with session_manager.run():
                yield

        return Starlette(routes=[Route(ENDPOINT_PATH, endpoint=_SessionEndpoint(session_manager))], lifespan=lifespan)

    async def _start(self) -> ToolServerEndpoint:
        logger.info("Starting MCP server (initial boot)")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, 0))
        port = sock.getsockname()[1]

        config = uvicorn.Config(self.build_app(), log_level="warning", lifespan="on")
        server = _EmbeddedServer(config)
        task = asyncio.ensure_future(server.serve(sockets=[sock]))

        while not server.started:
            if task.done():
                sock.close()
                exc = task.exception()
                raise ToolServerError(f"MCP server failed to start: {exc}") from exc
            await asyncio.sleep(STARTUP_POLL_INTERVAL)

        self._server = server
        self._serve_task = task
        self._endpoint = ToolServerEndpoint(
            base_url=f"http://{self.host}:{port}{ENDPOINT_PATH}",
            server_name=self.server_name,
        )
        logger.info(f"MCP server running at {self._endpoint.base_url}")
        return self._endpoint

    async def shutdown(self) -> None:
        """Stop the server and forget its endpoint and allow-list."""
        async with self._lock:
            if self._server is not None:
                self._server.should_exit = True
            if self._serve_task is not None:
                await self._serve_task
            self._server = None
            self._serve_task = None
            self._endpoint = None
            self._allowed = frozenset()
            logger.info("MCP server stopped")

    async def wait_closed(self) -> None:
        """Block until the running server exits."""
        task = self._serve_task
        if task is not None:
            await task
