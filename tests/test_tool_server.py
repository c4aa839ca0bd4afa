"""
Tests for the tool service allow-list and the loopback MCP server.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from fakes import FakeCommandRunner, InMemoryClipboard

from dictation_transforms.tools.automation import ApplicationAutomation, ClipboardSnapshot, InstalledApplicationInfo
from dictation_transforms.tools.errors import InvalidToolArgumentError, ToolGroupDisabledError, UnknownToolError
from dictation_transforms.tools.server import TOOL_DEFINITIONS, ToolServer, ToolService
from dictation_transforms.transforms.models import ToolGroup, ToolServerConfiguration


def service_with(*groups):
    automation = MagicMock(spec=ApplicationAutomation)
    allowed = frozenset(groups)
    return ToolService(automation, lambda: allowed), automation


def configuration(*groups, instructions=None):
    return ToolServerConfiguration(enabled_tool_groups=list(groups), instructions=instructions)


class TestToolDefinitions:
    def test_every_tool_belongs_to_a_group(self):
        names = [tool.name for tool in TOOL_DEFINITIONS]
        assert names == ["openApplication", "openURL", "listApplications", "getSelectedText", "getClipboardText"]
        assert all(ToolGroup.for_tool(name) is not None for name in names)


@pytest.mark.asyncio
class TestToolService:
    async def test_disabled_group_is_rejected(self):
        service, automation = service_with(ToolGroup.CONTEXT)
        automation.open_url = AsyncMock()
        with pytest.raises(ToolGroupDisabledError) as exc_info:
            await service.call("openURL", {"url": "example.com"})
        assert str(exc_info.value) == "Tool group 'app-control' is not enabled for this session."
        automation.open_url.assert_not_called()

    async def test_unknown_tool(self):
        service, _ = service_with(*ToolGroup)
        with pytest.raises(UnknownToolError):
            await service.call("deleteEverything", {})

    async def test_open_application(self):
        service, automation = service_with(ToolGroup.APP_CONTROL)
        automation.open_application = AsyncMock(return_value="Launched application 'com.apple.Safari'.")
        result = await service.call("openApplication", {"bundleIdentifier": "com.apple.Safari", "activate": False})
        assert result == {"message": "Launched application 'com.apple.Safari'."}
        automation.open_application.assert_awaited_once_with("com.apple.Safari", False)

    async def test_list_applications(self):
        service, automation = service_with(ToolGroup.APP_DISCOVERY)
        app = InstalledApplicationInfo(bundle_identifier="com.apple.Notes", name="Notes", path="/Applications/Notes.app")
        automation.list_applications = AsyncMock(return_value=[app])
        result = await service.call("listApplications", {"query": "notes"})
        assert result["applications"][0]["bundleIdentifier"] == "com.apple.Notes"
        automation.list_applications.assert_awaited_once_with("notes", 50)

    async def test_list_applications_coerces_query(self):
        service, automation = service_with(ToolGroup.APP_DISCOVERY)
        automation.list_applications = AsyncMock(return_value=[])
        await service.call("listApplications", {"query": 42, "limit": "5"})
        automation.list_applications.assert_awaited_once_with("42", 5)

    @pytest.mark.parametrize("limit", ["lots", None, True])
    async def test_list_applications_rejects_bad_limit(self, limit):
        service, automation = service_with(ToolGroup.APP_DISCOVERY)
        automation.list_applications = AsyncMock(return_value=[])
        with pytest.raises(InvalidToolArgumentError) as exc_info:
            await service.call("listApplications", {"limit": limit})
        assert str(exc_info.value) == "Argument 'limit' must be an integer."
        automation.list_applications.assert_not_called()

    async def test_clipboard(self):
        service, automation = service_with(ToolGroup.CONTEXT)
        automation.read_clipboard.return_value = ClipboardSnapshot("hi", ["public.utf8-plain-text"], 3, "t")
        result = await service.call("getClipboardText")
        assert result == {"plainText": "hi", "availableTypes": ["public.utf8-plain-text"], "changeCount": 3, "timestamp": "t"}

    async def test_allow_list_read_per_call(self):
        allowed = {"groups": frozenset()}
        automation = MagicMock(spec=ApplicationAutomation)
        automation.read_clipboard.return_value = ClipboardSnapshot(None, [], 0, "t")
        service = ToolService(automation, lambda: allowed["groups"])

        with pytest.raises(ToolGroupDisabledError):
            await service.call("getClipboardText")
        allowed["groups"] = frozenset([ToolGroup.CONTEXT])
        assert (await service.call("getClipboardText"))["plainText"] is None


@pytest_asyncio.fixture
async def tool_server():
    automation = ApplicationAutomation(
        clipboard=InMemoryClipboard(text="clipboard words"),
        runner=FakeCommandRunner(),
        application_directories=[],
        platform="darwin",
    )
    server = ToolServer(automation=automation)
    yield server
    await server.shutdown()


@pytest.mark.asyncio
class TestToolServer:
    async def test_endpoint_is_stable_while_groups_change(self, tool_server):
        first = await tool_server.ensure_server(configuration(ToolGroup.CONTEXT, instructions="Read the selection."))
        assert first.base_url.startswith("http://127.0.0.1:")
        assert first.base_url.endswith("/mcp")
        assert first.instructions == "Read the selection."
        assert tool_server.allowed_groups == frozenset([ToolGroup.CONTEXT])

        second = await tool_server.ensure_server(configuration(ToolGroup.APP_CONTROL))
        assert second.base_url == first.base_url
        assert second.instructions is None
        assert tool_server.allowed_groups == frozenset([ToolGroup.APP_CONTROL])

    async def test_shutdown_resets_state(self, tool_server):
        await tool_server.ensure_server(configuration(ToolGroup.CONTEXT))
        assert tool_server.is_running
        await tool_server.shutdown()
        assert not tool_server.is_running
        assert tool_server.endpoint is None
        assert tool_server.allowed_groups == frozenset()

    async def test_mcp_client_round_trip(self, tool_server):
        endpoint = await tool_server.ensure_server(configuration(ToolGroup.CONTEXT))

        async with streamablehttp_client(endpoint.base_url) as (read_stream, write_stream, _):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()

                listed = await session.list_tools()
                assert {tool.name for tool in listed.tools} == {tool.name for tool in TOOL_DEFINITIONS}

                result = await session.call_tool("getClipboardText", {})
                assert not result.isError
                payload = json.loads(result.content[0].text)
                assert payload["plainText"] == "clipboard words"

                denied = await session.call_tool("openURL", {"url": "example.com"})
                assert denied.isError
                assert "not enabled for this session" in denied.content[0].text
