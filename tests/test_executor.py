"""Tests for routing tool calls between native tools and MCP servers."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from mcp import types

from snipcode.executor import ToolExecutor, validate_arguments
from snipcode.mcp_client import McpRemoteError
from snipcode.results import text_result
from snipcode.toolcall import ToolCallRequest
from snipcode.tools import NativeTools


def _remote_tool(name, properties=None, required=None):
    return types.Tool(
        name=name,
        description=f"remote {name}",
        inputSchema={
            "type": "object",
            "properties": properties or {},
            "required": required or [],
        },
    )


class FakeRegistry:
    """Registry stand-in serving fixed tools from in-memory servers."""

    def __init__(self, servers: dict[str, list[types.Tool]]):
        self.clients = {
            name: SimpleNamespace(name=name, tools=tools)
            for name, tools in servers.items()
        }
        self.call_tool = AsyncMock(return_value=text_result("remote ok"))

    def resolve_tool(self, name):
        for server, client in self.clients.items():
            if any(t.name == name for t in client.tools):
                return server, name
        return None

    def get_client(self, name):
        return self.clients.get(name)

    def get_all_tools(self):
        return [t for c in self.clients.values() for t in c.tools]


@pytest.fixture
def native(tmp_path):
    return NativeTools(str(tmp_path))


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


class TestValidateArguments:
    def test_valid(self):
        tool = _remote_tool("t", {"a": {"type": "string"}}, ["a"])
        assert validate_arguments(tool, {"a": "x"}) is None

    def test_missing_required(self):
        tool = _remote_tool("t", {"a": {"type": "string"}}, ["a"])
        assert "'a' is a required property" in validate_arguments(tool, {})

    def test_wrong_type_reports_path(self):
        tool = _remote_tool("t", {"a": {"type": "string"}})
        problem = validate_arguments(tool, {"a": 3})
        assert problem.startswith("a: ")

    def test_non_object_arguments(self):
        tool = _remote_tool("t")
        assert validate_arguments(tool, [1, 2]).startswith("(root): ")

    def test_unresolvable_ref_skips_validation(self):
        tool = _remote_tool("t", {"a": {"$ref": "#/$defs/Missing"}})
        assert validate_arguments(tool, {"a": 1}) is None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestToolExecutor:
    @pytest.mark.asyncio
    async def test_native_tool(self, native, tmp_path):
        (tmp_path / "a.txt").write_text("content")
        executor = ToolExecutor(native, FakeRegistry({}))
        result = await executor.execute(
            ToolCallRequest("read_file", {"file_path": "a.txt"})
        )
        assert result.content[0].text == "content"

    @pytest.mark.asyncio
    async def test_native_schema_violation(self, native):
        executor = ToolExecutor(native)
        result = await executor.execute(ToolCallRequest("read_file", {}))
        assert result.isError
        assert result.content[0].text.startswith("Invalid arguments for read_file:")

    @pytest.mark.asyncio
    async def test_remote_tool(self, native):
        registry = FakeRegistry({"srv": [_remote_tool("search")]})
        executor = ToolExecutor(native, registry)
        result = await executor.execute(ToolCallRequest("search", {"q": "x"}))
        assert result.content[0].text == "remote ok"
        registry.call_tool.assert_awaited_once_with("srv", "search", {"q": "x"})

    @pytest.mark.asyncio
    async def test_native_shadows_remote(self, native, tmp_path):
        (tmp_path / "a.txt").write_text("local")
        registry = FakeRegistry({"srv": [_remote_tool("read_file")]})
        executor = ToolExecutor(native, registry)
        result = await executor.execute(
            ToolCallRequest("read_file", {"file_path": "a.txt"})
        )
        assert result.content[0].text == "local"
        registry.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_schema_violation(self, native):
        registry = FakeRegistry(
            {"srv": [_remote_tool("search", {"q": {"type": "string"}}, ["q"])]}
        )
        executor = ToolExecutor(native, registry)
        result = await executor.execute(ToolCallRequest("search", {}))
        assert result.isError
        registry.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_failure_becomes_error_result(self, native):
        registry = FakeRegistry({"srv": [_remote_tool("search")]})
        registry.call_tool.side_effect = McpRemoteError("boom", -32000)
        executor = ToolExecutor(native, registry)
        result = await executor.execute(ToolCallRequest("search", {}))
        assert result.isError
        assert result.content[0].text == (
            "Error executing search: MCP Error: boom (code: -32000)"
        )

    @pytest.mark.asyncio
    async def test_remote_tool_with_dangling_ref_still_runs(self, native):
        tool = _remote_tool("remote", {"a": {"$ref": "#/$defs/Missing"}})
        registry = FakeRegistry({"srv": [tool]})
        executor = ToolExecutor(native, registry)
        result = await executor.execute(ToolCallRequest("remote", {"a": 1}))
        assert not result.isError
        assert result.content[0].text == "remote ok"

    @pytest.mark.asyncio
    async def test_unexpected_remote_exception_becomes_error_result(self, native):
        registry = FakeRegistry({"srv": [_remote_tool("search")]})
        registry.call_tool.side_effect = RuntimeError("pipe broke")
        executor = ToolExecutor(native, registry)
        result = await executor.execute(ToolCallRequest("search", {}))
        assert result.isError
        assert result.content[0].text == "Error executing search: pipe broke"

    @pytest.mark.asyncio
    async def test_not_found(self, native):
        executor = ToolExecutor(native, FakeRegistry({}))
        result = await executor.execute(ToolCallRequest("x", {}))
        assert result.isError is True
        assert len(result.content) == 1
        assert result.content[0].type == "text"
        assert result.content[0].text == "Tool 'x' not found in native or MCP tools."

    @pytest.mark.asyncio
    async def test_not_found_without_registry(self, native):
        result = await ToolExecutor(native).execute(ToolCallRequest("x", {}))
        assert result.isError

    def test_list_tools(self, native):
        registry = FakeRegistry({"srv": [_remote_tool("search")]})
        names = [t.name for t in ToolExecutor(native, registry).list_tools()]
        assert names[0] == "read_file"
        assert names[-1] == "search"
