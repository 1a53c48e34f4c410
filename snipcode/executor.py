"""Single dispatch point for tool calls: native tools, then MCP servers."""

import logging

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from mcp import types
from referencing.exceptions import Unresolvable

from .mcp_client import McpError, McpRegistry
from .results import text_result
from .toolcall import ToolCallRequest
from .tools import NativeTools

logger = logging.getLogger(__name__)


def not_found_result(name: str) -> types.CallToolResult:
    return text_result(f"Tool '{name}' not found in native or MCP tools.", is_error=True)


def validate_arguments(tool: types.Tool, arguments) -> str | None:
    """Check *arguments* against the tool's input schema.

    Returns a description of the first violation, or None when valid.
    """
    schema = tool.inputSchema or {"type": "object"}
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        logger.warning("Tool %s has an invalid input schema: %s", tool.name, e.message)
        return None
    validator = Draft7Validator(schema)
    try:
        errors = sorted(validator.iter_errors(arguments), key=lambda e: [str(p) for p in e.path])
    except Unresolvable as e:
        logger.warning("Tool %s has an unresolvable schema reference: %s", tool.name, e)
        return None
    if not errors:
        return None
    first = errors[0]
    path = ".".join(str(p) for p in first.path) or "(root)"
    return f"{path}: {first.message}"


class ToolExecutor:
    """Routes a ToolCallRequest to the tool that serves it.

    Native tools always win over a remote tool with the same name.
    Every failure comes back as an error-flagged result; execute()
    does not raise.
    """

    def __init__(self, native: NativeTools, registry: McpRegistry | None = None):
        self.native = native
        self.registry = registry

    async def execute(self, request: ToolCallRequest) -> types.CallToolResult:
        name, arguments = request.name, request.arguments

        tool = self.native.get_tool(name)
        if tool is not None:
            problem = validate_arguments(tool, arguments)
            if problem:
                return text_result(f"Invalid arguments for {name}: {problem}", is_error=True)
            return await self.native.call(name, arguments)

        if self.registry is not None:
            resolved = self.registry.resolve_tool(name)
            if resolved is not None:
                server, tool_name = resolved
                return await self._call_remote(server, tool_name, arguments)

        return not_found_result(name)

    async def _call_remote(self, server: str, tool_name: str, arguments) -> types.CallToolResult:
        client = self.registry.get_client(server)
        descriptor = next((t for t in client.tools if t.name == tool_name), None) if client else None
        if descriptor is not None:
            problem = validate_arguments(descriptor, arguments)
            if problem:
                return text_result(
                    f"Invalid arguments for {tool_name}: {problem}", is_error=True
                )
        try:
            return await self.registry.call_tool(server, tool_name, arguments)
        except McpError as e:
            logger.warning("MCP tool %s on %s failed: %s", tool_name, server, e)
            return text_result(f"Error executing {tool_name}: {e}", is_error=True)
        except Exception as e:
            logger.exception("MCP tool %s on %s raised unexpectedly", tool_name, server)
            return text_result(f"Error executing {tool_name}: {e}", is_error=True)

    def list_tools(self) -> list[types.Tool]:
        """Native tools followed by every remote tool."""
        tools = self.native.list_tools()
        if self.registry is not None:
            tools.extend(self.registry.get_all_tools())
        return tools
