"""Tests for the stdio MCP client and the server registry."""

import asyncio
import logging
import sys
import textwrap

import pytest

from snipcode.mcp_client import (
    ConnectionState,
    McpClient,
    McpConnectionError,
    McpDisconnectedError,
    McpRegistry,
    McpRemoteError,
    McpRequestTimeout,
    ServerConfig,
    namespaced_name,
    parse_call_result,
    split_namespaced,
    validate_server_name,
)
from snipcode.report import ConfigError

FAKE_SERVER = textwrap.dedent(
    """
    import json
    import os
    import sys
    import time

    TOOLS = sys.argv[1].split(",") if len(sys.argv) > 1 else ["echo"]
    NOTIFIED = []


    def send(msg):
        sys.stdout.write(json.dumps(msg) + "\\n")
        sys.stdout.flush()


    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        method = msg.get("method")
        mid = msg.get("id")
        if mid is None:
            NOTIFIED.append(method)
            continue
        if method == "initialize":
            print("this is not json", flush=True)
            send({"jsonrpc": "2.0", "method": "ping", "id": "server-1"})
            send({"jsonrpc": "2.0", "id": mid, "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "0"},
            }})
        elif method == "tools/list":
            send({"jsonrpc": "2.0", "id": mid, "result": {"tools": [
                {
                    "name": name,
                    "description": name + " tool",
                    "inputSchema": {
                        "type": "object",
                        "properties": {"text": {"type": "string"}},
                    },
                }
                for name in TOOLS
            ] + [{"description": "missing a name"}]}})
        elif method == "tools/call":
            name = msg["params"]["name"]
            args = msg["params"].get("arguments") or {}
            if name == "slow":
                time.sleep(float(args.get("delay", 0.5)))
                text = "slow done"
            elif name == "fail":
                send({"jsonrpc": "2.0", "id": mid,
                      "error": {"code": -32000, "message": "boom"}})
                continue
            elif name == "die":
                sys.exit(0)
            elif name == "env":
                text = os.environ.get("FAKE_ENV", "")
            elif name == "notifications":
                text = ",".join(NOTIFIED)
            elif name == "string_id":
                send({"jsonrpc": "2.0", "id": str(mid),
                      "result": {"content": [{"type": "text", "text": "by string"}]}})
                continue
            else:
                text = args.get("text", "")
            send({"jsonrpc": "2.0", "id": mid,
                  "result": {"content": [{"type": "text", "text": text}]}})
        else:
            send({"jsonrpc": "2.0", "id": mid,
                  "error": {"code": -32601, "message": "Method not found"}})
    """
)


@pytest.fixture
def server_script(tmp_path):
    path = tmp_path / "fake_server.py"
    path.write_text(FAKE_SERVER)
    return path


@pytest.fixture
def make_config(server_script):
    def _make(name="fake", tools="echo", **kwargs):
        return ServerConfig(
            name=name,
            command=sys.executable,
            args=(str(server_script), tools),
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


class TestServerNames:
    def test_valid(self):
        validate_server_name("my-server_1")

    def test_invalid_characters(self):
        with pytest.raises(ConfigError, match="invalid"):
            validate_server_name("bad name")

    def test_double_underscore(self):
        with pytest.raises(ConfigError, match="double underscores"):
            validate_server_name("a__b")

    def test_namespacing_round_trip(self):
        assert namespaced_name("fs", "read") == "mcp__fs__read"
        assert split_namespaced("mcp__fs__read") == ("fs", "read")

    def test_split_keeps_underscores_in_tool(self):
        assert split_namespaced("mcp__fs__read__all") == ("fs", "read__all")

    def test_split_rejects_bare_names(self):
        assert split_namespaced("read_file") is None
        assert split_namespaced("mcp__fs") is None


class TestParseCallResult:
    def test_valid_result(self):
        result = parse_call_result({"content": [{"type": "text", "text": "hi"}]})
        assert result.content[0].text == "hi"
        assert result.isError is False

    def test_malformed_result_becomes_error(self):
        result = parse_call_result({"content": [{"type": "text"}]})
        assert result.isError is True
        assert "malformed" in result.content[0].text


# ---------------------------------------------------------------------------
# Client against a real child process
# ---------------------------------------------------------------------------


class TestMcpClient:
    @pytest.mark.asyncio
    async def test_handshake_and_tools(self, make_config):
        client = McpClient(make_config(tools="echo,fail"))
        await client.connect()
        try:
            assert client.state is ConnectionState.READY
            assert client.is_connected
            # the nameless descriptor is skipped
            assert [t.name for t in client.tools] == ["echo", "fail"]
        finally:
            await client.disconnect()
        assert client.state is ConnectionState.DISCONNECTED
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_unparseable_line_logged(self, make_config, caplog):
        client = McpClient(make_config())
        with caplog.at_level(logging.WARNING, logger="snipcode.mcp_client"):
            await client.connect()
        await client.disconnect()
        assert "unparseable line" in caplog.text

    @pytest.mark.asyncio
    async def test_call_tool(self, make_config):
        client = McpClient(make_config())
        await client.connect()
        try:
            result = await client.call_tool("echo", {"text": "hello"})
            assert result.content[0].text == "hello"
            assert not result.isError
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_initialized_notification_sent(self, make_config):
        client = McpClient(make_config())
        await client.connect()
        try:
            result = await client.call_tool("notifications", {})
            assert result.content[0].text == "notifications/initialized"
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_env_merged(self, make_config):
        client = McpClient(make_config(env={"FAKE_ENV": "from-config"}))
        await client.connect()
        try:
            result = await client.call_tool("env", {})
            assert result.content[0].text == "from-config"
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_string_id_matched(self, make_config):
        client = McpClient(make_config())
        await client.connect()
        try:
            result = await client.call_tool("string_id", {})
            assert result.content[0].text == "by string"
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_remote_error(self, make_config):
        client = McpClient(make_config(tools="fail"))
        await client.connect()
        try:
            with pytest.raises(McpRemoteError) as exc_info:
                await client.call_tool("fail", {})
            assert str(exc_info.value) == "MCP Error: boom (code: -32000)"
            assert exc_info.value.code == -32000
            # connection survives an error response
            assert client.is_connected
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_timeout_retires_request(self, make_config):
        client = McpClient(make_config(tools="slow,echo"), request_timeout=0.2)
        await client.connect()
        try:
            with pytest.raises(McpRequestTimeout, match="Request timeout for method: tools/call"):
                await client.call_tool("slow", {"delay": 0.6})
            assert client.pending_count == 0
            # the late answer to the slow call is dropped, the next one resolves
            client.request_timeout = 5.0
            result = await client.call_tool("echo", {"text": "after"})
            assert result.content[0].text == "after"
            assert client.pending_count == 0
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_process_exit_rejects_pending(self, make_config):
        client = McpClient(make_config(tools="die"))
        await client.connect()
        try:
            with pytest.raises(McpDisconnectedError):
                await client.call_tool("die", {})
            assert client.pending_count == 0
            assert client.state is ConnectionState.FAILED
            with pytest.raises(McpConnectionError):
                await client.call_tool("die", {})
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_rejects_pending(self, make_config):
        client = McpClient(make_config(tools="slow"))
        await client.connect()
        task = asyncio.create_task(client.call_tool("slow", {"delay": 2}))
        await asyncio.sleep(0.1)
        assert client.pending_count == 1
        await client.disconnect()
        with pytest.raises(McpDisconnectedError):
            await task
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path):
        client = McpClient(
            ServerConfig(name="missing", command=str(tmp_path / "no-such-binary"))
        )
        with pytest.raises(McpConnectionError, match="failed to start"):
            await client.connect()
        assert client.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_handshake_failure(self, tmp_path):
        script = tmp_path / "silent.py"
        script.write_text("import sys\nsys.stdin.read()\n")
        client = McpClient(
            ServerConfig(name="silent", command=sys.executable, args=(str(script),)),
            request_timeout=0.2,
        )
        with pytest.raises(McpConnectionError, match="handshake failed"):
            await client.connect()
        assert client.state is ConnectionState.FAILED
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_call_before_connect(self, make_config):
        client = McpClient(make_config())
        with pytest.raises(McpConnectionError, match="not connected"):
            await client.call_tool("echo", {})

    @pytest.mark.asyncio
    async def test_double_connect_rejected(self, make_config):
        client = McpClient(make_config())
        await client.connect()
        try:
            with pytest.raises(McpConnectionError, match="already connected"):
                await client.connect()
        finally:
            await client.disconnect()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestMcpRegistry:
    @pytest.mark.asyncio
    async def test_disabled_server_skipped(self, make_config):
        registry = McpRegistry()
        await registry.initialize_servers(
            [
                make_config(name="off", tools="hidden", enabled=False),
                make_config(name="on", tools="echo"),
            ]
        )
        try:
            assert registry.get_connected_servers() == ["on"]
            assert [t.name for t in registry.get_all_tools()] == ["echo"]
            assert registry.find_tool_server("hidden") is None
        finally:
            await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_failed_server_isolated(self, make_config, tmp_path, capsys):
        registry = McpRegistry()
        await registry.initialize_servers(
            [
                ServerConfig(name="broken", command=str(tmp_path / "nope")),
                make_config(name="good"),
            ]
        )
        try:
            assert registry.get_connected_servers() == ["good"]
            assert "broken" in capsys.readouterr().err
        finally:
            await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_call_routes_to_server(self, make_config):
        registry = McpRegistry()
        await registry.initialize_servers([make_config(name="a")])
        try:
            server = registry.find_tool_server("echo")
            result = await registry.call_tool(server, "echo", {"text": "routed"})
            assert result.content[0].text == "routed"
        finally:
            await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_call_unknown_server(self):
        registry = McpRegistry()
        with pytest.raises(McpConnectionError, match='MCP server "ghost" not found'):
            await registry.call_tool("ghost", "echo", {})

    @pytest.mark.asyncio
    async def test_duplicates_resolve_by_order_and_namespace(self, make_config, capsys):
        registry = McpRegistry()
        await registry.initialize_servers(
            [make_config(name="first"), make_config(name="second")]
        )
        try:
            assert registry.duplicate_tools() == {"echo": ["first", "second"]}
            assert registry.resolve_tool("echo") == ("first", "echo")
            assert registry.resolve_tool("mcp__second__echo") == ("second", "echo")
            assert registry.resolve_tool("mcp__third__echo") is None
            assert "mcp__second__echo" in capsys.readouterr().err
        finally:
            await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_tool_info_grouped_by_server(self, make_config):
        registry = McpRegistry()
        await registry.initialize_servers(
            [make_config(name="a", tools="echo"), make_config(name="b", tools="fail")]
        )
        try:
            info = registry.get_tool_info()
            assert {k: [t.name for t in v] for k, v in info.items()} == {
                "a": ["echo"],
                "b": ["fail"],
            }
        finally:
            await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_reinitialize_replaces_connections(self, make_config):
        registry = McpRegistry()
        await registry.initialize_servers([make_config(name="old")])
        old_client = registry.get_client("old")
        await registry.initialize_servers([make_config(name="new")])
        try:
            assert registry.get_connected_servers() == ["new"]
            assert old_client.state is ConnectionState.DISCONNECTED
        finally:
            await registry.disconnect_all()
