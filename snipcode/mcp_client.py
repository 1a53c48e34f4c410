"""MCP (Model Context Protocol) client integration for snipcode.

McpClient owns one tool process and speaks newline-delimited JSON-RPC 2.0
with it over stdio. McpRegistry owns a named collection of clients and
presents them as one tool surface.
"""

import asyncio
import enum
import json
import logging
import os
import re
from dataclasses import dataclass, field

from mcp import types
from pydantic import ValidationError

from . import fmt
from .report import ConfigError
from .results import text_result

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
INITIALIZED_NOTIFICATION = "notifications/initialized"
REQUEST_TIMEOUT = 30.0
CLIENT_INFO = {"name": "snipcode", "version": "1.0.0"}

NAMESPACE_PREFIX = "mcp__"

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_READ_CHUNK = 64 * 1024
_KILL_WAIT_TIMEOUT = 5


class McpError(Exception):
    """Base class for tool-process failures."""


class McpConnectionError(McpError):
    """Spawn, handshake or connection-state failure."""


class McpRequestTimeout(McpError):
    """No response arrived before the request deadline."""


class McpDisconnectedError(McpError):
    """The connection went away while a request was pending."""


class McpRemoteError(McpError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, message: str, code=None, data=None):
        super().__init__(f"MCP Error: {message} (code: {code})")
        self.code = code
        self.data = data


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZED = "initialized"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerConfig:
    """Launch settings for one stdio tool process."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    transport: str = "stdio"


def validate_server_name(name: str) -> None:
    """Validate an MCP server name. Raises ConfigError if invalid."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if "__" in name:
        raise ConfigError(
            f"MCP server name {name!r} must not contain double underscores"
        )


def namespaced_name(server: str, tool: str) -> str:
    return f"{NAMESPACE_PREFIX}{server}__{tool}"


def split_namespaced(name: str) -> tuple[str, str] | None:
    """Split ``mcp__<server>__<tool>`` into (server, tool), or return None."""
    if not name.startswith(NAMESPACE_PREFIX):
        return None
    server, sep, tool = name[len(NAMESPACE_PREFIX) :].partition("__")
    if not sep or not server or not tool:
        return None
    return server, tool


def parse_call_result(result) -> types.CallToolResult:
    """Validate a ``tools/call`` result against the known content block kinds."""
    try:
        return types.CallToolResult.model_validate(result)
    except ValidationError as e:
        return text_result(
            f"MCP server returned a malformed tool result "
            f"({e.error_count()} validation errors)",
            is_error=True,
        )


class McpClient:
    """One JSON-RPC connection to a stdio tool process.

    A reader task owns the process's stdout: it splits it into lines and
    resolves the pending request with the matching id. Requests that get
    no answer within ``request_timeout`` are removed from the pending table
    and fail with McpRequestTimeout; a late answer for them is dropped.
    """

    def __init__(self, config: ServerConfig, *, request_timeout: float = REQUEST_TIMEOUT):
        self.config = config
        self.request_timeout = request_timeout
        self.state = ConnectionState.DISCONNECTED
        self.tools: list[types.Tool] = []

        self._process: asyncio.subprocess.Process | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._buffer = b""
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._closing = False
        self._eof = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self.state is ConnectionState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # --- Lifecycle ---

    async def connect(self) -> None:
        """Spawn the process, run the handshake and cache the tool list."""
        if self._process is not None:
            raise McpConnectionError(f"MCP server {self.name} is already connected")

        self.state = ConnectionState.CONNECTING
        self._closing = False
        self._eof = False
        env = {**os.environ, **self.config.env} if self.config.env else None
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            self.state = ConnectionState.FAILED
            raise McpConnectionError(
                f"failed to start MCP server {self.name}: {e}"
            ) from e

        self._reader_task = asyncio.create_task(
            self._read_stdout(), name=f"mcp-{self.name}-stdout"
        )
        self._stderr_task = asyncio.create_task(
            self._read_stderr(), name=f"mcp-{self.name}-stderr"
        )

        try:
            await self._handshake()
        except McpError as e:
            await self.disconnect()
            self.state = ConnectionState.FAILED
            if isinstance(e, McpConnectionError):
                raise
            raise McpConnectionError(
                f"MCP server {self.name} handshake failed: {e}"
            ) from e

    async def _handshake(self) -> None:
        await self.send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": CLIENT_INFO,
            },
        )
        self.state = ConnectionState.INITIALIZED
        await self.send_notification(INITIALIZED_NOTIFICATION, {})
        await self.refresh_tools()
        self.state = ConnectionState.READY

    async def disconnect(self) -> None:
        """Stop the process and reject every request still waiting for an answer."""
        process = self._process
        if process is None:
            self.state = ConnectionState.DISCONNECTED
            return

        self._closing = True
        self._reject_pending(f"MCP server {self.name} was disconnected")

        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=_KILL_WAIT_TIMEOUT)
            except ProcessLookupError:
                pass
            except TimeoutError:
                logger.warning("MCP server %s ignored SIGTERM, killing it", self.name)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._process = None
        self._reader_task = None
        self._stderr_task = None
        self._buffer = b""
        self.tools = []
        self.state = ConnectionState.DISCONNECTED

    # --- Requests ---

    async def send_request(self, method: str, params: dict | None = None):
        """Send a request and wait for its result.

        Raises McpRequestTimeout, McpRemoteError, McpDisconnectedError or
        McpConnectionError.
        """
        if self._process is None or self._process.stdin is None:
            raise McpConnectionError(f"MCP server {self.name} is not connected")
        if self._eof:
            raise McpDisconnectedError(f"MCP server {self.name} closed its output stream")

        request_id = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        message: dict = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._write(message)
            return await asyncio.wait_for(future, self.request_timeout)
        except TimeoutError:
            raise McpRequestTimeout(f"Request timeout for method: {method}") from None
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: dict | None = None) -> None:
        """Send a message that expects no response."""
        if self._process is None or self._process.stdin is None:
            raise McpConnectionError(f"MCP server {self.name} is not connected")
        message: dict = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def refresh_tools(self) -> list[types.Tool]:
        """Ask the server for its tools and cache the valid descriptors."""
        self._require_initialized()
        result = await self.send_request("tools/list")
        raw_tools = result.get("tools") if isinstance(result, dict) else None
        tools = []
        for item in raw_tools or []:
            try:
                tools.append(types.Tool.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "MCP server %s: skipping malformed tool descriptor: %s",
                    self.name,
                    e,
                )
        self.tools = tools
        return tools

    async def call_tool(self, name: str, arguments) -> types.CallToolResult:
        """Invoke ``tools/call`` and return its validated result."""
        self._require_initialized()
        result = await self.send_request(
            "tools/call", {"name": name, "arguments": arguments}
        )
        return parse_call_result(result)

    def has_tool(self, name: str) -> bool:
        return any(tool.name == name for tool in self.tools)

    # --- Internal helpers ---

    def _require_initialized(self) -> None:
        if self._process is None:
            raise McpConnectionError(f"MCP server {self.name} is not connected")
        if self.state not in (ConnectionState.INITIALIZED, ConnectionState.READY):
            raise McpConnectionError(f"MCP server {self.name} is not initialized")

    async def _write(self, message: dict) -> None:
        line = json.dumps(message) + "\n"
        async with self._write_lock:
            stdin = self._process.stdin
            try:
                stdin.write(line.encode("utf-8"))
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise McpConnectionError(
                    f"MCP server {self.name}: write failed: {e}"
                ) from e

    def _reject_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(McpDisconnectedError(reason))

    async def _read_stdout(self) -> None:
        stdout = self._process.stdout
        try:
            while True:
                chunk = await stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                self._buffer += chunk
                *lines, self._buffer = self._buffer.split(b"\n")
                for line in lines:
                    self._handle_line(line)
        finally:
            self._on_stdout_closed()

    def _handle_line(self, line: bytes) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("MCP server %s: dropping unparseable line: %s", self.name, e)
            return

        if not isinstance(message, dict) or "id" not in message:
            logger.debug("MCP server %s: ignoring message without id", self.name)
            return
        if "method" in message:
            logger.debug(
                "MCP server %s: ignoring server request %r",
                self.name,
                message["method"],
            )
            return

        request_id = message["id"]
        if isinstance(request_id, str) and request_id.isdigit():
            request_id = int(request_id)
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            logger.debug(
                "MCP server %s: dropping response for unknown id %r",
                self.name,
                message["id"],
            )
            return

        if "error" in message:
            error = message["error"]
            if isinstance(error, dict):
                future.set_exception(
                    McpRemoteError(
                        error.get("message", "unknown error"),
                        error.get("code"),
                        error.get("data"),
                    )
                )
            else:
                future.set_exception(McpRemoteError(str(error)))
        else:
            future.set_result(message.get("result"))

    def _on_stdout_closed(self) -> None:
        if self._buffer.strip():
            logger.debug(
                "MCP server %s: discarding %d bytes of unterminated output",
                self.name,
                len(self._buffer),
            )
        self._buffer = b""
        self._eof = True
        if self._closing:
            return
        self._reject_pending(f"MCP server {self.name} closed its output stream")
        logger.warning("MCP server %s exited", self.name)
        self.state = ConnectionState.FAILED

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        pending = b""
        while True:
            chunk = await stderr.read(_READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug("[%s] %s", self.name, text)


class McpRegistry:
    """Manages connections to multiple MCP servers.

    Servers keep configuration order: when two servers expose the same
    bare tool name, the first configured one answers it. Every remote tool
    is also reachable unambiguously as ``mcp__<server>__<tool>``.
    """

    def __init__(self, *, verbose: bool = False, client_factory=McpClient):
        self._clients: dict[str, McpClient] = {}
        self._client_factory = client_factory
        self._verbose = verbose

    async def initialize_servers(self, configs: list[ServerConfig]) -> None:
        """Replace the current connections with one per enabled config.

        Servers connect concurrently. A server that fails to connect is
        reported and left out; the others are unaffected.
        """
        await self.disconnect_all()
        self._clients = {}

        clients = []
        for config in configs:
            if not config.enabled:
                logger.info("Skipping disabled server %s", config.name)
                if self._verbose:
                    fmt.mcp_server_skipped(config.name)
                continue
            client = self._client_factory(config)
            self._clients[config.name] = client
            clients.append(client)

        outcomes = await asyncio.gather(
            *(client.connect() for client in clients), return_exceptions=True
        )
        for client, outcome in zip(clients, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("MCP server %s failed to connect: %s", client.name, outcome)
                fmt.mcp_server_error(client.name, str(outcome))
            elif self._verbose:
                fmt.mcp_server_start(client.name, len(client.tools))

        for tool, servers in self.duplicate_tools().items():
            others = ", ".join(namespaced_name(s, tool) for s in servers[1:])
            fmt.warning(
                f"tool {tool!r} is exposed by {', '.join(servers)}; "
                f"bare calls go to {servers[0]}, use {others} for the others"
            )

    def _ready_clients(self) -> list[McpClient]:
        return [c for c in self._clients.values() if c.is_connected]

    def get_all_tools(self) -> list[types.Tool]:
        """Tool descriptors of every ready server, duplicates included."""
        tools: list[types.Tool] = []
        for client in self._ready_clients():
            tools.extend(client.tools)
        return tools

    def get_tool_info(self) -> dict[str, list[types.Tool]]:
        """Return {server_name: [tool, ...]} for prompt building."""
        return {client.name: list(client.tools) for client in self._ready_clients()}

    def duplicate_tools(self) -> dict[str, list[str]]:
        """Return {tool_name: [server, ...]} for names exposed by several servers."""
        owners: dict[str, list[str]] = {}
        for client in self._ready_clients():
            for tool in client.tools:
                owners.setdefault(tool.name, []).append(client.name)
        return {name: servers for name, servers in owners.items() if len(servers) > 1}

    def resolve_tool(self, name: str) -> tuple[str, str] | None:
        """Map a bare or namespaced tool name to (server_name, tool_name)."""
        split = split_namespaced(name)
        if split is not None:
            server, tool = split
            client = self._clients.get(server)
            if client is not None and client.is_connected and client.has_tool(tool):
                return server, tool
        for client in self._ready_clients():
            if client.has_tool(name):
                return client.name, name
        return None

    def find_tool_server(self, name: str) -> str | None:
        """Name of the server that answers *name*, or None."""
        resolved = self.resolve_tool(name)
        return resolved[0] if resolved else None

    async def call_tool(
        self, server_name: str, name: str, arguments
    ) -> types.CallToolResult:
        client = self._clients.get(server_name)
        if client is None:
            raise McpConnectionError(f'MCP server "{server_name}" not found')
        if not client.is_connected:
            raise McpConnectionError(f'MCP server "{server_name}" is not connected')
        return await client.call_tool(name, arguments)

    def get_connected_servers(self) -> list[str]:
        return [client.name for client in self._ready_clients()]

    def get_client(self, server_name: str) -> McpClient | None:
        return self._clients.get(server_name)

    async def disconnect_all(self) -> None:
        """Disconnect every server in parallel. Never raises."""
        clients = list(self._clients.values())
        results = await asyncio.gather(
            *(client.disconnect() for client in clients), return_exceptions=True
        )
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.warning("Error disconnecting MCP server %s: %s", client.name, result)
