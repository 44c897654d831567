"""
MCP (Model Context Protocol) servers as tool servers.

One ``MCPClient`` per server. STDIO servers are driven through the official
``mcp`` SDK; the SDK session must stay on the event loop that opened it, so
each STDIO client owns a private loop on a daemon thread and every request
is submitted to that loop. HTTP servers are spoken to with plain JSON-RPC
over httpx.

Tool nodes and agents reach this through ``ToolRegistry``, which registers
each discovered tool under the server's name and awaits ``acall_tool``.
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import httpx

logger = logging.getLogger(__name__)

Transport = Literal["stdio", "http"]


@dataclass
class MCPServerConfig:
    name: str
    transport: Transport = "stdio"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "MCPServerConfig":
        """
        Build a config from one ``mcp_servers.json`` entry. A relative
        ``cwd`` is taken relative to ``base_dir`` (the file's directory).
        """
        cwd = data.get("cwd")
        if cwd and base_dir is not None and not Path(cwd).is_absolute():
            cwd = str((base_dir / cwd).resolve())
        transport = data.get("transport") or ("http" if data.get("url") else "stdio")
        return cls(
            name=data["name"],
            transport=transport,
            command=data.get("command"),
            args=list(data.get("args") or []),
            env=dict(data.get("env") or {}),
            cwd=cwd,
            url=data.get("url"),
            headers=dict(data.get("headers") or {}),
            description=data.get("description", ""),
        )


@dataclass
class MCPTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    server_name: str


class MCPToolError(RuntimeError):
    """The server reported a failed tool call or a protocol error."""


def content_to_result(content: Any) -> Any:
    """
    Reduce an MCP ``content`` list to something a node can store.

    Text blocks are joined with newlines; a single non-text block is returned
    as-is (its ``data`` for binary blocks); anything else is passed through.
    """
    if not isinstance(content, list):
        return content
    if not content:
        return None
    texts = [_block_field(block, "text") for block in content]
    if all(text is not None for text in texts):
        return "\n".join(texts)
    if len(content) == 1:
        data = _block_field(content[0], "data")
        return data if data is not None else content[0]
    return content


def _block_field(block: Any, name: str) -> Any:
    if isinstance(block, dict):
        return block.get(name)
    return getattr(block, name, None)


class MCPClient:
    """
    Synchronous facade over one MCP server.

    ``connect`` opens the session and discovers tools; ``acall_tool`` is the
    async entry point used by the registry, ``call_tool`` the blocking one.
    """

    connect_timeout = 10.0
    call_timeout = 120.0
    close_timeout = 10.0

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.tools: dict[str, MCPTool] = {}
        self.connected = False

        # STDIO: SDK session living on a private loop
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._transport_cm: Any = None
        self._session: Any = None

        # HTTP: JSON-RPC client
        self._http: httpx.Client | None = None
        self._next_id = 0

    def connect(self) -> None:
        if self.connected:
            return
        if self.config.transport == "stdio":
            self._open_stdio()
        elif self.config.transport == "http":
            self._open_http()
        else:
            raise ValueError(f"Unsupported MCP transport '{self.config.transport}'")

        self.tools = {
            entry["name"]: MCPTool(
                name=entry["name"],
                description=entry.get("description") or "",
                input_schema=entry.get("inputSchema") or {},
                server_name=self.config.name,
            )
            for entry in self._request_tool_list()
        }
        self.connected = True
        logger.info(f"✓ MCP server '{self.config.name}' offers {len(self.tools)} tools: {', '.join(self.tools)}")

    def list_tools(self) -> list[MCPTool]:
        self.connect()
        return list(self.tools.values())

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _check_tool(self, tool_name: str) -> None:
        self.connect()
        if tool_name not in self.tools:
            raise MCPToolError(f"Server '{self.config.name}' has no tool '{tool_name}'")

    async def acall_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Call a tool without blocking the caller's event loop."""
        await asyncio.to_thread(self._check_tool, tool_name)
        if self.config.transport == "stdio":
            future = asyncio.run_coroutine_threadsafe(
                self._stdio_call(tool_name, arguments), self._require_loop()
            )
            try:
                return await asyncio.wait_for(asyncio.wrap_future(future), timeout=self.call_timeout)
            except asyncio.CancelledError:
                future.cancel()
                raise
        return await asyncio.to_thread(self._http_call, tool_name, arguments)

    def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        self._check_tool(tool_name)
        if self.config.transport == "stdio":
            return self._submit(self._stdio_call(tool_name, arguments))
        return self._http_call(tool_name, arguments)

    def _request_tool_list(self) -> list[dict[str, Any]]:
        if self.config.transport == "stdio":
            return self._submit(self._stdio_list_tools())
        return self._rpc("tools/list", {}).get("tools", [])

    # ------------------------------------------------------------------
    # STDIO
    # ------------------------------------------------------------------

    def _open_stdio(self) -> None:
        if not self.config.command:
            raise ValueError(f"MCP server '{self.config.name}' needs a command for STDIO")

        from mcp import ClientSession, StdioServerParameters
        from mcp.client.stdio import stdio_client

        params = StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env={**os.environ, **self.config.env},
            cwd=self.config.cwd,
        )

        async def start_session() -> None:
            self._transport_cm = stdio_client(params)
            read, write = await self._transport_cm.__aenter__()
            self._session = ClientSession(read, write)
            await self._session.__aenter__()
            await self._session.initialize()

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name=f"mcp:{self.config.name}", daemon=True
        )
        self._thread.start()
        try:
            self._submit(start_session(), timeout=self.connect_timeout)
        except Exception:
            self._stop_loop()
            raise
        logger.info(f"▶ MCP server '{self.config.name}' started: {self.config.command}")

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or not self._loop.is_running():
            raise MCPToolError(f"MCP server '{self.config.name}' is not connected")
        return self._loop

    def _submit(self, coro: Any, timeout: float | None = None) -> Any:
        try:
            loop = self._require_loop()
        except MCPToolError:
            coro.close()
            raise
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        return future.result(timeout=timeout or self.call_timeout)

    async def _stdio_list_tools(self) -> list[dict[str, Any]]:
        listing = await self._session.list_tools()
        return [
            {"name": tool.name, "description": tool.description, "inputSchema": tool.inputSchema}
            for tool in listing.tools
        ]

    async def _stdio_call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        result = await self._session.call_tool(tool_name, arguments=arguments)
        if getattr(result, "isError", False):
            raise MCPToolError(f"{tool_name}: {content_to_result(result.content or [])}")
        return content_to_result(result.content or [])

    async def _stdio_close(self) -> None:
        # the session reads from streams the transport owns, so it goes first
        for attr in ("_session", "_transport_cm"):
            resource = getattr(self, attr)
            setattr(self, attr, None)
            if resource is None:
                continue
            try:
                await resource.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"MCP server '{self.config.name}': error while closing: {e}")

    def _stop_loop(self) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=self.close_timeout)
        self._loop = None
        self._thread = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _open_http(self) -> None:
        if not self.config.url:
            raise ValueError(f"MCP server '{self.config.name}' needs a url for HTTP")
        self._http = httpx.Client(base_url=self.config.url, headers=self.config.headers, timeout=30.0)
        logger.info(f"▶ MCP server '{self.config.name}' at {self.config.url}")

    def _rpc(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if self._http is None:
            raise MCPToolError(f"MCP server '{self.config.name}' is not connected")
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
        response = self._http.post("/mcp/v1", json=payload)
        response.raise_for_status()
        reply = response.json()
        if reply.get("error"):
            raise MCPToolError(f"{method}: {reply['error']}")
        return reply.get("result") or {}

    def _http_call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        result = self._rpc("tools/call", {"name": tool_name, "arguments": arguments})
        if result.get("isError"):
            raise MCPToolError(f"{tool_name}: {content_to_result(result.get('content', []))}")
        return content_to_result(result.get("content", []))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def disconnect(self) -> None:
        if self._loop is not None and self._loop.is_running():
            try:
                self._submit(self._stdio_close(), timeout=self.close_timeout)
            except Exception as e:
                logger.warning(f"MCP server '{self.config.name}': cleanup failed: {e}")
            self._stop_loop()
        if self._http is not None:
            self._http.close()
            self._http = None
        self.connected = False
        logger.info(f"■ MCP server '{self.config.name}' disconnected")

    def __enter__(self) -> "MCPClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()
