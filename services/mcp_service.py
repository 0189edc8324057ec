"""
MCP server integration.
Connects to the MCP servers configured on a chat request, collects their
tools and closes every connection when the request is done.
"""
import asyncio
import json
import os
from contextlib import AsyncExitStack
from typing import Any, AsyncContextManager, Callable, Optional
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from config import Config
from models.api_models import KeyValuePair, MCPServerConfig
from models.chat_models import MCPInitResult, ResourceResult, ToolDefinition
from utils.constants import (
    MCP_CLIENT_NAME,
    MCP_CLIENT_VERSION,
    MCP_DISABLED_MODELS,
    MCP_PROTOCOL_VERSION,
    MCPTransport,
)
from utils.errors import MCPConfigurationError
from utils.logger import app_logger


def key_value_pairs_to_dict(pairs: Optional[list[KeyValuePair]]) -> dict[str, str]:
    """Convert [{key, value}] into a dict, skipping empty keys."""
    return {pair.key: pair.value or "" for pair in pairs or [] if pair.key}


def server_label(server: MCPServerConfig) -> str:
    if server.type == MCPTransport.STDIO:
        return f"stdio:{server.command} {' '.join(server.args or [])}".strip()
    return f"{server.type}:{server.url}"


def tool_result_to_text(result: Any) -> str:
    """Flatten an MCP tool result into text for the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = []
        for item in result["content"]:
            if item.get("type") == "text":
                texts.append(item.get("text", ""))
            else:
                texts.append(json.dumps(item))
        return "\n".join(texts)
    return json.dumps(result, default=str)


class MCPClient:
    """One MCP client session over a transport, owning its resources."""

    def __init__(self, name: str, transport_factory: Callable[[], AsyncContextManager]):
        self.name = name
        self._transport_factory = transport_factory
        self.exit_stack = AsyncExitStack()
        self.session: ClientSession | None = None

    async def connect(self, timeout: float) -> None:
        streams = await self.exit_stack.enter_async_context(self._transport_factory())
        read_stream, write_stream = streams[0], streams[1]

        client_info = types.Implementation(name=MCP_CLIENT_NAME, version=MCP_CLIENT_VERSION)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )
        await asyncio.wait_for(self.session.initialize(), timeout=timeout)
        app_logger.info(f"MCP client '{self.name}' connected")

    async def list_tools(self) -> list[types.Tool]:
        if self.session is None:
            raise RuntimeError(f"MCP client '{self.name}' is not connected")
        result = await self.session.list_tools()
        return result.tools

    async def call_tool(self, name: str, arguments: Optional[dict] = None) -> dict:
        if self.session is None:
            raise RuntimeError(f"MCP client '{self.name}' is not connected")

        app_logger.info(f"Calling tool '{name}' on '{self.name}'")
        result = await self.session.call_tool(name, arguments or {})
        return result.model_dump(mode="json", exclude_none=True)

    async def close(self) -> None:
        self.session = None
        await self.exit_stack.aclose()
        app_logger.info(f"MCP client '{self.name}' disconnected")


class ChatMCPServerService:
    """Service for MCP tool aggregation on chat requests."""

    @staticmethod
    def validate_server_config(server: MCPServerConfig) -> None:
        """
        Raises:
            MCPConfigurationError: Unknown transport or incomplete stdio entry
        """
        if server.type not in MCPTransport.ALL:
            raise MCPConfigurationError(f"Unsupported MCP transport type: {server.type}")
        if server.type == MCPTransport.STDIO and (not server.command or not server.args):
            raise MCPConfigurationError("Missing command or args for stdio MCP server")

    @staticmethod
    def create_transport(server: MCPServerConfig) -> Callable[[], AsyncContextManager]:
        """Factory for the transport context manager of a validated server entry."""
        ChatMCPServerService.validate_server_config(server)
        headers = key_value_pairs_to_dict(server.headers)

        if server.type == MCPTransport.SSE:
            return lambda: sse_client(server.url, headers=headers or None)

        if server.type == MCPTransport.STREAMABLE_HTTP:
            http_headers = {"MCP-Protocol-Version": MCP_PROTOCOL_VERSION, **headers}
            return lambda: streamablehttp_client(server.url, headers=http_headers)

        env = key_value_pairs_to_dict(server.env)
        params = StdioServerParameters(
            command=server.command,
            args=list(server.args),
            env={**os.environ, **env} if env else None,
        )
        return lambda: stdio_client(params)

    @staticmethod
    async def _run_install(command: list[str]) -> bool:
        """Run a package install command; failures are logged only."""
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            app_logger.error(f"Error spawning '{' '.join(command)}': {e}")
            return False

        if process.returncode != 0:
            app_logger.error(f"'{' '.join(command)}' failed with exit code {process.returncode}")
            app_logger.error(f"stderr: {stderr.decode(errors='replace').strip()}")
            return False

        app_logger.info(f"'{' '.join(command)}' succeeded")
        app_logger.debug(f"stdout: {stdout.decode(errors='replace').strip()}")
        return True

    @staticmethod
    async def install_stdio_dependencies(server: MCPServerConfig) -> Optional[bool]:
        """
        Best-effort install for stdio servers.
        `uvx` needs uv itself; `python3 -m <pkg>` needs the package.
        Returns None when nothing had to be installed.
        """
        command = server.command or ""
        args = server.args or []

        if command == "uvx":
            app_logger.info("Ensuring uv (for uvx) is installed...")
            return await ChatMCPServerService._run_install(["pip3", "install", "uv"])

        if "python3" in command:
            if "-m" not in args or args.index("-m") + 1 >= len(args):
                app_logger.warning("python3 MCP server without '-m <package>', skipping install")
                return None
            package = args[args.index("-m") + 1]
            app_logger.info(f"Installing python package {package} using uv")
            return await ChatMCPServerService._run_install(["uv", "pip", "install", package])

        return None

    @staticmethod
    def _convert_tool(tool: types.Tool, client: MCPClient) -> ToolDefinition:
        async def execute(arguments: dict) -> dict:
            return await client.call_tool(tool.name, arguments)

        return ToolDefinition(
            name=tool.name,
            description=tool.description or "",
            parameters=tool.inputSchema or {"type": "object", "properties": {}},
            execute=execute,
        )

    @staticmethod
    async def close_clients(clients: list[MCPClient]) -> list[ResourceResult]:
        """Close every client; a failing close is reported, never raised."""
        results = []
        for client in clients:
            try:
                await client.close()
                results.append(ResourceResult(resource=client.name, ok=True))
            except Exception as e:
                app_logger.error(f"Error closing MCP client '{client.name}': {e}")
                results.append(ResourceResult(resource=client.name, ok=False, error=str(e)))
        return results

    @staticmethod
    async def initialize_mcp_servers(
        mcp_servers: list[MCPServerConfig],
        model_id: str,
        init_timeout: Optional[float] = None,
    ) -> MCPInitResult:
        """
        Connect to each configured server and merge their tools.

        Args:
            mcp_servers: Server descriptors from the request
            model_id: Selected model id
            init_timeout: Seconds allowed for each session handshake

        Returns:
            MCPInitResult with tools, open clients, one result per server and
            a cleanup coroutine function

        Raises:
            MCPConfigurationError: A server entry is misconfigured
        """
        clients: list[MCPClient] = []

        async def cleanup() -> list[ResourceResult]:
            return await ChatMCPServerService.close_clients(clients)

        if model_id in MCP_DISABLED_MODELS:
            app_logger.info(f"MCP tools disabled for {model_id}")
            return MCPInitResult(tools={}, mcp_clients=clients, server_results=[], cleanup=cleanup)

        transports = [ChatMCPServerService.create_transport(server) for server in mcp_servers]
        timeout = init_timeout if init_timeout is not None else Config.MCP_INIT_TIMEOUT

        tools: dict[str, ToolDefinition] = {}
        server_results: list[ResourceResult] = []

        for server, transport_factory in zip(mcp_servers, transports):
            label = server_label(server)

            if server.type == MCPTransport.STDIO:
                await ChatMCPServerService.install_stdio_dependencies(server)

            client = MCPClient(label, transport_factory)
            try:
                await client.connect(timeout)
                remote_tools = await client.list_tools()
            except Exception as e:
                app_logger.error(f"Failed to initialize MCP server {label}: {e}")
                server_results.append(ResourceResult(
                    resource=label,
                    ok=False,
                    detail={"transport": server.type},
                    error=str(e) or type(e).__name__,
                ))
                try:
                    await client.close()
                except Exception as close_error:
                    app_logger.debug(f"Cleanup after failed connect of {label}: {close_error}")
                continue

            clients.append(client)
            for tool in remote_tools:
                if tool.name in tools:
                    app_logger.warning(f"MCP tool '{tool.name}' from {label} overrides an earlier tool")
                tools[tool.name] = ChatMCPServerService._convert_tool(tool, client)

            tool_names = [tool.name for tool in remote_tools]
            app_logger.info(f"MCP tools from {label}: {tool_names}")
            server_results.append(ResourceResult(
                resource=label,
                ok=True,
                detail={"transport": server.type, "tools": tool_names},
            ))

        return MCPInitResult(tools=tools, mcp_clients=clients, server_results=server_results, cleanup=cleanup)
