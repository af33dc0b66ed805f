"""Remote tool/resource/prompt client (MCP) used by remote sources and tools."""

from __future__ import annotations

from collections.abc import Mapping
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from braid.errors import BraidError, ConfigurationError, NotConnectedError, RemoteToolError
from braid.sources import text_of_content
from braid.tools import ToolDefinition, ToolRegistry

NOT_CONNECTED_ERROR = "Not connected to an MCP server. Call connect() first."


@dataclass(frozen=True)
class MCPServerSpec:
    """How to reach one MCP server."""

    transport: Literal["stdio", "streamable-http"] = "stdio"
    command: str | None = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


class RemoteClient(Protocol):
    """Shape the engine relies on. Results are plain JSON-like dicts."""

    async def connect(self, target: MCPServerSpec) -> None: ...

    async def disconnect(self) -> None: ...

    async def list_tools(self) -> dict[str, Any]: ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]: ...

    async def read_resource(self, uri: str) -> dict[str, Any]: ...

    async def get_prompt(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]: ...


class MCPClient:
    """Client on the official ``mcp`` SDK. Safe to share across executions."""

    def __init__(self) -> None:
        self._session: ClientSession | None = None
        self._stack: AsyncExitStack | None = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self, target: MCPServerSpec) -> None:
        if self._session is not None:
            raise BraidError("Already connected to an MCP server")

        stack = AsyncExitStack()
        try:
            if target.transport == "stdio":
                if not target.command:
                    raise ConfigurationError("Command is required for stdio transport")
                params = StdioServerParameters(
                    command=target.command,
                    args=list(target.args),
                    env=dict(target.env) if target.env else None,
                )
                read, write = await stack.enter_async_context(stdio_client(params))
            else:
                if not target.url:
                    raise ConfigurationError("URL is required for streamable-http transport")
                read, write, _ = await stack.enter_async_context(
                    streamablehttp_client(target.url, headers=dict(target.headers) or None)
                )
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise

        self._stack = stack
        self._session = session
        logger.info("mcp.connected transport={} target={}", target.transport, target.command or target.url)

    async def disconnect(self) -> None:
        if self._stack is None:
            return
        stack, self._stack, self._session = self._stack, None, None
        await stack.aclose()
        logger.info("mcp.disconnected")

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise NotConnectedError(NOT_CONNECTED_ERROR)
        return self._session

    async def list_tools(self) -> dict[str, Any]:
        result = await self._require_session().list_tools()
        return result.model_dump(mode="json")

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]:
        result = await self._require_session().call_tool(name, arguments=dict(arguments))
        return result.model_dump(mode="json")

    async def read_resource(self, uri: str) -> dict[str, Any]:
        result = await self._require_session().read_resource(uri)  # type: ignore[arg-type]
        return result.model_dump(mode="json")

    async def get_prompt(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]:
        rendered = {key: str(value) for key, value in arguments.items()}
        result = await self._require_session().get_prompt(name, arguments=rendered)
        return result.model_dump(mode="json")


def remote_tool(client: RemoteClient, spec: Mapping[str, Any]) -> ToolDefinition:
    """Wrap one entry of a ``list_tools`` result as a local tool definition."""
    name = str(spec["name"])

    async def _handler(args: dict[str, Any]) -> str:
        result = await client.call_tool(name, args)
        text = text_of_content(result.get("content", []))
        if result.get("isError"):
            raise RemoteToolError(text or f"remote tool {name} failed")
        return text

    return ToolDefinition(
        name=name,
        description=str(spec.get("description") or ""),
        handler=_handler,
        argument_schema=spec.get("inputSchema") or None,
        source="remote",
    )


async def register_remote_tools(registry: ToolRegistry, client: RemoteClient) -> list[str]:
    """Add every tool the connected server advertises. Returns the added names."""
    listing = await client.list_tools()
    added: list[str] = []
    for spec in listing.get("tools", []):
        registry.add(remote_tool(client, spec))
        added.append(str(spec["name"]))
    logger.info("mcp.tools.registered count={} names={}", len(added), ",".join(added))
    return added
