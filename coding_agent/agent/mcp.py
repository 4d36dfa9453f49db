"""Browser-automation tools discovered from an MCP server over SSE.

The server's tool list is treated as opaque: names, descriptions and input
schemas are forwarded to the model unchanged, and calls are forwarded to the
server without local validation.
"""

import logging
from types import TracebackType
from typing import Any

from agents.mcp import MCPServerSse
from mcp.types import CallToolResult, TextContent, Tool

from coding_agent.agent.registry import EMPTY_SCHEMA, ToolDescriptor
from coding_agent.errors import ToolDiscoveryError


logger = logging.getLogger("coding_agent.mcp")


def call_tool_result_payload(result: CallToolResult) -> Any:
    """Flatten an MCP CallToolResult into something JSON-friendly for the model."""
    texts: list[str] = []
    attachments: list[dict[str, Any]] = []
    for item in result.content:
        if isinstance(item, TextContent):
            texts.append(item.text)
            continue
        # binary payloads (screenshots) are too large to hand back verbatim
        attachments.append(item.model_dump(exclude={"data", "blob"}))

    if result.isError:
        return {"error": "\n".join(texts) or "Remote tool reported an error"}

    structured = result.structuredContent
    if not attachments and not structured:
        return "\n".join(texts)
    payload: dict[str, Any] = {"content": "\n".join(texts)}
    if attachments:
        payload["attachments"] = attachments
    if structured:
        payload["structured"] = structured
    return payload


class MCPToolSource:
    """Session-scoped connection to the automation server.

    Use as an async context manager: entering connects (failure is fatal for
    the session), exiting closes the SSE stream.
    """

    def __init__(
        self,
        url: str,
        *,
        name: str = "playwright",
        timeout_seconds: float = 10.0,
        server: Any = None,
    ) -> None:
        self.url = url
        self.server = server or MCPServerSse(
            params={"url": url},
            name=name,
            cache_tools_list=True,
            client_session_timeout_seconds=timeout_seconds,
        )

    async def __aenter__(self) -> "MCPToolSource":
        try:
            await self.server.connect()
        except Exception as e:
            raise ToolDiscoveryError(f"Could not connect to MCP server at {self.url}: {e}") from e
        logger.info("connected to MCP server %s", self.url)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        try:
            await self.server.cleanup()
        except Exception:
            logger.exception("error closing MCP server connection %s", self.url)

    async def list_tools(self) -> list[ToolDescriptor]:
        try:
            tools = await self.server.list_tools()
        except Exception as e:
            raise ToolDiscoveryError(f"Could not list tools from {self.url}: {e}") from e
        return [self._descriptor(tool) for tool in tools]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        result = await self.server.call_tool(name, arguments or {})
        return call_tool_result_payload(result)

    def _descriptor(self, tool: Tool) -> ToolDescriptor:
        name = tool.name

        async def execute(args: dict[str, Any]) -> Any:
            return await self.call_tool(name, args)

        return ToolDescriptor(
            name=name,
            description=tool.description or "",
            input_schema=dict(tool.inputSchema or EMPTY_SCHEMA),
            executor=execute,
            source="remote",
        )
