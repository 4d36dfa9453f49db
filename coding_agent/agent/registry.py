import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator
from typing import Any, Literal, Protocol

from agents import FunctionTool
from agents.tool_context import ToolContext
from pydantic import BaseModel, ConfigDict, Field

from coding_agent.agent.context import ToolCall, ToolResult
from coding_agent.errors import ToolCollisionError, ToolDiscoveryError


logger = logging.getLogger("coding_agent.registry")


Executor = Callable[[dict[str, Any]], Awaitable[Any]]
ResultCallback = Callable[[ToolResult], None]

EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


class ToolDescriptor(BaseModel):
    """A named, schema-described action the model can call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: dict(EMPTY_SCHEMA))
    executor: Executor
    source: Literal["local", "remote"] = "local"
    needs_sandbox: bool = False


class ToolSource(Protocol):
    """Anything that can advertise tools at session start (e.g. an MCP server)."""

    async def list_tools(self) -> list[ToolDescriptor]: ...


class ToolRegistry:
    """Mapping of tool name to descriptor, plus the per-tool failure boundary.

    execute() never raises for tool-level problems: unknown names, undecodable
    arguments, timeouts and executor exceptions all come back as a ToolResult
    with is_error set, so the runner can show them to the model.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._tools: dict[str, ToolDescriptor] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def register(self, tool: ToolDescriptor) -> None:
        if tool.name in self._tools:
            raise ToolCollisionError([tool.name])
        self._tools[tool.name] = tool

    def merge(
        self,
        tools: Iterable[ToolDescriptor],
        policy: Literal["error", "remote"] = "error",
    ) -> None:
        """Merge a second tool set in.

        With policy "error" any name already present aborts the merge before
        anything is added. With "remote" incoming tools replace existing ones.
        """
        incoming = list(tools)
        clashes = [t.name for t in incoming if t.name in self._tools]
        if clashes and policy == "error":
            raise ToolCollisionError(clashes)
        for name in clashes:
            logger.warning("tool %s overridden by remote definition", name)
        for tool in incoming:
            self._tools[tool.name] = tool

    def function_tools(self, on_result: ResultCallback | None = None) -> list[FunctionTool]:
        """Expose every tool to the runner; each invocation goes through execute()."""
        return [self._function_tool(tool, on_result) for tool in self._tools.values()]

    def _function_tool(self, tool: ToolDescriptor, on_result: ResultCallback | None) -> FunctionTool:
        async def invoke(ctx: ToolContext[Any], raw_arguments: str) -> str:
            call = ToolCall.from_json(ctx.tool_call_id, tool.name, raw_arguments)
            result = await self.execute(call)
            if on_result is not None:
                on_result(result)
            return result.content()

        return FunctionTool(
            name=tool.name,
            description=tool.description,
            params_json_schema=tool.input_schema or dict(EMPTY_SCHEMA),
            on_invoke_tool=invoke,
            # remote schemas are not guaranteed to satisfy strict mode
            strict_json_schema=False,
        )

    async def execute(self, call: ToolCall) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("model requested unknown tool %s", call.name)
            return ToolResult(
                call_id=call.id,
                name=call.name,
                output={"error": f"Unknown tool: {call.name}"},
                is_error=True,
            )
        if call.argument_error:
            return ToolResult(
                call_id=call.id,
                name=call.name,
                output={"error": f"Invalid tool arguments: {call.argument_error}"},
                is_error=True,
            )

        try:
            if self.timeout_seconds:
                output = await asyncio.wait_for(
                    tool.executor(call.arguments), timeout=self.timeout_seconds
                )
            else:
                output = await tool.executor(call.arguments)
        except asyncio.TimeoutError:
            logger.warning("tool %s timed out after %ss", call.name, self.timeout_seconds)
            output = {"error": f"Tool {call.name} timed out after {self.timeout_seconds}s"}
        except Exception as e:
            logger.warning("tool %s failed: %s", call.name, e, exc_info=True)
            output = {"error": str(e) or type(e).__name__}

        is_error = isinstance(output, dict) and "error" in output
        return ToolResult(call_id=call.id, name=call.name, output=output, is_error=is_error)


async def build_registry(
    local_tools: Iterable[ToolDescriptor],
    source: ToolSource | None = None,
    *,
    collision_policy: Literal["error", "remote"] = "error",
    timeout_seconds: float | None = None,
) -> ToolRegistry:
    """Build the session registry: local tools first, then discovered remote tools.

    Discovery failure raises ToolDiscoveryError; no partial registry is returned.
    """
    registry = ToolRegistry(timeout_seconds=timeout_seconds)
    for tool in local_tools:
        registry.register(tool)

    if source is None:
        return registry

    try:
        remote = await source.list_tools()
    except ToolDiscoveryError:
        raise
    except Exception as e:
        raise ToolDiscoveryError(f"Could not list remote tools: {e}") from e

    registry.merge(remote, policy=collision_policy)
    logger.info(
        "tool registry ready: %d tools (%d remote)",
        len(registry),
        sum(1 for t in registry if t.source == "remote"),
    )
    return registry
