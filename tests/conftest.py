"""Pytest configuration and shared fakes for the coding agent tests."""

import asyncio
import itertools
import json
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest
from agents import Model, ModelResponse, ModelSettings, Usage
from openai.types.responses import (
    ResponseFunctionToolCall,
    ResponseOutputMessage,
    ResponseOutputText,
)

from coding_agent.agent.registry import ToolDescriptor
from coding_agent.config import AgentSettings
from coding_agent.sandbox.utils import SandboxHandle


# ============================================================================
# Sandbox fakes
# ============================================================================


class FakeCommand:
    def __init__(self, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.exit_code = exit_code
        self._stdout = stdout
        self._stderr = stderr

    async def stdout(self) -> str:
        return self._stdout

    async def stderr(self) -> str:
        return self._stderr


class FakeVercelSandbox:
    """In-memory stand-in for vercel.sandbox.AsyncSandbox (cat/ls/test only)."""

    def __init__(self, files: dict[str, str] | None = None, sandbox_id: str = "sbx_test") -> None:
        self.files: dict[str, str] = dict(files or {})
        self.sandbox_id = sandbox_id
        self.commands: list[tuple[str, list[str]]] = []
        self.writes: list[dict[str, Any]] = []
        self.stop = AsyncMock()
        self.client = Mock()
        self.client.aclose = AsyncMock()

    def _is_dir(self, path: str) -> bool:
        if path == ".":
            return True
        prefix = path.rstrip("/") + "/"
        return any(p.startswith(prefix) for p in self.files)

    def _entries(self, path: str) -> list[str]:
        prefix = "" if path == "." else path.rstrip("/") + "/"
        entries: set[str] = set()
        for p in self.files:
            if not p.startswith(prefix):
                continue
            head, sep, _ = p[len(prefix):].partition("/")
            entries.add(head + "/" if sep else head)
        return sorted(entries)

    async def run_command(self, cmd: str, args: list[str]) -> FakeCommand:
        self.commands.append((cmd, list(args)))
        path = args[-1]
        if cmd == "test":
            ok = path in self.files or self._is_dir(path)
            return FakeCommand(exit_code=0 if ok else 1)
        if cmd == "cat":
            if path in self.files:
                return FakeCommand(stdout=self.files[path])
            if self._is_dir(path):
                return FakeCommand(1, stderr=f"cat: {path}: Is a directory\n")
            return FakeCommand(1, stderr=f"cat: {path}: No such file or directory\n")
        if cmd == "ls":
            if path in self.files:
                return FakeCommand(stdout=path + "\n")
            if not self._is_dir(path):
                return FakeCommand(2, stderr=f"ls: cannot access '{path}': No such file or directory\n")
            entries = self._entries(path)
            return FakeCommand(stdout="".join(e + "\n" for e in entries))
        return FakeCommand(127, stderr=f"{cmd}: command not found")

    async def write_files(self, files: list[dict[str, Any]]) -> None:
        for f in files:
            self.writes.append(f)
            self.files[f["path"]] = f["content"].decode("utf-8")


class FakeSandboxFactory:
    """Counts create() calls; hands out SandboxHandles over FakeVercelSandbox."""

    def __init__(
        self,
        files: dict[str, str] | None = None,
        *,
        fail_times: int = 0,
        delay: float = 0.0,
    ) -> None:
        self.files = files or {}
        self.fail_times = fail_times
        self.delay = delay
        self.calls = 0
        self.sandboxes: list[FakeVercelSandbox] = []

    async def __call__(self, repo_url: str | None) -> SandboxHandle:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise RuntimeError("sandbox quota exceeded")
        sandbox = FakeVercelSandbox(self.files, sandbox_id=f"sbx_{self.calls}")
        self.sandboxes.append(sandbox)
        return SandboxHandle(sandbox, repo_url)

    @property
    def stop_calls(self) -> int:
        return sum(s.stop.await_count for s in self.sandboxes)


# ============================================================================
# Model fakes
# ============================================================================

_ids = itertools.count(1)


def make_turn(text: str = "", calls: list[tuple[str, Any]] | None = None) -> list[Any]:
    """Output items of one model response; calls are (tool_name, arguments) pairs.

    Arguments given as a string are sent verbatim, anything else as JSON.
    """
    items: list[Any] = []
    if text:
        items.append(
            ResponseOutputMessage(
                id=f"msg_{next(_ids)}",
                type="message",
                role="assistant",
                status="completed",
                content=[ResponseOutputText(type="output_text", text=text, annotations=[])],
            )
        )
    for name, args in calls or []:
        n = next(_ids)
        items.append(
            ResponseFunctionToolCall(
                id=f"fc_{n}",
                call_id=f"call_{n}",
                type="function_call",
                name=name,
                arguments=args if isinstance(args, str) else json.dumps(args),
            )
        )
    return items


class ScriptedModel(Model):
    """Replays canned responses; a callable entry is given the input items."""

    def __init__(self, script: list[Any], model: str = "test-model") -> None:
        self.script = list(script)
        self.model = model
        self.calls: list[list[Any]] = []
        self.instructions: list[str | None] = []
        self.tools_seen: list[list[str]] = []
        self.settings_seen: list[ModelSettings] = []

    async def get_response(
        self,
        system_instructions: str | None,
        input: str | list[Any],
        model_settings: ModelSettings,
        tools: list[Any],
        *args: Any,
        **kwargs: Any,
    ) -> ModelResponse:
        items = [{"role": "user", "content": input}] if isinstance(input, str) else list(input)
        self.calls.append(items)
        self.instructions.append(system_instructions)
        self.tools_seen.append([t.name for t in tools])
        self.settings_seen.append(model_settings)
        entry = self.script.pop(0) if self.script else make_turn("done")
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            entry = entry(items)
        return ModelResponse(output=list(entry), usage=Usage(), response_id=None)

    def stream_response(self, *args: Any, **kwargs: Any) -> AsyncIterator[Any]:
        raise NotImplementedError("streaming is not used by the agent loop")


class LoopingModel(ScriptedModel):
    """Never stops asking for the same tool call."""

    def __init__(self, name: str = "list_files", args: dict[str, Any] | None = None) -> None:
        super().__init__([])
        self.name = name
        self.args = args if args is not None else {"path": None}

    async def get_response(self, *args: Any, **kwargs: Any) -> ModelResponse:
        n = len(self.calls) + 1
        self.script = [make_turn(f"still working ({n})", [(self.name, self.args)])]
        return await super().get_response(*args, **kwargs)


def tool_outputs(items: list[Any]) -> list[str]:
    """Outputs of the function_call_output items the model was sent."""
    return [
        item["output"]
        for item in items
        if isinstance(item, dict) and item.get("type") == "function_call_output"
    ]


# ============================================================================
# Tool source fakes
# ============================================================================


def make_remote_tool(name: str, output: Any = "ok") -> ToolDescriptor:
    async def execute(args: dict[str, Any]) -> Any:
        return output

    return ToolDescriptor(
        name=name,
        description=f"remote {name}",
        input_schema={"type": "object", "properties": {"url": {"type": "string"}}},
        executor=execute,
        source="remote",
    )


class StaticToolSource:
    def __init__(self, tools: list[ToolDescriptor] | None = None, error: Exception | None = None) -> None:
        self.tools = tools or []
        self.error = error
        self.list_calls = 0

    async def list_tools(self) -> list[ToolDescriptor]:
        self.list_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.tools)


class ManagedToolSource(StaticToolSource):
    """StaticToolSource that also tracks async-context entry and exit."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.entered = 0
        self.exited = 0

    async def __aenter__(self) -> "ManagedToolSource":
        self.entered += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.exited += 1


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> AgentSettings:
    return AgentSettings(
        model="test-model",
        mcp_server_url="",
        tool_timeout_seconds=5.0,
        identity_command="echo 'Account: acme (id 42)'",
    )


@pytest.fixture
def sandbox_factory() -> FakeSandboxFactory:
    return FakeSandboxFactory({"README.md": "# demo\n", "src/index.ts": "export const a = 1;\n"})


@pytest.fixture
def empty_sandbox_factory() -> FakeSandboxFactory:
    return FakeSandboxFactory({})
