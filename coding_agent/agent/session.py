import inspect
import logging
from contextlib import AsyncExitStack
from typing import Any

from agents import Model

from coding_agent.agent.context import SessionContext, StepRecord
from coding_agent.agent.llm import build_model
from coding_agent.agent.loop import AgentLoop, AgentRunResult, StepObserver, log_step
from coding_agent.agent.mcp import MCPToolSource
from coding_agent.agent.registry import ToolSource, build_registry
from coding_agent.agent.tools import create_coding_tools
from coding_agent.config import AgentSettings, get_settings
from coding_agent.sandbox.provisioner import SandboxFactory, SandboxSlot
from coding_agent.sandbox.utils import SandboxHandle, create_sandbox


logger = logging.getLogger("coding_agent.session")


class AgentSession:
    """One run_agent() invocation: owns its registry, MCP connection and sandbox.

    run() builds the tool registry, drives the loop, and always tears down
    what it opened: the MCP connection, then the sandbox if one was created.
    Collaborators can be injected; otherwise they come from settings.
    """

    def __init__(
        self,
        prompt: str,
        repo_url: str | None = None,
        *,
        settings: AgentSettings | None = None,
        model: Model | None = None,
        tool_source: ToolSource | None = None,
        sandbox_factory: SandboxFactory | None = None,
        on_step: StepObserver | None = log_step,
    ) -> None:
        self.settings = settings or get_settings()
        self.context = SessionContext(
            prompt=prompt,
            repo_url=repo_url,
            model=getattr(model, "model", None) or self.settings.model,
        )
        self.slot = SandboxSlot(repo_url, sandbox_factory or self._create_sandbox)
        self._model = model
        self._tool_source = tool_source
        self._observer = on_step

    async def _create_sandbox(self, repo_url: str | None) -> SandboxHandle:
        return await create_sandbox(
            repo_url,
            timeout_ms=self.settings.sandbox_timeout_ms,
            runtime=self.settings.sandbox_runtime,
        )

    def _build_model(self) -> Model:
        if self._model is not None:
            return self._model
        return build_model(
            self.settings.model,
            api_key=self.settings.api_key,
            base_url=self.settings.base_url,
        )

    def _default_tool_source(self) -> MCPToolSource | None:
        if not self.settings.mcp_server_url:
            logger.info("MCP_SERVER_URL is empty; running without remote tools")
            return None
        return MCPToolSource(
            self.settings.mcp_server_url,
            timeout_seconds=self.settings.mcp_connect_timeout_seconds,
        )

    async def _on_step(self, step: StepRecord) -> None:
        self.context.steps.append(step)
        if self._observer is None:
            return
        result = self._observer(step)
        if inspect.isawaitable(result):
            await result

    async def run(self) -> AgentRunResult:
        logger.info("session start repo_url=%s model=%s", self.context.repo_url, self.context.model)
        async with AsyncExitStack() as stack:
            stack.push_async_callback(self.slot.close)

            source: Any = self._tool_source if self._tool_source is not None else self._default_tool_source()
            if source is not None and hasattr(source, "__aenter__"):
                source = await stack.enter_async_context(source)

            registry = await build_registry(
                create_coding_tools(self.slot, identity_command=self.settings.identity_command),
                source,
                collision_policy=self.settings.tool_collision_policy,
                timeout_seconds=self.settings.tool_timeout_seconds,
            )
            loop = AgentLoop(
                self._build_model(),
                registry,
                system_prompt=self.settings.system_prompt,
                max_steps=self.settings.max_steps,
                on_step=self._on_step,
            )
            result = await loop.run(self.context.prompt, context=self.context)

        self.context.final_answer = result.text
        self.context.forced_stop = result.forced_stop
        sandbox_tools = {t.name for t in registry if t.needs_sandbox}
        sandbox_calls = sum(
            1 for step in result.steps for call in step.tool_calls if call.name in sandbox_tools
        )
        logger.info(
            "session done steps=%d forced_stop=%s sandbox_tool_calls=%d sandbox=%s",
            len(result.steps),
            result.forced_stop,
            sandbox_calls,
            self.slot.created,
        )
        return result


async def run_agent(
    prompt: str,
    repo_url: str | None = None,
    **kwargs: Any,
) -> dict[str, str]:
    """Run one agent session and return {"response": final_text}.

    Keyword arguments are passed to AgentSession (settings, model,
    tool_source, sandbox_factory, on_step).
    """
    session = AgentSession(prompt, repo_url, **kwargs)
    result = await session.run()
    return {"response": result.text}
