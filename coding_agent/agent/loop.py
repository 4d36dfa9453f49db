import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from agents import (
    Agent,
    MaxTurnsExceeded,
    Model,
    ModelResponse,
    ModelSettings,
    RunConfig,
    RunContextWrapper,
    RunHooks,
    Runner,
    ToolErrorFormatterArgs,
)
from pydantic import BaseModel, Field

from coding_agent.agent.context import StepRecord, ToolResult
from coding_agent.agent.llm import ModelTurn
from coding_agent.agent.registry import ToolRegistry
from coding_agent.errors import AgentError, CompletionError


logger = logging.getLogger("coding_agent.loop")


MAX_STEPS = 10

StepObserver = Callable[[StepRecord], Awaitable[None] | None]


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"


class AgentRunResult(BaseModel):
    """Outcome of one loop run.

    Attributes:
        text: Final answer, or the last text the model produced when the step
            bound cut the run short.
        steps: Step records in execution order.
        forced_stop: True when the loop stopped at the step bound while the
            model was still requesting tools.
    """

    text: str = ""
    steps: list[StepRecord] = Field(default_factory=list)
    forced_stop: bool = False


def log_step(step: StepRecord) -> None:
    """Default observer: one log line per finished step."""
    logger.info(
        "Step %d finished: tools=%s errors=%d",
        step.index,
        [c.name for c in step.tool_calls],
        sum(1 for r in step.tool_results if r.is_error),
    )


class StepTracker(RunHooks[Any]):
    """Turns runner lifecycle callbacks into StepRecords.

    A step opens when a model response arrives and closes when the next model
    call starts or the run ends. Tool results reported in between are attached
    to the open step in the order the model requested them.
    """

    def __init__(self, observer: StepObserver | None = None) -> None:
        self.observer = observer
        self.steps: list[StepRecord] = []
        self.last_text = ""
        self.state = LoopState.AWAITING_MODEL
        self._open: StepRecord | None = None
        self._results: dict[str, ToolResult] = {}

    def record_result(self, result: ToolResult) -> None:
        self._results[result.call_id] = result

    def format_tool_error(self, args: ToolErrorFormatterArgs[Any]) -> str | None:
        """Answer calls to unregistered tools the way the registry reports them."""
        if args.kind != "tool_not_found":
            return None
        logger.warning("model requested unknown tool %s", args.tool_name)
        result = ToolResult(
            call_id=args.call_id,
            name=args.tool_name,
            output={"error": f"Unknown tool: {args.tool_name}"},
            is_error=True,
        )
        self.record_result(result)
        return result.content()

    async def on_llm_start(
        self,
        context: RunContextWrapper[Any],
        agent: Agent[Any],
        system_prompt: str | None,
        input_items: list[Any],
    ) -> None:
        await self.close_step()
        self.state = LoopState.AWAITING_MODEL

    async def on_llm_end(
        self,
        context: RunContextWrapper[Any],
        agent: Agent[Any],
        response: ModelResponse,
    ) -> None:
        turn = ModelTurn.from_response(response)
        if turn.text:
            self.last_text = turn.text
        self._open = StepRecord(
            index=len(self.steps) + 1,
            text=turn.text,
            tool_calls=turn.tool_calls,
            finish_reason=turn.finish_reason,
        )
        self.state = LoopState.EXECUTING_TOOL if turn.tool_calls else LoopState.DONE

    async def close_step(self) -> None:
        step, self._open = self._open, None
        if step is None:
            return
        step.tool_results = [
            self._results.pop(call.id) for call in step.tool_calls if call.id in self._results
        ]
        self.steps.append(step)
        await self._notify(step)

    async def _notify(self, step: StepRecord) -> None:
        if self.observer is None:
            return
        try:
            result = self.observer(step)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("step observer failed on step %d", step.index)


class AgentLoop:
    """Bounded reason/act loop: the agents Runner over the session's tool registry.

    Each step is one model round trip followed by execution of every tool call
    that response requested. The run ends when the model answers without tool
    calls, or after max_steps steps, in which case the last text the model
    produced is returned with forced_stop set.
    """

    def __init__(
        self,
        model: Model,
        registry: ToolRegistry,
        *,
        system_prompt: str,
        max_steps: int = MAX_STEPS,
        on_step: StepObserver | None = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.model = model
        self.registry = registry
        self.system_prompt = system_prompt
        self.max_steps = max_steps
        self.on_step = on_step
        self.tracker = StepTracker(on_step)

    @property
    def state(self) -> LoopState:
        return self.tracker.state

    def create_agent(self, tracker: StepTracker) -> Agent[Any]:
        tools = self.registry.function_tools(tracker.record_result)
        return Agent(
            name="Coding Agent",
            instructions=self.system_prompt,
            tools=tools,
            model=self.model,
            model_settings=ModelSettings(tool_choice="auto") if tools else ModelSettings(),
        )

    async def run(self, prompt: str, context: Any = None) -> AgentRunResult:
        tracker = self.tracker = StepTracker(self.on_step)
        forced_stop = False
        try:
            result = await Runner.run(
                self.create_agent(tracker),
                input=prompt,
                context=context,
                max_turns=self.max_steps,
                hooks=tracker,
                run_config=RunConfig(
                    tracing_disabled=True,
                    tool_not_found_behavior="return_error_to_model",
                    tool_error_formatter=tracker.format_tool_error,
                ),
            )
            text = str(result.final_output or "") or tracker.last_text
        except MaxTurnsExceeded:
            logger.warning(
                "step bound %d reached; stopping with last available text", self.max_steps
            )
            forced_stop = True
            text = tracker.last_text
        except AgentError:
            raise
        except Exception as e:
            logger.error("agent run failed: %s", e)
            raise CompletionError(f"Completion request failed: {e}", cause=e) from e

        await tracker.close_step()
        tracker.state = LoopState.DONE
        return AgentRunResult(text=text, steps=tracker.steps, forced_stop=forced_stop)
