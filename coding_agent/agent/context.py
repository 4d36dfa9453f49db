import json
from typing import Any

from pydantic import BaseModel, Field


class ToolCall(BaseModel):
    """One tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    raw_arguments: str = ""
    # Set when the model sent arguments that are not a JSON object
    argument_error: str | None = None

    @classmethod
    def from_json(cls, call_id: str, name: str, raw_arguments: str | None) -> "ToolCall":
        """Decode the model's argument string; bad JSON is kept as argument_error."""
        raw = raw_arguments or ""
        arguments: dict[str, Any] = {}
        argument_error: str | None = None
        if raw.strip():
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError as e:
                argument_error = f"arguments are not valid JSON ({e.msg})"
            else:
                if isinstance(decoded, dict):
                    arguments = decoded
                else:
                    argument_error = "arguments must be a JSON object"
        return cls(
            id=call_id,
            name=name,
            arguments=arguments,
            raw_arguments=raw,
            argument_error=argument_error,
        )


class ToolResult(BaseModel):
    call_id: str
    name: str
    output: Any = None
    is_error: bool = False

    def content(self) -> str:
        """Render the output as the text fed back to the model."""
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, default=str)


class StepRecord(BaseModel):
    """What happened in one loop step: model decision, tool calls, results.

    Attributes:
        index: 1-based step number.
        text: Text the model produced in this step (may be empty).
        tool_calls: Calls requested, in request order.
        tool_results: Results, in the same order as tool_calls.
        finish_reason: Finish reason reported by the completion engine.
    """

    index: int
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    finish_reason: str | None = None


class SessionContext(BaseModel):
    """State container for one agent session.

    Attributes:
        prompt: The user's instruction.
        repo_url: Repository cloned into the sandbox, if any.
        model: Model identifier used for the run.
        steps: Step records in execution order.
        final_answer: Text returned to the caller; None until the loop ends.
        forced_stop: True when the step bound ended the run.
    """

    prompt: str
    repo_url: str | None = None
    model: str | None = None
    steps: list[StepRecord] = Field(default_factory=list)
    final_answer: str | None = None
    forced_stop: bool = False
