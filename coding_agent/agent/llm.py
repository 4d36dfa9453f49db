import logging

from agents import (
    ItemHelpers,
    Model,
    ModelResponse,
    OpenAIChatCompletionsModel,
    set_tracing_disabled,
)
from openai import AsyncOpenAI
from openai.types.responses import ResponseFunctionToolCall, ResponseOutputMessage
from pydantic import BaseModel, Field

from coding_agent.agent.context import ToolCall
from coding_agent.errors import CompletionError


"""Model configuration for the agent runner (AI Gateway or OpenAI API).

The gateway speaks the chat-completions protocol, so the runner is given an
OpenAIChatCompletionsModel over an AsyncOpenAI client pointed at it.
"""

logger = logging.getLogger("coding_agent.llm")

set_tracing_disabled(True)


class ModelTurn(BaseModel):
    """One model response reduced to its text and tool calls."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: str | None = None

    @classmethod
    def from_response(cls, response: ModelResponse) -> "ModelTurn":
        texts: list[str] = []
        calls: list[ToolCall] = []
        for item in response.output:
            if isinstance(item, ResponseOutputMessage):
                text = ItemHelpers.extract_last_text(item)
                if text:
                    texts.append(text)
            elif isinstance(item, ResponseFunctionToolCall):
                calls.append(ToolCall.from_json(item.call_id, item.name, item.arguments))
        return cls(
            text="\n".join(texts),
            tool_calls=calls,
            finish_reason="tool_calls" if calls else "stop",
        )


def build_model(
    model: str,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    client: AsyncOpenAI | None = None,
) -> Model:
    """Chat-completions model for the runner; client setup errors become CompletionError."""
    try:
        openai_client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
    except Exception as e:
        logger.error("could not configure model client model=%s: %s", model, e)
        raise CompletionError(f"Could not configure completion engine: {e}", cause=e) from e
    return OpenAIChatCompletionsModel(model=model, openai_client=openai_client)
