import json
import time
from typing import Any

from coding_agent.agent.context import StepRecord


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def emit_event(
    task_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "task_id": task_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "data": data,
        "error": error,
    }


def step_finished_sse(task_id: str, step: StepRecord) -> str:
    return sse_format(
        emit_event(
            task_id,
            "step_finished",
            data={
                "index": step.index,
                "text": step.text,
                "finish_reason": step.finish_reason,
                "tool_calls": [
                    {
                        "id": call.id,
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in step.tool_calls
                ],
                "tool_results": [
                    {
                        "id": result.call_id,
                        "name": result.name,
                        "output_data": result.output,
                        "is_error": result.is_error,
                    }
                    for result in step.tool_results
                ],
            },
        )
    )
