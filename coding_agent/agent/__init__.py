from coding_agent.agent.context import SessionContext, StepRecord, ToolCall, ToolResult
from coding_agent.agent.loop import AgentLoop, AgentRunResult, LoopState
from coding_agent.agent.registry import ToolDescriptor, ToolRegistry, build_registry
from coding_agent.agent.session import AgentSession, run_agent

__all__ = [
    "AgentLoop",
    "AgentRunResult",
    "AgentSession",
    "LoopState",
    "SessionContext",
    "StepRecord",
    "ToolCall",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolResult",
    "build_registry",
    "run_agent",
]
