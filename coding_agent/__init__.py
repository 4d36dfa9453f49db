"""Sandbox coding agent: a bounded tool-calling loop over a Vercel sandbox and MCP browser tools."""

from coding_agent.agent.session import AgentSession, run_agent

__all__ = ["AgentSession", "run_agent"]
