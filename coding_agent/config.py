import os
from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
# Project root .env first, then package-local .env, never overriding the real environment
load_dotenv(os.path.join(root_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


DEFAULT_GATEWAY_BASE_URL = "https://ai-gateway.vercel.sh/v1"
DEFAULT_MCP_SERVER_URL = "http://localhost:8931/sse"

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent. You will be working with js/ts projects. "
    "Your responses must be concise."
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


class AgentSettings(BaseModel):
    """Runtime configuration for one agent session.

    Attributes:
        model: Model identifier passed to the completion engine.
        max_steps: Upper bound on model round trips per session.
        system_prompt: System instruction given to the model.
        tool_timeout_seconds: Per-tool execution timeout; None disables it.
        tool_collision_policy: "error" fails when a remote tool shadows a local
            one, "remote" lets the remote descriptor win.
        mcp_server_url: SSE endpoint of the browser-automation MCP server.
            Empty disables remote tools.
        sandbox_timeout_ms: Lifetime requested for the Vercel sandbox.
        sandbox_runtime: Optional sandbox runtime image (e.g. "node22").
        identity_command: Shell command reporting the logged-in account.
    """

    model: str = "openai/gpt-4.1"
    max_steps: int = Field(default=10, ge=1)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    tool_timeout_seconds: float | None = 180.0
    tool_collision_policy: Literal["error", "remote"] = "error"
    mcp_server_url: str = DEFAULT_MCP_SERVER_URL
    mcp_connect_timeout_seconds: float = 10.0
    sandbox_timeout_ms: int = 600_000
    sandbox_runtime: str | None = None
    identity_command: str = "npx checkly whoami"

    api_key: str | None = None
    base_url: str | None = None

    @classmethod
    def from_env(cls) -> "AgentSettings":
        tool_timeout = _env_float("TOOL_TIMEOUT_SECONDS", 180.0)
        return cls(
            model=os.getenv("AGENT_MODEL") or "openai/gpt-4.1",
            max_steps=_env_int("AGENT_MAX_STEPS", 10),
            system_prompt=os.getenv("AGENT_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
            tool_timeout_seconds=tool_timeout if tool_timeout > 0 else None,
            tool_collision_policy=(os.getenv("TOOL_COLLISION_POLICY") or "error").lower(),  # type: ignore[arg-type]
            mcp_server_url=os.getenv("MCP_SERVER_URL", DEFAULT_MCP_SERVER_URL).strip(),
            mcp_connect_timeout_seconds=_env_float("MCP_CONNECT_TIMEOUT_SECONDS", 10.0),
            sandbox_timeout_ms=_env_int("SANDBOX_TIMEOUT_MS", 600_000),
            sandbox_runtime=os.getenv("SANDBOX_RUNTIME") or None,
            identity_command=os.getenv("IDENTITY_COMMAND") or "npx checkly whoami",
            **_credentials_from_env(),
        )


def _credentials_from_env() -> dict[str, str | None]:
    """Prefer the AI Gateway; fall back to a plain OpenAI key."""
    gateway_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN")
    if gateway_key:
        return {
            "api_key": gateway_key,
            "base_url": os.getenv("AI_GATEWAY_BASE_URL") or DEFAULT_GATEWAY_BASE_URL,
        }
    return {
        "api_key": os.getenv("OPENAI_API_KEY"),
        "base_url": os.getenv("OPENAI_BASE_URL") or None,
    }


@lru_cache(maxsize=1)
def get_settings() -> AgentSettings:
    return AgentSettings.from_env()
