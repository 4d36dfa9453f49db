import asyncio
import contextlib
import logging
import os
import time
import traceback
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from coding_agent.agent.context import StepRecord
from coding_agent.agent.loop import StepObserver
from coding_agent.agent.session import AgentSession
from coding_agent.config import DEFAULT_GATEWAY_BASE_URL, get_settings
from coding_agent.errors import AgentError
from coding_agent.sse import SSE_HEADERS, emit_event, sse_format, step_finished_sse


app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ALLOWED_MODELS: list[str] = [
    "openai/gpt-4.1",
    "openai/gpt-4.1-mini",
    "openai/gpt-5",
    "openai/gpt-5-mini",
]

SLEEP_INTERVAL_SECONDS = 0.05

# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("coding_agent.server")
if not logger.handlers:
    logger.setLevel(logging.INFO)


class AgentRequest(BaseModel):
    """Payload to run the agent once and wait for its answer."""

    prompt: str
    repo_url: str | None = None
    model: str | None = None


def make_task_id() -> str:
    return f"task_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


def make_session(
    prompt: str,
    repo_url: str | None,
    model: str | None = None,
    on_step: StepObserver | None = None,
) -> AgentSession:
    settings = get_settings()
    if model:
        settings = settings.model_copy(update={"model": model})
    kwargs: dict[str, Any] = {"settings": settings}
    if on_step is not None:
        kwargs["on_step"] = on_step
    return AgentSession(prompt, repo_url, **kwargs)


async def fetch_gateway_model_ids(api_key: str, base_url: str) -> set[str] | None:
    """Model ids the AI Gateway advertises, or None when it cannot be reached."""
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            resp = await client.get(
                f"{base_url.rstrip('/')}/models",
                headers={"Authorization": f"Bearer {api_key}"},
            )
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("could not fetch gateway models: %s", e)
        return None
    return {str(m["id"]) for m in (data.get("data") or []) if m.get("id")}


async def available_models() -> list[str]:
    """ALLOWED_MODELS, narrowed to what the gateway serves when a gateway key is set."""
    api_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN")
    if not api_key:
        return list(ALLOWED_MODELS)
    gateway_ids = await fetch_gateway_model_ids(
        api_key, os.getenv("AI_GATEWAY_BASE_URL") or DEFAULT_GATEWAY_BASE_URL
    )
    served = [m for m in ALLOWED_MODELS if gateway_ids and m in gateway_ids]
    return served or list(ALLOWED_MODELS)


async def resolve_model(model: str | None) -> str | None:
    """Reject a requested model this server will not run; None keeps the configured one."""
    if not model:
        return None
    allowed = await available_models()
    if model not in allowed:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported model {model!r}; choose one of: {', '.join(allowed)}",
        )
    return model


async def run_agent_flow(payload: dict[str, Any], task_id: str) -> AsyncGenerator[str, None]:
    """Run one session and stream a step_finished event per loop step."""
    logger.info(
        "run[%s] start model=%s repo_url=%s prompt_len=%d",
        task_id,
        payload.get("model"),
        payload.get("repo_url"),
        len(payload.get("prompt") or ""),
    )
    steps: list[StepRecord] = []
    session = make_session(
        payload["prompt"],
        payload.get("repo_url"),
        payload.get("model"),
        on_step=steps.append,
    )
    run_task = asyncio.create_task(session.run())

    last_idx = 0
    try:
        yield sse_format(emit_event(task_id, "run_log", data="Agent run scheduled"))
        while not run_task.done():
            while last_idx < len(steps):
                yield step_finished_sse(task_id, steps[last_idx])
                last_idx += 1
            await asyncio.sleep(SLEEP_INTERVAL_SECONDS)
        result = await run_task
    except Exception as e:
        logger.error("run[%s] error: %s", task_id, str(e))
        # Flush steps that finished before the failure
        while last_idx < len(steps):
            yield step_finished_sse(task_id, steps[last_idx])
            last_idx += 1
        tb = traceback.format_exc(limit=10)
        yield sse_format(emit_event(task_id, "run_log", data=f"Exception: {str(e)}\n{tb}"))
        yield sse_format(emit_event(task_id, "run_failed", error=str(e)))
        return
    finally:
        if not run_task.done():
            run_task.cancel()
            # let the session finish its teardown before the stream goes away
            with contextlib.suppress(asyncio.CancelledError):
                await run_task

    while last_idx < len(steps):
        yield step_finished_sse(task_id, steps[last_idx])
        last_idx += 1

    if result.forced_stop:
        yield sse_format(
            emit_event(task_id, "run_log", data=f"Step limit reached after {len(result.steps)} steps")
        )
    yield sse_format(
        emit_event(
            task_id,
            "agent_output",
            data={"response": result.text, "forced_stop": result.forced_stop},
        )
    )


@app.post("/api/agent")
async def run_agent_endpoint(request: AgentRequest) -> dict[str, Any]:
    """Run the agent to completion and return {"response": text}."""
    task_id = make_task_id()
    logger.info(
        "agent[%s] model=%s repo_url=%s prompt_len=%d",
        task_id,
        request.model,
        request.repo_url,
        len(request.prompt or ""),
    )
    model = await resolve_model(request.model)
    session = make_session(request.prompt, request.repo_url, model)
    try:
        result = await session.run()
    except AgentError as e:
        logger.error("agent[%s] failed: %s", task_id, e)
        raise HTTPException(status_code=502, detail=str(e)) from e
    return {"response": result.text}


@app.get("/api/agent/events")
async def agent_events(prompt: str, repo_url: str | None = None, model: str | None = None):
    """Run the agent and stream its steps as server-sent events."""
    task_id = make_task_id()
    payload = {"prompt": prompt, "repo_url": repo_url, "model": await resolve_model(model)}

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            async for chunk in run_agent_flow(payload, task_id):
                yield chunk
        except Exception as e:
            logger.error("agent_events[%s] error: %s", task_id, str(e))
            yield sse_format(emit_event(task_id, "run_failed", error=str(e)))

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)


@app.get("/api/models")
async def list_models() -> dict[str, Any]:
    """Models accepted by the run endpoints."""
    return {"models": await available_models()}


@app.get("/")
def read_root():
    return {"Hello": "Coding Agent"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
