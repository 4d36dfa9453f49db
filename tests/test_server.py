"""Tests for the HTTP surface, with the session's collaborators faked."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import server
from conftest import FakeSandboxFactory, ScriptedModel, make_turn
from coding_agent.agent.session import AgentSession
from coding_agent.config import AgentSettings
from coding_agent.errors import CompletionError


def parse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


@pytest.fixture
def client():
    return TestClient(server.app)


@pytest.fixture(autouse=True)
def no_gateway(monkeypatch):
    monkeypatch.delenv("AI_GATEWAY_API_KEY", raising=False)
    monkeypatch.delenv("VERCEL_OIDC_TOKEN", raising=False)


@pytest.fixture
def gateway_serves(monkeypatch):
    """Configure a gateway key and stub the gateway's model list."""

    def serve(ids):
        async def fetch(api_key, base_url):
            return ids

        monkeypatch.setenv("AI_GATEWAY_API_KEY", "gw-key")
        monkeypatch.setattr(server, "fetch_gateway_model_ids", fetch)

    return serve


@pytest.fixture
def fake_sessions(monkeypatch):
    """Route server.make_session to sessions built over scripted fakes."""
    state = {
        "script": [make_turn("hello")],
        "factory": FakeSandboxFactory({"README.md": "hi"}),
        "models": [],
    }

    def make_session(prompt, repo_url, model=None, on_step=None):
        state["models"].append(model)
        settings = AgentSettings(model=model or "test-model", mcp_server_url="")
        kwargs = {"on_step": on_step} if on_step is not None else {}
        return AgentSession(
            prompt,
            repo_url,
            settings=settings,
            model=ScriptedModel(state["script"]),
            sandbox_factory=state["factory"],
            **kwargs,
        )

    monkeypatch.setattr(server, "make_session", make_session)
    return state


class TestRunEndpoint:
    def test_returns_response(self, client, fake_sessions):
        resp = client.post("/api/agent", json={"prompt": "hi"})

        assert resp.status_code == 200
        assert resp.json() == {"response": "hello"}
        assert fake_sessions["models"] == [None]

    def test_agent_error_is_502(self, client, fake_sessions):
        fake_sessions["script"] = [CompletionError("gateway down")]

        resp = client.post("/api/agent", json={"prompt": "hi"})

        assert resp.status_code == 502
        assert "gateway down" in resp.json()["detail"]

    def test_prompt_is_required(self, client, fake_sessions):
        resp = client.post("/api/agent", json={"repo_url": "https://github.com/acme/app.git"})

        assert resp.status_code == 422

    def test_allowed_model_is_used(self, client, fake_sessions):
        resp = client.post("/api/agent", json={"prompt": "hi", "model": "openai/gpt-5-mini"})

        assert resp.status_code == 200
        assert fake_sessions["models"] == ["openai/gpt-5-mini"]

    def test_unknown_model_rejected_before_session(self, client, fake_sessions):
        resp = client.post("/api/agent", json={"prompt": "hi", "model": "acme/not-a-model"})

        assert resp.status_code == 400
        assert "acme/not-a-model" in resp.json()["detail"]
        assert fake_sessions["models"] == []

    def test_model_missing_from_gateway_rejected(self, client, fake_sessions, gateway_serves):
        gateway_serves({"openai/gpt-5", "some/other-model"})

        resp = client.post("/api/agent", json={"prompt": "hi", "model": "openai/gpt-4.1"})

        assert resp.status_code == 400
        assert fake_sessions["models"] == []


class TestEventStream:
    def test_streams_steps_then_output(self, client, fake_sessions):
        fake_sessions["script"] = [
            make_turn("", [("read_file", {"path": "README.md"})]),
            make_turn("It says hi."),
        ]

        resp = client.get(
            "/api/agent/events",
            params={"prompt": "read it", "repo_url": "https://github.com/acme/app.git"},
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = parse_events(resp.text)
        types = [e["event_type"] for e in events]
        assert types[0] == "run_log"
        assert types.count("step_finished") == 2
        assert types[-1] == "agent_output"
        first_step = next(e for e in events if e["event_type"] == "step_finished")
        assert first_step["data"]["tool_calls"][0]["function"]["name"] == "read_file"
        assert first_step["data"]["tool_results"][0]["output_data"] == {
            "path": "README.md",
            "output": "hi",
        }
        assert events[-1]["data"] == {"response": "It says hi.", "forced_stop": False}
        assert fake_sessions["factory"].stop_calls == 1

    def test_failure_emits_run_failed(self, client, fake_sessions):
        fake_sessions["script"] = [CompletionError("gateway down")]

        resp = client.get("/api/agent/events", params={"prompt": "x"})

        events = parse_events(resp.text)
        assert events[-1]["event_type"] == "run_failed"
        assert "gateway down" in events[-1]["error"]

    def test_unknown_model_rejected(self, client, fake_sessions):
        resp = client.get("/api/agent/events", params={"prompt": "x", "model": "acme/nope"})

        assert resp.status_code == 400
        assert fake_sessions["models"] == []


class HangingSession:
    """Session whose run never finishes on its own; records its teardown."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.torn_down = False

    async def run(self):
        self.started.set()
        try:
            await asyncio.Event().wait()
        finally:
            self.torn_down = True


class TestRunAgentFlow:
    @pytest.mark.asyncio
    async def test_closing_stream_waits_for_cancelled_run(self, monkeypatch):
        session = HangingSession()
        monkeypatch.setattr(server, "make_session", lambda *args, **kwargs: session)
        stream = server.run_agent_flow({"prompt": "x"}, "task_test")

        first = await stream.__anext__()
        await asyncio.wait_for(session.started.wait(), timeout=1)
        await stream.aclose()

        assert '"run_log"' in first
        assert session.torn_down


class TestMisc:
    def test_models_without_gateway_key(self, client):
        resp = client.get("/api/models")

        assert resp.json() == {"models": server.ALLOWED_MODELS}

    def test_models_intersected_with_gateway(self, client, gateway_serves):
        gateway_serves({"openai/gpt-5", "some/other-model"})

        resp = client.get("/api/models")

        assert resp.json() == {"models": ["openai/gpt-5"]}

    def test_unreachable_gateway_falls_back(self, client, gateway_serves):
        gateway_serves(None)

        resp = client.get("/api/models")

        assert resp.json() == {"models": server.ALLOWED_MODELS}

    def test_root(self, client):
        assert client.get("/").json() == {"Hello": "Coding Agent"}
