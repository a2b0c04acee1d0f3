"""Control-plane routes exercised through the FastAPI test client."""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from opencraw.api.app import create_app
from opencraw.api.auth import MutatingAuthPolicy, ScopedToken
from opencraw.api.routes_automation import EVENT_ID_HEADER, SECRET_HEADER
from opencraw.api.state import AppState
from opencraw.config.control import REDACTED, ConfigControl
from opencraw.config.schema import Settings
from opencraw.core.agent import AgentLoop, AgentSettings
from opencraw.core.automation import AutomationInbox
from opencraw.core.commands import CommandContext
from opencraw.core.errors import ChannelError
from opencraw.core.gateway import Gateway
from opencraw.core.registry import ToolRegistry
from opencraw.core.security import SecurityGate
from opencraw.core.session import SessionStore
from opencraw.core.skills import SkillRegistry

MODELS = ("gpt-4o-mini", "claude-3-5-sonnet-latest")


class RecordingChannel:
    def __init__(self, channel_id: str, supports_reactions: bool = False, fail: bool = False):
        self.channel_id = channel_id
        self.supports_reactions = supports_reactions
        self.fail = fail
        self.sent: list[tuple[str, str, str | None]] = []

    async def start(self, sink):
        pass

    async def stop(self):
        pass

    async def send(self, recipient_id, message):
        if self.fail:
            raise ChannelError("remote refused")
        self.sent.append((recipient_id, message.content, message.reply_to_message_id))


class UnusedLLM:
    async def chat(self, messages, tools, *, model):
        raise AssertionError("not expected")

    async def chat_stream(self, messages, tools, *, model):
        raise AssertionError("not expected")
        yield


@pytest.fixture
def state(tmp_path):
    settings = Settings()
    settings.keys.openai_api_key = "sk-live"
    sessions = SessionStore()
    channels = {
        "webchat": RecordingChannel("webchat", supports_reactions=True),
        "slack": RecordingChannel("slack", fail=True),
    }
    gateway = Gateway(
        sessions=sessions,
        agent=AgentLoop(
            llm=UnusedLLM(),
            registry=ToolRegistry(),
            settings=AgentSettings(system_prompt="sys", default_model=MODELS[0]),
        ),
        gate=SecurityGate(),
        channels=channels,
        commands=CommandContext(default_model=MODELS[0], available_models=list(MODELS)),
    )
    return AppState(
        config=ConfigControl(tmp_path / "config.json", settings),
        sessions=sessions,
        gateway=gateway,
        skills=SkillRegistry(None),
        automation=AutomationInbox(webhook_secret="hook"),
        available_models=MODELS,
    )


@pytest.fixture
def client(state):
    with TestClient(create_app(state)) as client:
        yield client


# ── Health ───────────────────────────────────────────────────────────────────


def test_health(client, state):
    state.sessions.get_or_create("webchat", "u1")
    body = client.get("/api/v1/os/health").json()
    assert body["status"] == "ok"
    assert body["sessions"] == 1
    assert body["in_flight"] == 0


def test_channels(client):
    body = client.get("/api/v1/os/channels").json()
    assert body["channels"] == ["slack", "webchat"]
    assert body["capabilities"][1] == {"channel_id": "webchat", "supports_reactions": True}


# ── Sessions ─────────────────────────────────────────────────────────────────


def test_list_and_delete_session(client, state):
    session = state.sessions.get_or_create("webchat", "u1")

    listed = client.get("/api/v1/os/sessions").json()["sessions"]
    assert [s["id"] for s in listed] == [str(session.id)]

    assert client.delete(f"/api/v1/os/sessions/{session.id}").json() == {"status": "ok"}
    assert client.delete(f"/api/v1/os/sessions/{session.id}").json() == {"status": "not_found"}
    assert client.delete("/api/v1/os/sessions/not-a-uuid").status_code == 400


def test_set_model_override(client, state):
    session = state.sessions.get_or_create("webchat", "u1")
    url = f"/api/v1/os/sessions/{session.id}/model"

    response = client.post(url, json={"model": "CLAUDE-3-5-sonnet-latest", "model_pinning": "strict"})
    assert response.status_code == 200
    assert response.json()["session"]["model_override"] == "claude-3-5-sonnet-latest"
    assert response.json()["session"]["model_pinning"] == "strict"

    response = client.post(url, json={"model": "gpt-5-turbo"})
    assert response.status_code == 400
    assert response.json()["error"] == 'unknown model "gpt-5-turbo"'

    response = client.post(f"/api/v1/os/sessions/{uuid.uuid4()}/model", json={"model": None})
    assert response.status_code == 404


# ── Config ───────────────────────────────────────────────────────────────────


def test_config_get_is_redacted(client):
    body = client.get("/api/v1/os/config/get").json()
    assert body["config"]["keys"]["openai_api_key"] == REDACTED
    assert len(body["base_hash"]) == 64


def test_config_patch_with_stale_hash(client, state):
    base = client.get("/api/v1/os/config/get").json()["base_hash"]

    first = client.post(
        "/api/v1/os/config/patch", json={"base_hash": base, "patch": {"general": {"model": "gpt-4o"}}}
    )
    assert first.status_code == 200
    assert first.json()["restart_required"] is True

    second = client.post(
        "/api/v1/os/config/patch", json={"base_hash": base, "patch": {"general": {"model": "x"}}}
    )
    assert second.status_code == 409
    assert second.json()["base_hash"] == first.json()["base_hash"]
    assert state.config.settings.general.model == "gpt-4o"


def test_config_patch_invalid(client):
    response = client.post(
        "/api/v1/os/config/patch", json={"patch": {"agent": {"max_iterations": 0}}}
    )
    assert response.status_code == 400


def test_config_apply_round_trip_keeps_secrets(client, state):
    current = client.get("/api/v1/os/config/get").json()
    document = current["config"]
    document["general"]["model"] = "claude-3-5-sonnet-latest"

    response = client.post(
        "/api/v1/os/config/apply", json={"base_hash": current["base_hash"], "config": document}
    )

    assert response.status_code == 200
    assert state.config.settings.general.model == "claude-3-5-sonnet-latest"
    assert state.config.settings.keys.openai_api_key == "sk-live"


# ── Skills ───────────────────────────────────────────────────────────────────


def test_skill_install_and_approve(client):
    response = client.post(
        "/api/v1/os/skills/install",
        json={"name": "weather", "description": "Weather lookups", "source": "https://s.test/w"},
    )
    skill = response.json()["skill"]
    assert skill["decision"] == "warn"
    assert skill["active"] is False

    approved = client.post(f"/api/v1/os/skills/{skill['skill_id']}/approve").json()["skill"]
    assert approved["active"] is True

    found = client.get("/api/v1/os/skills/search", params={"q": "weather"}).json()
    assert [s["skill_id"] for s in found["skills"]] == [skill["skill_id"]]

    revoked = client.post(f"/api/v1/os/skills/{skill['skill_id']}/revoke").json()["skill"]
    assert revoked["active"] is False


def test_skill_errors(client):
    assert client.post("/api/v1/os/skills/skill-none/approve").status_code == 404
    bad = client.post("/api/v1/os/skills/install", json={"name": "bad name", "description": "d"})
    assert bad.status_code == 400

    blocked = client.post(
        "/api/v1/os/skills/install",
        json={"name": "wipe", "description": "d", "content": "rm -rf /"},
    ).json()["skill"]
    assert blocked["decision"] == "block"
    assert client.post(f"/api/v1/os/skills/{blocked['skill_id']}/approve").status_code == 409


# ── Automation ───────────────────────────────────────────────────────────────


def test_webhook_ingest_and_duplicates(client):
    headers = {SECRET_HEADER: "hook", EVENT_ID_HEADER: "evt-1"}
    first = client.post("/api/v1/os/automation/webhook/github", json={"a": 1}, headers=headers)
    second = client.post("/api/v1/os/automation/webhook/github", json={"a": 1}, headers=headers)

    assert first.json()["status"] == "accepted"
    assert second.json()["receipt"]["duplicate"] is True

    status = client.get("/api/v1/os/automation/status").json()
    assert (status["received"], status["duplicates"]) == (1, 1)


def test_webhook_errors(client):
    url = "/api/v1/os/automation/poll/rss"
    assert client.post(url, json={}).status_code == 401
    bad_json = client.post(url, content=b"{oops", headers={SECRET_HEADER: "hook"})
    assert bad_json.status_code == 400
    assert bad_json.json()["error"].startswith("invalid JSON body")
    empty = client.post(url, content=b"", headers={SECRET_HEADER: "hook"})
    assert empty.json()["receipt"]["kind"] == "poll"


# ── Messages ─────────────────────────────────────────────────────────────────


def test_send_message(client, state):
    response = client.post(
        "/api/v1/os/messages/send",
        json={"channel": " WebChat ", "recipient": "u1", "message": "hello", "reply_to_message_id": "m1"},
    )
    assert response.json() == {"status": "ok"}
    assert state.gateway.channels["webchat"].sent == [("u1", "hello", "m1")]


@pytest.mark.parametrize(
    ("payload", "status", "error"),
    [
        ({"recipient": "u1", "message": "hi"}, 400, "channel is required"),
        ({"channel": "webchat", "message": "hi"}, 400, "recipient is required"),
        ({"channel": "webchat", "recipient": "u1", "message": " "}, 400, "message is required"),
        ({"channel": "fax", "recipient": "u1", "message": "hi"}, 404, "unknown channel"),
        ({"channel": "slack", "recipient": "C1", "message": "hi"}, 502, "remote refused"),
    ],
)
def test_send_message_errors(client, payload, status, error):
    response = client.post("/api/v1/os/messages/send", json=payload)
    assert response.status_code == status
    assert response.json()["error"] == error


# ── Auth ─────────────────────────────────────────────────────────────────────


def test_mutating_requests_need_token_when_strict(state):
    policy = MutatingAuthPolicy(
        strict=True,
        tokens=(ScopedToken("op"),),
        exempt_prefixes=("/api/v1/os/automation/webhook/",),
    )
    with TestClient(create_app(state, policy)) as client:
        assert client.get("/api/v1/os/config/get").status_code == 200
        assert client.post("/api/v1/os/config/patch", json={"patch": {}}).status_code == 401
        headers = {"x-org-id": str(uuid.uuid4()), "authorization": "Bearer op"}
        ok = client.post("/api/v1/os/config/patch", json={"patch": {}}, headers=headers)
        assert ok.status_code == 200
        webhook = client.post(
            "/api/v1/os/automation/webhook/github", json={}, headers={SECRET_HEADER: "hook"}
        )
        assert webhook.status_code == 200
