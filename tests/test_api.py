"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from replyrouter.agent.loop import AgentResult
from replyrouter.api.routes import AGENT_ERROR_REPLY
from replyrouter.handler import InboundHandler
from replyrouter.pipeline.orchestrator import PipelineOrchestrator
from replyrouter.server import app
from replyrouter.services.background import SyncDispatcher
from replyrouter.services.business_hours import BusinessHours, BusinessHoursStore
from replyrouter.services.conversations import ChatMessage, ConversationStore
from replyrouter.services.flags import AgentFlag, AgentFlagStore
from replyrouter.services.funnel import FunnelTracker
from replyrouter.services.guard import RateGuard
from replyrouter.services.token_usage import TokenTracker, TokenUsage


@pytest.fixture
def mock_agent():
    agent = MagicMock()
    agent.history_limit = 10
    agent.run.return_value = AgentResult(content="คำตอบจาก agent", iterations=2, tools_used=["get_product_info"])
    return agent


@pytest.fixture
def handler(redis_client, mock_agent, mock_metrics):
    """Build the handler and attach it to app state (mirrors the lifespan)."""
    hours = BusinessHoursStore(redis_client)
    hours.put("dji13store", BusinessHours(enabled=False))
    handler = InboundHandler(
        orchestrator=PipelineOrchestrator(agent=mock_agent, metrics_client=mock_metrics),
        conversations=ConversationStore(redis_client),
        guard=RateGuard(redis_client, metrics_client=mock_metrics),
        flags=AgentFlagStore(redis_client),
        funnel=FunnelTracker(redis_client),
        hours=hours,
        dispatcher=SyncDispatcher(),
    )
    app.state.redis = redis_client
    app.state.handler = handler
    app.state.token_tracker = TokenTracker(redis_client)
    yield handler
    app.state.redis = None
    app.state.handler = None
    app.state.token_tracker = None


@pytest.fixture
def client(handler):
    return TestClient(app)


def _chat(**overrides) -> dict:
    body = {"business_id": "dji13store", "user_id": "u1", "message": "สวัสดีครับ"}
    body.update(overrides)
    return body


class TestHealthEndpoint:
    def test_health_reports_store(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "replyrouter", "store": "connected"}


class TestChatEndpoint:
    def test_chat_returns_layer_and_reply(self, client):
        response = client.post("/api/chat", json=_chat())
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "replied"
        assert data["layer"] == 8
        assert data["reply"]

    def test_unmatched_message_reaches_agent(self, client, mock_agent):
        data = client.post("/api/chat", json=_chat(message="ok")).json()
        assert (data["layer"], data["reply"]) == (17, "คำตอบจาก agent")
        mock_agent.run.assert_called_once()

    def test_retried_delivery_is_skipped(self, client):
        client.post("/api/chat", json=_chat(delivery_token="evt-9"))
        data = client.post("/api/chat", json=_chat(delivery_token="evt-9")).json()
        assert (data["status"], data["reason"], data["reply"]) == ("skipped", "duplicate", None)

    def test_chat_validates_empty_message(self, client):
        assert client.post("/api/chat", json=_chat(message="")).status_code == 422

    def test_chat_validates_missing_user(self, client):
        body = _chat()
        del body["user_id"]
        assert client.post("/api/chat", json=body).status_code == 422

    def test_handler_crash_does_not_leak_details(self, client, handler):
        handler.handle = MagicMock(side_effect=RuntimeError("redis exploded"))
        response = client.post("/api/chat", json=_chat())
        assert response.status_code == 500
        detail = response.json()["detail"]
        assert "redis exploded" not in detail
        assert "internal error" in detail.lower()

    def test_response_includes_request_id_header(self, client):
        assert "X-Request-ID" in client.post("/api/chat", json=_chat()).headers

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.post("/api/chat", json=_chat(), headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"


class TestAgentEndpoint:
    def test_agent_answers_with_stored_history(self, client, handler, mock_agent):
        handler.conversations.add_message("dji13store", "u1", ChatMessage(role="customer", content="สนใจ Mini 4K"))
        data = client.post("/api/agent", json=_chat(message="ราคาเท่าไหร่")).json()
        assert data["reply"] == "คำตอบจาก agent"
        assert data["tools_used"] == ["get_product_info"]
        history = mock_agent.run.call_args.args[1]
        assert [m.content for m in history] == ["สนใจ Mini 4K"]
        assert mock_agent.run.call_args.kwargs["conversation_summary"] is None

    def test_agent_gets_the_stored_summary(self, client, handler, mock_agent):
        handler.conversations.set_conversation_summary("dji13store", "u1", "Active product: DJI Mini 4K")
        client.post("/api/agent", json=_chat(message="ราคาเท่าไหร่"))
        assert mock_agent.run.call_args.kwargs["conversation_summary"] == "Active product: DJI Mini 4K"

    def test_provider_error_returns_apology(self, client, mock_agent):
        mock_agent.run.side_effect = RuntimeError("rate limited by provider")
        response = client.post("/api/agent", json=_chat())
        assert response.status_code == 200
        assert response.json()["reply"] == AGENT_ERROR_REPLY

    def test_503_without_agent(self, client, handler):
        handler.orchestrator = PipelineOrchestrator(agent=None)
        assert client.post("/api/agent", json=_chat()).status_code == 503


class TestAdminEndpoints:
    def test_flags_listing(self, client, handler):
        handler.flags.record_flag(
            AgentFlag(conversation_id="dji13store:u1", business_id="dji13store", reason="โกรธ", urgency="high"),
        )
        data = client.get("/api/flags/dji13store").json()
        assert data["high_urgency"] == 1
        assert data["flags"][0]["reason"] == "โกรธ"

    def test_high_urgency_count_is_not_limited_to_the_page(self, client, handler):
        for uid in ("u1", "u2"):
            handler.flags.record_flag(
                AgentFlag(conversation_id=f"dji13store:{uid}", business_id="dji13store", reason="โกรธ", urgency="high"),
            )
        data = client.get("/api/flags/dji13store?limit=1").json()
        assert len(data["flags"]) == 1
        assert data["high_urgency"] == 2

    def test_token_usage(self, client):
        app.state.token_tracker.log_usage(
            TokenUsage(business_id="dji13store", model="gpt-4o", prompt_tokens=100, completion_tokens=20),
        )
        data = client.get("/api/token-usage/dji13store?days=7").json()
        assert data["totals"]["total_tokens"] == 120
        assert data["daily"][0]["model"] == "gpt-4o"

    def test_bot_toggle(self, client, handler):
        response = client.put("/api/conversations/dji13store/u1/bot", json={"enabled": False})
        assert response.json()["bot_enabled"] is False
        assert client.post("/api/chat", json=_chat()).json()["reason"] == "bot_disabled"

    def test_bot_toggle_reports_pin(self, client, handler):
        handler.conversations.pin_conversation("dji13store", "u1", "customer asked for an admin")
        data = client.put("/api/conversations/dji13store/u1/bot", json={"enabled": True}).json()
        assert (data["bot_enabled"], data["pinned"]) == (True, True)

    def test_business_hours_round_trip(self, client):
        assert client.get("/api/business-hours/dji13store").json()["status"]["is_open"] is True

        closed = BusinessHours(enabled=True, timezone="UTC").model_dump()
        for day in closed["schedule"]:
            day["active"] = False
        assert client.put("/api/business-hours/dji13store", json=closed).status_code == 200
        data = client.get("/api/business-hours/dji13store").json()
        assert data["status"]["is_open"] is False
        assert data["hours"]["timezone"] == "UTC"

    @pytest.mark.parametrize(
        "change",
        [{"timezone": "Mars/Olympus_Mons"}, {"schedule": [{"day": "Monday", "open": "9am", "close": "18:00"}]}],
    )
    def test_invalid_business_hours_are_rejected(self, client, change):
        body = {**BusinessHours().model_dump(), **change}
        assert client.put("/api/business-hours/dji13store", json=body).status_code == 422


class TestNotReady:
    def test_returns_503_before_lifespan(self):
        app.state.handler = None
        response = TestClient(app).post("/api/chat", json=_chat())
        assert response.status_code == 503
        assert "starting up" in response.json()["detail"].lower()


class TestRootEndpoint:
    def test_root_returns_service_info(self, client):
        data = client.get("/").json()
        assert data["service"] == "Reply Router"
        assert data["health"] == "/api/health"
