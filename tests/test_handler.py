"""Tests for the inbound handler: guards, persistence and side effects."""

from __future__ import annotations

from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from replyrouter.agent.loop import AgentResult
from replyrouter.handler import SYSTEM_ERROR_REPLY, InboundHandler, InboundMessage, create_inbound_handler
from replyrouter.pipeline.orchestrator import PipelineOrchestrator
from replyrouter.services.background import SyncDispatcher
from replyrouter.services.business_hours import BusinessHours, BusinessHoursStore, DaySchedule
from replyrouter.services.conversations import ConversationStore
from replyrouter.services.flags import AgentFlagStore
from replyrouter.services.funnel import FunnelTracker
from replyrouter.services.guard import RateGuard

ALWAYS_CLOSED = BusinessHours(
    schedule=[
        DaySchedule(day=d, active=False)
        for d in ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
    ],
)


@pytest.fixture
def mock_agent():
    agent = MagicMock()
    agent.run.return_value = AgentResult(content="คำตอบจาก agent", iterations=1)
    return agent


@pytest.fixture
def handler(redis_client, mock_agent, mock_metrics):
    hours = BusinessHoursStore(redis_client)
    hours.put("dji13store", BusinessHours(enabled=False))
    return InboundHandler(
        orchestrator=PipelineOrchestrator(agent=mock_agent, metrics_client=mock_metrics),
        conversations=ConversationStore(redis_client),
        guard=RateGuard(redis_client, max_messages=5, clock=lambda: 1_700_000_000.0, metrics_client=mock_metrics),
        flags=AgentFlagStore(redis_client),
        funnel=FunnelTracker(redis_client),
        hours=hours,
        dispatcher=SyncDispatcher(),
    )


def _msg(text: str, **kwargs) -> InboundMessage:
    return InboundMessage(business_id="dji13store", user_id="u1", text=text, **kwargs)


# ── Guards ───────────────────────────────────────────────────────────


class TestGuards:
    def test_duplicate_delivery_is_skipped(self, handler):
        assert handler.handle(_msg("สวัสดีครับ", delivery_token="evt-1")).status == "replied"
        result = handler.handle(_msg("สวัสดีครับ", delivery_token="evt-1"))
        assert (result.status, result.reason) == ("skipped", "duplicate")
        assert len(handler.conversations.get_messages("dji13store", "u1")) == 2

    def test_flood_is_rate_limited_before_storing(self, handler):
        for _ in range(5):
            handler.handle(_msg("สวัสดีครับ"))
        result = handler.handle(_msg("สวัสดีครับ"))
        assert result.reason == "rate_limited"
        assert len(handler.conversations.get_messages("dji13store", "u1")) == 10

    def test_disabled_bot_stores_message_without_reply(self, handler, mock_agent):
        handler.conversations.set_bot_enabled("dji13store", "u1", False)
        result = handler.handle(_msg("ok"))
        assert (result.status, result.reason) == ("skipped", "bot_disabled")
        assert [m.role for m in handler.conversations.get_messages("dji13store", "u1")] == ["customer"]
        mock_agent.run.assert_not_called()

    def test_global_switch_silences_the_tenant(self, handler):
        handler.conversations.set_global_bot_enabled("dji13store", False)
        assert handler.handle(_msg("สวัสดีครับ")).reason == "bot_disabled"


# ── Replies ──────────────────────────────────────────────────────────


class TestReplies:
    def test_both_turns_are_persisted_with_layer(self, handler):
        result = handler.handle(_msg("สวัสดีครับ"))
        assert result.status == "replied"
        assert result.layer == 8

        customer, bot = handler.conversations.get_messages("dji13store", "u1")
        assert (customer.role, customer.content) == ("customer", "สวัสดีครับ")
        assert (bot.role, bot.content, bot.pipeline_layer) == ("bot", result.reply, 8)
        assert bot.pipeline_layer_name == result.layer_name

    def test_pipeline_sees_the_current_message_in_history(self, handler, mock_agent):
        handler.handle(_msg("ok"))
        history = mock_agent.run.call_args.args[1]
        assert history[-1].content == "ok"
        assert mock_agent.run.call_args.kwargs["conversation_id"] == "dji13store:u1"

    def test_escalation_pins_and_converts(self, handler, redis_client):
        result = handler.handle(_msg("ขอคุยกับแอดมินหน่อย"))
        assert result.is_admin_escalation
        assert handler.conversations.is_pinned("dji13store", "u1")
        assert not handler.conversations.is_bot_enabled("dji13store", "u1")
        assert redis_client.get("funnel:user:dji13store:u1") == "converted"

        # pinned conversations are left to the admin
        assert handler.handle(_msg("ยังอยู่ไหม")).reason == "bot_disabled"

    def test_agent_flag_is_recorded(self, handler, mock_agent):
        mock_agent.run.return_value = AgentResult(
            content="รับทราบครับ", flagged_for_admin=True, flag_reason="ลูกค้าโกรธ", flag_urgency="high",
        )
        result = handler.handle(_msg("ok"))
        assert result.flagged_for_admin

        (flag,) = handler.flags.get_flags("dji13store")
        assert flag.conversation_id == "dji13store:u1"
        assert (flag.reason, flag.urgency, flag.user_message) == ("ลูกค้าโกรธ", "high", "ok")

    def test_flag_without_urgency_defaults_to_medium(self, handler, mock_agent):
        mock_agent.run.return_value = AgentResult(content="x", flagged_for_admin=True)
        handler.handle(_msg("ok"))
        assert handler.flags.get_flags("dji13store")[0].urgency == "medium"

    def test_unexpected_failure_returns_apology(self, handler):
        handler.orchestrator = MagicMock()
        handler.orchestrator.run.side_effect = RuntimeError("boom")
        result = handler.handle(_msg("สวัสดีครับ"))
        assert (result.status, result.reply) == ("error", SYSTEM_ERROR_REPLY)

    def test_failing_side_effect_does_not_change_reply(self, handler):
        handler.funnel = MagicMock()
        handler.funnel.track.side_effect = RuntimeError("funnel down")
        assert handler.handle(_msg("สวัสดีครับ")).status == "replied"

    def test_context_summary_is_stored_and_fed_back(self, handler, mock_agent):
        handler.handle(_msg("สนใจ Osmo Pocket 3 ครับ"))
        assert handler.conversations.get_conversation_summary("dji13store", "u1").summary.startswith(
            "Active product: Osmo Pocket 3",
        )

        handler.conversations.set_conversation_summary("dji13store", "u2", "Topic: promotion")
        handler.handle(InboundMessage(business_id="dji13store", user_id="u2", text="ok"))
        assert mock_agent.run.call_args.kwargs["conversation_summary"] == "Topic: promotion"


class TestStoreOutage:
    def test_failed_bot_write_keeps_the_reply(self, handler, biz, monkeypatch):
        store = handler.conversations
        save = store.add_message

        def add_message(business_id, user_id, message):
            if message.role == "bot":
                raise redis.ConnectionError("write lost")
            return save(business_id, user_id, message)

        monkeypatch.setattr(store, "add_message", add_message)
        result = handler.handle(_msg("ขอคุยกับแอดมิน"))
        assert (result.status, result.layer) == ("replied", 1)
        assert result.reply == biz.policy.admin_escalation_response
        # the pin is written independently of the lost bot turn
        assert store.is_pinned("dji13store", "u1")

    def test_failed_pin_keeps_the_reply(self, handler, biz, monkeypatch):
        monkeypatch.setattr(
            handler.conversations, "pin_conversation", MagicMock(side_effect=redis.TimeoutError("slow")),
        )
        result = handler.handle(_msg("ขอคุยกับแอดมิน"))
        assert (result.status, result.reply) == ("replied", biz.policy.admin_escalation_response)

    def test_unreachable_store_still_answers_rule_layers(self, biz):
        server = fakeredis.FakeServer()
        server.connected = False
        client = fakeredis.FakeRedis(server=server, decode_responses=True)
        handler = create_inbound_handler(client, SyncDispatcher(), with_agent=False)

        result = handler.handle(_msg("ขอคุยกับแอดมิน", delivery_token="evt-1"))
        assert (result.status, result.layer) == ("replied", 1)
        assert result.reply == biz.policy.admin_escalation_response


class TestOffHours:
    def test_notice_sent_once_per_cooldown(self, handler):
        handler.hours.put("dji13store", ALWAYS_CLOSED)
        first = handler.handle(_msg("อยากถามอะไรหน่อย"))
        assert (first.layer, first.is_open) == (2, False)

        second = handler.handle(_msg("อยากถามอะไรหน่อย"))
        assert second.layer == 15

    def test_rule_layers_still_answer_when_closed(self, handler):
        handler.hours.put("dji13store", ALWAYS_CLOSED)
        assert handler.handle(_msg("ขอคุยกับแอดมิน")).layer == 1


class TestFactory:
    def test_missing_credentials_disable_agent(self, redis_client, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        handler = create_inbound_handler(redis_client, SyncDispatcher())
        assert handler.orchestrator.agent is None

    def test_without_agent_requested(self, redis_client):
        handler = create_inbound_handler(redis_client, SyncDispatcher(), with_agent=False)
        assert handler.orchestrator.agent is None
        assert handler.handle(_msg("สวัสดีครับ")).status == "replied"
