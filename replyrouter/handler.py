"""Inbound message handling: guards, persistence and the pipeline.

One call to ``InboundHandler.handle`` processes one customer message end to
end.  Guards run first so that duplicate deliveries and floods never touch
the conversation store; the reply is computed on a history snapshot taken
after the customer message was appended; side effects that do not shape
the reply (admin flags, funnel events) are dispatched fire-and-forget.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Literal

import redis
from pydantic import BaseModel, Field

from replyrouter.agent.loop import AgentLoop
from replyrouter.business.registry import get_business_config
from replyrouter.config import AGENT_HISTORY_LIMIT, PIPELINE_HISTORY_LIMIT
from replyrouter.pipeline.orchestrator import PipelineOrchestrator, PipelineResult
from replyrouter.services.business_hours import BusinessHoursStore, check_business_hours
from replyrouter.services.conversations import ChatMessage, ConversationStore, conversation_id
from replyrouter.services.flags import AgentFlag, AgentFlagStore
from replyrouter.services.funnel import FunnelTracker
from replyrouter.services.guard import RateGuard
from replyrouter.services.token_usage import TokenTracker

logger = logging.getLogger(__name__)

SYSTEM_ERROR_REPLY = "ขออภัยครับ ระบบขัดข้อง กรุณาลองใหม่อีกครั้งครับ"
ADMIN_ESCALATION_INTENT = "admin_escalation"

HandleStatus = Literal["replied", "skipped", "error"]
SkipReason = Literal["duplicate", "rate_limited", "bot_disabled"]


class InboundMessage(BaseModel):
    business_id: str
    user_id: str
    text: str
    delivery_token: str | None = None
    channel: str = "api"


class HandleResult(BaseModel):
    status: HandleStatus
    business_id: str
    user_id: str
    reason: SkipReason | None = None
    reply: str | None = None
    layer: int | None = None
    layer_name: str | None = None
    intent_id: str | None = None
    is_admin_escalation: bool = False
    flagged_for_admin: bool = False
    clarify_options: list[str] = Field(default_factory=list)
    is_open: bool = True

    @classmethod
    def skipped(cls, msg: InboundMessage, reason: SkipReason) -> HandleResult:
        return cls(status="skipped", business_id=msg.business_id, user_id=msg.user_id, reason=reason)


class InboundHandler:
    """Wires guards, stores and the orchestrator together.

    Every collaborator is injected; with a ``None`` Redis client behind the
    stores the handler still answers, it just remembers nothing.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        conversations: ConversationStore,
        guard: RateGuard,
        flags: AgentFlagStore,
        funnel: FunnelTracker,
        hours: BusinessHoursStore,
        dispatcher,
        *,
        history_limit: int = max(AGENT_HISTORY_LIMIT, PIPELINE_HISTORY_LIMIT),
    ) -> None:
        self.orchestrator = orchestrator
        self.conversations = conversations
        self.guard = guard
        self.flags = flags
        self.funnel = funnel
        self.hours = hours
        self._dispatcher = dispatcher
        self.history_limit = history_limit

    def handle(self, msg: InboundMessage) -> HandleResult:
        if msg.delivery_token and self.guard.is_duplicate_delivery(msg.business_id, msg.delivery_token):
            logger.info("Duplicate delivery %s for %s; skipping", msg.delivery_token, msg.business_id)
            return HandleResult.skipped(msg, "duplicate")
        if self.guard.is_rate_limited(msg.business_id, msg.user_id):
            return HandleResult.skipped(msg, "rate_limited")

        try:
            return self._reply(msg)
        except Exception:
            logger.exception("Failed to handle message from %s:%s", msg.business_id, msg.user_id)
            return HandleResult(
                status="error",
                business_id=msg.business_id,
                user_id=msg.user_id,
                reply=SYSTEM_ERROR_REPLY,
            )

    def _reply(self, msg: InboundMessage) -> HandleResult:
        biz = get_business_config(msg.business_id)
        # store under the requested id so conversations of an unknown tenant stay separate
        biz_id, user_id = msg.business_id, msg.user_id
        conv_id = conversation_id(biz_id, user_id)

        self.conversations.add_message(biz_id, user_id, ChatMessage(role="customer", content=msg.text))

        if not self.conversations.is_global_bot_enabled(biz_id) or not self.conversations.is_bot_enabled(
            biz_id, user_id,
        ):
            logger.debug("Bot disabled for %s; message stored only", conv_id)
            return HandleResult.skipped(msg, "bot_disabled")

        status = check_business_hours(self.hours.get(biz_id))
        send_notice = False
        if not status.is_open:
            send_notice = self.guard.claim_offline_notice(biz_id, user_id)

        history = self.conversations.get_messages(biz_id, user_id, limit=self.history_limit)
        summary = self.conversations.get_conversation_summary(biz_id, user_id)
        result = self.orchestrator.run(
            msg.text,
            history,
            biz,
            off_hours_note=status.off_hours_note,
            send_off_hours_notice=send_notice,
            conversation_id=conv_id,
            conversation_summary=summary.summary if summary else None,
        )

        self._persist_reply(biz_id, user_id, result)

        flagged = self._dispatch_side_effects(msg, result, conv_id)
        logger.info("[%s] %s answered by layer %d (%s)", msg.channel, conv_id, result.layer, result.layer_name)
        return HandleResult(
            status="replied",
            business_id=biz_id,
            user_id=user_id,
            reply=result.content,
            layer=result.layer,
            layer_name=result.layer_name,
            intent_id=result.intent_id,
            is_admin_escalation=result.is_admin_escalation,
            flagged_for_admin=flagged,
            clarify_options=result.clarify_options,
            is_open=status.is_open,
        )

    def _persist_reply(self, business_id: str, user_id: str, result: PipelineResult) -> None:
        """Store the bot turn, the pin and the rolling summary.  The reply has
        already been decided, so a failed write is logged and dropped."""
        store = self.conversations
        bot_turn = ChatMessage(
            role="bot",
            content=result.content,
            pipeline_layer=result.layer,
            pipeline_layer_name=result.layer_name,
        )
        writes = [("store bot message", partial(store.add_message, business_id, user_id, bot_turn))]
        if result.is_admin_escalation:
            writes.append(
                ("pin conversation", partial(store.pin_conversation, business_id, user_id, "customer asked for an admin")),
            )
        if result.context_summary:
            writes.append(
                ("store summary", partial(store.set_conversation_summary, business_id, user_id, result.context_summary)),
            )

        for label, write in writes:
            try:
                write()
            except redis.RedisError:
                logger.exception("Failed to %s for %s:%s", label, business_id, user_id)

    def _dispatch_side_effects(self, msg: InboundMessage, result: PipelineResult, conv_id: str) -> bool:
        agent_result = result.agent_result
        flagged = agent_result is not None and agent_result.flagged_for_admin
        if flagged:
            flag = AgentFlag(
                conversation_id=conv_id,
                business_id=msg.business_id,
                reason=agent_result.flag_reason or "ไม่ระบุเหตุผล",
                urgency=agent_result.flag_urgency or "medium",
                user_message=msg.text,
            )
            self._dispatcher.submit("admin_flag", self.flags.record_flag, flag)

        intent_id = ADMIN_ESCALATION_INTENT if result.is_admin_escalation else result.intent_id
        if intent_id:
            self._dispatcher.submit("funnel", self.funnel.track, msg.business_id, msg.user_id, intent_id)
        return flagged


# ── Factory ──────────────────────────────────────────────────────────


def create_inbound_handler(client, dispatcher, *, with_agent: bool = True) -> InboundHandler:
    """Build the handler and every store around one shared Redis ``client``.

    The agent needs provider credentials; when they are missing the handler
    is still built and unmatched messages get the static fallback.
    """
    agent = None
    if with_agent:
        try:
            agent = AgentLoop(token_tracker=TokenTracker(client), dispatcher=dispatcher)
        except OSError as exc:
            logger.warning("AI agent disabled: %s", exc)

    return InboundHandler(
        orchestrator=PipelineOrchestrator(agent=agent),
        conversations=ConversationStore(client),
        guard=RateGuard(client),
        flags=AgentFlagStore(client),
        funnel=FunnelTracker(client),
        hours=BusinessHoursStore(client),
        dispatcher=dispatcher,
    )
