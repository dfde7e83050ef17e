"""Pipeline orchestrator: first matching layer answers.

The orchestrator extracts conversation context, then walks the tenant's
rule layers in order and stops at the first layer that produces a reply.
When no rule layer matches, the AI agent answers; when the agent is not
configured or its provider fails, the tenant's static fallback message is
returned.  Each invocation yields a ``PipelineResult`` carrying a step
trace so that routing decisions can be inspected after the fact.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from replyrouter.business.models import BusinessConfig
from replyrouter.config import PIPELINE_HISTORY_LIMIT
from replyrouter.pipeline.context import ConversationContext, extract_context
from replyrouter.pipeline.layers import RULE_LAYERS, LayerKind, LayerOutcome, Turn, resolve_layer_order
from replyrouter.services.conversations import ChatMessage
from replyrouter.services.metrics import MetricsClient, metrics

if TYPE_CHECKING:
    from replyrouter.agent.loop import AgentLoop, AgentResult

logger = logging.getLogger(__name__)

StepStatus = Literal["matched", "skipped", "checked", "error", "not_reached"]


@dataclass
class PipelineStep:
    layer: int
    name: str
    status: StepStatus
    duration_ms: float = 0.0
    detail: str | None = None


@dataclass
class PipelineResult:
    content: str
    layer: int
    layer_name: str
    intent_id: str | None = None
    is_admin_escalation: bool = False
    clarify_options: list[str] = field(default_factory=list)
    agent_result: AgentResult | None = None
    context_summary: str | None = None
    trace: list[PipelineStep] = field(default_factory=list)
    total_duration_ms: float = 0.0


def _ms_since(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 2)


class PipelineOrchestrator:
    """Runs the layered reply pipeline for one tenant message at a time.

    The orchestrator holds no per-request state; the same instance serves
    all tenants and requests.
    """

    def __init__(
        self,
        agent: AgentLoop | None = None,
        history_limit: int = PIPELINE_HISTORY_LIMIT,
        metrics_client: MetricsClient = metrics,
    ) -> None:
        self._agent = agent
        self._history_limit = history_limit
        self._metrics = metrics_client

    @property
    def agent(self) -> AgentLoop | None:
        return self._agent

    def run(
        self,
        message: str,
        history: list[ChatMessage],
        biz: BusinessConfig,
        *,
        off_hours_note: str | None = None,
        send_off_hours_notice: bool = False,
        conversation_id: str | None = None,
        conversation_summary: str | None = None,
    ) -> PipelineResult:
        started = time.perf_counter()
        steps: list[PipelineStep] = []

        # ── Layer 0: context extraction ──
        t0 = time.perf_counter()
        kind = LayerKind.CONTEXT_EXTRACTION
        try:
            ctx = extract_context(history, message, biz, window=self._history_limit)
            steps.append(PipelineStep(kind.number, kind.title, "checked", _ms_since(t0), ctx.summary))
        except Exception:
            logger.exception("Context extraction failed for %s", biz.id)
            ctx = ConversationContext()
            steps.append(PipelineStep(kind.number, kind.title, "error", _ms_since(t0)))

        turn = Turn(
            message=message,
            history=history,
            biz=biz,
            ctx=ctx,
            off_hours_note=off_hours_note,
            send_off_hours_notice=send_off_hours_notice,
        )

        # ── Rule layers ──
        for kind in resolve_layer_order(biz.policy.layer_order):
            t0 = time.perf_counter()
            try:
                outcome = RULE_LAYERS[kind](turn)
            except Exception:
                logger.exception("Layer %s raised; treating as no match", kind.title)
                steps.append(PipelineStep(kind.number, kind.title, "error", _ms_since(t0)))
                continue
            if outcome is None:
                steps.append(PipelineStep(kind.number, kind.title, "skipped", _ms_since(t0)))
                continue
            steps.append(PipelineStep(kind.number, kind.title, "matched", _ms_since(t0), outcome.name))
            return self._finish(kind, outcome, steps, started, biz, ctx)

        # ── Layer 17: AI agent ──
        kind = LayerKind.AI_AGENT
        t0 = time.perf_counter()
        if self._agent is None:
            steps.append(PipelineStep(kind.number, kind.title, "skipped", 0.0, "agent not configured"))
        else:
            try:
                agent_result = self._agent.run(
                    message,
                    history,
                    biz,
                    off_hours_note=off_hours_note,
                    conversation_id=conversation_id,
                    conversation_summary=conversation_summary,
                )
            except Exception as exc:
                logger.exception("Agent failed for %s; using static fallback", biz.id)
                steps.append(PipelineStep(kind.number, kind.title, "error", _ms_since(t0), type(exc).__name__))
            else:
                steps.append(
                    PipelineStep(
                        kind.number, kind.title, "matched", _ms_since(t0),
                        f"{agent_result.iterations} iterations, tools: {', '.join(agent_result.tools_used) or '-'}",
                    )
                )
                outcome = LayerOutcome(agent_result.content, "AI Agent")
                result = self._finish(kind, outcome, steps, started, biz, ctx)
                result.agent_result = agent_result
                return result

        # ── Layer 18: static fallback ──
        kind = LayerKind.DEFAULT_FALLBACK
        steps.append(PipelineStep(kind.number, kind.title, "matched"))
        outcome = LayerOutcome(biz.default_fallback_message, "Default Fallback")
        return self._finish(kind, outcome, steps, started, biz, ctx)

    def _finish(
        self,
        kind: LayerKind,
        outcome: LayerOutcome,
        steps: list[PipelineStep],
        started: float,
        biz: BusinessConfig,
        ctx: ConversationContext,
    ) -> PipelineResult:
        reached = {s.layer for s in steps}
        for other in LayerKind:
            if other.number not in reached:
                steps.append(PipelineStep(other.number, other.title, "not_reached"))

        total = _ms_since(started)
        self._metrics.record_success("pipeline", kind.key, latency_ms=total)
        logger.debug(
            "[%s] layer %d (%s) answered in %.1fms", biz.id, kind.number, outcome.name, total,
        )
        return PipelineResult(
            content=outcome.content,
            layer=kind.number,
            layer_name=outcome.name,
            intent_id=outcome.intent_id,
            is_admin_escalation=outcome.is_admin_escalation,
            clarify_options=outcome.clarify_options,
            context_summary=ctx.summary if ctx.active_product else None,
            trace=steps,
            total_duration_ms=total,
        )
