"""Bounded tool-calling agent built on LangGraph.

Graph:

    agent ──(tool calls?)──► tools ──(iterations < max?)──► agent
      │                        │
      └──(no tool calls)─► END └──(cap reached)──────────► END

``agent`` asks the chat model for a completion with the tool schemas bound;
``tools`` runs every requested call through the pure executor and appends
one ``ToolMessage`` per call.  Each ``agent`` visit is one iteration, so a
run ends after at most ``max_iterations`` completions.  Tools requested by
the last permitted completion still run, but no further completion is
requested and the tenant's fallback message becomes the reply.

The state's reducers carry the side signals across iterations:
``tools_used`` and the token counters accumulate, and ``flagged_for_admin``
is OR-ed so that once set it stays set.  The flag reason and urgency are
last-write-wins.
"""

from __future__ import annotations

import logging
import operator
import time
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_openai import ChatOpenAI
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from pydantic import BaseModel, Field
from typing_extensions import TypedDict

from replyrouter.agent.prompts import get_agent_system_prompt
from replyrouter.agent.tools import TOOL_DEFINITIONS, execute_tool
from replyrouter.business.models import BusinessConfig
from replyrouter.config import (
    AGENT_HISTORY_LIMIT,
    AGENT_MAX_ITERATIONS,
    AGENT_MAX_TOKENS,
    AGENT_MODEL_NAME,
    AGENT_TEMPERATURE,
    LLM_PROVIDER,
    require_secret,
)
from replyrouter.services.conversations import ChatMessage
from replyrouter.services.metrics import MetricsClient, metrics
from replyrouter.services.token_usage import TokenTracker, TokenUsage

logger = logging.getLogger(__name__)


# ── State & result ───────────────────────────────────────────────────


class AgentState(TypedDict):
    messages: Annotated[list[AnyMessage], add_messages]
    iterations: int
    tools_used: Annotated[list[str], operator.add]
    flagged_for_admin: Annotated[bool, operator.or_]
    flag_reason: str | None
    flag_urgency: str | None
    prompt_tokens: Annotated[int, operator.add]
    completion_tokens: Annotated[int, operator.add]


class AgentResult(BaseModel):
    content: str
    tools_used: list[str] = Field(default_factory=list)
    iterations: int = 0
    flagged_for_admin: bool = False
    flag_reason: str | None = None
    flag_urgency: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


# ── LLM builder ──────────────────────────────────────────────────────


def _build_llm(provider: str = LLM_PROVIDER, model: str = AGENT_MODEL_NAME):
    """Chat model for ``provider`` with the agent tools bound."""
    if provider == "openai":
        llm = ChatOpenAI(
            model=model,
            api_key=require_secret("OPENAI_API_KEY"),
            temperature=AGENT_TEMPERATURE,
            max_tokens=AGENT_MAX_TOKENS,
        )
    elif provider == "anthropic":
        llm = ChatAnthropic(
            model=model,
            api_key=require_secret("ANTHROPIC_API_KEY"),
            temperature=AGENT_TEMPERATURE,
            max_tokens=AGENT_MAX_TOKENS,
        )
    else:
        raise ValueError(f"Unsupported LLM_PROVIDER {provider!r} (expected 'anthropic' or 'openai')")
    return llm.bind_tools(TOOL_DEFINITIONS)


def _message_text(message: AnyMessage) -> str:
    """Plain text of a chat message; Anthropic replies may be content blocks."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


# ── Nodes ────────────────────────────────────────────────────────────


def _make_agent_node(llm, metrics_client: MetricsClient):
    """One completion per visit.  Provider errors are recorded and re-raised."""

    def agent_node(state: AgentState) -> dict:
        t0 = time.perf_counter()
        try:
            response = llm.invoke(state["messages"])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics_client.record_failure(
                "llm", "agent_completion", error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics_client.record_success("llm", "agent_completion", latency_ms=elapsed)

        usage = getattr(response, "usage_metadata", None) or {}
        iteration = state["iterations"] + 1
        logger.debug(
            "Agent iteration %d: %d tool call(s) in %.0fms",
            iteration, len(getattr(response, "tool_calls", []) or []), elapsed,
        )
        return {
            "messages": [response],
            "iterations": iteration,
            "prompt_tokens": usage.get("input_tokens", 0),
            "completion_tokens": usage.get("output_tokens", 0),
        }

    return agent_node


def tools_node(state: AgentState, config: RunnableConfig) -> dict:
    """Execute every tool call of the last completion against the tenant."""
    biz: BusinessConfig = config["configurable"]["business"]
    update: dict[str, Any] = {"messages": [], "tools_used": []}
    for call in state["messages"][-1].tool_calls:
        result = execute_tool(call["name"], call.get("args"), biz)
        update["messages"].append(
            ToolMessage(content=result.result, tool_call_id=call["id"], name=call["name"]),
        )
        update["tools_used"].append(call["name"])
        if result.flagged_for_admin:
            update["flagged_for_admin"] = True
            update["flag_reason"] = result.flag_reason
            update["flag_urgency"] = result.urgency
    return update


# ── Edges ────────────────────────────────────────────────────────────


def should_use_tools(state: AgentState) -> str:
    last = state["messages"][-1]
    if getattr(last, "tool_calls", None):
        return "tools"
    return END


def _make_after_tools(max_iterations: int):
    def after_tools(state: AgentState) -> str:
        if state["iterations"] >= max_iterations:
            logger.warning("Agent hit the iteration cap (%d)", max_iterations)
            return END
        return "agent"

    return after_tools


def create_agent_graph(llm, max_iterations: int = AGENT_MAX_ITERATIONS, metrics_client: MetricsClient = metrics):
    graph = StateGraph(AgentState)
    graph.add_node("agent", _make_agent_node(llm, metrics_client))
    graph.add_node("tools", tools_node)
    graph.set_entry_point("agent")
    graph.add_conditional_edges("agent", should_use_tools, {"tools": "tools", END: END})
    graph.add_conditional_edges("tools", _make_after_tools(max_iterations), {"agent": "agent", END: END})
    return graph.compile()


# ── Public entry point ───────────────────────────────────────────────


def build_history_messages(history: list[ChatMessage], user_message: str, limit: int) -> list[AnyMessage]:
    """Last ``limit`` messages as chat turns, minus a tail equal to ``user_message``.

    The caller usually stores the customer's message before the agent runs,
    so the tail would otherwise duplicate the turn appended by ``run``.
    """
    recent = history[-limit:] if limit > 0 else []
    if recent and recent[-1].role == "customer" and recent[-1].content == user_message:
        recent = recent[:-1]
    return [
        HumanMessage(content=m.content) if m.role == "customer" else AIMessage(content=m.content)
        for m in recent
    ]


class AgentLoop:
    """The pipeline's final layer: a bounded LLM tool-calling loop.

    One instance (and one compiled graph) serves every tenant; the tenant
    travels in the run config.  Token usage for a run is recorded once, after
    the run, through ``dispatcher`` so it never delays the reply.
    """

    def __init__(
        self,
        token_tracker: TokenTracker | None = None,
        dispatcher=None,
        *,
        max_iterations: int = AGENT_MAX_ITERATIONS,
        history_limit: int = AGENT_HISTORY_LIMIT,
        model_name: str = AGENT_MODEL_NAME,
        metrics_client: MetricsClient = metrics,
    ) -> None:
        self.max_iterations = max_iterations
        self.history_limit = history_limit
        self.model_name = model_name
        self._token_tracker = token_tracker
        self._dispatcher = dispatcher
        self._graph = create_agent_graph(_build_llm(model=model_name), max_iterations, metrics_client)
        logger.debug("Agent compiled: model=%s, max_iterations=%d", model_name, max_iterations)

    def run(
        self,
        message: str,
        history: list[ChatMessage],
        biz: BusinessConfig,
        *,
        off_hours_note: str | None = None,
        conversation_id: str | None = None,
        conversation_summary: str | None = None,
    ) -> AgentResult:
        messages: list[AnyMessage] = [
            SystemMessage(content=get_agent_system_prompt(biz, off_hours_note, conversation_summary)),
            *build_history_messages(history, message, self.history_limit),
            HumanMessage(content=message),
        ]
        state = self._graph.invoke(
            {"messages": messages, "iterations": 0, "flag_reason": None, "flag_urgency": None},
            config={
                "configurable": {"business": biz},
                "recursion_limit": self.max_iterations * 2 + 5,
            },
        )

        last = state["messages"][-1]
        if isinstance(last, AIMessage) and not last.tool_calls:
            content = _message_text(last) or biz.default_fallback_message
        else:
            content = biz.default_fallback_message

        result = AgentResult(
            content=content,
            tools_used=state["tools_used"],
            iterations=state["iterations"],
            flagged_for_admin=state["flagged_for_admin"],
            flag_reason=state.get("flag_reason"),
            flag_urgency=state.get("flag_urgency"),
            prompt_tokens=state["prompt_tokens"],
            completion_tokens=state["completion_tokens"],
        )
        self._emit_usage(result, biz, conversation_id)
        logger.info(
            "[%s] agent answered in %d iteration(s), tools=%s, flagged=%s",
            biz.id, result.iterations, result.tools_used, result.flagged_for_admin,
        )
        return result

    def _emit_usage(self, result: AgentResult, biz: BusinessConfig, conversation_id: str | None) -> None:
        if self._token_tracker is None or self._dispatcher is None:
            return
        usage = TokenUsage(
            business_id=biz.id,
            model=self.model_name,
            call_site="agent",
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            conversation_id=conversation_id,
        )
        self._dispatcher.submit("token_usage", self._token_tracker.log_usage, usage)
