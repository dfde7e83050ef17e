"""FastAPI route definitions for the reply router API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, Request

from replyrouter.api.schemas import (
    AgentRequest,
    AgentResponse,
    BotToggleRequest,
    BotToggleResponse,
    BusinessHoursResponse,
    ChatRequest,
    ChatResponse,
    FlagsResponse,
    HealthResponse,
    TokenUsageResponse,
)
from replyrouter.business.registry import get_business_config
from replyrouter.handler import InboundHandler, InboundMessage
from replyrouter.services.business_hours import BusinessHours, check_business_hours
from replyrouter.services.conversations import conversation_id

logger = logging.getLogger(__name__)

router = APIRouter()

AGENT_ERROR_REPLY = "ขออภัยครับ เกิดข้อผิดพลาดใน AI Agent กรุณาลองใหม่อีกครั้งครับ"


def _get_handler(request: Request) -> InboundHandler:
    """Retrieve the inbound handler built by the lifespan (see ``server.py``)."""
    handler = getattr(request.app.state, "handler", None)
    if handler is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return handler


def _internal_error(request_id: str, what: str, exc: Exception) -> HTTPException:
    # full traceback stays in the server log; the client gets a generic detail
    logger.error("[%s] %s failed: %s", request_id, what, exc, exc_info=exc)
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    store = "connected" if getattr(request.app.state, "redis", None) is not None else "disconnected"
    return HealthResponse(store=store)


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one customer message through guards, pipeline and persistence.

    ``InboundHandler.handle`` is blocking (Redis and possibly the LLM
    provider), so it runs in the default thread pool.
    """
    handler = _get_handler(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    msg = InboundMessage(
        business_id=request.business_id,
        user_id=request.user_id,
        text=request.message,
        delivery_token=request.delivery_token,
        channel=request.channel,
    )
    try:
        result = await asyncio.to_thread(handler.handle, msg)
    except Exception as e:
        raise _internal_error(request_id, "chat", e) from e
    return ChatResponse(**result.model_dump(exclude={"business_id", "user_id", "is_open"}))


@router.post("/agent", response_model=AgentResponse)
async def ask_agent(request: AgentRequest, http_request: Request):
    """Ask the AI agent directly with the stored conversation as context.

    Provider failures are answered with the localized apology, not an
    HTTP error, so chat frontends can show the reply as-is.
    """
    handler = _get_handler(http_request)
    agent = handler.orchestrator.agent
    if agent is None:
        raise HTTPException(status_code=503, detail="The AI agent is not configured.")
    request_id = getattr(http_request.state, "request_id", "?")

    biz = get_business_config(request.business_id)
    history = await asyncio.to_thread(
        handler.conversations.get_messages, request.business_id, request.user_id, agent.history_limit,
    )
    summary = await asyncio.to_thread(
        handler.conversations.get_conversation_summary, request.business_id, request.user_id,
    )
    try:
        result = await asyncio.to_thread(
            agent.run,
            request.message,
            history,
            biz,
            conversation_id=conversation_id(request.business_id, request.user_id),
            conversation_summary=summary.summary if summary else None,
        )
    except Exception:
        logger.exception("[%s] Agent call failed for %s", request_id, request.business_id)
        return AgentResponse(reply=AGENT_ERROR_REPLY)
    return AgentResponse(
        reply=result.content,
        tools_used=result.tools_used,
        iterations=result.iterations,
        flagged_for_admin=result.flagged_for_admin,
        flag_reason=result.flag_reason,
        flag_urgency=result.flag_urgency,
    )


@router.get("/flags/{business_id}", response_model=FlagsResponse)
async def list_flags(business_id: str, http_request: Request, limit: int = Query(20, ge=1, le=100)):
    """Most recent admin flags for a tenant."""
    handler = _get_handler(http_request)
    flags = await asyncio.to_thread(handler.flags.get_flags, business_id, limit)
    high_urgency = await asyncio.to_thread(handler.flags.count_high_urgency, business_id)
    return FlagsResponse(business_id=business_id, flags=flags, high_urgency=high_urgency)


@router.get("/token-usage/{business_id}", response_model=TokenUsageResponse)
async def token_usage(business_id: str, http_request: Request, days: int = Query(30, ge=1, le=90)):
    tracker = getattr(http_request.app.state, "token_tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="The service is still starting up. Please try again in a moment.")
    totals = await asyncio.to_thread(tracker.get_totals, business_id)
    daily = await asyncio.to_thread(tracker.get_daily_stats, business_id, days)
    return TokenUsageResponse(business_id=business_id, totals=totals, daily=daily)


@router.put("/conversations/{business_id}/{user_id}/bot", response_model=BotToggleResponse)
async def set_bot(business_id: str, user_id: str, request: BotToggleRequest, http_request: Request):
    """Turn the bot on or off for one conversation (admin takeover)."""
    handler = _get_handler(http_request)
    await asyncio.to_thread(handler.conversations.set_bot_enabled, business_id, user_id, request.enabled)
    enabled = await asyncio.to_thread(handler.conversations.is_bot_enabled, business_id, user_id)
    pinned = await asyncio.to_thread(handler.conversations.is_pinned, business_id, user_id)
    return BotToggleResponse(business_id=business_id, user_id=user_id, bot_enabled=enabled, pinned=pinned)


@router.get("/business-hours/{business_id}", response_model=BusinessHoursResponse)
async def get_business_hours(business_id: str, http_request: Request):
    handler = _get_handler(http_request)
    hours = await asyncio.to_thread(handler.hours.get, business_id)
    return BusinessHoursResponse(business_id=business_id, hours=hours, status=check_business_hours(hours))


@router.put("/business-hours/{business_id}", response_model=BusinessHoursResponse)
async def put_business_hours(business_id: str, hours: BusinessHours, http_request: Request):
    handler = _get_handler(http_request)
    try:
        await asyncio.to_thread(handler.hours.put, business_id, hours)
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return BusinessHoursResponse(business_id=business_id, hours=hours, status=check_business_hours(hours))
