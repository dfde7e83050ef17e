"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from replyrouter.services.business_hours import BusinessHours, BusinessHoursStatus
from replyrouter.services.flags import AgentFlag
from replyrouter.services.token_usage import DailyUsage, UsageTotals


class ChatRequest(BaseModel):
    """Incoming customer message, as relayed by a channel adapter."""

    business_id: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, max_length=100, description="Channel user identifier")
    message: str = Field(..., min_length=1, max_length=2000, description="The customer's message")
    delivery_token: str | None = Field(
        None, max_length=200, description="Per-delivery token used to drop webhook retries",
    )
    channel: str = Field("api", max_length=20)


class ChatResponse(BaseModel):
    """Outcome of one inbound message."""

    status: str = Field(..., description="replied, skipped or error")
    reason: str | None = Field(None, description="Why the message was skipped")
    reply: str | None = None
    layer: int | None = Field(None, description="Number of the layer that answered")
    layer_name: str | None = None
    intent_id: str | None = None
    is_admin_escalation: bool = False
    flagged_for_admin: bool = False
    clarify_options: list[str] = Field(default_factory=list)


class AgentRequest(BaseModel):
    """Ask the agent directly, bypassing the rule layers."""

    business_id: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=2000)


class AgentResponse(BaseModel):
    reply: str
    tools_used: list[str] = Field(default_factory=list)
    iterations: int = 0
    flagged_for_admin: bool = False
    flag_reason: str | None = None
    flag_urgency: str | None = None


class FlagsResponse(BaseModel):
    business_id: str
    flags: list[AgentFlag]
    high_urgency: int  # across the 50 most recent flags, not just this page


class TokenUsageResponse(BaseModel):
    business_id: str
    totals: UsageTotals
    daily: list[DailyUsage]


class BotToggleRequest(BaseModel):
    enabled: bool


class BotToggleResponse(BaseModel):
    business_id: str
    user_id: str
    bot_enabled: bool
    pinned: bool = False


class BusinessHoursResponse(BaseModel):
    business_id: str
    hours: BusinessHours
    status: BusinessHoursStatus


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "replyrouter"
    store: str = Field("disconnected", description="connected or disconnected")
