"""LLM token usage and cost tracking.

Redis layout per tenant ``biz``:

  token:daily:{biz}:{YYYY-MM-DD}:{model}   hash, 90 day TTL
  token:total:{biz}                        hash, all time
  token:entry:{biz}:{id}                   hash per call, 30 day TTL
  token:log:{biz}                          sorted set of entry ids by time, last 10 000

Counters are integers; cost is stored in micro-dollars.  Dates are Thai
local dates (UTC+7).
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import UTC, datetime, timedelta

import redis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# USD per 1M tokens
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "claude-sonnet-4-20250514": (3.00, 15.00),
    "claude-opus-4-5": (15.00, 75.00),
    "claude-haiku-4-5": (0.80, 4.00),
    "claude-sonnet": (3.00, 15.00),
    "claude-opus": (15.00, 75.00),
    "claude-haiku": (0.80, 4.00),
}

DAILY_TTL = 90 * 24 * 3600
ENTRY_TTL = 30 * 24 * 3600
LOG_CAP = 10_000

_THAI_OFFSET = timedelta(hours=7)


def thai_date(ts: float | None = None) -> str:
    """``YYYY-MM-DD`` in Thai local time for a unix timestamp (default now)."""
    moment = datetime.fromtimestamp(time.time() if ts is None else ts, UTC)
    return (moment + _THAI_OFFSET).strftime("%Y-%m-%d")


def calc_cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Cost in USD rounded to 6 decimals.  Unknown models cost 0."""
    price_in, price_out = MODEL_PRICING.get(model, (0.0, 0.0))
    cost = prompt_tokens / 1_000_000 * price_in + completion_tokens / 1_000_000 * price_out
    return round(cost, 6)


class TokenUsage(BaseModel):
    business_id: str
    model: str
    call_site: str = "agent"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    conversation_id: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageTotals(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0
    cost_usd: float = 0.0

    @classmethod
    def from_hash(cls, raw: dict[str, str]) -> UsageTotals:
        return cls(
            prompt_tokens=int(raw.get("promptTokens", 0)),
            completion_tokens=int(raw.get("completionTokens", 0)),
            total_tokens=int(raw.get("totalTokens", 0)),
            calls=int(raw.get("calls", 0)),
            cost_usd=int(raw.get("costUSDMicro", 0)) / 1_000_000,
        )


class DailyUsage(UsageTotals):
    date: str
    model: str


class TokenTracker:
    def __init__(self, client: redis.Redis | None) -> None:
        self._redis = client

    def log_usage(self, usage: TokenUsage) -> None:
        """Record one LLM invocation.  Zero-token records are ignored."""
        if self._redis is None or usage.total_tokens == 0:
            return
        now = time.time()
        cost_micro = round(calc_cost_usd(usage.model, usage.prompt_tokens, usage.completion_tokens) * 1_000_000)
        increments = {
            "promptTokens": usage.prompt_tokens,
            "completionTokens": usage.completion_tokens,
            "totalTokens": usage.total_tokens,
            "calls": 1,
            "costUSDMicro": cost_micro,
        }
        biz = usage.business_id
        daily_key = f"token:daily:{biz}:{thai_date(now)}:{usage.model}"
        total_key = f"token:total:{biz}"
        entry_id = uuid.uuid4().hex
        entry_key = f"token:entry:{biz}:{entry_id}"
        log_key = f"token:log:{biz}"

        entry = {
            "id": entry_id,
            "businessId": biz,
            "model": usage.model,
            "callSite": usage.call_site,
            **increments,
            "timestamp": int(now * 1000),
        }
        if usage.conversation_id:
            entry["conversationId"] = usage.conversation_id

        pipe = self._redis.pipeline()
        for field, amount in increments.items():
            pipe.hincrby(daily_key, field, amount)
            pipe.hincrby(total_key, field, amount)
        pipe.expire(daily_key, DAILY_TTL)
        pipe.hset(entry_key, mapping=entry)
        pipe.expire(entry_key, ENTRY_TTL)
        pipe.zadd(log_key, {entry_id: now})
        pipe.zremrangebyrank(log_key, 0, -(LOG_CAP + 1))
        pipe.execute()
        logger.debug(
            "Token usage %s %s: %d+%d tokens", biz, usage.model,
            usage.prompt_tokens, usage.completion_tokens,
        )

    def get_totals(self, business_id: str) -> UsageTotals:
        if self._redis is None:
            return UsageTotals()
        return UsageTotals.from_hash(self._redis.hgetall(f"token:total:{business_id}"))

    def get_daily_stats(self, business_id: str, days: int = 30) -> list[DailyUsage]:
        """Per-day, per-model usage for the last ``days`` days, newest first."""
        if self._redis is None:
            return []
        cutoff = thai_date(time.time() - days * 86400)
        prefix = f"token:daily:{business_id}:"
        stats = []
        for key in self._redis.scan_iter(match=f"{prefix}*", count=200):
            date, _, model = key[len(prefix):].partition(":")
            if date < cutoff:
                continue
            raw = self._redis.hgetall(key)
            if not raw.get("calls"):
                continue
            stats.append(DailyUsage(date=date, model=model, **UsageTotals.from_hash(raw).model_dump()))
        stats.sort(key=lambda s: s.model)
        stats.sort(key=lambda s: s.date, reverse=True)
        return stats
