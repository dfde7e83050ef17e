"""Admin flag store.

When the agent decides a conversation needs a human it records an
``AgentFlag``.  The latest flag per conversation lives at
``agent:flags:{biz}:{conversation}`` and a capped, TTL'd list
``agent:flags:list:{biz}`` indexes the most recent ones for the dashboard.
Writes are best effort: a store failure is logged and dropped.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Literal

import redis
from pydantic import BaseModel, Field, ValidationError

from replyrouter.config import FLAG_LIST_CAP, FLAG_TTL_SECONDS

logger = logging.getLogger(__name__)

Urgency = Literal["low", "medium", "high"]


class AgentFlag(BaseModel):
    conversation_id: str
    business_id: str
    reason: str
    urgency: Urgency = "medium"
    user_message: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class AgentFlagStore:
    def __init__(
        self,
        client: redis.Redis | None,
        ttl_seconds: int = FLAG_TTL_SECONDS,
        list_cap: int = FLAG_LIST_CAP,
    ) -> None:
        self._redis = client
        self._ttl = ttl_seconds
        self._cap = list_cap

    def record_flag(self, flag: AgentFlag) -> None:
        if self._redis is None:
            return
        key = f"agent:flags:{flag.business_id}:{flag.conversation_id}"
        list_key = f"agent:flags:list:{flag.business_id}"
        try:
            pipe = self._redis.pipeline()
            pipe.set(key, flag.model_dump_json(), ex=self._ttl)
            pipe.lpush(list_key, key)
            pipe.ltrim(list_key, 0, self._cap - 1)
            pipe.expire(list_key, self._ttl)
            pipe.execute()
        except redis.RedisError:
            logger.exception("Failed to record admin flag for %s", flag.conversation_id)
            return
        logger.info(
            "Admin flag [%s] %s: %s", flag.urgency, flag.conversation_id, flag.reason,
        )

    def get_flags(self, business_id: str, limit: int = 20) -> list[AgentFlag]:
        """Most recent flags first.  Expired entries are skipped."""
        if self._redis is None:
            return []
        try:
            keys = self._redis.lrange(f"agent:flags:list:{business_id}", 0, limit - 1)
            values = self._redis.mget(keys) if keys else []
        except redis.RedisError:
            logger.exception("Failed to read admin flags for %s", business_id)
            return []

        flags = []
        for raw in values:
            if not raw:
                continue
            try:
                flags.append(AgentFlag.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping malformed admin flag in %s", business_id)
        return flags

    def count_high_urgency(self, business_id: str) -> int:
        return sum(1 for f in self.get_flags(business_id, limit=50) if f.urgency == "high")
