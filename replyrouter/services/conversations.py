"""Redis-backed conversation store.

Key layout (per tenant ``biz`` and customer ``uid``):

  conv:{biz}:{uid}         JSON conversation metadata (bot flag, pin, last message)
  msgs:{biz}:{uid}         list of JSON ``ChatMessage``, oldest first, capped
  convs:{biz}              sorted set of user ids scored by last activity
  chatsummary:{biz}:{uid}  JSON rolling summary
  globalbot:{biz}          "1" / "0"

With no Redis client every read returns its default (empty history, bot
enabled) and every write is a no-op, so the pipeline still runs locally.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Literal

import redis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MESSAGE_RETENTION = 500

Role = Literal["customer", "bot", "admin"]


class ChatMessage(BaseModel):
    role: Role
    content: str
    timestamp: float = Field(default_factory=time.time)
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    pipeline_layer: int | None = None
    pipeline_layer_name: str | None = None


class ConversationSummary(BaseModel):
    summary: str
    updated_at: float = Field(default_factory=time.time)


def conversation_id(business_id: str, user_id: str) -> str:
    return f"{business_id}:{user_id}"


class ConversationStore:
    """Message history and per-conversation switches for every tenant.

    Store errors are logged and never raised: reads fall back to their
    defaults and writes are dropped, so a Redis outage degrades the bot to
    a memoryless one instead of silencing it.
    """

    def __init__(self, client: redis.Redis | None) -> None:
        self._redis = client

    # ── Keys ──────────────────────────────────────────────────────────

    @staticmethod
    def _conv_key(biz: str, uid: str) -> str:
        return f"conv:{biz}:{uid}"

    @staticmethod
    def _msgs_key(biz: str, uid: str) -> str:
        return f"msgs:{biz}:{uid}"

    # ── Messages ──────────────────────────────────────────────────────

    def get_messages(self, business_id: str, user_id: str, limit: int | None = None) -> list[ChatMessage]:
        """Return the conversation oldest first, optionally only the last ``limit``."""
        if self._redis is None:
            return []
        start = -limit if limit else 0
        try:
            raw = self._redis.lrange(self._msgs_key(business_id, user_id), start, -1)
        except redis.RedisError:
            logger.exception("Failed to read history for %s:%s", business_id, user_id)
            return []
        messages = []
        for item in raw:
            try:
                messages.append(ChatMessage.model_validate_json(item))
            except ValueError:
                logger.warning("Skipping unreadable message in %s:%s", business_id, user_id)
        return messages

    def add_message(self, business_id: str, user_id: str, message: ChatMessage) -> ChatMessage:
        """Append ``message`` and refresh the conversation metadata."""
        if self._redis is None:
            return message
        msgs_key = self._msgs_key(business_id, user_id)
        try:
            conv = self._get_conv(business_id, user_id)
            conv.update(
                last_message=message.content[:100],
                last_message_at=message.timestamp,
                last_message_role=message.role,
            )
            if message.role == "customer":
                conv["unread_count"] = conv.get("unread_count", 0) + 1

            pipe = self._redis.pipeline()
            pipe.rpush(msgs_key, message.model_dump_json())
            pipe.ltrim(msgs_key, -MESSAGE_RETENTION, -1)
            pipe.set(self._conv_key(business_id, user_id), json.dumps(conv))
            pipe.zadd(f"convs:{business_id}", {user_id: message.timestamp})
            pipe.execute()
        except redis.RedisError:
            logger.exception("Failed to store %s message for %s:%s", message.role, business_id, user_id)
        return message

    # ── Conversation metadata ─────────────────────────────────────────

    def _get_conv(self, business_id: str, user_id: str) -> dict:
        raw = self._redis.get(self._conv_key(business_id, user_id))
        if raw:
            return json.loads(raw)
        return {
            "user_id": user_id,
            "business_id": business_id,
            "bot_enabled": True,
            "pinned": False,
            "unread_count": 0,
            "created_at": time.time(),
        }

    def _put_conv(self, business_id: str, user_id: str, conv: dict) -> None:
        self._redis.set(self._conv_key(business_id, user_id), json.dumps(conv))

    def _conv_flag(self, business_id: str, user_id: str, name: str, default: bool) -> bool:
        if self._redis is None:
            return default
        try:
            return bool(self._get_conv(business_id, user_id).get(name, default))
        except redis.RedisError:
            logger.exception("Failed to read %s for %s:%s", name, business_id, user_id)
            return default

    def _update_conv(self, business_id: str, user_id: str, **changes) -> bool:
        if self._redis is None:
            return False
        try:
            conv = self._get_conv(business_id, user_id)
            conv.update(changes)
            self._put_conv(business_id, user_id, conv)
        except redis.RedisError:
            logger.exception("Failed to update %s:%s (%s)", business_id, user_id, ", ".join(changes))
            return False
        return True

    def is_bot_enabled(self, business_id: str, user_id: str) -> bool:
        return self._conv_flag(business_id, user_id, "bot_enabled", True)

    def set_bot_enabled(self, business_id: str, user_id: str, enabled: bool) -> None:
        self._update_conv(business_id, user_id, bot_enabled=enabled)

    def pin_conversation(self, business_id: str, user_id: str, reason: str) -> None:
        """Pin for admin attention.  Pinning also turns the bot off."""
        if self._update_conv(
            business_id, user_id, pinned=True, pinned_at=time.time(), pinned_reason=reason, bot_enabled=False,
        ):
            logger.info("Pinned %s:%s (%s)", business_id, user_id, reason)

    def is_pinned(self, business_id: str, user_id: str) -> bool:
        return self._conv_flag(business_id, user_id, "pinned", False)

    # ── Global switch ─────────────────────────────────────────────────

    def is_global_bot_enabled(self, business_id: str) -> bool:
        if self._redis is None:
            return True
        try:
            return self._redis.get(f"globalbot:{business_id}") != "0"
        except redis.RedisError:
            logger.exception("Failed to read global bot switch for %s", business_id)
            return True

    def set_global_bot_enabled(self, business_id: str, enabled: bool) -> None:
        if self._redis is None:
            return
        try:
            self._redis.set(f"globalbot:{business_id}", "1" if enabled else "0")
        except redis.RedisError:
            logger.exception("Failed to set global bot switch for %s", business_id)

    # ── Rolling summary ───────────────────────────────────────────────

    def get_conversation_summary(self, business_id: str, user_id: str) -> ConversationSummary | None:
        if self._redis is None:
            return None
        try:
            raw = self._redis.get(f"chatsummary:{business_id}:{user_id}")
        except redis.RedisError:
            logger.exception("Failed to read summary for %s:%s", business_id, user_id)
            return None
        if not raw:
            return None
        try:
            return ConversationSummary.model_validate_json(raw)
        except ValueError:
            logger.warning("Ignoring unreadable summary for %s:%s", business_id, user_id)
            return None

    def set_conversation_summary(self, business_id: str, user_id: str, summary: str) -> None:
        if self._redis is None:
            return
        try:
            self._redis.set(
                f"chatsummary:{business_id}:{user_id}",
                ConversationSummary(summary=summary).model_dump_json(),
            )
        except redis.RedisError:
            logger.exception("Failed to store summary for %s:%s", business_id, user_id)
