"""Pre-pipeline guards: rate limit, delivery dedupe, off-hours cooldown.

All three gates rely only on single-key atomic Redis primitives
(``INCR`` and ``SET NX EX``) and are independent of one another.  When the
store is missing or unreachable every gate fails open: messages are
processed, never dropped.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import redis

from replyrouter.config import (
    IDEMPOTENCY_TTL_SECONDS,
    OFFLINE_COOLDOWN_SECONDS,
    RATE_LIMIT_MAX_MESSAGES,
    RATE_LIMIT_WINDOW_SECONDS,
)
from replyrouter.services.metrics import MetricsClient, metrics

logger = logging.getLogger(__name__)


class RateGuard:
    """Fixed-window rate limiter plus one-time claim gates."""

    def __init__(
        self,
        client: redis.Redis | None,
        *,
        max_messages: int = RATE_LIMIT_MAX_MESSAGES,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        idempotency_ttl: int = IDEMPOTENCY_TTL_SECONDS,
        offline_cooldown: int = OFFLINE_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
        metrics_client: MetricsClient = metrics,
    ) -> None:
        self._redis = client
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self.idempotency_ttl = idempotency_ttl
        self.offline_cooldown = offline_cooldown
        self._clock = clock
        self._metrics = metrics_client

    def _rate_key(self, business_id: str, user_id: str) -> str:
        window = int(self._clock() // self.window_seconds)
        return f"rl:{business_id}:{user_id}:{window}"

    def _store_failed(self, operation: str, exc: redis.RedisError) -> None:
        logger.warning("Guard %s failed open: %s", operation, exc)
        self._metrics.record_failure("redis", operation, error_type=type(exc).__name__)

    # ── Rate limit ────────────────────────────────────────────────────

    def is_rate_limited(self, business_id: str, user_id: str) -> bool:
        """Count this message and report whether the user is over the limit."""
        if self._redis is None:
            return False
        key = self._rate_key(business_id, user_id)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, self.window_seconds * 2)
            count, _ = pipe.execute()
        except redis.RedisError as exc:
            self._store_failed("rate_limit", exc)
            return False
        limited = int(count) > self.max_messages
        if limited:
            logger.info("Rate limited %s:%s (%d in window)", business_id, user_id, count)
        return limited

    # ── One-time claims ───────────────────────────────────────────────

    def is_duplicate_delivery(self, business_id: str, token: str) -> bool:
        """Claim ``token``; True when it was already claimed within the TTL."""
        if self._redis is None:
            return False
        try:
            claimed = self._redis.set(f"rtok:{business_id}:{token}", "1", ex=self.idempotency_ttl, nx=True)
        except redis.RedisError as exc:
            self._store_failed("idempotency", exc)
            return False
        return claimed is None

    def claim_offline_notice(self, business_id: str, user_id: str) -> bool:
        """True when the off-hours notice may be sent to this user now."""
        if self._redis is None:
            return True
        try:
            claimed = self._redis.set(
                f"offline:{business_id}:{user_id}", "1", ex=self.offline_cooldown, nx=True,
            )
        except redis.RedisError as exc:
            self._store_failed("offline_cooldown", exc)
            return True
        return claimed is not None
