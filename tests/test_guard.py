"""Tests for the pre-pipeline guards (rate limit, delivery dedupe, cooldown)."""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import redis

from replyrouter.services.guard import RateGuard


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimit:
    def test_fourth_message_in_window_is_limited(self, redis_client, mock_metrics):
        guard = RateGuard(redis_client, max_messages=3, window_seconds=60, clock=_Clock(), metrics_client=mock_metrics)
        assert [guard.is_rate_limited("biz", "u1") for _ in range(4)] == [False, False, False, True]

    def test_new_window_resets_the_count(self, redis_client, mock_metrics):
        clock = _Clock()
        guard = RateGuard(redis_client, max_messages=3, window_seconds=60, clock=clock, metrics_client=mock_metrics)
        for _ in range(4):
            guard.is_rate_limited("biz", "u1")

        clock.now += 60
        assert [guard.is_rate_limited("biz", "u1") for _ in range(4)] == [False, False, False, True]

    def test_users_are_counted_separately(self, redis_client, mock_metrics):
        guard = RateGuard(redis_client, max_messages=1, clock=_Clock(), metrics_client=mock_metrics)
        assert guard.is_rate_limited("biz", "u1") is False
        assert guard.is_rate_limited("biz", "u2") is False
        assert guard.is_rate_limited("biz", "u1") is True

    def test_window_key_expires(self, redis_client, mock_metrics):
        clock = _Clock()
        guard = RateGuard(redis_client, window_seconds=60, clock=clock, metrics_client=mock_metrics)
        guard.is_rate_limited("biz", "u1")
        window = int(clock.now // 60)
        assert 0 < redis_client.ttl(f"rl:biz:u1:{window}") <= 120


class TestDeliveryDedupe:
    def test_second_claim_is_duplicate_until_ttl_expires(self, redis_client, mock_metrics):
        guard = RateGuard(redis_client, idempotency_ttl=1, metrics_client=mock_metrics)
        assert guard.is_duplicate_delivery("biz", "token-1") is False
        assert guard.is_duplicate_delivery("biz", "token-1") is True
        time.sleep(1.1)
        assert guard.is_duplicate_delivery("biz", "token-1") is False

    def test_tokens_are_scoped_per_business(self, redis_client, mock_metrics):
        guard = RateGuard(redis_client, metrics_client=mock_metrics)
        assert guard.is_duplicate_delivery("biz-a", "t") is False
        assert guard.is_duplicate_delivery("biz-b", "t") is False


class TestOfflineCooldown:
    def test_notice_claimed_once_per_cooldown(self, redis_client, mock_metrics):
        guard = RateGuard(redis_client, offline_cooldown=600, metrics_client=mock_metrics)
        assert guard.claim_offline_notice("biz", "u1") is True
        assert guard.claim_offline_notice("biz", "u1") is False
        assert guard.claim_offline_notice("biz", "u2") is True
        assert 0 < redis_client.ttl("offline:biz:u1") <= 600


class TestFailOpen:
    """With the store missing or down every gate lets the message through."""

    def _broken_client(self) -> MagicMock:
        client = MagicMock()
        client.pipeline.side_effect = redis.ConnectionError("refused")
        client.set.side_effect = redis.ConnectionError("refused")
        client.get.side_effect = redis.ConnectionError("refused")
        return client

    def test_unreachable_store_never_limits(self, mock_metrics):
        guard = RateGuard(self._broken_client(), max_messages=0, metrics_client=mock_metrics)
        assert guard.is_rate_limited("biz", "u1") is False
        assert guard.is_duplicate_delivery("biz", "t") is False
        assert guard.claim_offline_notice("biz", "u1") is True

    def test_store_failures_are_recorded(self, mock_metrics):
        RateGuard(self._broken_client(), metrics_client=mock_metrics).is_rate_limited("biz", "u1")
        args, kwargs = mock_metrics.record_failure.call_args
        assert args == ("redis", "rate_limit")
        assert kwargs["error_type"] == "ConnectionError"

    def test_no_store_configured(self, mock_metrics):
        guard = RateGuard(None, max_messages=0, metrics_client=mock_metrics)
        assert guard.is_rate_limited("biz", "u1") is False
        assert guard.is_duplicate_delivery("biz", "t") is False
        assert guard.claim_offline_notice("biz", "u1") is True
        mock_metrics.record_failure.assert_not_called()
