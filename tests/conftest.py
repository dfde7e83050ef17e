"""Shared test fixtures for the reply router test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import fakeredis
import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py reads the test values.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-456")
    os.environ["LLM_PROVIDER"] = "anthropic"
    os.environ["METRICS_ENABLED"] = "false"
    os.environ.pop("REDIS_URL", None)


@pytest.fixture
def redis_client():
    """In-memory Redis with the same client options as production."""
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def biz():
    from replyrouter.business.registry import get_business_config

    return get_business_config("dji13store")


@pytest.fixture
def ev_biz():
    from replyrouter.business.registry import get_business_config

    return get_business_config("evlifethailand")


@pytest.fixture
def mock_metrics():
    return MagicMock()
