"""Centralized configuration for the reply router.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/replyrouter/<VARIABLE_NAME>``.

Provider API keys are resolved lazily (see ``require_secret``) so that the
rule layers, guards and tests can run without any LLM credentials.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (lazy import to avoid boto3 dep in tests)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/replyrouter/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def require_secret(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /replyrouter/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "anthropic").lower()

_DEFAULT_AGENT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
}
AGENT_MODEL_NAME: str = os.getenv(
    "AGENT_MODEL_NAME", _DEFAULT_AGENT_MODELS.get(LLM_PROVIDER, "claude-sonnet-4-20250514"),
)
AGENT_TEMPERATURE: float = float(os.getenv("AGENT_TEMPERATURE", "0.3"))
AGENT_MAX_TOKENS: int = int(os.getenv("AGENT_MAX_TOKENS", "800"))

# ── Agent loop ──────────────────────────────────────────────────────
AGENT_MAX_ITERATIONS: int = int(os.getenv("AGENT_MAX_ITERATIONS", "5"))
AGENT_HISTORY_LIMIT: int = int(os.getenv("AGENT_HISTORY_LIMIT", "10"))

# ── Pipeline ────────────────────────────────────────────────────────
PIPELINE_HISTORY_LIMIT: int = int(os.getenv("PIPELINE_HISTORY_LIMIT", "8"))
DEFAULT_BUSINESS_ID: str = os.getenv("DEFAULT_BUSINESS_ID", "dji13store")

# ── Guards ──────────────────────────────────────────────────────────
RATE_LIMIT_MAX_MESSAGES: int = int(os.getenv("RATE_LIMIT_MAX_MESSAGES", "20"))
RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
IDEMPOTENCY_TTL_SECONDS: int = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "300"))
OFFLINE_COOLDOWN_SECONDS: int = int(os.getenv("OFFLINE_COOLDOWN_SECONDS", "600"))

# ── Admin flags ─────────────────────────────────────────────────────
FLAG_TTL_SECONDS: int = int(os.getenv("FLAG_TTL_SECONDS", str(60 * 60 * 24 * 3)))
FLAG_LIST_CAP: int = int(os.getenv("FLAG_LIST_CAP", "100"))

# ── Key-value store ─────────────────────────────────────────────────
REDIS_URL: str | None = os.getenv("REDIS_URL") or None

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
