"""Business Config Resolver.

Tenant bundles live as JSON files in ``replyrouter/business/data/`` and are
validated into frozen ``BusinessConfig`` models on first use.  The resolved
bundles are cached for the life of the process; reloading configuration is
the surrounding system's job (restart or ``clear_cache``).
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from replyrouter.business.models import BusinessConfig
from replyrouter.config import DEFAULT_BUSINESS_ID

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).resolve().parent / "data"

_configs: dict[str, BusinessConfig] | None = None
_lock = threading.Lock()


def _load_all(data_dir: Path = _DATA_DIR) -> dict[str, BusinessConfig]:
    """Read and validate every ``<id>.json`` bundle in ``data_dir``."""
    configs: dict[str, BusinessConfig] = {}
    for path in sorted(data_dir.glob("*.json")):
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = BusinessConfig.model_validate(raw)
        configs[config.id] = config
        logger.debug(
            "Loaded tenant %s: %d products, %d scripts, %d docs, %d intents",
            config.id, len(config.products), len(config.sale_scripts),
            len(config.knowledge_docs), len(config.intents),
        )
    return configs


def _get_configs() -> dict[str, BusinessConfig]:
    """Return the tenant map, loading it on first use (double-checked)."""
    global _configs
    if _configs is None:
        with _lock:
            if _configs is None:
                _configs = _load_all()
                logger.info("Business registry ready: %s", ", ".join(_configs))
    return _configs


def business_ids() -> list[str]:
    return list(_get_configs())


def get_business_config(business_id: str | None) -> BusinessConfig:
    """Resolve a tenant, falling back to the default tenant.  Never raises
    for an unknown id."""
    configs = _get_configs()
    config = configs.get(business_id or "")
    if config is None:
        if business_id:
            logger.debug("Unknown business %r, using %s", business_id, DEFAULT_BUSINESS_ID)
        config = configs[DEFAULT_BUSINESS_ID]
    return config


def clear_cache() -> None:
    """Drop the cached bundles so the next lookup re-reads the data files."""
    global _configs
    with _lock:
        _configs = None
