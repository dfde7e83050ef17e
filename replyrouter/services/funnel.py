"""Five-stage conversion funnel.

A customer enters the funnel at the stage mapped from the first intent the
pipeline recognises for them and only ever moves forward.  Each forward
move bumps a per-day, per-stage counter.

  funnel:user:{biz}:{user}          current stage, 7 day TTL
  funnel:{biz}:{YYYY-MM-DD}:{stage} counter, 90 day TTL (Thai date)
"""

from __future__ import annotations

import logging
import time

import redis
from pydantic import BaseModel

from replyrouter.services.token_usage import thai_date

logger = logging.getLogger(__name__)

FUNNEL_STAGES = ["awareness", "interest", "consideration", "intent", "converted"]
_STAGE_ORDER = {stage: i for i, stage in enumerate(FUNNEL_STAGES)}

INTENT_TO_STAGE: dict[str, str] = {
    "greeting": "awareness",
    "product_inquiry": "awareness",
    "contact_channels": "awareness",
    "store_location_hours": "awareness",
    "recommendation": "interest",
    "promotion_inquiry": "interest",
    "product_details": "consideration",
    "warranty_info": "consideration",
    "color_inquiry": "consideration",
    "installment_inquiry": "consideration",
    "drone_registration": "consideration",
    "discontinued_product": "consideration",
    "deposit_policy": "intent",
    "drone_purchase": "intent",
    "ev_purchase": "intent",
    "admin_escalation": "converted",
}

USER_TTL = 7 * 24 * 3600
COUNTER_TTL = 90 * 24 * 3600


class FunnelCount(BaseModel):
    date: str
    stage: str
    count: int


class FunnelTracker:
    def __init__(self, client: redis.Redis | None) -> None:
        self._redis = client

    def track(self, business_id: str, user_id: str, intent_id: str) -> str | None:
        """Advance the user's stage for ``intent_id``.  Returns the new stage
        when the user moved forward, else ``None``."""
        stage = INTENT_TO_STAGE.get(intent_id)
        if self._redis is None or stage is None:
            return None
        user_key = f"funnel:user:{business_id}:{user_id}"
        current = self._redis.get(user_key)
        if current is not None and _STAGE_ORDER.get(current, -1) >= _STAGE_ORDER[stage]:
            return None

        counter_key = f"funnel:{business_id}:{thai_date()}:{stage}"
        pipe = self._redis.pipeline()
        pipe.incr(counter_key)
        pipe.expire(counter_key, COUNTER_TTL)
        pipe.set(user_key, stage, ex=USER_TTL)
        pipe.execute()
        logger.debug("Funnel %s:%s -> %s", business_id, user_id, stage)
        return stage

    def get_funnel_data(self, business_id: str, days: int = 30) -> list[FunnelCount]:
        """Non-zero stage counts for the last ``days`` Thai dates, oldest first."""
        if self._redis is None:
            return []
        now = time.time()
        dates = [thai_date(now - i * 86400) for i in range(days - 1, -1, -1)]
        keys = [f"funnel:{business_id}:{d}:{s}" for d in dates for s in FUNNEL_STAGES]
        values = self._redis.mget(keys)
        results = []
        for key, value in zip(keys, values):
            if value and int(value) > 0:
                _, _, date, stage = key.rsplit(":", 3)
                results.append(FunnelCount(date=date, stage=stage, count=int(value)))
        return results
