"""Multi-signal intent scoring.

Each trigger found in the message scores 3 when it stands as its own word
(bounded by start/end, whitespace or ``,!?``) and 2 when it only occurs
inside a longer run of text, which is the common case for Thai.  Every
additional trigger of the same intent adds 0.5.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from replyrouter.business.models import BusinessConfig, Intent

INTENT_THRESHOLD = 2.0


@dataclass(frozen=True)
class IntentScore:
    intent: Intent
    score: float
    matched_triggers: tuple[str, ...]


def _is_word(lower: str, trigger: str) -> bool:
    return re.search(rf"(^|[\s,!?]){re.escape(trigger)}($|[\s,!?])", lower) is not None


def score_intents(message: str, biz: BusinessConfig) -> list[IntentScore]:
    """Score every active intent, best first.  Intents with no hit are omitted."""
    lower = message.lower()
    scores: list[IntentScore] = []
    for intent in biz.intents:
        if not intent.active or not intent.triggers:
            continue
        score = 0.0
        matched = []
        for trigger in intent.triggers:
            t = trigger.lower()
            if not t or t not in lower:
                continue
            matched.append(trigger)
            score += 3 if _is_word(lower, t) else 2
        if len(matched) > 1:
            score += (len(matched) - 1) * 0.5
        if score > 0:
            scores.append(IntentScore(intent, score, tuple(matched)))
    # sorted() is stable, so equal scores keep catalog order
    return sorted(scores, key=lambda s: s.score, reverse=True)


def classify_intent(
    message: str, biz: BusinessConfig, threshold: float = INTENT_THRESHOLD,
) -> IntentScore | None:
    scores = score_intents(message, biz)
    if scores and scores[0].score >= threshold:
        return scores[0]
    return None
