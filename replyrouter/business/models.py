"""Pydantic models for a tenant's knowledge bundle.

A ``BusinessConfig`` is immutable once loaded: every model here is frozen,
and the helper methods are pure lookups over the bundle.  Matching is
case-insensitive substring matching throughout, which is what the Thai
and English trigger tables are written for (Thai has no word spacing).
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ProductStatus = Literal["active", "discontinue"]


def includes_any(text_lower: str, triggers: list[str]) -> bool:
    """True when any trigger occurs in the (already lower-cased) text."""
    return any(t.lower() in text_lower for t in triggers if t)


def format_baht(amount: int | float) -> str:
    """Format a price the way customers see it: ``9,990``."""
    return f"{amount:,.0f}"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Catalog & knowledge ──────────────────────────────────────────────


class Product(_Frozen):
    id: int
    name: str
    description: str = ""
    price: float
    category: str
    image: str | None = None
    tags: list[str] = Field(default_factory=list)
    status: ProductStatus = "active"
    recommended_alternative: str | None = None

    @property
    def is_discontinued(self) -> bool:
        return self.status == "discontinue"

    @property
    def summary_line(self) -> str:
        """First line of the description."""
        return self.description.split("\n")[0]


class FAQEntry(_Frozen):
    question: str
    answer: str
    category: str = ""


class SaleScript(_Frozen):
    id: int
    triggers: list[str]
    customer_example: str = ""
    admin_reply: str
    tags: list[str] = Field(default_factory=list)


class KnowledgeDoc(_Frozen):
    id: int
    title: str
    content: str
    triggers: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class Intent(_Frozen):
    """A scored intent policy.  An empty template means pass-through."""

    id: str
    number: int
    name: str
    description: str = ""
    triggers: list[str] = Field(default_factory=list)
    policy: str = ""
    response_template: str = ""
    active: bool = True


class CategoryCheck(_Frozen):
    keys: list[str]
    category: str
    label: str


class FaqTerm(_Frozen):
    keys: list[str]
    topic: str


class DiscontinuedMapping(_Frozen):
    triggers: list[str]
    recommended: str
    note: str | None = None


# ── Layer policy (the versioned trigger table) ──────────────────────


class LayerPolicy(_Frozen):
    """Per-tenant trigger tables and canned replies for the rule layers.

    ``layer_order`` names the rule layers to evaluate, in order.  An empty
    list means the default ascending order.  The agent and static fallback
    are never listed here; the orchestrator always appends them.
    """

    version: str = "1"
    admin_escalation_triggers: list[str] = Field(default_factory=list)
    admin_escalation_response: str = ""
    stock_triggers: list[str] = Field(default_factory=list)
    stock_response: str = ""
    vat_refund_triggers: list[str] = Field(default_factory=list)
    vat_refund_response: str = ""
    contact_triggers: list[str] = Field(default_factory=list)
    contact_response: str = ""
    discontinued_mappings: list[DiscontinuedMapping] = Field(default_factory=list)
    discontinued_template: str = (
        "ขออภัยครับ รุ่นที่สอบถาม **ยกเลิกการจำหน่ายแล้ว** ครับ\n"
        "ผมแนะนำรุ่นใหม่คือ **{recommended}** แทนครับ{note}"
    )
    category_browse_triggers: list[str] = Field(
        default_factory=lambda: ["หมวด", "ประเภท", "category", "มีอะไรบ้าง", "ขายอะไร"],
    )
    clarify_skip_words: list[str] = Field(
        default_factory=lambda: [
            "สวัสดี", "หวัดดี", "hello", "hi", "ok", "โอเค", "ครับ", "ค่ะ", "ได้", "เอา", "?", "??",
        ],
    )
    layer_order: list[str] = Field(default_factory=list)

    def match_discontinued(self, message: str) -> DiscontinuedMapping | None:
        lower = message.lower()
        for mapping in self.discontinued_mappings:
            if includes_any(lower, mapping.triggers):
                return mapping
        return None

    def build_discontinued_response(self, mapping: DiscontinuedMapping) -> str:
        note = f"\n\n{mapping.note}" if mapping.note else ""
        return self.discontinued_template.format(recommended=mapping.recommended, note=note)


# ── BusinessConfig ───────────────────────────────────────────────────


class BusinessConfig(_Frozen):
    """Everything the pipeline and agent need for one tenant."""

    id: str
    name: str
    description: str = ""
    system_prompt_identity: str
    order_channels_text: str
    default_fallback_message: str
    off_hours_message: str = (
        "ขณะนี้อยู่นอกเวลาทำการครับ ทีมงานจะติดต่อกลับในเวลาทำการโดยเร็วที่สุดครับ"
    )
    products: list[Product] = Field(default_factory=list)
    faq_data: list[FAQEntry] = Field(default_factory=list)
    sale_scripts: list[SaleScript] = Field(default_factory=list)
    knowledge_docs: list[KnowledgeDoc] = Field(default_factory=list)
    intents: list[Intent] = Field(default_factory=list)
    category_checks: list[CategoryCheck] = Field(default_factory=list)
    faq_terms: list[FaqTerm] = Field(default_factory=list)
    policy: LayerPolicy = Field(default_factory=LayerPolicy)

    # ── Catalog helpers ──────────────────────────────────────────────

    def active_products(self) -> list[Product]:
        return [p for p in self.products if not p.is_discontinued]

    def categories(self) -> list[str]:
        """Unique categories in first-seen catalog order."""
        return list(dict.fromkeys(p.category for p in self.products))

    def cheapest_products(self, limit: int = 5) -> list[Product]:
        return sorted(self.active_products(), key=lambda p: p.price)[:limit]

    def products_by_category(self, category: str) -> list[Product]:
        wanted = category.lower()
        return [p for p in self.products if p.category.lower() == wanted]

    def search_products(self, query: str) -> list[Product]:
        """Products named in the message, or whose fields contain the query.

        A product hits when its full name occurs in the message, when one of
        its non-trivial tags (longer than 3 chars) occurs in the message, or
        when the whole query occurs in its name, description, category or a
        tag.  Longer names are tried first so specific models rank ahead of
        their base model.
        """
        lower = query.lower().strip()
        if not lower:
            return []
        hits: list[Product] = []
        for p in sorted(self.products, key=lambda p: len(p.name), reverse=True):
            name = p.name.lower()
            if (
                name in lower
                or any(len(t) > 3 and t.lower() in lower for t in p.tags)
                or lower in name
                or lower in p.description.lower()
                or lower in p.category.lower()
                or any(lower in t.lower() for t in p.tags)
            ):
                hits.append(p)
        return hits

    # ── Trigger-table helpers ────────────────────────────────────────

    def match_sale_script(self, message: str) -> SaleScript | None:
        """Sale script with the longest trigger found in the message."""
        return _longest_trigger_match(message, self.sale_scripts)

    def match_knowledge_doc(self, message: str) -> KnowledgeDoc | None:
        """Knowledge doc with the longest trigger found in the message."""
        return _longest_trigger_match(message, self.knowledge_docs)


def _longest_trigger_match(message, candidates):
    lower = message.lower()
    best = None
    best_len = 0
    for candidate in candidates:
        for trigger in candidate.triggers:
            t = trigger.lower()
            if t and t in lower and len(t) > best_len:
                best, best_len = candidate, len(t)
    return best
