"""Rule layers of the reply pipeline.

Every rule layer is a plain function ``(turn) -> LayerOutcome | None``.
A layer that returns an outcome answers the message; ``None`` lets the
orchestrator try the next layer.  Layers only read the ``Turn``; all
tenant-specific text comes from the ``BusinessConfig`` and its
``LayerPolicy`` so nothing here is specific to one shop.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import cached_property

from replyrouter.business.models import BusinessConfig, Product, format_baht, includes_any
from replyrouter.pipeline.context import ConversationContext, build_contextual_response
from replyrouter.pipeline.intents import IntentScore, classify_intent, score_intents
from replyrouter.services.conversations import ChatMessage


class LayerKind(enum.Enum):
    """Pipeline layers with their trace number and display name."""

    CONTEXT_EXTRACTION = (0, "Context Extraction")
    ADMIN_ESCALATION = (1, "Admin Escalation")
    OFF_HOURS = (2, "Off Hours")
    VAT_REFUND = (3, "VAT Refund")
    STOCK_INQUIRY = (4, "Stock Inquiry")
    CONTACT_CHANNELS = (5, "Contact Channels")
    DISCONTINUED = (6, "Discontinued")
    CONTEXT_RESOLUTION = (7, "Context Resolution")
    INTENT_ENGINE = (8, "Intent Engine")
    SALE_SCRIPT = (9, "Sale Script")
    FAQ = (10, "FAQ")
    KNOWLEDGE_BASE = (11, "Knowledge Base")
    PRODUCT_SEARCH = (12, "Product Search")
    CATEGORY_BROWSE = (13, "Category Browse")
    CATEGORY_SPECIFIC = (14, "Category Specific")
    CLARIFICATION = (15, "Clarification")
    CONTEXT_FALLBACK = (16, "Context Fallback")
    AI_AGENT = (17, "AI Agent")
    DEFAULT_FALLBACK = (18, "Default Fallback")

    def __init__(self, number: int, title: str) -> None:
        self.number = number
        self.title = title

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass
class Turn:
    """Everything a layer may look at for one inbound message."""

    message: str
    history: list[ChatMessage]
    biz: BusinessConfig
    ctx: ConversationContext
    off_hours_note: str | None = None
    send_off_hours_notice: bool = False

    @cached_property
    def lower(self) -> str:
        return self.message.lower()

    @cached_property
    def intent_scores(self) -> list[IntentScore]:
        return score_intents(self.message, self.biz)


@dataclass
class LayerOutcome:
    content: str
    name: str
    intent_id: str | None = None
    is_admin_escalation: bool = False
    clarify_options: list[str] = field(default_factory=list)


LayerFn = Callable[[Turn], "LayerOutcome | None"]


# ── Formatters ───────────────────────────────────────────────────────


def product_card(p: Product) -> str:
    """Brief card used when a search returns several products."""
    badge = "⚠️ DISCONTINUE" if p.is_discontinued else "✅ พร้อมจำหน่าย"
    alt = f"\n➡️ แนะนำรุ่นใหม่: **{p.recommended_alternative}**" if p.recommended_alternative else ""
    return (
        f"**{p.name}**\n💰 **{format_baht(p.price)} บาท** | {p.category}\n"
        f"{badge}{alt}\n{p.summary_line}"
    )


def product_detail(p: Product, biz: BusinessConfig) -> str:
    lines = [f"**{p.name}** ครับ", ""]
    price = f"**{format_baht(p.price)} บาท**" if p.price > 0 else "**ฟรี** (รวมในค่าสินค้า)"
    lines += [f"💰 ราคา: {price}", "", "📋 รายละเอียด:"]
    lines += [f"  {line.strip()}" for line in p.description.split("\n") if line.strip()]
    lines += ["", f"📂 หมวดหมู่: {p.category}"]
    if p.is_discontinued:
        lines.append("⚠️ สินค้ายกเลิกจำหน่ายแล้ว")
        if p.recommended_alternative:
            lines.append(f"➡️ แนะนำ: **{p.recommended_alternative}**")
    else:
        lines.append("✅ พร้อมจำหน่าย")
    lines += ["", "📞 สนใจสั่งซื้อหรือสอบถามเพิ่มเติมได้เลยครับ", biz.order_channels_text]
    return "\n".join(lines)


def category_listing(biz: BusinessConfig) -> str:
    rows = "\n".join(
        f"• **{c}** ({len(biz.products_by_category(c))} รายการ)" for c in biz.categories()
    )
    return f"📂 หมวดหมู่สินค้าของ {biz.name} ครับ:\n\n{rows}\n\nสนใจหมวดไหนครับ?"


# ── Layers ───────────────────────────────────────────────────────────


def admin_escalation(turn: Turn) -> LayerOutcome | None:
    policy = turn.biz.policy
    if not includes_any(turn.lower, policy.admin_escalation_triggers):
        return None
    return LayerOutcome(
        policy.admin_escalation_response, "Safety: Admin Escalation", is_admin_escalation=True,
    )


def off_hours(turn: Turn) -> LayerOutcome | None:
    if not (turn.off_hours_note and turn.send_off_hours_notice):
        return None
    return LayerOutcome(turn.biz.off_hours_message, "Safety: Off Hours")


def vat_refund(turn: Turn) -> LayerOutcome | None:
    policy = turn.biz.policy
    if not includes_any(turn.lower, policy.vat_refund_triggers):
        return None
    return LayerOutcome(policy.vat_refund_response, "Safety: VAT Refund")


def stock_inquiry(turn: Turn) -> LayerOutcome | None:
    policy = turn.biz.policy
    if not includes_any(turn.lower, policy.stock_triggers):
        return None
    p = turn.ctx.active_product
    if p is None:
        return LayerOutcome(policy.stock_response, "Safety: Stock Inquiry")
    return LayerOutcome(
        f"ผมขออนุญาตตรวจสอบสต็อก **{p.name}** กับทีมงานให้แน่ชัดก่อนนะครับ\n\n"
        "เพื่อข้อมูลที่ถูกต้อง 100% ครับ ระหว่างนี้ ให้ผมช่วยแนะนำข้อมูลส่วนอื่นก่อนไหมครับ?",
        "Safety: Stock (contextual)",
    )


def contact_channels(turn: Turn) -> LayerOutcome | None:
    policy = turn.biz.policy
    if not includes_any(turn.lower, policy.contact_triggers):
        return None
    return LayerOutcome(policy.contact_response, "Contact Channels")


def discontinued(turn: Turn) -> LayerOutcome | None:
    mapping = turn.biz.policy.match_discontinued(turn.message)
    if mapping is None:
        return None
    return LayerOutcome(
        turn.biz.policy.build_discontinued_response(mapping),
        "Discontinued Detection",
        intent_id="discontinued_product",
    )


def context_resolution(turn: Turn) -> LayerOutcome | None:
    ctx = turn.ctx
    if not (ctx.is_follow_up and ctx.active_product):
        return None
    content = build_contextual_response(ctx, turn.message, turn.biz)
    if content is None:
        return None
    return LayerOutcome(
        content, f"Context: {ctx.active_product.name} → {ctx.recent_topic or 'detail'}",
    )


def intent_engine(turn: Turn) -> LayerOutcome | None:
    top = classify_intent(turn.message, turn.biz)
    if top is None:
        return None
    intent = top.intent
    if intent.id == "contact_channels":
        content = turn.biz.policy.contact_response
    elif intent.id == "product_inquiry":
        content = category_listing(turn.biz)
    else:
        # an empty template passes through to the later layers
        content = intent.response_template
    if not content:
        return None
    return LayerOutcome(content, f"Intent: {intent.name}", intent_id=intent.id)


def sale_script(turn: Turn) -> LayerOutcome | None:
    script = turn.biz.match_sale_script(turn.message)
    if script is None:
        return None
    return LayerOutcome(script.admin_reply, "Sale Script")


def faq(turn: Turn) -> LayerOutcome | None:
    for term in turn.biz.faq_terms:
        keys = [k.lower() for k in term.keys]
        if not any(k in turn.lower for k in keys):
            continue
        for entry in turn.biz.faq_data:
            haystack = f"{entry.question}\n{entry.answer}".lower()
            if any(k in haystack for k in keys):
                return LayerOutcome(f"📋 **{entry.question}**\n\n{entry.answer}", f"FAQ: {term.topic}")
    return None


def knowledge_base(turn: Turn) -> LayerOutcome | None:
    doc = turn.biz.match_knowledge_doc(turn.message)
    if doc is None:
        return None
    return LayerOutcome(f"📚 **{doc.title}**\n\n{doc.content}", f"Knowledge: {doc.title}")


def product_search(turn: Turn) -> LayerOutcome | None:
    hits = turn.biz.search_products(turn.message)
    if not hits:
        return None
    if len(hits) <= 2:
        content = "\n\n---\n\n".join(product_detail(p, turn.biz) for p in hits)
        return LayerOutcome(content, "Product Search")
    cards = "\n\n---\n\n".join(product_card(p) for p in hits[:3])
    more = f"\n\n_...และอีก {len(hits) - 3} รายการ_" if len(hits) > 3 else ""
    return LayerOutcome(
        f"พบสินค้าที่เกี่ยวข้อง {len(hits)} รายการครับ\n\n{cards}{more}\n\nสนใจรุ่นไหนเพิ่มเติมไหมครับ?",
        "Product Search",
    )


def category_browse(turn: Turn) -> LayerOutcome | None:
    if not includes_any(turn.lower, turn.biz.policy.category_browse_triggers):
        return None
    return LayerOutcome(category_listing(turn.biz), "Category Browse")


def category_specific(turn: Turn) -> LayerOutcome | None:
    biz = turn.biz
    for check in biz.category_checks:
        if not includes_any(turn.lower, check.keys):
            continue
        if check.category == "Budget":
            rows = "\n".join(
                f"💰 **{p.name}** — **{format_baht(p.price)} บาท**" for p in biz.cheapest_products(5)
            )
            content = f"💡 สินค้าราคาเริ่มต้นครับ:\n\n{rows}\n\nสนใจรุ่นไหนบอกได้เลยครับ!"
        else:
            items = [p for p in biz.active_products() if p.category == check.category]
            if not items:
                continue
            rows = "\n".join(f"• **{p.name}** — {format_baht(p.price)} บาท" for p in items[:5])
            more = f"\n\n_...และอีก {len(items) - 5} รายการ_" if len(items) > 5 else ""
            content = f"{check.label} ที่มีจำหน่ายครับ:\n\n{rows}{more}\n\nสนใจรุ่นไหนครับ?"
        return LayerOutcome(content, f"Category: {check.label}")
    return None


def clarification(turn: Turn) -> LayerOutcome | None:
    """Ask what the customer needs when nothing else has any signal."""
    trimmed = turn.message.strip()
    top_score = turn.intent_scores[0].score if turn.intent_scores else 0
    if top_score > 0 or turn.ctx.active_product is not None or len(trimmed) <= 1:
        return None
    if trimmed.lower() in (w.lower() for w in turn.biz.policy.clarify_skip_words):
        return None
    options = [c.label for c in turn.biz.category_checks[:4]] or [
        "ราคาสินค้า", "สินค้าแนะนำ", "ติดต่อเรา",
    ]
    return LayerOutcome(
        f"ขอบคุณที่ติดต่อ {turn.biz.name} ครับ สอบถามเรื่องอะไรได้เลยครับ",
        "Clarification",
        intent_id="clarify",
        clarify_options=options,
    )


def context_fallback(turn: Turn) -> LayerOutcome | None:
    p = turn.ctx.active_product
    if p is None or len(turn.history) <= 2:
        return None
    return LayerOutcome(
        f"เกี่ยวกับ **{p.name}** ครับ:\n\n{p.summary_line}\n💰 ราคา: **{format_baht(p.price)} บาท**\n\n"
        "สนใจสอบถามเรื่องไหนเพิ่มเติมครับ?\n- รายละเอียดสเปค\n- ประกัน\n- การสั่งซื้อ\n\n"
        "หรือจะดูสินค้าอื่นก็บอกได้เลยครับ!",
        f"Context Fallback: {p.name}",
    )


RULE_LAYERS: dict[LayerKind, LayerFn] = {
    LayerKind.ADMIN_ESCALATION: admin_escalation,
    LayerKind.OFF_HOURS: off_hours,
    LayerKind.VAT_REFUND: vat_refund,
    LayerKind.STOCK_INQUIRY: stock_inquiry,
    LayerKind.CONTACT_CHANNELS: contact_channels,
    LayerKind.DISCONTINUED: discontinued,
    LayerKind.CONTEXT_RESOLUTION: context_resolution,
    LayerKind.INTENT_ENGINE: intent_engine,
    LayerKind.SALE_SCRIPT: sale_script,
    LayerKind.FAQ: faq,
    LayerKind.KNOWLEDGE_BASE: knowledge_base,
    LayerKind.PRODUCT_SEARCH: product_search,
    LayerKind.CATEGORY_BROWSE: category_browse,
    LayerKind.CATEGORY_SPECIFIC: category_specific,
    LayerKind.CLARIFICATION: clarification,
    LayerKind.CONTEXT_FALLBACK: context_fallback,
}

DEFAULT_LAYER_ORDER: list[LayerKind] = list(RULE_LAYERS)


def resolve_layer_order(names: list[str]) -> list[LayerKind]:
    """Map a tenant's configured layer names to rule layers.

    Unknown names and the non-rule layers are ignored; an empty list
    selects the default ascending order.
    """
    if not names:
        return DEFAULT_LAYER_ORDER
    order: list[LayerKind] = []
    for name in names:
        kind = LayerKind.__members__.get(name.upper())
        if kind in RULE_LAYERS and kind not in order:
            order.append(kind)
    return order
