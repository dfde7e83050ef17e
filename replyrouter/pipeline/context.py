"""Conversation context extraction and follow-up replies.

Context extraction runs before any rule layer.  It scans a snapshot of the
recent history for products the customer and bot have talked about, and
classifies the current message's topic so that short follow-ups such as
"ราคาเท่าไหร่" can be answered about the product already under discussion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from replyrouter.business.models import BusinessConfig, Product, format_baht
from replyrouter.services.conversations import ChatMessage

FOLLOW_UP_PATTERNS = [
    "รุ่นนี้", "ตัวนี้", "อันนี้", "เครื่องนี้", "สินค้านี้",
    "ราคาเท่าไหร่", "ราคาเท่าไร", "กี่บาท",
    "มีสีอะไร", "สีอะไรบ้าง",
    "มีประกัน", "ประกันกี่ปี", "ประกันเท่าไหร่",
    "ส่งกี่วัน", "ส่งฟรีไหม", "ค่าส่งเท่าไหร่", "จัดส่งยังไง",
    "มีโปรไหม", "ลดราคาไหม",
    "สเปค", "spec", "รายละเอียด",
    "ผ่อนได้ไหม", "ผ่อนกี่งวด",
    "เอาอันนี้", "สั่งได้เลย", "จะสั่ง", "สั่งซื้อ",
    "เปรียบเทียบ", "ต่างกันยังไง", "อะไรดีกว่า",
    "มีของไหม", "มีสต็อกไหม", "พร้อมส่งไหม",
    "แถมอะไร", "ได้อะไรบ้าง", "มาพร้อมอะไร",
    "this one", "how much", "what color", "any discount",
    "specs", "details", "warranty", "shipping",
    "compare", "difference", "better",
    "i want it", "order", "buy this",
    "เอา", "ได้", "ครับ", "ค่ะ", "โอเค", "ok", "yes",
    "แล้วก็", "แล้ว", "อีกอย่าง",
]

# First matching entry wins.
TOPIC_PATTERNS: list[tuple[str, list[str]]] = [
    ("price", ["ราคา", "กี่บาท", "เท่าไหร่", "เท่าไร", "price", "how much", "cost"]),
    ("warranty", ["ประกัน", "warranty", "เคลม", "care refresh", "service plus"]),
    ("shipping", ["ส่ง", "จัดส่ง", "shipping", "delivery", "ค่าส่ง", "กี่วัน"]),
    ("color", ["สี", "color", "สีอะไร"]),
    ("specs", ["สเปค", "spec", "รายละเอียด", "detail", "คุณสมบัติ", "feature"]),
    ("installment", ["ผ่อน", "installment", "งวด", "บัตรเครดิต"]),
    ("promotion", ["โปร", "ส่วนลด", "promotion", "discount", "ลดราคา", "แถม"]),
    ("compare", ["เปรียบเทียบ", "compare", "ต่างกัน", "vs", "อะไรดีกว่า", "difference"]),
    ("stock", ["สต็อก", "ของ", "พร้อมส่ง", "stock", "available", "มีไหม"]),
    ("order", ["สั่ง", "ซื้อ", "เอา", "order", "buy"]),
]

AFFIRMATIONS = ["เอา", "ได้", "ครับ", "ค่ะ", "โอเค", "ok", "yes", "ตกลง", "เอาเลย"]

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


@dataclass
class ConversationContext:
    recent_products: list[Product] = field(default_factory=list)
    active_product: Product | None = None
    recent_topic: str | None = None
    is_follow_up: bool = False
    recent_user_messages: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        parts = []
        if self.active_product:
            parts.append(f"Active product: {self.active_product.name}")
        if len(self.recent_products) > 1:
            parts.append(f"{len(self.recent_products)} products in context")
        if self.recent_topic:
            parts.append(f"Topic: {self.recent_topic}")
        if self.is_follow_up:
            parts.append("Follow-up detected")
        return " | ".join(parts) if parts else "No prior context"


def follow_up_hits(message: str) -> list[str]:
    lower = message.lower()
    return [p for p in FOLLOW_UP_PATTERNS if p in lower]


def detect_topic(message: str) -> str | None:
    lower = message.lower()
    for topic, keys in TOPIC_PATTERNS:
        if any(k in lower for k in keys):
            return topic
    return None


def extract_context(
    history: list[ChatMessage],
    message: str,
    biz: BusinessConfig,
    window: int = 8,
) -> ConversationContext:
    """Derive product and topic context from the last ``window`` messages.

    Products are collected in mention order (name, or a tag longer than
    three characters, or a ``**bold**`` product name in a bot reply); the
    most recently mentioned one becomes the active product.
    """
    ctx = ConversationContext()
    seen: set[int] = set()

    def _remember(product: Product) -> None:
        if product.id not in seen:
            seen.add(product.id)
            ctx.recent_products.append(product)

    for msg in history[-window:] if window > 0 else []:
        if msg.role == "customer":
            ctx.recent_user_messages.append(msg.content)

        text = msg.content.lower()
        for product in biz.products:
            if product.name.lower() in text:
                _remember(product)
                continue
            if any(len(tag) > 3 and tag.lower() in text for tag in product.tags):
                _remember(product)

        if msg.role != "customer":
            by_name = {p.name.lower(): p for p in biz.products}
            for bold in _BOLD_RE.findall(msg.content):
                found = by_name.get(bold.lower())
                if found is not None:
                    _remember(found)

    if ctx.recent_products:
        ctx.active_product = ctx.recent_products[-1]

    ctx.is_follow_up = len(history) > 1 and bool(follow_up_hits(message))
    ctx.recent_topic = detect_topic(message)
    return ctx


# ── Follow-up replies ────────────────────────────────────────────────


def _status_line(p: Product) -> str:
    if not p.is_discontinued:
        return "✅ พร้อมจำหน่าย"
    if p.recommended_alternative:
        return f"⚠️ ยกเลิกจำหน่าย → แนะนำ **{p.recommended_alternative}**"
    return "⚠️ ยกเลิกจำหน่าย"


def build_contextual_response(
    ctx: ConversationContext, message: str, biz: BusinessConfig,
) -> str | None:
    """Answer a follow-up about the active product, or ``None``."""
    p = ctx.active_product
    if p is None:
        return None
    price = format_baht(p.price)

    topic = ctx.recent_topic
    if topic == "price":
        note = ""
        if p.is_discontinued:
            note = "\n\n⚠️ สินค้านี้ยกเลิกจำหน่ายแล้ว"
            if p.recommended_alternative:
                note += f" แนะนำ **{p.recommended_alternative}**"
            note += " ครับ"
        return f"**{p.name}** ราคา **{price} บาท** ครับ 💰{note}\n\nสนใจสอบถามเพิ่มเติมไหมครับ?"
    elif topic == "warranty":
        return (
            f"**{p.name}** ข้อมูลการรับประกันครับ\n\n"
            "กรุณาสอบถามรายละเอียดการรับประกันเฉพาะสินค้านี้กับทีมงานครับ\n\n"
            "สนใจดูรายละเอียดเพิ่มไหมครับ?"
        )
    elif topic == "shipping":
        return (
            f"การจัดส่ง **{p.name}** ครับ\n\n"
            "กรุณาสอบถามรายละเอียดการจัดส่งกับทีมงานครับ\n\nต้องการสั่งซื้อเลยไหมครับ?"
        )
    elif topic == "specs":
        return (
            f"รายละเอียด **{p.name}** ครับ\n\n{p.description}\n\n"
            f"💰 ราคา: **{price} บาท**\n📂 หมวดหมู่: {p.category}\n\nมีคำถามเพิ่มเติมไหมครับ?"
        )
    elif topic == "installment":
        return f"**{p.name}** ราคา **{price} บาท** ครับ\n\nสอบถามเงื่อนไขการผ่อนชำระได้ที่ทีมงานครับ"
    elif topic == "promotion":
        return (
            f"โปรโมชั่นสำหรับ **{p.name}** ครับ\n\n💰 ราคา: **{price} บาท**\n\n"
            "สอบถามโปรโมชั่นล่าสุดได้ที่ทีมงานครับ"
        )
    elif topic == "stock":
        return (
            f"ผมขออนุญาตตรวจสอบสต็อก **{p.name}** กับทีมงานให้แน่ชัดก่อนนะครับ\n\n"
            "เพื่อข้อมูลที่ถูกต้อง 100% ครับ"
        )
    elif topic == "compare":
        if len(ctx.recent_products) >= 2:
            return _comparison_table(*ctx.recent_products[-2:])
        return f"สำหรับ **{p.name}** ราคา **{price} บาท** ครับ\n\nอยากเปรียบเทียบกับรุ่นไหนครับ?"
    elif topic == "order":
        return (
            f"ขอบคุณที่สนใจ **{p.name}** ครับ!\n\n💰 ราคา: **{price} บาท**\n\n"
            f"ช่องทางสั่งซื้อครับ:\n{biz.order_channels_text}\n\n"
            "ทีมงานจะช่วยดำเนินการสั่งซื้อและแจ้งรายละเอียดการชำระเงินให้ครับ"
        )

    if not ctx.is_follow_up:
        return None

    lower = message.strip().lower()
    if any(lower == a or lower.startswith(a + " ") for a in AFFIRMATIONS):
        return (
            f"ดีเลยครับ! สำหรับ **{p.name}** ราคา **{price} บาท**\n\n"
            f"สามารถสั่งซื้อได้ผ่าน:\n{biz.order_channels_text}\n\n"
            "หรือต้องการทราบข้อมูลเพิ่มเติมก่อนไหมครับ?"
        )
    return (
        f"**{p.name}** ครับ\n\n{p.summary_line}\n💰 ราคา: **{price} บาท**\n"
        f"📂 หมวดหมู่: {p.category}\n{_status_line(p)}\n\nต้องการทราบเรื่องอะไรเพิ่มเติมครับ?"
    )


def _comparison_table(p1: Product, p2: Product) -> str:
    def _state(p: Product) -> str:
        return "ยกเลิก" if p.is_discontinued else "จำหน่าย"

    return (
        f"เปรียบเทียบ **{p1.name}** vs **{p2.name}** ครับ\n\n"
        f"| | **{p1.name}** | **{p2.name}** |\n"
        "|---|---|---|\n"
        f"| ราคา | {format_baht(p1.price)} บาท | {format_baht(p2.price)} บาท |\n"
        f"| หมวดหมู่ | {p1.category} | {p2.category} |\n"
        f"| สถานะ | {_state(p1)} | {_state(p2)} |\n\n"
        "สนใจรุ่นไหนมากกว่าครับ?"
    )
