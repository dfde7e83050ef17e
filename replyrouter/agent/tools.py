"""Agent tools: schemas for the model and a pure executor.

The tool set is closed.  ``ToolKind`` names every tool and ``execute_tool``
dispatches each kind to exactly one handler; a name the model invents maps
to no kind and yields an "Unknown tool" result instead of an exception.
All handlers read only the resolved ``BusinessConfig``.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

from replyrouter.business.models import BusinessConfig, Product, format_baht
from replyrouter.services.flags import Urgency

logger = logging.getLogger(__name__)


class ToolKind(str, enum.Enum):
    SEARCH_KNOWLEDGE = "search_knowledge"
    SEARCH_SALE_SCRIPT = "search_sale_script"
    GET_PRODUCT_INFO = "get_product_info"
    ANALYZE_SENTIMENT = "analyze_sentiment"
    FLAG_FOR_ADMIN = "flag_for_admin"


class ToolResult(BaseModel):
    tool: str
    result: str
    flagged_for_admin: bool = False
    urgency: Urgency | None = None
    flag_reason: str | None = None


# ── Schemas (OpenAI function format; both chat providers accept it) ──


def _function(name: ToolKind, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name.value,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_DEFINITIONS: list[dict] = [
    _function(
        ToolKind.SEARCH_KNOWLEDGE,
        "ค้นหาข้อมูลจาก Knowledge Base และ FAQ ของธุรกิจ ใช้เมื่อลูกค้าถามเรื่องที่ต้องการข้อมูลเชิงลึก "
        "เช่น วิธีใช้งาน นโยบาย ข้อกำหนด",
        {"query": {"type": "string", "description": "คำค้นหาที่เกี่ยวข้องกับสิ่งที่ลูกค้าถาม"}},
        ["query"],
    ),
    _function(
        ToolKind.SEARCH_SALE_SCRIPT,
        "ค้นหา sale script ที่เหมาะสม ใช้เมื่อลูกค้าถามเรื่องราคา โปรโมชั่น การผ่อน หรือต้องการปิดการขาย",
        {
            "topic": {
                "type": "string",
                "description": "หัวข้อที่ต้องการค้นหา เช่น 'ราคา', 'โปรโมชั่น', 'ผ่อน', 'มัดจำ', 'ปลายทาง'",
            },
        },
        ["topic"],
    ),
    _function(
        ToolKind.GET_PRODUCT_INFO,
        "ดึงข้อมูลสินค้าจาก catalog ใช้เมื่อลูกค้าถามสเปค ราคา หรือรายละเอียดสินค้าเฉพาะรุ่น",
        {
            "model_name": {
                "type": "string",
                "description": "ชื่อหรือรุ่นสินค้าที่ต้องการ เช่น 'Mini 4K', 'Avata 2', 'Osmo Pocket 3'",
            },
            "category": {"type": "string", "description": "หมวดหมู่สินค้า (optional) เช่น 'Drone', 'Gimbal'"},
        },
        ["model_name"],
    ),
    _function(
        ToolKind.ANALYZE_SENTIMENT,
        "วิเคราะห์ความรู้สึกและระดับความเร่งด่วนของลูกค้า ใช้เพื่อตัดสินใจว่าควร escalate หรือ reassure ก่อน",
        {
            "message": {"type": "string", "description": "ข้อความของลูกค้าที่ต้องการวิเคราะห์"},
            "history_summary": {"type": "string", "description": "สรุปบทสนทนาล่าสุด (optional)"},
        },
        ["message"],
    ),
    _function(
        ToolKind.FLAG_FOR_ADMIN,
        "ทำเครื่องหมายการสนทนานี้ให้ admin ตรวจสอบ ใช้เมื่อลูกค้า: (1) โกรธมาก / ไม่พอใจ "
        "(2) มีปัญหาที่บอทแก้ไม่ได้ (3) ต้องการขอมัดจำหรือทำสัญญา (4) ถามเรื่องที่ไม่มีข้อมูลในระบบ",
        {
            "reason": {
                "type": "string",
                "description": "เหตุผลที่ต้อง flag เช่น 'ลูกค้าแสดงอาการโกรธ', 'ต้องการทำสัญญา', 'ถามเรื่องนอก scope'",
            },
            "urgency": {"type": "string", "enum": ["low", "medium", "high"], "description": "ระดับความเร่งด่วน"},
        },
        ["reason", "urgency"],
    ),
]


# ── Handlers ─────────────────────────────────────────────────────────


def _arg(args: Mapping[str, Any], name: str) -> str:
    value = args.get(name)
    return value if isinstance(value, str) else ""


def search_knowledge(args: Mapping[str, Any], biz: BusinessConfig) -> ToolResult:
    query = _arg(args, "query").lower()
    if query:
        needle = query[:20]
        for doc in biz.knowledge_docs:
            if (
                any(tag.lower() in query for tag in doc.tags)
                or any(len(w) > 2 and w.lower() in query for w in doc.title.split(" "))
                or needle in doc.content.lower()
            ):
                return ToolResult(tool=ToolKind.SEARCH_KNOWLEDGE.value, result=f"[Knowledge: {doc.title}]\n{doc.content}")

        needle = query[:15]
        for entry in biz.faq_data:
            if needle in entry.question.lower() or needle in entry.answer.lower():
                return ToolResult(
                    tool=ToolKind.SEARCH_KNOWLEDGE.value,
                    result=f"[FAQ] Q: {entry.question}\nA: {entry.answer}",
                )
    return ToolResult(tool=ToolKind.SEARCH_KNOWLEDGE.value, result="ไม่พบข้อมูลที่ตรงกับคำค้นหาในฐานข้อมูล")


def search_sale_script(args: Mapping[str, Any], biz: BusinessConfig) -> ToolResult:
    topic = _arg(args, "topic").lower()
    if topic:
        prefix = topic[:8]
        for script in biz.sale_scripts:
            if any(t.lower() in topic or prefix in t.lower() for t in script.triggers):
                return ToolResult(
                    tool=ToolKind.SEARCH_SALE_SCRIPT.value,
                    result=f"[Sale Script #{script.id}]\n{script.admin_reply}",
                )
    return ToolResult(tool=ToolKind.SEARCH_SALE_SCRIPT.value, result="ไม่พบ sale script ที่ตรงกับหัวข้อนี้")


def _overlaps(a: str, b: str) -> bool:
    return a in b or b in a


def _find_product(candidates: list[Product], wanted: str) -> Product | None:
    """First product, longest name first, whose name or a tag longer than
    three characters overlaps ``wanted`` in either direction."""
    for p in candidates:
        if _overlaps(p.name.lower(), wanted):
            return p
        if any(len(tag) > 3 and _overlaps(tag.lower(), wanted) for tag in p.tags):
            return p
    return None


def get_product_info(args: Mapping[str, Any], biz: BusinessConfig) -> ToolResult:
    model_name = _arg(args, "model_name")
    category = _arg(args, "category").lower()
    wanted = model_name.lower().strip()

    candidates = [p for p in biz.products if not category or category in p.category.lower()]
    candidates.sort(key=lambda p: len(p.name), reverse=True)

    match = _find_product(candidates, wanted) if wanted else None
    if match is not None:
        if match.is_discontinued:
            status = "⚠️ ยกเลิกจำหน่าย"
            if match.recommended_alternative:
                status += f" → แนะนำ: {match.recommended_alternative}"
        else:
            status = "✅ พร้อมจำหน่าย"
        return ToolResult(
            tool=ToolKind.GET_PRODUCT_INFO.value,
            result=(
                f"[Product: {match.name}]\nราคา: {format_baht(match.price)} บาท\n"
                f"หมวด: {match.category}\nสถานะ: {status}\nรายละเอียด: {match.description}"
            ),
        )

    pool = candidates if category else biz.active_products()
    suggestions = pool[:3]
    if not suggestions:
        return ToolResult(tool=ToolKind.GET_PRODUCT_INFO.value, result=f'ไม่พบสินค้าชื่อ "{model_name}" ในระบบ')
    lines = "\n".join(f"- {p.name}: {format_baht(p.price)} บาท" for p in suggestions)
    return ToolResult(
        tool=ToolKind.GET_PRODUCT_INFO.value,
        result=f'ไม่พบสินค้าชื่อ "{model_name}" โดยตรง สินค้าที่ใกล้เคียงครับ:\n{lines}',
    )


ANGRY_WORDS = ["โกรธ", "หัวร้อน", "แย่มาก", "ห่วยแตก", "โกง", "ไม่พอใจ", "เอาเปรียบ", "!!!", "???", "ไม่ได้เรื่อง", "ขี้โกง"]
URGENT_WORDS = ["ด่วน", "urgent", "รีบ", "เร่งด่วน", "วันนี้เลย", "ไม่ได้แล้ว", "เสียทั้งวัน"]
WORRIED_WORDS = ["เสียใจ", "กังวล", "กลัว", "ไม่มั่นใจ", "เป็นห่วง", "เครียด"]


def analyze_sentiment(args: Mapping[str, Any], biz: BusinessConfig) -> ToolResult:
    text = _arg(args, "message").lower()
    is_angry = any(w in text for w in ANGRY_WORDS)
    is_urgent = any(w in text for w in URGENT_WORDS)
    is_sad = any(w in text for w in WORRIED_WORDS)

    if is_angry:
        sentiment = "negative-angry"
    elif is_urgent:
        sentiment = "negative-urgent"
    elif is_sad:
        sentiment = "negative-worried"
    else:
        sentiment = "neutral-positive"

    if is_angry or is_urgent:
        urgency = "high"
    elif is_sad:
        urgency = "medium"
    else:
        urgency = "low"

    payload = {
        "sentiment": sentiment,
        "urgency": urgency,
        "isAngry": is_angry,
        "isUrgent": is_urgent,
        "isSad": is_sad,
    }
    return ToolResult(
        tool=ToolKind.ANALYZE_SENTIMENT.value,
        result=json.dumps(payload, ensure_ascii=False),
        urgency=urgency,
    )


def flag_for_admin(args: Mapping[str, Any], biz: BusinessConfig) -> ToolResult:
    reason = _arg(args, "reason") or "ไม่ระบุเหตุผล"
    urgency = _arg(args, "urgency")
    if urgency not in ("low", "medium", "high"):
        urgency = "medium"
    return ToolResult(
        tool=ToolKind.FLAG_FOR_ADMIN.value,
        result=f"Flagged for admin review: {reason} [urgency: {urgency}]",
        flagged_for_admin=True,
        urgency=urgency,
        flag_reason=reason,
    )


_HANDLERS: dict[ToolKind, Callable[[Mapping[str, Any], BusinessConfig], ToolResult]] = {
    ToolKind.SEARCH_KNOWLEDGE: search_knowledge,
    ToolKind.SEARCH_SALE_SCRIPT: search_sale_script,
    ToolKind.GET_PRODUCT_INFO: get_product_info,
    ToolKind.ANALYZE_SENTIMENT: analyze_sentiment,
    ToolKind.FLAG_FOR_ADMIN: flag_for_admin,
}


def execute_tool(name: str, args: Mapping[str, Any] | None, biz: BusinessConfig) -> ToolResult:
    """Run tool ``name``.  Never raises for bad names or arguments."""
    try:
        kind = ToolKind(name)
    except ValueError:
        logger.warning("Agent requested unknown tool %r", name)
        return ToolResult(tool=name, result="Unknown tool")
    if not isinstance(args, Mapping):
        args = {}
    result = _HANDLERS[kind](args, biz)
    logger.debug("Tool %s -> %d chars", kind.value, len(result.result))
    return result
