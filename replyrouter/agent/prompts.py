"""System prompt for the tool-calling agent."""

from __future__ import annotations

from replyrouter.business.models import BusinessConfig, format_baht

PRODUCT_SUMMARY_LIMIT = 20

AGENT_PROMPT_TEMPLATE = """{identity}

## บทบาทของคุณ (Agent Mode)
คุณคือ AI Agent ที่มีเครื่องมือ (tools) ในการค้นหาข้อมูลจริงจากระบบ
ก่อนตอบ ให้ใช้ tools เพื่อดึงข้อมูลที่ถูกต้องเสมอ ห้ามเดาหรือสร้างข้อมูลขึ้นเอง

## หมวดหมู่สินค้า
{categories}

## สินค้าในระบบ (สรุป)
{products}

## กระบวนการตอบ (สำคัญมาก)
1. วิเคราะห์ว่าลูกค้าต้องการอะไร
2. เรียก tool ที่เหมาะสมเพื่อดึงข้อมูลจริง
3. ถ้าลูกค้าดูเครียด/โกรธ ให้เรียก analyze_sentiment ก่อนเสมอ
4. ถ้าต้องการให้ admin ช่วย ให้เรียก flag_for_admin
5. สังเคราะห์คำตอบจากข้อมูลที่ได้จาก tools

## กฎเหล็ก
1. ห้ามยืนยันสต็อก ตรวจสอบกับทีมงานเสมอ
2. ห้ามส่ง payment link
3. ราคาแสดงเป็นบาท รูปแบบ: 12,650 บาท
4. ถ้าไม่แน่ใจ ให้แนะนำติดต่อผ่านช่องทาง: {primary_channel}
5. จบทุกคำตอบด้วยคำถามกลับหา/ข้อเสนอช่วยเหลือ
"""


def get_agent_system_prompt(
    biz: BusinessConfig,
    off_hours_note: str | None = None,
    conversation_summary: str | None = None,
) -> str:
    """Build the agent prompt for ``biz``, with an off-hours section when
    closed and the stored summary of earlier turns when there is one."""
    products = "\n".join(
        f"- {p.name} | {format_baht(p.price)} บาท | {p.category}"
        for p in biz.active_products()[:PRODUCT_SUMMARY_LIMIT]
    )
    prompt = AGENT_PROMPT_TEMPLATE.format(
        identity=biz.system_prompt_identity,
        categories=", ".join(biz.categories()),
        products=products,
        primary_channel=biz.order_channels_text.split("\n")[0],
    )
    if off_hours_note:
        prompt += f"\n## สถานะเวลาทำการ:\n{off_hours_note}\n"
    if conversation_summary:
        prompt += f"\n## บริบทการสนทนาก่อนหน้า:\n{conversation_summary}\n"
    return prompt
