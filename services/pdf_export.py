"""
Chat transcript export to PDF.
"""
import re
from datetime import datetime
from io import BytesIO
from typing import Optional
from xml.sax.saxutils import escape
from reportlab.lib.colors import HexColor
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer
from config import Config
from services.message_processing import ChatMessageProcessingService

NO_MESSAGES_TEXT = "No messages found in this chat."
NO_TEXT_CONTENT = "[No text content]"
UNTITLED_CHAT = "Untitled Chat"

ROLE_LABELS = {"user": "You", "assistant": "Assistant", "system": "System", "tool": "Tool"}


def sanitize_filename_part(title: Optional[str]) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", title or UNTITLED_CHAT)


def export_filename(chat_id: str, title: Optional[str]) -> str:
    """`chat-<sanitized title>-<id>.pdf`"""
    return f"chat-{sanitize_filename_part(title)}-{chat_id}.pdf"


class ChatPDFExporter:
    """Renders a chat and its messages as an A4 PDF."""

    @staticmethod
    def message_text(message: dict) -> str:
        text = ChatMessageProcessingService.get_message_text(message).strip()
        return text or NO_TEXT_CONTENT

    @staticmethod
    def build_lines(title: Optional[str], messages: list[dict], created_at: Optional[datetime] = None) -> list[tuple[str, str]]:
        """
        Document content as (style, text) pairs, before layout.
        Styles: title, meta, role, body.
        """
        lines = [("title", title or UNTITLED_CHAT)]
        if created_at is not None:
            lines.append(("meta", f"Created: {created_at.strftime('%Y-%m-%d %H:%M UTC')}"))
        lines.append(("meta", f"Exported from {Config.APP_TITLE}"))

        if not messages:
            lines.append(("body", NO_MESSAGES_TEXT))
            return lines

        for message in messages:
            role = message.get("role") or "unknown"
            lines.append(("role", ROLE_LABELS.get(role, role.title())))
            lines.append(("body", ChatPDFExporter.message_text(message)))
        return lines

    @staticmethod
    def _styles() -> dict[str, ParagraphStyle]:
        sample = getSampleStyleSheet()
        return {
            "title": ParagraphStyle("ChatTitle", parent=sample["Title"], fontName="Helvetica-Bold", fontSize=18),
            "meta": ParagraphStyle("ChatMeta", parent=sample["Normal"], fontSize=9, alignment=TA_CENTER, textColor=HexColor("#666666")),
            "role": ParagraphStyle("ChatRole", parent=sample["Heading4"], fontName="Helvetica-Bold", spaceBefore=8),
            "body": ParagraphStyle("ChatBody", parent=sample["Normal"], fontName="Helvetica", fontSize=11, leading=15),
        }

    @staticmethod
    def build_pdf(title: Optional[str], messages: list[dict], created_at: Optional[datetime] = None) -> bytes:
        """Lay out the transcript and return the PDF bytes."""
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
            title=title or UNTITLED_CHAT,
            author=Config.APP_TITLE,
        )
        styles = ChatPDFExporter._styles()

        story = []
        for style, text in ChatPDFExporter.build_lines(title, messages, created_at):
            paragraph_text = escape(text).replace("\n", "<br/>")
            story.append(Paragraph(paragraph_text, styles[style]))
            if style in ("title", "body"):
                story.append(Spacer(1, 4 * mm))

        doc.build(story)
        return buffer.getvalue()
