"""
Route handlers for stored chats.
Every route is scoped to the caller's own chats.
"""
from typing import Optional
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession
from auth import get_current_user, require_user
from db.session import get_db
from db.tables import Chat, Message
from models.chat_models import AuthenticatedUser
from services.database_service import ChatDatabaseService
from services.pdf_export import ChatPDFExporter, export_filename
from utils.constants import ErrorCode
from utils.errors import ChatLimaError
from utils.logger import app_logger

router = APIRouter()


def serialize_chat(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "title": chat.title,
        "createdAt": chat.created_at.isoformat(),
        "updatedAt": chat.updated_at.isoformat(),
    }


def serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "role": message.role,
        "parts": message.parts,
        "hasWebSearch": message.has_web_search,
        "webSearchContextSize": message.web_search_context_size,
        "createdAt": message.created_at.isoformat(),
    }


def chat_not_found() -> ChatLimaError:
    return ChatLimaError(ErrorCode.CHAT_NOT_FOUND, "Chat not found", status.HTTP_404_NOT_FOUND)


@router.get("/api/chats")
async def list_chats(
    user: AuthenticatedUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    chats = await ChatDatabaseService.list_user_chats(db, user.user_id)
    return {"chats": [serialize_chat(chat) for chat in chats]}


@router.get("/api/chats/{chat_id}")
async def get_chat(
    chat_id: str,
    user: AuthenticatedUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    chat = await ChatDatabaseService.get_chat(db, chat_id, user.user_id)
    if chat is None:
        raise chat_not_found()

    messages = await ChatDatabaseService.get_chat_messages(db, chat_id)
    return {**serialize_chat(chat), "messages": [serialize_message(message) for message in messages]}


@router.delete("/api/chats/{chat_id}")
async def delete_chat(
    chat_id: str,
    user: AuthenticatedUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    if not await ChatDatabaseService.delete_chat(db, chat_id, user.user_id):
        raise chat_not_found()

    app_logger.info(f"Chat {chat_id} deleted by {user.user_id}")
    return {"success": True}


@router.get("/api/chats/{chat_id}/export-pdf")
async def export_chat_pdf(
    chat_id: str,
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Download a chat transcript as a PDF."""
    if user is None:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Authentication required"})

    try:
        chat = await ChatDatabaseService.get_chat(db, chat_id, user.user_id)
        if chat is None:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "Chat not found or access denied"},
            )
        messages = await ChatDatabaseService.get_chat_messages(db, chat_id)
    except Exception as e:
        app_logger.error(f"Error loading chat {chat_id} for export: {e}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal server error"})

    try:
        pdf = ChatPDFExporter.build_pdf(
            chat.title,
            [{"role": message.role, "parts": message.parts} for message in messages],
            chat.created_at,
        )
    except Exception as e:
        app_logger.error(f"PDF generation failed for chat {chat_id}: {e}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Failed to generate PDF"})

    app_logger.info(f"Exported chat {chat_id} ({len(messages)} messages, {len(pdf)} bytes)")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(chat.id, chat.title)}"',
            "Content-Length": str(len(pdf)),
        },
    )
