"""
Chat persistence.
Saves chats and their messages; every write reports a DatabaseOperationResult.
"""
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from db.tables import Chat, Message, new_id, utcnow
from models.chat_models import DatabaseOperationResult, WebSearchConfig
from services.message_processing import ChatMessageProcessingService
from utils.logger import app_logger

TITLE_MAX_LENGTH = 50


class ChatDatabaseService:
    """Service for chat and message rows."""

    @staticmethod
    def generate_title(messages: list[dict]) -> str:
        """Title from the first user message, truncated."""
        for message in messages:
            if message.get("role") != "user":
                continue
            text = " ".join(ChatMessageProcessingService.get_message_text(message).split())
            if text:
                return text if len(text) <= TITLE_MAX_LENGTH else f"{text[:TITLE_MAX_LENGTH - 3]}..."
        return "New Chat"

    @staticmethod
    def convert_messages_for_database(
        messages: list[dict],
        chat_id: str,
        web_search: Optional[WebSearchConfig] = None,
    ) -> list[dict]:
        """Rows for the messages table; assistant rows carry the web search flags."""
        rows = []
        for position, message in enumerate(messages):
            role = message.get("role")
            parts = message.get("parts") or [{"type": "text", "text": message.get("content") or ""}]
            is_assistant = role == "assistant"
            rows.append({
                "id": message.get("id") or new_id(),
                "chat_id": chat_id,
                "position": position,
                "role": role,
                "parts": parts,
                "has_web_search": bool(is_assistant and web_search and web_search.enabled),
                "web_search_context_size": web_search.context_size if is_assistant and web_search and web_search.enabled else None,
            })
        return rows

    @staticmethod
    async def check_chat_exists(db: AsyncSession, chat_id: str, user_id: str) -> bool:
        """True when the chat exists and belongs to the user; False on any error."""
        try:
            result = await db.execute(select(Chat.id).where(Chat.id == chat_id, Chat.user_id == user_id))
            return result.scalar_one_or_none() is not None
        except Exception as e:
            app_logger.error(f"Error checking chat {chat_id}: {e}")
            return False

    @staticmethod
    async def is_owned_by_other_user(db: AsyncSession, chat_id: str, user_id: str) -> bool:
        result = await db.execute(select(Chat.user_id).where(Chat.id == chat_id))
        owner = result.scalar_one_or_none()
        return owner is not None and owner != user_id

    @staticmethod
    async def save_chat_to_database(
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        messages: list[dict],
    ) -> DatabaseOperationResult:
        """Insert the chat row or refresh its title and timestamp."""
        try:
            chat = await db.get(Chat, chat_id)
            title = ChatDatabaseService.generate_title(messages)

            if chat is None:
                db.add(Chat(id=chat_id, user_id=user_id, title=title))
            elif chat.user_id != user_id:
                return DatabaseOperationResult(False, chat_id, error=f"Chat {chat_id} belongs to another user")
            else:
                if chat.title == "New Chat" and title != "New Chat":
                    chat.title = title
                chat.updated_at = utcnow()

            await db.commit()
            return DatabaseOperationResult(True, chat_id, message_count=len(messages))
        except Exception as e:
            await db.rollback()
            app_logger.error(f"Failed to save chat {chat_id}: {e}")
            return DatabaseOperationResult(False, chat_id, error=str(e))

    @staticmethod
    async def save_messages_to_database(
        db: AsyncSession,
        chat_id: str,
        messages: list[dict],
        web_search: Optional[WebSearchConfig] = None,
    ) -> DatabaseOperationResult:
        """Insert messages not stored yet; stored messages are left untouched."""
        try:
            rows = ChatDatabaseService.convert_messages_for_database(messages, chat_id, web_search)
            result = await db.execute(select(Message.id).where(Message.chat_id == chat_id))
            existing_ids = set(result.scalars().all())

            new_rows = [row for row in rows if row["id"] not in existing_ids]
            for row in new_rows:
                db.add(Message(**row))

            await db.commit()
            return DatabaseOperationResult(True, chat_id, message_count=len(new_rows))
        except Exception as e:
            await db.rollback()
            app_logger.error(f"Failed to save messages for chat {chat_id}: {e}")
            return DatabaseOperationResult(False, chat_id, error=str(e))

    @staticmethod
    async def create_chat_if_not_exists(
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        messages: Optional[list[dict]] = None,
    ) -> DatabaseOperationResult:
        """Read-then-write creation of an empty chat."""
        if await ChatDatabaseService.check_chat_exists(db, chat_id, user_id):
            return DatabaseOperationResult(True, chat_id)

        result = await ChatDatabaseService.save_chat_to_database(db, chat_id, user_id, messages or [])
        if result.success:
            app_logger.info(f"[Chat {chat_id}] Pre-emptively created chat record.")
        return result

    @staticmethod
    async def save_chat_and_messages(
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        messages: list[dict],
        web_search: Optional[WebSearchConfig] = None,
    ) -> DatabaseOperationResult:
        """Chat write then message write; a failed message write leaves the chat row."""
        chat_result = await ChatDatabaseService.save_chat_to_database(db, chat_id, user_id, messages)
        if not chat_result.success:
            return chat_result

        message_result = await ChatDatabaseService.save_messages_to_database(db, chat_id, messages, web_search)
        if not message_result.success:
            return DatabaseOperationResult(
                False,
                chat_id,
                error=f"Chat saved but messages failed: {message_result.error}",
            )

        return DatabaseOperationResult(True, chat_id, message_count=message_result.message_count)

    @staticmethod
    async def update_chat_with_messages(
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        messages: list[dict],
        web_search: Optional[WebSearchConfig] = None,
    ) -> DatabaseOperationResult:
        """Persist a finished exchange into an existing chat."""
        if not await ChatDatabaseService.check_chat_exists(db, chat_id, user_id):
            return DatabaseOperationResult(False, chat_id, error=f"Chat {chat_id} not found")
        return await ChatDatabaseService.save_chat_and_messages(db, chat_id, user_id, messages, web_search)

    @staticmethod
    async def get_chat(db: AsyncSession, chat_id: str, user_id: str) -> Optional[Chat]:
        result = await db.execute(select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_chat_messages(db: AsyncSession, chat_id: str) -> list[Message]:
        result = await db.execute(
            select(Message).where(Message.chat_id == chat_id).order_by(Message.position, Message.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_user_chats(db: AsyncSession, user_id: str) -> list[Chat]:
        result = await db.execute(select(Chat).where(Chat.user_id == user_id).order_by(Chat.updated_at.desc()))
        return list(result.scalars().all())

    @staticmethod
    async def delete_chat(db: AsyncSession, chat_id: str, user_id: str) -> bool:
        chat = await ChatDatabaseService.get_chat(db, chat_id, user_id)
        if chat is None:
            return False

        await db.execute(delete(Message).where(Message.chat_id == chat_id))
        await db.delete(chat)
        await db.commit()
        return True
