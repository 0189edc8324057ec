"""
Route handlers for streaming chat operations.
Handles the /api/chat endpoint with the data-stream response format.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from auth import require_user
from db.session import get_db
from models.api_models import ChatRequest
from models.chat_models import AuthenticatedUser
from services.chat_service import ChatService
from services.stream_service import DATA_STREAM_HEADERS
from utils.cache import RequestCache
from utils.logger import app_logger

router = APIRouter()


@router.post("/api/chat")
async def chat_stream(
    request: ChatRequest,
    user: AuthenticatedUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Streaming chat endpoint.
    Every access check runs before the stream opens, so refusals are
    plain JSON errors with their own status code.
    """
    context = await ChatService.prepare_chat_context(db, request, user, RequestCache())
    app_logger.info(
        f"[Chat {context.chat_id}] Streaming {context.model_id} for user {user.user_id} "
        f"({len(request.mcp_servers)} MCP server(s), web search {'on' if context.web_search.enabled else 'off'})"
    )

    return StreamingResponse(
        ChatService.stream_chat(context),
        media_type="text/plain; charset=utf-8",
        headers=DATA_STREAM_HEADERS,
    )
