"""
Route handlers for session creation.
"""
import secrets
from datetime import timedelta
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from config import Config
from db.session import get_db
from db.tables import AuthSession, User, utcnow
from utils.logger import app_logger

router = APIRouter()

ANONYMOUS_SESSION_DAYS = 30


@router.post("/api/auth/anonymous")
async def create_anonymous_session(db: AsyncSession = Depends(get_db)):
    """Create an anonymous user with a fresh session token."""
    user = User(is_anonymous=True, name="Anonymous")
    db.add(user)
    await db.flush()

    token = secrets.token_urlsafe(32)
    expires_at = utcnow() + timedelta(days=ANONYMOUS_SESSION_DAYS)
    db.add(AuthSession(token=token, user_id=user.id, expires_at=expires_at))
    await db.commit()

    app_logger.info(f"Created anonymous user {user.id}")
    response = JSONResponse(content={
        "token": token,
        "expiresAt": expires_at.isoformat(),
        "user": {"id": user.id, "name": user.name, "isAnonymous": True},
    })
    response.set_cookie(
        Config.SESSION_COOKIE_NAME,
        token,
        max_age=ANONYMOUS_SESSION_DAYS * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    return response
