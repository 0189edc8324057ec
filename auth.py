"""
Authentication middleware for session token verification.
Resolves the caller from a Bearer token or the session cookie; route
dependencies decide what access a route requires.
"""
from typing import Optional
from fastapi import Request, status
from sqlalchemy import select
from starlette.middleware.base import BaseHTTPMiddleware
from config import Config
from db.session import get_sessionmaker
from db.tables import AuthSession, User, utcnow
from models.chat_models import AuthenticatedUser
from utils.constants import ErrorCode
from utils.errors import ChatLimaError, forbidden, unauthorized
from utils.logger import app_logger


def extract_session_token(request: Request) -> Optional[str]:
    """Bearer token first, then the session cookie."""
    authorization = request.headers.get("Authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.cookies.get(Config.SESSION_COOKIE_NAME) or None


def to_authenticated_user(user: User) -> AuthenticatedUser:
    return AuthenticatedUser(
        user_id=user.id,
        is_anonymous=bool(user.is_anonymous),
        email=user.email,
        name=user.name,
        is_admin=user.has_admin_access,
        credit_balance=user.credit_balance,
        metadata=dict(user.metadata_ or {}),
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """
    Attaches the session owner to `request.state`.

    Sets `session_user_id` when the token matches an unexpired session and
    `user` when that user still exists. Requests without a valid session
    pass through unauthenticated.
    """

    EXCLUDED_PATHS = {"/docs", "/openapi.json", "/redoc", "/health", "/api/auth/anonymous"}

    async def dispatch(self, request: Request, call_next):
        """
        Process each request and resolve its session.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/handler in chain

        Returns:
            Response from next handler
        """
        request.state.session_user_id = None
        request.state.user = None

        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        token = extract_session_token(request)
        if token:
            async with get_sessionmaker()() as db:
                result = await db.execute(select(AuthSession).where(AuthSession.token == token))
                session = result.scalar_one_or_none()

                if session is None:
                    app_logger.warning(f"Unknown session token from {request.client.host if request.client else 'unknown'}")
                elif session.expires_at is not None and session.expires_at < utcnow():
                    app_logger.info(f"Expired session for user {session.user_id}")
                else:
                    request.state.session_user_id = session.user_id
                    user = await db.get(User, session.user_id)
                    if user is not None:
                        request.state.user = to_authenticated_user(user)

        return await call_next(request)


def get_current_user(request: Request) -> Optional[AuthenticatedUser]:
    """Dependency: the caller, or None when unauthenticated."""
    return getattr(request.state, "user", None)


def require_user(request: Request) -> AuthenticatedUser:
    """Dependency: any signed-in or anonymous user with a live session."""
    user = get_current_user(request)
    if user is None:
        raise unauthorized()
    return user


def require_admin(request: Request) -> AuthenticatedUser:
    """
    Dependency: an admin user.

    Raises:
        ChatLimaError: 401 without a session, 404 when the session's user
            no longer exists, 403 for non-admins
    """
    if getattr(request.state, "session_user_id", None) is None:
        raise unauthorized()

    user = get_current_user(request)
    if user is None:
        raise ChatLimaError(ErrorCode.USER_NOT_FOUND, "User not found", status.HTTP_404_NOT_FOUND)

    if not user.is_admin:
        app_logger.warning(f"Non-admin user {user.user_id} attempted an admin operation")
        raise forbidden()
    return user
