"""
Route handlers for usage limits.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from auth import require_admin, require_user, to_authenticated_user
from db.session import get_db
from db.tables import User, utcnow
from models.api_models import UsageLimitUpdateRequest
from models.chat_models import AuthenticatedUser
from services.usage_limits import DailyMessageUsageService, UsageLimitsService
from utils.constants import ErrorCode
from utils.errors import ChatLimaError
from utils.logger import app_logger

router = APIRouter()


@router.get("/api/limits/usage")
async def get_usage_limits(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    user: AuthenticatedUser = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Limits, current usage and today's message count.
    Reading another user's figures requires admin access.
    """
    target = user
    if user_id and user_id != user.user_id:
        require_admin(request)
        row = await db.get(User, user_id)
        if row is None:
            raise ChatLimaError(ErrorCode.USER_NOT_FOUND, "User not found", status.HTTP_404_NOT_FOUND)
        target = to_authenticated_user(row)

    report = await UsageLimitsService.build_usage_report(db, target.user_id)
    daily = await DailyMessageUsageService.get_daily_usage(db, target)

    return {
        "success": True,
        "data": {**report, "dailyMessages": daily},
        "meta": {
            "userId": target.user_id,
            "requestedUserId": user_id,
            "currency": report["currency"],
            "isAdmin": user.is_admin,
            "timestamp": utcnow().isoformat(),
        },
    }


@router.put("/api/limits/usage")
async def update_usage_limits(
    updates: UsageLimitUpdateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Set the limits of one user, or the global default when userId is omitted."""
    if updates.user_id and await db.get(User, updates.user_id) is None:
        raise ChatLimaError(ErrorCode.USER_NOT_FOUND, "User not found", status.HTTP_404_NOT_FOUND)

    row = await UsageLimitsService.update_limits(db, updates)
    app_logger.info(f"Admin {admin.user_id} updated usage limits for {updates.user_id or 'global default'}")

    return {
        "success": True,
        "data": {"id": row.id, "userId": row.user_id, "isActive": row.is_active, **UsageLimitsService.limit_row_to_dict(row)},
        "meta": {"updatedBy": admin.user_id, "operation": "update", "timestamp": utcnow().isoformat()},
    }
