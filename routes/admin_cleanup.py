"""
Route handlers for the anonymous user cleanup.
Admin-triggered and cron-triggered executions share one endpoint.
"""
import secrets
import time
from typing import Optional
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from auth import extract_session_token, require_admin
from config import Config
from db.session import get_db
from db.tables import utcnow
from models.api_models import CleanupConfigUpdateRequest, CleanupExecuteRequest
from models.chat_models import AuthenticatedUser
from models.cleanup_models import CleanupMetrics
from services.cleanup_service import CleanupConfigService, CleanupMonitoringService, UserCleanupService
from utils.constants import ErrorCode
from utils.errors import ChatLimaError
from utils.logger import app_logger

router = APIRouter()

CRON_HEADER = "x-vercel-cron"
HISTORY_LIMIT = 5

STATUS_CODES = {
    "success": status.HTTP_200_OK,
    "partial": status.HTTP_206_PARTIAL_CONTENT,
    "error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def has_cron_secret(request: Request) -> bool:
    """True when the bearer token is the configured CRON_SECRET."""
    if not Config.CRON_SECRET:
        return False
    token = extract_session_token(request) or ""
    return secrets.compare_digest(token, Config.CRON_SECRET)


def authorize_cleanup(request: Request) -> tuple[Optional[AuthenticatedUser], bool]:
    """
    Resolve who is running the cleanup.

    Returns:
        (admin user or None, whether this is a cron execution)

    Raises:
        ChatLimaError: the admin errors of require_admin
    """
    if has_cron_secret(request):
        return None, True

    admin = require_admin(request)
    return admin, CRON_HEADER in request.headers


def validate_parameters(params: CleanupExecuteRequest) -> None:
    if params.threshold_days < Config.CLEANUP_MIN_THRESHOLD_DAYS:
        raise ChatLimaError(
            ErrorCode.INVALID_PARAMETERS,
            f"Threshold days must be at least {Config.CLEANUP_MIN_THRESHOLD_DAYS}",
        )
    if params.threshold_days > Config.CLEANUP_MAX_THRESHOLD_DAYS:
        raise ChatLimaError(
            ErrorCode.INVALID_PARAMETERS,
            f"Threshold days must be at most {Config.CLEANUP_MAX_THRESHOLD_DAYS}",
        )
    if params.batch_size < 1 or params.batch_size > Config.CLEANUP_MAX_BATCH_SIZE:
        raise ChatLimaError(
            ErrorCode.INVALID_PARAMETERS,
            f"Batch size must be between 1 and {Config.CLEANUP_MAX_BATCH_SIZE}",
        )


@router.post("/api/admin/cleanup-users/execute")
async def execute_cleanup(
    request: Request,
    params: Optional[CleanupExecuteRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """
    Delete inactive anonymous users.

    Manual runs need the confirmation token unless they are dry runs.
    Cron runs skip the token and use the stored threshold and batch size.
    """
    admin, is_cron = authorize_cleanup(request)
    params = params or CleanupExecuteRequest()

    if is_cron:
        config = await CleanupConfigService.get_config(db)
        params = CleanupExecuteRequest(
            threshold_days=config.threshold_days,
            batch_size=config.batch_size,
            dry_run=params.dry_run,
        )

    validate_parameters(params)

    if not is_cron and not params.dry_run and params.confirmation_token != Config.CLEANUP_CONFIRMATION_TOKEN:
        raise ChatLimaError(
            ErrorCode.CONFIRMATION_REQUIRED,
            f'Invalid confirmation token. Use "{Config.CLEANUP_CONFIRMATION_TOKEN}" to confirm deletion.',
        )

    executed_by = "cron" if is_cron else "admin"
    admin_label = (admin.email or admin.user_id) if admin else None
    execution_id = f"cleanup_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    executed_at = utcnow()

    app_logger.info(
        f"[{execution_id}] Starting cleanup by {admin_label or executed_by}: "
        f"threshold={params.threshold_days}d batch={params.batch_size} dryRun={params.dry_run}"
    )

    result = await UserCleanupService.execute_cleanup(
        db,
        threshold_days=params.threshold_days,
        batch_size=params.batch_size,
        dry_run=params.dry_run,
    )

    metrics = CleanupMetrics(
        execution_id=execution_id,
        executed_at=executed_at,
        executed_by=executed_by,
        admin_user=admin_label,
        users_counted=result.users_counted,
        users_deleted=result.deleted_count,
        threshold_days=params.threshold_days,
        batch_size=params.batch_size,
        duration_ms=result.execution_time_ms,
        status=result.status,
        error_message=result.errors[0] if result.errors else None,
        error_count=len(result.errors),
        dry_run=params.dry_run,
        deleted_user_ids=result.deleted_user_ids,
    )

    alerts = CleanupMonitoringService.analyze_execution(metrics)
    CleanupMonitoringService.log_execution(metrics, alerts)
    await CleanupConfigService.log_execution(db, metrics)

    config = await CleanupConfigService.get_config(db)
    notifications = await CleanupMonitoringService.send_notifications(
        metrics, alerts, config.notification_enabled, config.webhook_url
    )
    for notification in notifications:
        if not notification.ok:
            app_logger.warning(f"[{execution_id}] Notification via {notification.resource} failed: {notification.error}")

    app_logger.info(
        f"[{execution_id}] Cleanup finished: {result.status}, {result.deleted_count} deleted, "
        f"{len(result.errors)} error(s), {result.execution_time_ms}ms"
    )

    return JSONResponse(
        status_code=STATUS_CODES[result.status],
        content={
            "success": result.success,
            "data": {
                "executionId": execution_id,
                "usersDeleted": result.deleted_count,
                "deletedUserIds": result.deleted_user_ids,
                "errors": result.errors,
                "executionTimeMs": result.execution_time_ms,
                "thresholdDays": params.threshold_days,
                "batchSize": params.batch_size,
                "dryRun": params.dry_run,
            },
            "metadata": {
                "executedAt": utcnow().isoformat(),
                "executedBy": admin_label or executed_by,
                "adminUserId": admin.user_id if admin else None,
            },
        },
    )


@router.get("/api/admin/cleanup-users/execute")
async def cleanup_status(
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Current user statistics and the most recent executions."""
    stats = await UserCleanupService.get_cleanup_stats(db)
    history = await CleanupConfigService.get_execution_history(db, HISTORY_LIMIT)

    if history:
        message = f"Showing last {len(history)} executions."
    else:
        message = "No execution history found. Execute a cleanup to see history here."

    return {
        "success": True,
        "data": {
            "currentStats": stats,
            "executionHistory": [CleanupConfigService.log_to_dict(row) for row in history],
            "monitoring": CleanupMonitoringService.calculate_cleanup_stats(
                [CleanupConfigService.log_to_metrics(row) for row in history]
            ),
            "message": message,
        },
        "metadata": {
            "requestedAt": utcnow().isoformat(),
            "requestedBy": admin.email or admin.user_id,
        },
    }


@router.get("/api/admin/cleanup-users/preview")
async def preview_cleanup(
    threshold_days: int = 45,
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Users that a cleanup with this threshold would delete."""
    if not Config.CLEANUP_MIN_THRESHOLD_DAYS <= threshold_days <= Config.CLEANUP_MAX_THRESHOLD_DAYS:
        raise ChatLimaError(
            ErrorCode.INVALID_PARAMETERS,
            f"Threshold days must be between {Config.CLEANUP_MIN_THRESHOLD_DAYS} and {Config.CLEANUP_MAX_THRESHOLD_DAYS}",
        )
    return {"success": True, "data": await UserCleanupService.preview_cleanup(db, threshold_days)}


@router.get("/api/admin/cleanup-users/schedule")
async def get_schedule(
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    config = await CleanupConfigService.get_config(db)
    return {"success": True, "data": CleanupConfigService.config_to_dict(config)}


@router.put("/api/admin/cleanup-users/schedule")
async def update_schedule(
    updates: CleanupConfigUpdateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Change the stored cleanup configuration used by cron runs."""
    config = await CleanupConfigService.update_config(
        db,
        updates.model_dump(exclude_unset=True),
        modified_by=admin.email or admin.user_id,
    )
    app_logger.info(f"Cleanup configuration updated by {admin.user_id}")
    return {"success": True, "data": CleanupConfigService.config_to_dict(config)}
