"""
Cleanup of inactive anonymous users.

UserCleanupService finds and deletes anonymous users with no recent
activity, CleanupMonitoringService turns an execution into alerts and
notifications, and CleanupConfigService stores the schedule and the
execution log.
"""
import math
import time
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from db.tables import (
    AuthSession,
    Chat,
    CleanupConfig,
    CleanupExecutionLog,
    DailyMessageUsage,
    Message,
    TokenUsage,
    UsageLimit,
    User,
    utcnow,
)
from models.chat_models import ResourceResult
from models.cleanup_models import (
    AlertSeverity,
    AlertType,
    AnonymousUserActivity,
    CleanupAlert,
    CleanupCandidate,
    CleanupMetrics,
    CleanupResult,
)
from utils.http_client import HTTPClientManager
from utils.logger import app_logger

DEFAULT_THRESHOLD_DAYS = 45
DEFAULT_BATCH_SIZE = 50
MINIMUM_AGE_DAYS = 7

LONG_EXECUTION_THRESHOLD_MS = 300_000
MIN_HIGH_DELETION_THRESHOLD = 25

SEVERITY_EMOJI = {
    AlertSeverity.INFO: "💡",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.ERROR: "❌",
    AlertSeverity.CRITICAL: "🚨",
}


class UserCleanupService:
    """Finds and deletes inactive anonymous users."""

    @staticmethod
    def is_user_active(
        user: AnonymousUserActivity,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        A user is active when younger than the minimum age, or when any
        recorded activity falls inside the threshold window.
        """
        now = now or utcnow()
        if user.created_at > now - timedelta(days=MINIMUM_AGE_DAYS):
            return True

        threshold_date = now - timedelta(days=threshold_days)
        return any(moment > threshold_date for moment in user.activity_dates)

    @staticmethod
    def last_activity(user: AnonymousUserActivity) -> Optional[datetime]:
        dates = user.activity_dates
        return max(dates) if dates else None

    @staticmethod
    def days_since_last_activity(user: AnonymousUserActivity, now: Optional[datetime] = None) -> int:
        """Whole days since the most recent activity, or since creation."""
        now = now or utcnow()
        reference = UserCleanupService.last_activity(user) or user.created_at
        return math.floor((now - reference).total_seconds() / 86400)

    @staticmethod
    async def get_anonymous_users_with_activity(db: AsyncSession) -> list[AnonymousUserActivity]:
        last_chat = select(func.max(Chat.updated_at)).where(Chat.user_id == User.id).scalar_subquery()
        last_session = select(func.max(AuthSession.updated_at)).where(AuthSession.user_id == User.id).scalar_subquery()
        last_usage = select(func.max(TokenUsage.created_at)).where(TokenUsage.user_id == User.id).scalar_subquery()

        result = await db.execute(
            select(User.id, User.created_at, last_chat, last_session, last_usage).where(User.is_anonymous.is_(True))
        )
        return [
            AnonymousUserActivity(
                id=row[0],
                created_at=row[1],
                last_chat_activity=row[2],
                last_session_activity=row[3],
                last_token_usage=row[4],
            )
            for row in result.all()
        ]

    @staticmethod
    async def find_candidates(
        db: AsyncSession,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        now: Optional[datetime] = None,
    ) -> tuple[list[AnonymousUserActivity], list[CleanupCandidate]]:
        """All anonymous users, plus the inactive ones sorted by inactivity, longest first."""
        now = now or utcnow()
        users = await UserCleanupService.get_anonymous_users_with_activity(db)
        candidates = [
            CleanupCandidate(
                id=user.id,
                created_at=user.created_at,
                last_activity=UserCleanupService.last_activity(user),
                days_since_activity=UserCleanupService.days_since_last_activity(user, now),
            )
            for user in users
            if not UserCleanupService.is_user_active(user, threshold_days, now)
        ]
        candidates.sort(key=lambda candidate: candidate.days_since_activity, reverse=True)
        return users, candidates

    @staticmethod
    async def preview_cleanup(db: AsyncSession, threshold_days: int = DEFAULT_THRESHOLD_DAYS) -> dict:
        users, candidates = await UserCleanupService.find_candidates(db, threshold_days)
        return {
            "totalAnonymousUsers": len(users),
            "activeUsers": len(users) - len(candidates),
            "candidatesForDeletion": len(candidates),
            "candidates": [candidate.to_dict() for candidate in candidates],
            "thresholdDays": threshold_days,
            "minimumAgeDays": MINIMUM_AGE_DAYS,
        }

    @staticmethod
    async def delete_user_data(db: AsyncSession, user_id: str) -> None:
        """Delete one user and everything that references it, in one transaction."""
        try:
            chat_ids = select(Chat.id).where(Chat.user_id == user_id)
            await db.execute(delete(TokenUsage).where(TokenUsage.user_id == user_id))
            await db.execute(delete(DailyMessageUsage).where(DailyMessageUsage.user_id == user_id))
            await db.execute(delete(UsageLimit).where(UsageLimit.user_id == user_id))
            await db.execute(delete(AuthSession).where(AuthSession.user_id == user_id))
            await db.execute(delete(Message).where(Message.chat_id.in_(chat_ids)))
            await db.execute(delete(Chat).where(Chat.user_id == user_id))
            await db.execute(delete(User).where(User.id == user_id))
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    @staticmethod
    async def execute_cleanup(
        db: AsyncSession,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
    ) -> CleanupResult:
        """
        Delete up to `batch_size` inactive anonymous users.

        A dry run reports the users that would be deleted without touching
        them. Per-user failures are collected in `errors` and do not stop
        the batch; the run is successful only when no error was recorded.
        """
        started = time.monotonic()
        result = CleanupResult()

        try:
            now = utcnow()
            users, candidates = await UserCleanupService.find_candidates(db, threshold_days, now)
            result.users_counted = len(users)
            batch = candidates[:batch_size]

            if dry_run:
                result.success = True
                result.deleted_count = len(batch)
                result.deleted_user_ids = [candidate.id for candidate in batch]
                app_logger.info(f"Cleanup dry run: {len(batch)} users would be deleted (threshold {threshold_days} days)")
                return result

            minimum_created = now - timedelta(days=MINIMUM_AGE_DAYS)
            eligible = [candidate for candidate in batch if candidate.created_at <= minimum_created]
            if len(eligible) < len(batch):
                result.errors.append(
                    f"Filtered out {len(batch) - len(eligible)} users that were too young (< {MINIMUM_AGE_DAYS} days)"
                )

            for candidate in eligible:
                try:
                    await UserCleanupService.delete_user_data(db, candidate.id)
                    result.deleted_user_ids.append(candidate.id)
                except Exception as e:
                    app_logger.error(f"Failed to delete user {candidate.id}: {e}")
                    result.errors.append(f"Failed to delete user {candidate.id}: {e}")

            result.deleted_count = len(result.deleted_user_ids)
            result.success = not result.errors
            app_logger.info(f"Cleanup deleted {result.deleted_count} of {len(eligible)} candidate users")
        except Exception as e:
            app_logger.error(f"Cleanup execution failed: {e}")
            result.success = False
            result.fatal_error = str(e)
            result.errors.append(f"Cleanup execution failed: {e}")
        finally:
            result.execution_time_ms = int((time.monotonic() - started) * 1000)

        return result

    @staticmethod
    async def get_cleanup_stats(db: AsyncSession) -> dict:
        cutoff = utcnow() - timedelta(days=DEFAULT_THRESHOLD_DAYS)

        total = (await db.execute(select(func.count(User.id)))).scalar_one()
        anonymous = (await db.execute(select(func.count(User.id)).where(User.is_anonymous.is_(True)))).scalar_one()
        old_inactive = (
            await db.execute(
                select(func.count(User.id)).where(User.is_anonymous.is_(True), User.updated_at < cutoff)
            )
        ).scalar_one()

        savings = round(old_inactive / total * 100) if total else 0
        return {
            "totalUsers": total,
            "anonymousUsers": anonymous,
            "oldInactiveUsers": old_inactive,
            "potentialStorageSavings": f"~{savings}% database size reduction",
        }


class CleanupMonitoringService:
    """Alerting and reporting for cleanup executions."""

    @staticmethod
    def high_deletion_threshold(batch_size: int) -> int:
        return max(math.floor(batch_size * 0.1), MIN_HIGH_DELETION_THRESHOLD)

    @staticmethod
    def analyze_execution(metrics: CleanupMetrics) -> list[CleanupAlert]:
        alerts = []

        if metrics.status == "error":
            alerts.append(CleanupAlert(
                AlertType.EXECUTION_FAILURE,
                AlertSeverity.ERROR,
                f"Cleanup execution failed: {metrics.error_message or 'Unknown error'}",
                should_notify=True,
            ))
        elif metrics.status == "partial":
            alerts.append(CleanupAlert(
                AlertType.EXECUTION_FAILURE,
                AlertSeverity.WARNING,
                f"Cleanup execution completed with {metrics.error_count} errors",
                should_notify=True,
            ))

        deletion_threshold = CleanupMonitoringService.high_deletion_threshold(metrics.batch_size)
        if metrics.users_deleted > deletion_threshold and not metrics.dry_run:
            alerts.append(CleanupAlert(
                AlertType.HIGH_DELETION_COUNT,
                AlertSeverity.WARNING,
                f"High deletion count: {metrics.users_deleted} users deleted (threshold: {deletion_threshold})",
                should_notify=True,
                threshold=deletion_threshold,
            ))

        if metrics.duration_ms > LONG_EXECUTION_THRESHOLD_MS:
            alerts.append(CleanupAlert(
                AlertType.LONG_EXECUTION_TIME,
                AlertSeverity.WARNING,
                f"Long execution time: {round(metrics.duration_ms / 1000)}s "
                f"(threshold: {LONG_EXECUTION_THRESHOLD_MS // 1000}s)",
                should_notify=True,
                threshold=LONG_EXECUTION_THRESHOLD_MS,
            ))

        if metrics.status == "success" and metrics.executed_by == "cron" and not metrics.dry_run:
            alerts.append(CleanupAlert(
                AlertType.SUCCESS_NOTIFICATION,
                AlertSeverity.INFO,
                f"Automated cleanup completed successfully: {metrics.users_deleted} users deleted "
                f"in {round(metrics.duration_ms / 1000)}s",
                should_notify=False,
            ))

        return alerts

    @staticmethod
    def generate_execution_report(metrics: CleanupMetrics, alerts: list[CleanupAlert]) -> str:
        triggered_by = metrics.executed_by + (f" ({metrics.admin_user})" if metrics.admin_user else "")
        lines = [
            "🧹 Anonymous User Cleanup Report",
            "📊 Execution Summary:",
            f"• Execution ID: {metrics.execution_id}",
            f"• Executed: {metrics.executed_at.isoformat()}",
            f"• Triggered by: {triggered_by}",
            f"• Status: {metrics.status.upper()}{' (DRY RUN)' if metrics.dry_run else ''}",
            f"• Duration: {round(metrics.duration_ms / 1000)}s",
            "👥 User Statistics:",
            f"• Users analyzed: {metrics.users_counted}",
            f"• Users {'would be ' if metrics.dry_run else ''}deleted: {metrics.users_deleted}",
            f"• Threshold: {metrics.threshold_days} days of inactivity",
            f"• Batch size: {metrics.batch_size}",
        ]

        if metrics.error_count > 0:
            lines.append("❌ Errors Encountered:")
            lines.append(f"• Error count: {metrics.error_count}")
            if metrics.error_message:
                lines.append(f"• Error message: {metrics.error_message}")

        if alerts:
            lines.append("🚨 Alerts:")
            for alert in alerts:
                lines.append(f"{SEVERITY_EMOJI[alert.severity]} {alert.severity.value.upper()}: {alert.message}")

        duration_s = metrics.duration_ms / 1000
        rate = round(metrics.users_counted / duration_s) if duration_s else 0
        efficiency = round(metrics.users_deleted / metrics.users_counted * 100) if metrics.users_counted else 0
        lines.append("📈 Performance Metrics:")
        lines.append(f"• Processing rate: {rate} users/second")
        lines.append(f"• Deletion efficiency: {efficiency}%")

        return "\n".join(lines)

    @staticmethod
    def log_execution(metrics: CleanupMetrics, alerts: list[CleanupAlert]) -> None:
        severities = {alert.severity for alert in alerts}
        summary = (
            f"Cleanup {metrics.execution_id} by {metrics.executed_by}: {metrics.status}, "
            f"{metrics.users_deleted}/{metrics.users_counted} users, {metrics.duration_ms}ms, "
            f"{len(alerts)} alert(s)"
        )
        if severities & {AlertSeverity.ERROR, AlertSeverity.CRITICAL}:
            app_logger.error(summary)
        elif AlertSeverity.WARNING in severities:
            app_logger.warning(summary)
        else:
            app_logger.info(summary)

    @staticmethod
    def build_webhook_payload(metrics: CleanupMetrics, report: str) -> dict:
        return {
            "text": "Anonymous User Cleanup Alert",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*Cleanup Execution {metrics.status.upper()}*\n{report}",
                    },
                }
            ],
        }

    @staticmethod
    async def send_notifications(
        metrics: CleanupMetrics,
        alerts: list[CleanupAlert],
        enabled: bool,
        webhook_url: Optional[str] = None,
    ) -> list[ResourceResult]:
        """
        Post the execution report to the configured webhook.

        Only runs when notifications are enabled and at least one alert
        asks to notify. Send failures are logged and reported, never raised.
        """
        if not enabled:
            return []

        notifiable = [alert for alert in alerts if alert.should_notify]
        if not notifiable:
            return []

        report = CleanupMonitoringService.generate_execution_report(metrics, alerts)
        app_logger.info(
            f"Cleanup alert: {metrics.status.upper()} - {metrics.users_deleted} users affected "
            f"({len(notifiable)} notifiable alert(s))"
        )

        if not webhook_url:
            return []

        try:
            client = HTTPClientManager.get_webhook_client()
            response = await client.post(
                webhook_url,
                json=CleanupMonitoringService.build_webhook_payload(metrics, report),
            )
            response.raise_for_status()
            return [ResourceResult(resource="webhook", ok=True, detail={"status": response.status_code})]
        except Exception as e:
            app_logger.error(f"Failed to send webhook notification: {e}")
            return [ResourceResult(resource="webhook", ok=False, error=str(e))]

    @staticmethod
    def calculate_cleanup_stats(executions: list[CleanupMetrics]) -> dict:
        """Aggregate health figures over executions ordered newest first."""
        if not executions:
            return {
                "totalExecutions": 0,
                "successRate": 0,
                "averageDuration": 0,
                "totalUsersDeleted": 0,
                "averageUsersPerExecution": 0,
                "executionFrequency": 0,
                "lastExecution": None,
                "healthScore": 100,
            }

        count = len(executions)
        successful = sum(1 for execution in executions if execution.status == "success")
        total_deleted = sum(execution.users_deleted for execution in executions)
        average_duration = sum(execution.duration_ms for execution in executions) / count

        day_ms = 24 * 60 * 60 * 1000
        if count > 1:
            span_ms = (executions[0].executed_at - executions[-1].executed_at).total_seconds() * 1000
        else:
            span_ms = day_ms
        frequency = count / (span_ms / day_ms) if span_ms > 0 else float(count)

        success_rate = successful / count
        performance_score = min(1.0, 60_000 / average_duration) if average_duration else 1.0
        return {
            "totalExecutions": count,
            "successRate": round(success_rate * 100),
            "averageDuration": round(average_duration),
            "totalUsersDeleted": total_deleted,
            "averageUsersPerExecution": round(total_deleted / count),
            "executionFrequency": round(frequency, 2),
            "lastExecution": executions[0].executed_at.isoformat(),
            "healthScore": round((success_rate * 0.7 + performance_score * 0.3) * 100),
        }


class CleanupConfigService:
    """Stored cleanup configuration and execution history."""

    DEFAULT_CONFIG_ID = "default"

    @staticmethod
    def config_to_dict(config: CleanupConfig) -> dict:
        return {
            "enabled": config.enabled,
            "schedule": config.schedule,
            "thresholdDays": config.threshold_days,
            "batchSize": config.batch_size,
            "notificationEnabled": config.notification_enabled,
            "webhookUrl": config.webhook_url,
            "emailEnabled": config.email_enabled,
            "lastModified": config.last_modified.isoformat() if config.last_modified else None,
            "modifiedBy": config.modified_by,
        }

    @staticmethod
    async def get_config(db: AsyncSession) -> CleanupConfig:
        """The stored configuration, created with defaults on first use."""
        config = await db.get(CleanupConfig, CleanupConfigService.DEFAULT_CONFIG_ID)
        if config is None:
            config = CleanupConfig(
                id=CleanupConfigService.DEFAULT_CONFIG_ID,
                enabled=False,
                schedule="0 2 * * 0",
                threshold_days=DEFAULT_THRESHOLD_DAYS,
                batch_size=DEFAULT_BATCH_SIZE,
                notification_enabled=True,
                email_enabled=False,
            )
            db.add(config)
            await db.commit()
            app_logger.info("Created default cleanup configuration")
        return config

    @staticmethod
    async def update_config(db: AsyncSession, updates: dict, modified_by: Optional[str] = None) -> CleanupConfig:
        config = await CleanupConfigService.get_config(db)
        for key, value in updates.items():
            if value is not None and hasattr(config, key):
                setattr(config, key, value)
        config.modified_by = modified_by
        config.last_modified = utcnow()
        await db.commit()
        return config

    @staticmethod
    async def log_execution(db: AsyncSession, metrics: CleanupMetrics) -> Optional[str]:
        """Persist an execution row; failures are logged and return None."""
        try:
            row = CleanupExecutionLog(
                id=metrics.execution_id,
                executed_at=metrics.executed_at,
                executed_by=metrics.executed_by,
                admin_user=metrics.admin_user,
                users_counted=metrics.users_counted,
                users_deleted=metrics.users_deleted,
                threshold_days=metrics.threshold_days,
                batch_size=metrics.batch_size,
                duration_ms=metrics.duration_ms,
                status=metrics.status,
                error_message=metrics.error_message,
                error_count=metrics.error_count,
                dry_run=metrics.dry_run,
                deleted_user_ids=metrics.deleted_user_ids,
            )
            db.add(row)
            await db.commit()
            return row.id
        except Exception as e:
            await db.rollback()
            app_logger.error(f"Failed to log cleanup execution {metrics.execution_id}: {e}")
            return None

    @staticmethod
    def log_to_metrics(row: CleanupExecutionLog) -> CleanupMetrics:
        return CleanupMetrics(
            execution_id=row.id,
            executed_at=row.executed_at,
            executed_by=row.executed_by,
            admin_user=row.admin_user,
            users_counted=row.users_counted,
            users_deleted=row.users_deleted,
            threshold_days=row.threshold_days,
            batch_size=row.batch_size,
            duration_ms=row.duration_ms,
            status=row.status,
            error_message=row.error_message,
            error_count=row.error_count,
            dry_run=row.dry_run,
            deleted_user_ids=row.deleted_user_ids or [],
        )

    @staticmethod
    def log_to_dict(row: CleanupExecutionLog) -> dict:
        return {
            "id": row.id,
            "executedAt": row.executed_at.isoformat(),
            "executedBy": row.executed_by,
            "adminUser": row.admin_user,
            "usersCounted": row.users_counted,
            "usersDeleted": row.users_deleted,
            "thresholdDays": row.threshold_days,
            "batchSize": row.batch_size,
            "durationMs": row.duration_ms,
            "status": row.status,
            "errorMessage": row.error_message,
            "errorCount": row.error_count,
            "dryRun": row.dry_run,
        }

    @staticmethod
    async def get_execution_history(db: AsyncSession, limit: int = 5) -> list[CleanupExecutionLog]:
        result = await db.execute(
            select(CleanupExecutionLog).order_by(CleanupExecutionLog.executed_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
