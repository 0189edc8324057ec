import pytest
from datetime import datetime, timedelta
from sqlalchemy import func, select

from db.tables import AuthSession, Chat, Message, User, utcnow
from models.cleanup_models import AlertSeverity, AlertType, AnonymousUserActivity, CleanupMetrics, CleanupResult
from services.cleanup_service import (
    CleanupConfigService,
    CleanupMonitoringService,
    UserCleanupService,
)
from tests.conftest import insert_user

NOW = datetime(2025, 6, 1, 12, 0, 0)


def metrics(**overrides):
    values = {
        "execution_id": "exec-1",
        "executed_at": NOW,
        "executed_by": "admin",
        "users_counted": 100,
        "users_deleted": 10,
        "threshold_days": 45,
        "batch_size": 50,
        "duration_ms": 2000,
        "status": "success",
    }
    values.update(overrides)
    return CleanupMetrics(**values)


@pytest.mark.parametrize("user, expected", [
    (AnonymousUserActivity("new", created_at=NOW - timedelta(days=3)), True),
    (AnonymousUserActivity("idle", created_at=NOW - timedelta(days=90)), False),
    (AnonymousUserActivity("chatty", created_at=NOW - timedelta(days=90), last_chat_activity=NOW - timedelta(days=5)), True),
    (AnonymousUserActivity("stale", created_at=NOW - timedelta(days=90), last_token_usage=NOW - timedelta(days=46)), False),
])
def test_is_user_active(user, expected):
    """Given activity timestamps, is_user_active should apply the minimum age and the threshold window."""
    assert UserCleanupService.is_user_active(user, 45, NOW) is expected


def test_days_since_last_activity_falls_back_to_creation():
    """Given no activity, days_since_last_activity should count from creation."""
    quiet = AnonymousUserActivity("q", created_at=NOW - timedelta(days=60, hours=5))
    busy = AnonymousUserActivity("b", created_at=NOW - timedelta(days=60), last_session_activity=NOW - timedelta(days=50))

    assert UserCleanupService.days_since_last_activity(quiet, NOW) == 60
    assert UserCleanupService.days_since_last_activity(busy, NOW) == 50


def test_cleanup_result_status():
    """Given run outcomes, CleanupResult.status should be success, partial or error."""
    assert CleanupResult(success=True).status == "success"
    assert CleanupResult(success=False, errors=["x"]).status == "partial"
    assert CleanupResult(success=False, fatal_error="db down").status == "error"


async def seed_cleanup_users():
    """Idle, recently active and new anonymous users plus one registered user."""
    old = utcnow() - timedelta(days=60)
    idle_id, _ = await insert_user(is_anonymous=True, created_at=old)
    active_id, _ = await insert_user(is_anonymous=True, created_at=old)
    young_id, _ = await insert_user(is_anonymous=True, created_at=utcnow() - timedelta(days=2))
    registered_id, _ = await insert_user(created_at=old)

    from db.session import get_sessionmaker
    async with get_sessionmaker()() as db:
        db.add(Chat(id="fresh-chat", user_id=active_id, title="t", updated_at=utcnow()))
        await db.commit()
    return idle_id, active_id, young_id, registered_id


@pytest.mark.anyio
async def test_preview_cleanup_lists_only_idle_anonymous_users(db_session):
    """Given a mix of users, preview_cleanup should list only idle anonymous users."""
    idle_id, _, _, _ = await seed_cleanup_users()

    preview = await UserCleanupService.preview_cleanup(db_session, 45)

    assert preview["totalAnonymousUsers"] == 3
    assert preview["activeUsers"] == 2
    assert [candidate["id"] for candidate in preview["candidates"]] == [idle_id]
    assert preview["candidates"][0]["daysSinceActivity"] == 60
    assert preview["minimumAgeDays"] == 7


@pytest.mark.anyio
async def test_execute_cleanup_dry_run_deletes_nothing(db_session):
    """Given a dry run, execute_cleanup should report candidates and leave them in place."""
    idle_id, _, _, _ = await seed_cleanup_users()

    result = await UserCleanupService.execute_cleanup(db_session, 45, 50, dry_run=True)

    assert result.success is True
    assert result.deleted_user_ids == [idle_id]
    assert result.users_counted == 3
    assert await db_session.get(User, idle_id) is not None


@pytest.mark.anyio
async def test_execute_cleanup_deletes_user_and_dependents(db_session):
    """Given an idle anonymous user with data, execute_cleanup should delete the user and its rows."""
    idle_id, active_id, young_id, registered_id = await seed_cleanup_users()
    db_session.add(Chat(id="old-chat", user_id=idle_id, title="t", updated_at=utcnow() - timedelta(days=59)))
    db_session.add(Message(id="old-msg", chat_id="old-chat", role="user", parts=[]))
    await db_session.commit()

    result = await UserCleanupService.execute_cleanup(db_session, 45, 50)

    assert result.success is True
    assert result.deleted_count == 1
    assert result.status == "success"
    remaining_users = set((await db_session.execute(select(User.id))).scalars().all())
    assert remaining_users == {active_id, young_id, registered_id}
    assert (await db_session.execute(select(func.count(Message.id)))).scalar_one() == 0
    assert (await db_session.execute(
        select(func.count(AuthSession.id)).where(AuthSession.user_id == idle_id)
    )).scalar_one() == 0


@pytest.mark.anyio
async def test_execute_cleanup_respects_batch_size(db_session):
    """Given more candidates than the batch size, execute_cleanup should delete only one batch."""
    old = utcnow() - timedelta(days=100)
    for _ in range(3):
        await insert_user(is_anonymous=True, created_at=old)

    result = await UserCleanupService.execute_cleanup(db_session, 45, 2)

    assert result.deleted_count == 2
    assert (await db_session.execute(select(func.count(User.id)))).scalar_one() == 1


@pytest.mark.anyio
async def test_execute_cleanup_records_per_user_failures(db_session, monkeypatch):
    """Given one deletion failing, execute_cleanup should continue and report a partial run."""
    old = utcnow() - timedelta(days=100)
    first_id, _ = await insert_user(is_anonymous=True, created_at=old)
    second_id, _ = await insert_user(is_anonymous=True, created_at=old - timedelta(days=1))
    real_delete = UserCleanupService.delete_user_data

    async def flaky_delete(db, user_id):
        if user_id == second_id:
            raise RuntimeError("locked")
        await real_delete(db, user_id)

    monkeypatch.setattr(UserCleanupService, "delete_user_data", staticmethod(flaky_delete))

    result = await UserCleanupService.execute_cleanup(db_session, 45, 50)

    assert result.status == "partial"
    assert result.deleted_user_ids == [first_id]
    assert result.errors == [f"Failed to delete user {second_id}: locked"]


@pytest.mark.anyio
async def test_get_cleanup_stats(db_session):
    """Given old anonymous users, get_cleanup_stats should estimate the savings."""
    await seed_cleanup_users()

    stats = await UserCleanupService.get_cleanup_stats(db_session)

    assert stats["totalUsers"] == 4
    assert stats["anonymousUsers"] == 3
    assert stats["oldInactiveUsers"] == 2
    assert stats["potentialStorageSavings"] == "~50% database size reduction"


def test_analyze_execution_flags_failures_and_volume():
    """Given a partial run deleting many users, analyze_execution should raise both warnings."""
    alerts = CleanupMonitoringService.analyze_execution(metrics(status="partial", error_count=2, users_deleted=30))

    assert [(alert.type, alert.severity) for alert in alerts] == [
        (AlertType.EXECUTION_FAILURE, AlertSeverity.WARNING),
        (AlertType.HIGH_DELETION_COUNT, AlertSeverity.WARNING),
    ]
    assert alerts[1].threshold == 25


def test_analyze_execution_error_and_long_runtime():
    """Given a failed slow run, analyze_execution should report an error and a long execution."""
    alerts = CleanupMonitoringService.analyze_execution(
        metrics(status="error", error_message="db down", users_deleted=0, duration_ms=301_000)
    )

    assert alerts[0].message == "Cleanup execution failed: db down"
    assert alerts[0].severity == AlertSeverity.ERROR
    assert alerts[1].type == AlertType.LONG_EXECUTION_TIME
    assert "301s" in alerts[1].message


def test_analyze_execution_cron_success_is_informational():
    """Given a successful cron run, analyze_execution should add a non-notifying info alert."""
    alerts = CleanupMonitoringService.analyze_execution(metrics(executed_by="cron"))

    assert [alert.type for alert in alerts] == [AlertType.SUCCESS_NOTIFICATION]
    assert alerts[0].should_notify is False


def test_dry_runs_never_count_as_high_deletion():
    """Given a dry run over the deletion threshold, analyze_execution should not warn."""
    assert CleanupMonitoringService.analyze_execution(metrics(users_deleted=500, batch_size=1000, dry_run=True)) == []


def test_high_deletion_threshold_scales_with_batch():
    assert CleanupMonitoringService.high_deletion_threshold(50) == 25
    assert CleanupMonitoringService.high_deletion_threshold(1000) == 100


def test_generate_execution_report():
    """Given metrics and alerts, the report should include the summary, errors, alerts and rates."""
    run = metrics(status="partial", error_count=1, error_message="one failed", admin_user="root@example.com")
    alerts = CleanupMonitoringService.analyze_execution(run)

    report = CleanupMonitoringService.generate_execution_report(run, alerts)

    assert "• Triggered by: admin (root@example.com)" in report
    assert "• Status: PARTIAL" in report
    assert "• Error message: one failed" in report
    assert "⚠️ WARNING: Cleanup execution completed with 1 errors" in report
    assert "• Processing rate: 50 users/second" in report
    assert "• Deletion efficiency: 10%" in report


def test_dry_run_report_wording():
    report = CleanupMonitoringService.generate_execution_report(metrics(dry_run=True), [])
    assert "(DRY RUN)" in report
    assert "• Users would be deleted: 10" in report


@pytest.mark.anyio
async def test_send_notifications_posts_report(mock_webhook_client):
    """Given a notifiable alert and a webhook, send_notifications should post the Slack-style payload."""
    run = metrics(status="error", error_message="boom")
    alerts = CleanupMonitoringService.analyze_execution(run)

    results = await CleanupMonitoringService.send_notifications(run, alerts, True, "https://hooks.example/x")

    assert [result.ok for result in results] == [True]
    url = mock_webhook_client.post.call_args.args[0]
    payload = mock_webhook_client.post.call_args.kwargs["json"]
    assert url == "https://hooks.example/x"
    assert payload["text"] == "Anonymous User Cleanup Alert"
    assert payload["blocks"][0]["text"]["text"].startswith("*Cleanup Execution ERROR*")


@pytest.mark.anyio
async def test_send_notifications_skips_when_nothing_to_report(mock_webhook_client):
    """Given disabled notifications or only quiet alerts, send_notifications should not post."""
    quiet_run = metrics(executed_by="cron")
    quiet = CleanupMonitoringService.analyze_execution(quiet_run)
    failed_run = metrics(status="error")
    loud = CleanupMonitoringService.analyze_execution(failed_run)

    assert await CleanupMonitoringService.send_notifications(quiet_run, quiet, True, "https://hooks.example/x") == []
    assert await CleanupMonitoringService.send_notifications(failed_run, loud, False, "https://hooks.example/x") == []
    assert await CleanupMonitoringService.send_notifications(failed_run, loud, True, None) == []
    mock_webhook_client.post.assert_not_called()


@pytest.mark.anyio
async def test_send_notifications_reports_webhook_failure(mock_webhook_client):
    """Given a failing webhook, send_notifications should report the failure instead of raising."""
    mock_webhook_client.post.side_effect = RuntimeError("connection refused")
    run = metrics(status="error")

    results = await CleanupMonitoringService.send_notifications(
        run, CleanupMonitoringService.analyze_execution(run), True, "https://hooks.example/x"
    )

    assert [(result.ok, result.error) for result in results] == [(False, "connection refused")]


def test_calculate_cleanup_stats():
    """Given executions newest first, calculate_cleanup_stats should aggregate health figures."""
    executions = [
        metrics(execution_id="3", executed_at=NOW, status="success", users_deleted=10, duration_ms=30_000),
        metrics(execution_id="2", executed_at=NOW - timedelta(days=1), status="partial", users_deleted=5, duration_ms=30_000),
        metrics(execution_id="1", executed_at=NOW - timedelta(days=2), status="partial", users_deleted=0, duration_ms=30_000),
        metrics(execution_id="0", executed_at=NOW - timedelta(days=4), status="success", users_deleted=5, duration_ms=30_000),
    ]

    stats = CleanupMonitoringService.calculate_cleanup_stats(executions)

    assert stats["totalExecutions"] == 4
    assert stats["successRate"] == 50
    assert stats["averageDuration"] == 30000
    assert stats["totalUsersDeleted"] == 20
    assert stats["averageUsersPerExecution"] == 5
    assert stats["executionFrequency"] == 1.0
    assert stats["healthScore"] == 65
    assert stats["lastExecution"] == NOW.isoformat()


def test_calculate_cleanup_stats_empty():
    stats = CleanupMonitoringService.calculate_cleanup_stats([])
    assert stats["healthScore"] == 100
    assert stats["lastExecution"] is None


@pytest.mark.anyio
async def test_config_defaults_and_update(db_session):
    """Given no stored config, get_config should create defaults that update_config can change."""
    config = await CleanupConfigService.get_config(db_session)
    assert (config.enabled, config.schedule, config.threshold_days, config.batch_size) == (False, "0 2 * * 0", 45, 50)

    updated = await CleanupConfigService.update_config(
        db_session, {"enabled": True, "batch_size": 20, "webhook_url": None}, modified_by="admin-1"
    )

    assert (updated.enabled, updated.batch_size, updated.modified_by) == (True, 20, "admin-1")
    assert CleanupConfigService.config_to_dict(updated)["batchSize"] == 20


@pytest.mark.anyio
async def test_execution_log_round_trip_and_history_order(db_session):
    """Given logged executions, get_execution_history should return the newest first."""
    await CleanupConfigService.log_execution(db_session, metrics(execution_id="older", executed_at=NOW - timedelta(days=1)))
    await CleanupConfigService.log_execution(db_session, metrics(execution_id="newer", deleted_user_ids=["u1"]))

    history = await CleanupConfigService.get_execution_history(db_session, limit=5)

    assert [row.id for row in history] == ["newer", "older"]
    restored = CleanupConfigService.log_to_metrics(history[0])
    assert restored.deleted_user_ids == ["u1"]
    assert CleanupConfigService.log_to_dict(history[0])["usersDeleted"] == 10
