"""
Usage limits: daily message counts and token/cost budgets.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from config import Config
from db.tables import DailyMessageUsage, TokenUsage, UsageLimit, utcnow
from models.api_models import UsageLimitUpdateRequest
from models.chat_models import AuthenticatedUser
from utils.constants import ErrorCode
from utils.errors import ChatLimaError
from utils.logger import app_logger


def utc_date_string(moment: Optional[datetime] = None) -> str:
    """UTC calendar day as YYYY-MM-DD."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d")


class DailyMessageUsageService:
    """Per-day message counters for users without credits."""

    @staticmethod
    def get_message_limit(user: AuthenticatedUser) -> int:
        if user.is_anonymous:
            return Config.ANONYMOUS_DAILY_MESSAGE_LIMIT

        custom_limit = (user.metadata or {}).get("messageLimit")
        if isinstance(custom_limit, int) and custom_limit > 0:
            return custom_limit
        return Config.DEFAULT_DAILY_MESSAGE_LIMIT

    @staticmethod
    async def get_message_count(db: AsyncSession, user_id: str, date: Optional[str] = None) -> int:
        result = await db.execute(
            select(DailyMessageUsage.message_count).where(
                DailyMessageUsage.user_id == user_id,
                DailyMessageUsage.date == (date or utc_date_string()),
            )
        )
        return result.scalar_one_or_none() or 0

    @staticmethod
    async def get_daily_usage(db: AsyncSession, user: AuthenticatedUser) -> dict:
        date = utc_date_string()
        count = await DailyMessageUsageService.get_message_count(db, user.user_id, date)
        limit = DailyMessageUsageService.get_message_limit(user)
        return {
            "messageCount": count,
            "date": date,
            "hasReachedLimit": count >= limit,
            "limit": limit,
            "remaining": max(0, limit - count),
            "isAnonymous": user.is_anonymous,
        }

    @staticmethod
    async def increment_message_count(db: AsyncSession, user_id: str, is_anonymous: bool) -> int:
        """Upsert today's counter and return the new count."""
        date = utc_date_string()

        for _ in range(2):
            result = await db.execute(
                select(DailyMessageUsage).where(
                    DailyMessageUsage.user_id == user_id,
                    DailyMessageUsage.date == date,
                )
            )
            row = result.scalar_one_or_none()
            if row is not None:
                row.message_count += 1
                row.last_message_at = utcnow()
                await db.commit()
                return row.message_count

            db.add(DailyMessageUsage(user_id=user_id, date=date, message_count=1, is_anonymous=is_anonymous))
            try:
                await db.commit()
                return 1
            except IntegrityError:
                # Another request created today's row first
                await db.rollback()

        raise RuntimeError(f"Could not increment daily message usage for {user_id}")

    @staticmethod
    async def check_message_limit(db: AsyncSession, user: AuthenticatedUser) -> dict:
        """Raise 429 once the user has used up today's messages."""
        usage = await DailyMessageUsageService.get_daily_usage(db, user)
        if usage["hasReachedLimit"]:
            app_logger.info(f"User {user.user_id} reached daily message limit ({usage['limit']})")
            raise ChatLimaError(
                ErrorCode.MESSAGE_LIMIT_REACHED,
                f"You've reached your daily limit of {usage['limit']} messages. "
                + ("Sign in to get more messages." if user.is_anonymous else "Purchase credits to continue."),
                status.HTTP_429_TOO_MANY_REQUESTS,
                usage,
            )
        return usage


class UsageLimitsService:
    """Token and cost budgets backed by recorded token usage."""

    @staticmethod
    def default_limits() -> dict:
        return {
            "monthlyTokenLimit": Config.DEFAULT_MONTHLY_TOKEN_LIMIT,
            "monthlyCostLimit": Config.DEFAULT_MONTHLY_COST_LIMIT,
            "dailyTokenLimit": Config.DEFAULT_DAILY_TOKEN_LIMIT,
            "dailyCostLimit": Config.DEFAULT_DAILY_COST_LIMIT,
            "requestRateLimit": Config.DEFAULT_REQUEST_RATE_LIMIT,
            "currency": "USD",
        }

    @staticmethod
    def limit_row_to_dict(row: UsageLimit) -> dict:
        return {
            "monthlyTokenLimit": row.monthly_token_limit,
            "monthlyCostLimit": row.monthly_cost_limit,
            "dailyTokenLimit": row.daily_token_limit,
            "dailyCostLimit": row.daily_cost_limit,
            "requestRateLimit": row.request_rate_limit,
            "currency": row.currency,
        }

    @staticmethod
    async def _get_limit_row(db: AsyncSession, user_id: Optional[str]) -> Optional[UsageLimit]:
        condition = UsageLimit.user_id.is_(None) if user_id is None else UsageLimit.user_id == user_id
        result = await db.execute(
            select(UsageLimit).where(condition, UsageLimit.is_active.is_(True)).order_by(UsageLimit.updated_at.desc())
        )
        return result.scalars().first()

    @staticmethod
    async def get_effective_limits(db: AsyncSession, user_id: str) -> dict:
        """User limits, falling back field by field to global then built-in defaults."""
        limits = UsageLimitsService.default_limits()
        for owner in (None, user_id):
            row = await UsageLimitsService._get_limit_row(db, owner)
            if row is None:
                continue
            for key, value in UsageLimitsService.limit_row_to_dict(row).items():
                if value is not None:
                    limits[key] = value
        return limits

    @staticmethod
    async def _aggregate(db: AsyncSession, user_id: str, since: datetime) -> tuple[int, float, int]:
        result = await db.execute(
            select(
                func.coalesce(func.sum(TokenUsage.total_tokens), 0),
                func.coalesce(func.sum(TokenUsage.estimated_cost), 0.0),
                func.count(TokenUsage.id),
            ).where(TokenUsage.user_id == user_id, TokenUsage.created_at >= since)
        )
        tokens, cost, requests = result.one()
        return int(tokens), float(cost), int(requests)

    @staticmethod
    async def get_current_usage(db: AsyncSession, user_id: str) -> dict:
        now = utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        start_of_month = start_of_day.replace(day=1)

        daily_tokens, daily_cost, _ = await UsageLimitsService._aggregate(db, user_id, start_of_day)
        monthly_tokens, monthly_cost, _ = await UsageLimitsService._aggregate(db, user_id, start_of_month)
        _, _, recent_requests = await UsageLimitsService._aggregate(db, user_id, now - timedelta(minutes=1))

        return {
            "dailyTokens": daily_tokens,
            "monthlyTokens": monthly_tokens,
            "dailyCost": daily_cost,
            "monthlyCost": monthly_cost,
            "requestsLastMinute": recent_requests,
        }

    @staticmethod
    async def check_user_usage_limits(db: AsyncSession, user_id: str) -> dict:
        """
        Compare current usage against the effective limits.

        Returns:
            Dict with isOverLimit, exceededLimits (keys), messages, limits and usage
        """
        limits = await UsageLimitsService.get_effective_limits(db, user_id)
        usage = await UsageLimitsService.get_current_usage(db, user_id)

        checks = [
            ("daily_tokens", usage["dailyTokens"], limits["dailyTokenLimit"], "Daily token limit ({limit}) exceeded"),
            ("monthly_tokens", usage["monthlyTokens"], limits["monthlyTokenLimit"], "Monthly token limit ({limit}) exceeded"),
            ("daily_cost", usage["dailyCost"], limits["dailyCostLimit"], "Daily cost limit (${limit}) exceeded"),
            ("monthly_cost", usage["monthlyCost"], limits["monthlyCostLimit"], "Monthly cost limit (${limit}) exceeded"),
        ]

        exceeded, messages = [], []
        for key, used, limit, template in checks:
            if used > limit:
                exceeded.append(key)
                messages.append(template.format(limit=limit))

        if usage["requestsLastMinute"] >= limits["requestRateLimit"]:
            exceeded.append("request_rate")
            messages.append(f"Request rate limit ({limits['requestRateLimit']} per minute) exceeded")

        return {
            "isOverLimit": bool(exceeded),
            "exceededLimits": exceeded,
            "messages": messages,
            "limits": limits,
            "usage": usage,
        }

    @staticmethod
    async def enforce_usage_limits(db: AsyncSession, user_id: str) -> None:
        """Raise 429 when the user is over any budget."""
        status_report = await UsageLimitsService.check_user_usage_limits(db, user_id)
        if status_report["isOverLimit"]:
            app_logger.warning(f"User {user_id} over usage limits: {status_report['exceededLimits']}")
            raise ChatLimaError(
                ErrorCode.USAGE_LIMIT_EXCEEDED,
                status_report["messages"][0],
                status.HTTP_429_TOO_MANY_REQUESTS,
                status_report["exceededLimits"],
            )

    @staticmethod
    def _limit_status(used: float, limit: float) -> dict:
        return {
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used),
            "percentage": (used / limit * 100) if limit else 0.0,
        }

    @staticmethod
    async def build_usage_report(db: AsyncSession, user_id: str) -> dict:
        """Used / limit / remaining / percentage for every budget."""
        limits = await UsageLimitsService.get_effective_limits(db, user_id)
        usage = await UsageLimitsService.get_current_usage(db, user_id)

        report = {
            "monthlyTokens": UsageLimitsService._limit_status(usage["monthlyTokens"], limits["monthlyTokenLimit"]),
            "monthlyCost": UsageLimitsService._limit_status(usage["monthlyCost"], limits["monthlyCostLimit"]),
            "dailyTokens": UsageLimitsService._limit_status(usage["dailyTokens"], limits["dailyTokenLimit"]),
            "dailyCost": UsageLimitsService._limit_status(usage["dailyCost"], limits["dailyCostLimit"]),
        }
        report["isApproachingAnyLimit"] = any(
            entry["percentage"] > Config.USAGE_WARNING_THRESHOLD for entry in report.values()
        )
        report["isOverAnyLimit"] = any(entry["used"] > entry["limit"] for entry in report.values() if isinstance(entry, dict))
        report["requestRateLimit"] = limits["requestRateLimit"]
        report["currency"] = limits["currency"]
        return report

    @staticmethod
    async def update_limits(db: AsyncSession, request: UsageLimitUpdateRequest) -> UsageLimit:
        """Create or replace the limit row for a user (or the global row)."""
        row = await UsageLimitsService._get_limit_row(db, request.user_id)
        if row is None:
            row = UsageLimit(user_id=request.user_id)
            db.add(row)

        row.monthly_token_limit = request.monthly_token_limit
        row.monthly_cost_limit = request.monthly_cost_limit
        row.daily_token_limit = request.daily_token_limit
        row.daily_cost_limit = request.daily_cost_limit
        row.request_rate_limit = request.request_rate_limit
        row.currency = request.currency.upper()
        row.is_active = request.is_active
        await db.commit()
        await db.refresh(row)

        app_logger.info(f"Usage limits updated for {request.user_id or 'global default'}")
        return row

    @staticmethod
    async def record_token_usage(
        db: AsyncSession,
        user_id: str,
        chat_id: Optional[str],
        model_id: str,
        prompt_tokens: int,
        completion_tokens: int,
        estimated_cost: float,
    ) -> TokenUsage:
        provider = model_id.split("/", 1)[0]
        row = TokenUsage(
            user_id=user_id,
            chat_id=chat_id,
            model_id=model_id,
            provider=provider,
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated_cost=estimated_cost,
        )
        db.add(row)
        await db.commit()
        return row
