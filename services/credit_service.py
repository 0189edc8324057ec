"""
Credit accounting and credit-based access control for chat requests.
"""
from typing import Optional
from fastapi import status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from config import Config
from db.tables import User
from models.catalog_models import ModelInfo
from models.chat_models import AuthenticatedUser, CreditValidationResult
from services.web_search_service import ChatWebSearchService
from utils.cache import RequestCache
from utils.constants import ErrorCode, PROVIDER_API_KEY_NAMES
from utils.errors import ChatLimaError
from utils.logger import app_logger


class CreditService:
    """Service for credit checks, model access rules and deductions."""

    @staticmethod
    def check_if_using_own_api_keys(model_id: str, api_keys: Optional[dict]) -> bool:
        """True when the request carries a non-empty key for the model's provider."""
        if not api_keys:
            return False

        provider = model_id.split("/", 1)[0]
        key_name = PROVIDER_API_KEY_NAMES.get(provider)
        if key_name is None:
            return False

        return bool((api_keys.get(key_name) or "").strip())

    @staticmethod
    def is_free_model(model_id: str) -> bool:
        """Free models end with `:free`; self-hosted Ollama models are free as well."""
        return model_id.endswith(":free") or model_id.startswith("ollama/")

    @staticmethod
    async def get_credit_balance(
        db: AsyncSession,
        user_id: str,
        cache: Optional[RequestCache] = None,
    ) -> Optional[int]:
        """Stored credit balance, None when the user has no billing account."""
        async def load() -> Optional[int]:
            user = await db.get(User, user_id)
            return user.credit_balance if user is not None else None

        if cache is None:
            return await load()
        return await cache.get_or_load(("credits", user_id), load)

    @staticmethod
    async def validate_credits(
        db: AsyncSession,
        user: AuthenticatedUser,
        model_id: str,
        using_own_api_keys: bool,
        web_search_requested: bool,
        cache: Optional[RequestCache] = None,
    ) -> CreditValidationResult:
        """
        Check the user's balance and web search permission for a request.

        Raises:
            ChatLimaError: 402 on a negative balance or when web search
                cannot be paid for, 403 for anonymous web search
        """
        is_free = CreditService.is_free_model(model_id)
        has_credits = False
        actual_credits: Optional[int] = None

        if using_own_api_keys:
            app_logger.info(f"User {user.user_id} is using own API keys, skipping credit checks")
            has_credits = True
        elif not user.is_anonymous:
            try:
                actual_credits = await CreditService.get_credit_balance(db, user.user_id, cache)
                has_credits = actual_credits is not None and actual_credits >= Config.CREDITS_PER_MESSAGE
            except Exception as e:
                app_logger.error(f"Error checking credits for {user.user_id}: {e}")

        if not using_own_api_keys and not is_free and not user.is_anonymous and actual_credits is not None and actual_credits < 0:
            app_logger.warning(f"User {user.user_id} has negative credits ({actual_credits}), blocking request")
            raise ChatLimaError(
                ErrorCode.INSUFFICIENT_CREDITS,
                f"Your account has a negative credit balance ({actual_credits}). "
                "Please purchase more credits to continue.",
                status.HTTP_402_PAYMENT_REQUIRED,
                f"User has {actual_credits} credits",
            )

        can_use_web_search = ChatWebSearchService.can_use_web_search(
            web_search_requested, using_own_api_keys, user.is_anonymous, actual_credits
        )
        ChatWebSearchService.validate_web_search_request(
            web_search_requested, can_use_web_search, user.is_anonymous, actual_credits
        )

        return CreditValidationResult(
            has_credits=has_credits,
            actual_credits=actual_credits,
            can_use_web_search=can_use_web_search,
        )

    @staticmethod
    def _user_type(is_anonymous: bool) -> tuple[str, str]:
        if is_anonymous:
            return "Anonymous users", "Please sign in and purchase credits"
        return "Users without credits", "Please purchase credits"

    @staticmethod
    def validate_free_model_access(
        user: AuthenticatedUser,
        model_id: str,
        using_own_api_keys: bool,
        has_credits: bool,
    ) -> None:
        """Users without credits or keys may only use free models."""
        if using_own_api_keys or has_credits or CreditService.is_free_model(model_id):
            return

        user_type, action = CreditService._user_type(user.is_anonymous)
        app_logger.warning(f"{user_type} attempted non-free model: {model_id}")
        raise ChatLimaError(
            ErrorCode.FREE_MODEL_ONLY,
            f"{user_type} can only use free models. {action} to access other models.",
            status.HTTP_403_FORBIDDEN,
            f"Free-model-only enforcement for {'anonymous' if user.is_anonymous else 'non-credit'} user",
        )

    @staticmethod
    def validate_premium_model_access(
        user: AuthenticatedUser,
        model_id: str,
        model_info: Optional[ModelInfo],
        using_own_api_keys: bool,
        has_credits: bool,
    ) -> None:
        """Premium models need credits or the user's own key."""
        if using_own_api_keys or has_credits or CreditService.is_free_model(model_id):
            return
        if model_info is None or not model_info.premium:
            return

        user_type, action = CreditService._user_type(user.is_anonymous)
        app_logger.warning(f"{user_type} attempted to access premium model: {model_id}")
        raise ChatLimaError(
            ErrorCode.PREMIUM_MODEL_RESTRICTED,
            f"{user_type} cannot access premium models. {action} to use {model_info.name or model_id}.",
            status.HTTP_403_FORBIDDEN,
            f"Premium model access denied for {'anonymous' if user.is_anonymous else 'non-credit'} user",
        )

    @staticmethod
    def calculate_request_cost(is_free_model: bool, web_search_cost: int) -> int:
        """Credits consumed by one completed exchange."""
        base = 0 if is_free_model else Config.CREDITS_PER_MESSAGE
        return base + web_search_cost

    @staticmethod
    async def deduct_credits(db: AsyncSession, user_id: str, amount: int) -> Optional[int]:
        """
        Subtract credits from a user with a billing account.
        Returns the new balance, or None when nothing was charged.
        """
        if amount <= 0:
            return None

        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.credit_balance.is_not(None))
            .values(credit_balance=User.credit_balance - amount)
            .returning(User.credit_balance)
        )
        new_balance = result.scalar_one_or_none()
        await db.commit()

        if new_balance is not None:
            app_logger.info(f"Deducted {amount} credits from {user_id}, balance now {new_balance}")
        return new_balance
