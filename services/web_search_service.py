"""
Web search gating.
Decides whether a request may use provider-side web search and what it costs.
"""
from typing import Optional
from fastapi import status
from config import Config
from models.api_models import WebSearchOptions
from models.catalog_models import ModelInfo
from models.chat_models import WebSearchConfig
from utils.constants import ErrorCode
from utils.errors import ChatLimaError
from utils.logger import app_logger


class ChatWebSearchService:
    """Service for web search permission, model support and options."""

    @staticmethod
    def can_use_web_search(
        requested: bool,
        using_own_api_keys: bool,
        is_anonymous: bool,
        actual_credits: Optional[int],
    ) -> bool:
        """Permission only; model support is checked separately."""
        if using_own_api_keys and requested:
            return True
        if is_anonymous:
            return False
        if actual_credits is not None and actual_credits >= Config.WEB_SEARCH_COST:
            return requested
        return False

    @staticmethod
    def model_supports_web_search(model_id: str, model_info: Optional[ModelInfo]) -> bool:
        return model_id.startswith("openrouter/") and model_info is not None and model_info.supports_web_search is True

    @staticmethod
    def validate_and_configure_web_search(
        web_search: WebSearchOptions,
        model_id: str,
        using_own_api_keys: bool,
        is_anonymous: bool,
        actual_credits: Optional[int],
        model_info: Optional[ModelInfo],
    ) -> WebSearchConfig:
        """
        Resolve the effective web search configuration for a request.

        Args:
            web_search: Requested options
            model_id: Selected model id
            using_own_api_keys: Whether the user supplied a key for the provider
            is_anonymous: Whether the user is anonymous
            actual_credits: Known credit balance, None if unknown
            model_info: Catalog entry for the model

        Returns:
            WebSearchConfig with the final enabled flag and additional cost
        """
        requested = web_search.enabled
        can_use = ChatWebSearchService.can_use_web_search(requested, using_own_api_keys, is_anonymous, actual_credits)
        supported = ChatWebSearchService.model_supports_web_search(model_id, model_info)
        enabled = requested and can_use and supported

        if requested and not enabled:
            app_logger.info(
                f"Web search requested but disabled for {model_id} "
                f"(permission={can_use}, model_support={supported})"
            )
        elif enabled:
            app_logger.info(f"Web search enabled for {model_id} with context size {web_search.context_size}")

        return WebSearchConfig(
            enabled=enabled,
            context_size=web_search.context_size,
            can_use_web_search=can_use,
            model_supports_web_search=supported,
            additional_cost=Config.WEB_SEARCH_COST if enabled and not using_own_api_keys else 0,
        )

    @staticmethod
    def validate_web_search_request(
        requested: bool,
        can_use: bool,
        is_anonymous: bool,
        actual_credits: Optional[int],
    ) -> None:
        """Reject requests that ask for web search without paying for it."""
        if not requested or can_use:
            return

        if is_anonymous:
            app_logger.warning("Anonymous user tried to use Web Search, blocking request")
            raise ChatLimaError(
                ErrorCode.FEATURE_RESTRICTED,
                "Web Search is only available to signed-in users with credits. "
                "Please sign in and purchase credits to use this feature.",
                status.HTTP_403_FORBIDDEN,
                "Anonymous users cannot use Web Search",
            )

        if actual_credits is not None and actual_credits < Config.WEB_SEARCH_COST:
            app_logger.warning(f"User tried to use Web Search with {actual_credits} credits, blocking request")
            raise ChatLimaError(
                ErrorCode.INSUFFICIENT_CREDITS,
                f"You need at least {Config.WEB_SEARCH_COST} credits to use Web Search. "
                f"Your balance is {actual_credits}.",
                status.HTTP_402_PAYMENT_REQUIRED,
                f"User attempted to bypass Web Search payment with {actual_credits} credits",
            )

    @staticmethod
    def create_web_search_options(config: WebSearchConfig) -> dict:
        """Provider request fields for an enabled web search."""
        if not config.enabled:
            return {}
        return {"web_search_options": {"search_context_size": config.context_size}}

    @staticmethod
    def get_web_search_model_id(provider_model_id: str) -> str:
        """OpenRouter model id with the online suffix."""
        if provider_model_id.endswith(":online"):
            return provider_model_id
        return f"{provider_model_id}:online"
