"""
Configuration module for the ChatLima backend.
Handles environment variables and application settings.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _split_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Application configuration class."""

    # Provider API Keys
    OPENROUTER_API_KEY: str = os.getenv("OPENROUTER_API_KEY", "")
    REQUESTY_API_KEY: str = os.getenv("REQUESTY_API_KEY", "")

    # Provider endpoints
    OPENROUTER_BASE_URL: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    REQUESTY_BASE_URL: str = os.getenv("REQUESTY_BASE_URL", "https://router.requesty.ai/v1")
    OLLAMA_HOST: str = os.getenv("OLLAMA_HOST", "http://localhost:11434")

    # Application Settings
    APP_TITLE: str = os.getenv("APP_TITLE", "ChatLima")
    APP_URL: str = os.getenv("APP_URL", "https://www.chatlima.com/")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./chatlima.db")
    SESSION_COOKIE_NAME: str = "chatlima.session_token"
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")

    # Timeouts (in seconds)
    PROVIDER_TIMEOUT: float = float(os.getenv("PROVIDER_TIMEOUT", "60.0"))
    CATALOG_TIMEOUT: float = 15.0
    WEBHOOK_TIMEOUT: float = 10.0
    MCP_INIT_TIMEOUT: float = float(os.getenv("MCP_INIT_TIMEOUT", "30.0"))

    # Chat completion
    MAX_TOOL_STEPS: int = 20

    # Credits
    WEB_SEARCH_COST: int = 5
    CREDITS_PER_MESSAGE: int = 1

    # Daily message limits for users without credits
    ANONYMOUS_DAILY_MESSAGE_LIMIT: int = 10
    DEFAULT_DAILY_MESSAGE_LIMIT: int = 20

    # Default usage limits, used when no limit row exists
    DEFAULT_MONTHLY_TOKEN_LIMIT: int = 1_000_000
    DEFAULT_MONTHLY_COST_LIMIT: float = 100.0
    DEFAULT_DAILY_TOKEN_LIMIT: int = 50_000
    DEFAULT_DAILY_COST_LIMIT: float = 10.0
    DEFAULT_REQUEST_RATE_LIMIT: int = 60
    USAGE_WARNING_THRESHOLD: float = 80.0

    # Model catalog
    BLOCKED_MODELS: list[str] = _split_env_list(os.getenv("BLOCKED_MODELS", ""))
    MODEL_LIST_CACHE_TTL: float = 10 * 60
    MODEL_DETAILS_CACHE_TTL: float = 60 * 60

    # Cleanup
    CLEANUP_CONFIRMATION_TOKEN: str = "DELETE_ANONYMOUS_USERS"
    CLEANUP_MIN_THRESHOLD_DAYS: int = 7
    CLEANUP_MAX_THRESHOLD_DAYS: int = 365
    CLEANUP_MAX_BATCH_SIZE: int = 100

    @classmethod
    def provider_api_key(cls, provider: str, api_keys: dict | None = None) -> str:
        """
        Resolve the API key for a provider.
        A user-supplied key takes precedence over the server key.
        """
        env_name = f"{provider.upper()}_API_KEY"
        if api_keys:
            user_key = (api_keys.get(env_name) or "").strip()
            if user_key:
                return user_key
        return getattr(cls, env_name, "") or os.getenv(env_name, "")

    @classmethod
    def load_blocked_models(cls) -> list[str]:
        """Re-read BLOCKED_MODELS from the environment."""
        cls.BLOCKED_MODELS = _split_env_list(os.getenv("BLOCKED_MODELS", ""))
        return cls.BLOCKED_MODELS

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and log warnings for missing API keys."""
        from utils.logger import app_logger

        if not cls.OPENROUTER_API_KEY:
            app_logger.warning("OPENROUTER_API_KEY not found in .env file")
            app_logger.warning("OpenRouter models are only usable with a user-supplied key.")

        if not cls.REQUESTY_API_KEY:
            app_logger.warning("REQUESTY_API_KEY not found in .env file")
            app_logger.warning("Requesty models are only usable with a user-supplied key.")
