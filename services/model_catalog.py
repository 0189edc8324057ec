"""
Model catalog service.
Fetches provider model lists, normalizes them into ModelInfo records,
filters blocked models and resolves model migrations.
"""
import asyncio
import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
import httpx
import ollama
from config import Config
from models.catalog_models import MaxTokensRange, ModelInfo, ModelMigration, PricingInfo
from utils.cache import TTLCache
from utils.errors import ParseError
from utils.http_client import HTTPClientManager
from utils.logger import app_logger

PREMIUM_INPUT_PRICE_PER_MILLION = 3.0
PREMIUM_OUTPUT_PRICE_PER_MILLION = 5.0

# Explicit premium classification, applied after the price rule
PREMIUM_OVERRIDES: dict[str, bool] = {
    "openrouter/openai/o1-pro": True,
    "openrouter/anthropic/claude-opus-4": True,
    "openrouter/google/gemini-2.5-flash": False,
}


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def is_premium_price(input_per_token: Optional[float], output_per_token: Optional[float]) -> bool:
    """Premium iff input >= $3 or output >= $5 per million tokens."""
    # Rounded so per-token prices like 0.000003 compare exactly
    input_per_million = round((input_per_token or 0.0) * 1e6, 9)
    output_per_million = round((output_per_token or 0.0) * 1e6, 9)
    return input_per_million >= PREMIUM_INPUT_PRICE_PER_MILLION or output_per_million >= PREMIUM_OUTPUT_PRICE_PER_MILLION


def _openrouter_max_tokens_range(model: dict) -> MaxTokensRange:
    model_id = model["id"]
    max_completion = (model.get("top_provider") or {}).get("max_completion_tokens")

    if max_completion and max_completion > 0:
        return MaxTokensRange(min=1, max=max_completion, default=min(4096, math.floor(max_completion * 0.25)))

    context_length = model.get("context_length")
    if "gemini" in model_id:
        return MaxTokensRange(min=1, max=65536, default=4096)
    if "claude" in model_id and "opus-4" in model_id:
        return MaxTokensRange(min=1, max=32000, default=4096)
    if "claude" in model_id and "sonnet-4" in model_id:
        return MaxTokensRange(min=1, max=64000, default=4096)
    if any(marker in model_id for marker in ("gpt-4", "o1", "o3", "o4")):
        return MaxTokensRange(min=1, max=32768, default=4096)
    if "llama" in model_id and context_length and context_length > 100000:
        return MaxTokensRange(min=1, max=16384, default=4096)

    estimated_max = min(8192, math.floor((context_length or 8192) * 0.5))
    return MaxTokensRange(min=1, max=estimated_max, default=min(4096, math.floor(estimated_max * 0.5)))


def parse_openrouter_models(data: Any) -> list[ModelInfo]:
    """Normalize an OpenRouter `/models` payload."""
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise ParseError("openrouter", "Invalid OpenRouter API response format")

    models = []
    for raw in data["data"]:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ParseError("openrouter", f"Model entry without id: {raw!r}")

        raw_id = raw["id"]
        name = raw.get("name") or raw_id
        modality = (raw.get("architecture") or {}).get("modality") or ""
        top_provider_name = ((raw.get("top_provider") or {}).get("name") or "").lower()

        capabilities = []
        if "text" in modality:
            capabilities.append("Text")
        if "image" in modality:
            capabilities.append("Vision")
        if "anthropic" in top_provider_name:
            capabilities.append("Reasoning")
        if "code" in raw_id or "code" in name.lower():
            capabilities.append("Coding")
        if "fast" in raw_id or "flash" in name.lower():
            capabilities.append("Fast")
        if ("reasoning" in raw_id or "thinking" in raw_id) and "Reasoning" not in capabilities:
            capabilities.append("Reasoning")
        if not capabilities:
            capabilities.append("General Purpose")

        pricing = None
        raw_pricing = raw.get("pricing")
        if raw_pricing:
            pricing = PricingInfo(
                input=_to_float(raw_pricing.get("prompt")) or 0.0,
                output=_to_float(raw_pricing.get("completion")) or 0.0,
            )

        model_id = f"openrouter/{raw_id}"
        premium = is_premium_price(pricing.input, pricing.output) if pricing else False
        premium = PREMIUM_OVERRIDES.get(model_id, premium)

        models.append(ModelInfo(
            id=model_id,
            provider="OpenRouter",
            name=name,
            description=raw.get("description") or f"{name} via OpenRouter",
            capabilities=capabilities,
            premium=premium,
            vision="image" in modality,
            context_length=raw.get("context_length") or None,
            max_tokens_range=_openrouter_max_tokens_range(raw),
            supports_web_search=True,
            pricing=pricing,
        ))

    return models


def parse_requesty_models(data: Any) -> list[ModelInfo]:
    """Normalize a Requesty `/router/models` payload (prices per million tokens)."""
    if not isinstance(data, list):
        raise ParseError("requesty", "Invalid Requesty API response format")

    models = []
    for raw in data:
        if not isinstance(raw, dict) or not raw.get("provider") or not raw.get("model"):
            raise ParseError("requesty", f"Model entry without provider/model: {raw!r}")

        provider, model_name = raw["provider"], raw["model"]
        lower_model = model_name.lower()
        description = raw.get("description") or ""

        capabilities = []
        if raw.get("supports_vision"):
            capabilities.append("Vision")
        if raw.get("supports_reasoning"):
            capabilities.append("Reasoning")
        if raw.get("supports_caching"):
            capabilities.append("Caching")
        if raw.get("supports_computer_use"):
            capabilities.append("Tools")
        if "code" in lower_model or "coder" in lower_model or "coding" in description.lower():
            capabilities.append("Coding")
        if any(marker in lower_model for marker in ("fast", "turbo", "flash")):
            capabilities.append("Fast")
        if not capabilities:
            capabilities.append("General Purpose")

        input_per_million = _to_float(raw.get("input_tokens_price_per_million")) or 0.0
        output_per_million = _to_float(raw.get("output_tokens_price_per_million")) or 0.0
        pricing = PricingInfo(input=input_per_million / 1e6, output=output_per_million / 1e6)

        model_id = f"requesty/{provider}/{model_name}"
        display_name = f"{provider[:1].upper()}{provider[1:]} {model_name.split('/')[-1]}"

        models.append(ModelInfo(
            id=model_id,
            provider="Requesty",
            name=display_name,
            description=description or f"{display_name} via Requesty",
            capabilities=capabilities,
            premium=PREMIUM_OVERRIDES.get(model_id, is_premium_price(pricing.input, pricing.output)),
            vision=bool(raw.get("supports_vision")),
            context_length=raw.get("context_window") or None,
            supports_web_search=False,
            pricing=pricing,
        ))

    return sorted(models, key=lambda m: m.name)


@dataclass
class ProviderConfig:
    name: str
    env_key: str
    endpoint: str
    parse: Callable[[Any], list[ModelInfo]]
    requests_per_minute: int
    burst_limit: int
    max_retries: int
    backoff_ms: int


PROVIDERS: dict[str, ProviderConfig] = {
    "openrouter": ProviderConfig(
        name="OpenRouter",
        env_key="OPENROUTER_API_KEY",
        endpoint="https://openrouter.ai/api/v1/models",
        parse=parse_openrouter_models,
        requests_per_minute=60,
        burst_limit=10,
        max_retries=3,
        backoff_ms=1000,
    ),
    "requesty": ProviderConfig(
        name="Requesty",
        env_key="REQUESTY_API_KEY",
        endpoint="https://api.requesty.ai/router/models",
        parse=parse_requesty_models,
        requests_per_minute=120,
        burst_limit=20,
        max_retries=3,
        backoff_ms=500,
    ),
}


class ModelBlocklist:
    """
    Set of model ids hidden from the catalog.
    Entries ending in `*` match by prefix.
    """

    def __init__(self, source: Callable[[], Iterable[str]]):
        self._source = source
        self._exact: set[str] = set()
        self._prefixes: tuple[str, ...] = ()
        self.reload()

    @classmethod
    def from_config(cls) -> "ModelBlocklist":
        return cls(Config.load_blocked_models)

    def reload(self) -> int:
        """Re-read the source; returns the number of entries loaded."""
        entries = [entry.strip() for entry in self._source() if entry and entry.strip()]
        self._exact = {entry for entry in entries if not entry.endswith("*")}
        self._prefixes = tuple(entry[:-1] for entry in entries if entry.endswith("*"))
        app_logger.info(f"Model blocklist loaded with {len(entries)} entries")
        return len(entries)

    def is_blocked(self, model_id: str) -> bool:
        return model_id in self._exact or (bool(self._prefixes) and model_id.startswith(self._prefixes))

    def filter(self, models: list[ModelInfo]) -> list[ModelInfo]:
        return [model for model in models if not self.is_blocked(model.id)]


MODEL_MIGRATIONS: list[ModelMigration] = [
    ModelMigration("openrouter/anthropic/claude-3.5-sonnet-old", "openrouter/anthropic/claude-3.5-sonnet", "renamed"),
    ModelMigration("openrouter/openai/gpt-4-turbo", "openrouter/openai/gpt-4.1", "renamed"),
    ModelMigration("openrouter/google/gemini-pro", "openrouter/google/gemini-2.5-pro", "moved"),
    ModelMigration("requesty/anthropic/claude-3-sonnet", "requesty/anthropic/claude-3.5-sonnet", "moved"),
    ModelMigration("requesty/openai/gpt-4-turbo", "requesty/openai/gpt-4.1", "renamed"),
    ModelMigration("openrouter/anthropic/claude-2", "openrouter/anthropic/claude-3.5-sonnet", "deprecated", automatic_migration=False),
    ModelMigration("openrouter/openai/gpt-3.5-turbo", "openrouter/openai/gpt-4.1-mini", "deprecated", automatic_migration=False),
]


class ModelMigrationManager:
    """Resolves retired model ids to their replacements."""

    MAX_CHAIN_DEPTH = 10

    def __init__(self, migrations: Optional[list[ModelMigration]] = None):
        self.migrations = migrations if migrations is not None else MODEL_MIGRATIONS

    def find_migration(self, old_model_id: str) -> Optional[ModelMigration]:
        return next((m for m in self.migrations if m.old_id == old_model_id), None)

    def get_migration_chain(self, old_model_id: str) -> list[ModelMigration]:
        chain = []
        current_id = old_model_id
        while len(chain) < self.MAX_CHAIN_DEPTH:
            migration = self.find_migration(current_id)
            if migration is None:
                break
            chain.append(migration)
            current_id = migration.new_id
        return chain

    def get_final_migration_target(self, old_model_id: str) -> tuple[str, list[ModelMigration]]:
        chain = self.get_migration_chain(old_model_id)
        return (chain[-1].new_id if chain else old_model_id), chain

    def can_auto_migrate(self, old_model_id: str) -> bool:
        chain = self.get_migration_chain(old_model_id)
        return bool(chain) and all(m.automatic_migration for m in chain)


TOP_PROVIDERS = {"openrouter", "openai", "anthropic", "google", "mistral"}


def calculate_model_priority(model: ModelInfo) -> int:
    """Score used to order the catalog listing."""
    score = 50 if model.premium else 10
    if model.vision:
        score += 20

    capabilities = {c.lower() for c in model.capabilities}
    if "reasoning" in capabilities:
        score += 30
    if "coding" in capabilities:
        score += 25
    if "fast" in capabilities:
        score += 15

    context = model.context_length or 0
    if context >= 200000:
        score += 25
    elif context >= 100000:
        score += 20
    elif context >= 50000:
        score += 15

    if model.is_free:
        score += 15
    if model.provider.lower() in TOP_PROVIDERS:
        score += 10
    return score


def sort_models_by_priority(models: list[ModelInfo]) -> list[ModelInfo]:
    return sorted(models, key=lambda m: (-calculate_model_priority(m), m.name))


class ModelCatalogService:
    """Aggregates model lists from every configured provider."""

    def __init__(
        self,
        blocklist: ModelBlocklist,
        providers: Optional[dict[str, ProviderConfig]] = None,
        migrations: Optional[ModelMigrationManager] = None,
        include_ollama: bool = True,
    ):
        self.blocklist = blocklist
        self.providers = providers if providers is not None else PROVIDERS
        self.migrations = migrations or ModelMigrationManager()
        self.include_ollama = include_ollama
        self._list_cache: TTLCache[list[ModelInfo]] = TTLCache(ttl=Config.MODEL_LIST_CACHE_TTL)
        self._details_cache: TTLCache[ModelInfo] = TTLCache(ttl=Config.MODEL_DETAILS_CACHE_TTL, max_size=2048)

    async def _fetch_provider_payload(self, key: str, provider: ProviderConfig) -> Any:
        client = HTTPClientManager.get_catalog_client()
        headers = {"Content-Type": "application/json"}
        api_key = Config.provider_api_key(key)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        last_error: Exception | None = None
        for attempt in range(provider.max_retries + 1):
            try:
                response = await client.get(provider.endpoint, headers=headers)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500 and e.response.status_code != 429:
                    break
            except httpx.HTTPError as e:
                last_error = e

            if attempt < provider.max_retries:
                delay = provider.backoff_ms / 1000 * (2 ** attempt)
                app_logger.warning(f"{provider.name} model list attempt {attempt + 1} failed, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        raise last_error

    async def fetch_provider_models(self, key: str) -> list[ModelInfo]:
        """Fetch and parse one provider; raises on network or parse failure."""
        provider = self.providers[key]
        payload = await self._fetch_provider_payload(key, provider)
        models = provider.parse(payload)
        app_logger.info(f"Fetched {len(models)} models from {provider.name}")
        return models

    async def fetch_ollama_models(self) -> list[ModelInfo]:
        """List locally available Ollama models."""
        client = ollama.AsyncClient(host=Config.OLLAMA_HOST)
        models_response = await client.list()
        return [
            ModelInfo(
                id=f"ollama/{model['model']}",
                provider="Ollama",
                name=model['model'],
                description=f"{model['model']} (self-hosted)",
                capabilities=["Self-hosted"],
            )
            for model in models_response['models']
        ]

    async def list_models(self, force_refresh: bool = False) -> list[ModelInfo]:
        """
        All available models across providers, blocklist applied, priority ordered.
        A provider that fails is logged and skipped.
        """
        if not force_refresh:
            cached = self._list_cache.get("all")
            if cached is not None:
                return cached

        sources: dict[str, Any] = {key: self.fetch_provider_models(key) for key in self.providers}
        if self.include_ollama:
            sources["ollama"] = self.fetch_ollama_models()

        results = await asyncio.gather(*sources.values(), return_exceptions=True)

        models: list[ModelInfo] = []
        for key, result in zip(sources, results):
            if isinstance(result, Exception):
                app_logger.error(f"Failed to load models from {key}: {result}")
                continue
            models.extend(result)

        models = sort_models_by_priority(self.blocklist.filter(models))
        self._list_cache.set("all", models)
        for model in models:
            self._details_cache.set(model.id, model)
        return models

    def migrate_model_id(self, model_id: str) -> str:
        """The id to use for a model, after any automatic migrations."""
        if not self.migrations.can_auto_migrate(model_id):
            return model_id
        target, _ = self.migrations.get_final_migration_target(model_id)
        app_logger.info(f"Model {model_id} migrated to {target}")
        return target

    async def get_model_details(self, model_id: str) -> Optional[ModelInfo]:
        """Catalog entry for a model id, following automatic migrations."""
        model_id = self.migrate_model_id(model_id)

        if self.blocklist.is_blocked(model_id):
            return None

        cached = self._details_cache.get(model_id)
        if cached is not None:
            return cached

        models = await self.list_models()
        return next((model for model in models if model.id == model_id), None)

    def reload_blocklist(self) -> int:
        count = self.blocklist.reload()
        self._list_cache.clear()
        self._details_cache.clear()
        return count


_catalog: Optional[ModelCatalogService] = None


def get_model_catalog() -> ModelCatalogService:
    """Process-wide catalog, created on first use."""
    global _catalog
    if _catalog is None:
        _catalog = ModelCatalogService(ModelBlocklist.from_config())
    return _catalog


def set_model_catalog(catalog: Optional[ModelCatalogService]) -> None:
    global _catalog
    _catalog = catalog
