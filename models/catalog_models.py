"""
Normalized model catalog records shared by every provider parser.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class MaxTokensRange:
    min: int
    max: int
    default: int


@dataclass
class PricingInfo:
    """Per-token prices."""
    input: float
    output: float
    currency: str = "USD"


@dataclass
class ModelInfo:
    id: str
    provider: str
    name: str
    description: str = ""
    capabilities: list[str] = field(default_factory=list)
    premium: bool = False
    vision: bool = False
    context_length: Optional[int] = None
    max_tokens_range: Optional[MaxTokensRange] = None
    supports_web_search: bool = False
    supports_temperature: bool = True
    supports_max_tokens: bool = True
    supports_system_instruction: bool = True
    pricing: Optional[PricingInfo] = None
    last_checked: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_free(self) -> bool:
        return self.id.endswith(":free")

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "provider": self.provider,
            "name": self.name,
            "description": self.description,
            "capabilities": list(self.capabilities),
            "premium": self.premium,
            "vision": self.vision,
            "contextLength": self.context_length,
            "supportsWebSearch": self.supports_web_search,
            "supportsTemperature": self.supports_temperature,
            "supportsMaxTokens": self.supports_max_tokens,
            "supportsSystemInstruction": self.supports_system_instruction,
            "lastChecked": self.last_checked.isoformat(),
        }
        if self.max_tokens_range is not None:
            data["maxTokensRange"] = {
                "min": self.max_tokens_range.min,
                "max": self.max_tokens_range.max,
                "default": self.max_tokens_range.default,
            }
        if self.pricing is not None:
            data["pricing"] = {
                "input": self.pricing.input,
                "output": self.pricing.output,
                "currency": self.pricing.currency,
            }
        return data


@dataclass
class ModelMigration:
    old_id: str
    new_id: str
    reason: str
    automatic_migration: bool = True
    migration_date: Optional[str] = None
