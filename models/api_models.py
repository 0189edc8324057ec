"""
Pydantic data models for API requests and responses.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model accepting both camelCase (wire) and snake_case names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class KeyValuePair(CamelModel):
    """Environment variable or header entry for an MCP server."""
    key: str = ""
    value: str = ""


class MCPServerConfig(CamelModel):
    """Request-scoped MCP server descriptor."""
    url: str = ""
    type: str  # "sse", "stdio" or "streamable-http"
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[List[KeyValuePair]] = None
    headers: Optional[List[KeyValuePair]] = None


class WebSearchOptions(CamelModel):
    enabled: bool = False
    context_size: Literal["low", "medium", "high"] = "medium"


class Attachment(CamelModel):
    """Uploaded image referenced by URL (data URLs allowed)."""
    name: str
    content_type: str
    url: str


class UIMessage(BaseModel):
    """Chat message as sent by the frontend."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    role: str
    content: Optional[str] = ""
    parts: Optional[List[Dict[str, Any]]] = None


class ChatRequest(CamelModel):
    """Chat completion request with conversation history."""
    messages: List[UIMessage]
    chat_id: Optional[str] = None
    selected_model: str
    mcp_servers: List[MCPServerConfig] = Field(default_factory=list)
    web_search: WebSearchOptions = Field(default_factory=WebSearchOptions)
    api_keys: Optional[Dict[str, str]] = None
    attachments: List[Attachment] = Field(default_factory=list)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)
    system_instruction: Optional[str] = Field(None, max_length=4000)


class CleanupExecuteRequest(CamelModel):
    """Body of a cleanup execution; ranges are checked by the route."""
    threshold_days: int = 45
    batch_size: int = 50
    dry_run: bool = False
    confirmation_token: Optional[str] = None


class CleanupConfigUpdateRequest(CamelModel):
    """Partial update of the stored cleanup configuration."""
    enabled: Optional[bool] = None
    schedule: Optional[str] = None
    threshold_days: Optional[int] = Field(None, ge=7, le=365)
    batch_size: Optional[int] = Field(None, ge=1, le=100)
    notification_enabled: Optional[bool] = None
    webhook_url: Optional[str] = None
    email_enabled: Optional[bool] = None


class UsageLimitUpdateRequest(CamelModel):
    user_id: Optional[str] = None
    monthly_token_limit: Optional[int] = Field(None, ge=0)
    monthly_cost_limit: Optional[float] = Field(None, ge=0)
    daily_token_limit: Optional[int] = Field(None, ge=0)
    daily_cost_limit: Optional[float] = Field(None, ge=0)
    request_rate_limit: Optional[int] = Field(None, ge=1)
    currency: str = Field("USD", min_length=3, max_length=3)
    is_active: bool = True


class PricingUpdateRequest(CamelModel):
    model_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    input_token_price: float = Field(..., ge=0)
    output_token_price: float = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    is_active: bool = True
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
