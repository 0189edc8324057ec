"""
Data models for chat processing.
Contains the request context, service results, and typed stream events.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from models.api_models import ChatRequest
from models.catalog_models import ModelInfo


@dataclass
class AuthenticatedUser:
    """User resolved from the request session."""
    user_id: str
    is_anonymous: bool
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False
    credit_balance: Optional[int] = None
    metadata: dict = field(default_factory=dict)

    @property
    def open_router_user_id(self) -> str:
        """Stable end-user identifier forwarded to OpenRouter."""
        prefix = "chatlima_anon" if self.is_anonymous else "chatlima_user"
        return f"{prefix}_{self.user_id}"


@dataclass
class ProcessedMessages:
    messages: list
    has_attachments: bool


@dataclass
class WebSearchConfig:
    """Outcome of the web search gate."""
    enabled: bool
    context_size: str
    can_use_web_search: bool
    model_supports_web_search: bool
    additional_cost: int

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "contextSize": self.context_size,
            "canUseWebSearch": self.can_use_web_search,
            "modelSupportsWebSearch": self.model_supports_web_search,
            "additionalCost": self.additional_cost,
        }


@dataclass
class CreditValidationResult:
    has_credits: bool
    actual_credits: Optional[int]
    can_use_web_search: bool


@dataclass
class ResourceResult:
    """Per-resource outcome for operations that tolerate partial failure."""
    resource: str
    ok: bool
    detail: Any = None
    error: Optional[str] = None


@dataclass
class ToolDefinition:
    """Tool in the calling convention used by the completion loop."""
    name: str
    description: str
    parameters: dict
    execute: Callable[[dict], Awaitable[Any]]

    def to_openai_tool(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class MCPInitResult:
    """Merged MCP tools plus the per-server outcome and a cleanup hook."""
    tools: dict
    mcp_clients: list
    server_results: list
    cleanup: Callable[[], Awaitable[list]]

    @property
    def failed_servers(self) -> list:
        return [result for result in self.server_results if not result.ok]


@dataclass
class DatabaseOperationResult:
    success: bool
    chat_id: str
    message_count: int = 0
    error: Optional[str] = None


class StreamEventType(Enum):
    """Types of events produced by a completion stream."""
    TOKEN = "token"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    STOP = "stop"
    FINISH = "finish"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class TokenUsageInfo:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: Optional[float] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: "TokenUsageInfo") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        if other.cost is not None:
            self.cost = (self.cost or 0.0) + other.cost


@dataclass
class StreamEvent:
    """
    A single event of a completion stream.

    TOKEN and REASONING carry `content`; TOOL_CALL carries `tool_call`;
    STOP ends one provider call with `finish_reason`, `usage` and
    `annotations`; FINISH ends the whole exchange with aggregate `usage`.
    """
    type: StreamEventType
    content: str = ""
    tool_call: Optional[ToolCall] = None
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsageInfo] = None
    annotations: list = field(default_factory=list)


@dataclass
class ChatContext:
    """
    Context object containing all chat processing state.
    Provides centralized access to request-scoped data, eliminating parameter chaining.
    """
    request: ChatRequest
    user: AuthenticatedUser
    chat_id: str
    model_info: Optional[ModelInfo]
    messages: list
    system_prompt: str
    web_search: WebSearchConfig
    using_own_api_keys: bool = False
    has_credits: bool = False
    tools: dict = field(default_factory=dict)
    step_count: int = 0
    # Set when the requested model was automatically migrated
    resolved_model_id: Optional[str] = None

    @property
    def model_id(self) -> str:
        return self.resolved_model_id or self.request.selected_model

    @property
    def api_keys(self) -> dict:
        return self.request.api_keys or {}

    def next_step_number(self) -> int:
        """Increment and return the next completion step number."""
        self.step_count += 1
        return self.step_count
