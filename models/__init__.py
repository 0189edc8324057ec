"""
Models package exports.
"""
from models.api_models import (
    ChatRequest,
    UIMessage,
    Attachment,
    MCPServerConfig,
    KeyValuePair,
    WebSearchOptions,
    CleanupExecuteRequest,
    UsageLimitUpdateRequest,
    PricingUpdateRequest,
)
from models.catalog_models import ModelInfo, MaxTokensRange, PricingInfo, ModelMigration
from models.chat_models import (
    AuthenticatedUser,
    ChatContext,
    ProcessedMessages,
    WebSearchConfig,
    CreditValidationResult,
    ResourceResult,
    ToolDefinition,
    MCPInitResult,
    DatabaseOperationResult,
    StreamEventType,
    StreamEvent,
    ToolCall,
    TokenUsageInfo,
)

__all__ = [
    'ChatRequest',
    'UIMessage',
    'Attachment',
    'MCPServerConfig',
    'KeyValuePair',
    'WebSearchOptions',
    'CleanupExecuteRequest',
    'UsageLimitUpdateRequest',
    'PricingUpdateRequest',
    'ModelInfo',
    'MaxTokensRange',
    'PricingInfo',
    'ModelMigration',
    'AuthenticatedUser',
    'ChatContext',
    'ProcessedMessages',
    'WebSearchConfig',
    'CreditValidationResult',
    'ResourceResult',
    'ToolDefinition',
    'MCPInitResult',
    'DatabaseOperationResult',
    'StreamEventType',
    'StreamEvent',
    'ToolCall',
    'TokenUsageInfo',
]
