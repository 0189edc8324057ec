"""
Constants and system prompts for the ChatLima backend.
"""

BASE_SYSTEM_PROMPT = """You are a helpful AI assistant. Today's date is {current_date}.

You have access to external tools provided by connected servers. These tools can perform specific actions like running code, searching databases, or accessing external services.
{web_search_section}
## How to Respond:
1.  **Analyze the Request:** Understand what the user is asking.
2.  **Use Tools When Necessary:** If an external tool provides the best way to answer (e.g., fetching specific data, performing calculations, interacting with services), select the most relevant tool(s) and use them. You can use multiple tools in sequence. Clearly indicate when you are using a tool and what it's doing.
3.  **Use Your Own Abilities:** For requests involving brainstorming, explanation, writing, summarization, analysis, or general knowledge, rely on your own reasoning and knowledge base. You don't need to force the use of an external tool if it's not suitable or required for these tasks.
4.  **Respond Clearly:** Provide your answer directly when using your own abilities. If using tools, explain the steps taken and present the results clearly.
5.  **Handle Limitations:** If you cannot answer fully (due to lack of information, missing tools, or capability limits), explain the limitation clearly. Don't just say "I don't know" if you can provide partial information or explain *why* you can't answer. If relevant tools seem to be missing, you can mention that the user could potentially add them via the server configuration.

## Response Format:
- Use Markdown for formatting.
- Base your response on the results from any tools used, or on your own reasoning and knowledge.
"""

WEB_SEARCH_PROMPT_SECTION = """
## Web Search Enabled:
You have web search capabilities enabled. When you use web search:
1. Cite your sources using markdown links
2. Use the format [domain.com](full-url) for citations
3. Only cite reliable and relevant sources
4. Integrate the information naturally into your responses
"""

THINK_TAG_INSTRUCTION = (
    "Please provide your reasoning within <think> tags. After closing the </think> tag, "
    "provide your final answer directly without any other special tags."
)

# Models that need explicit <think> tag instructions
THINK_TAG_MODELS = frozenset({
    "openrouter/deepseek/deepseek-r1",
    "openrouter/deepseek/deepseek-r1-0528-qwen3-8b",
    "openrouter/qwen/qwq-32b",
})

# Models that cannot be combined with MCP tools
MCP_DISABLED_MODELS = frozenset({
    "openrouter/deepseek/deepseek-r1",
    "openrouter/deepseek/deepseek-r1-0528",
    "openrouter/deepseek/deepseek-r1-0528-qwen3-8b",
})

VALID_MESSAGE_ROLES = frozenset({"user", "assistant", "system"})


class MCPTransport:
    """Supported MCP transport types."""
    SSE = "sse"
    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable-http"

    ALL = (SSE, STDIO, STREAMABLE_HTTP)


MCP_PROTOCOL_VERSION = "2025-06-18"
MCP_CLIENT_NAME = "chatlima-client"
MCP_CLIENT_VERSION = "1.0.0"


class ErrorCode:
    """Error codes returned in the JSON error envelope."""
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    FEATURE_RESTRICTED = "FEATURE_RESTRICTED"
    FREE_MODEL_ONLY = "FREE_MODEL_ONLY"
    PREMIUM_MODEL_RESTRICTED = "PREMIUM_MODEL_RESTRICTED"
    MESSAGE_LIMIT_REACHED = "MESSAGE_LIMIT_REACHED"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    CHAT_NOT_FOUND = "CHAT_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    VISION_NOT_SUPPORTED = "VISION_NOT_SUPPORTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class StreamMessages:
    """User-facing stream error messages."""
    RATE_LIMITED = "Rate limit exceeded. Please try again later."
    GENERIC = "An error occurred."


# Provider prefix -> API key name expected in the request apiKeys map
PROVIDER_API_KEY_NAMES = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "groq": "GROQ_API_KEY",
    "xai": "XAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "requesty": "REQUESTY_API_KEY",
}
