"""
Streaming service containing the data-stream wire format.
Renders StreamEvents and tool results as data-stream protocol lines.
"""
import json
from typing import Any, Optional
from models.chat_models import StreamEvent, StreamEventType, TokenUsageInfo
from utils.errors import ProviderError
from utils.constants import StreamMessages

DATA_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "x-vercel-ai-data-stream": "v1",
}

# Provider finish reasons -> data-stream finish reasons
FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
    "error": "error",
}


class StreamService:
    """Service for formatting streaming chat output."""

    @staticmethod
    def format_part(code: str, value: Any) -> str:
        """One data-stream line: `<code>:<json>\\n`."""
        return f"{code}:{json.dumps(value, separators=(',', ':'))}\n"

    @staticmethod
    def map_finish_reason(reason: Optional[str]) -> str:
        if reason is None:
            return "unknown"
        return FINISH_REASONS.get(reason, "other")

    @staticmethod
    def usage_payload(usage: Optional[TokenUsageInfo]) -> dict:
        usage = usage or TokenUsageInfo()
        return {"promptTokens": usage.prompt_tokens, "completionTokens": usage.completion_tokens}

    @staticmethod
    def format_step_start(message_id: str) -> str:
        return StreamService.format_part("f", {"messageId": message_id})

    @staticmethod
    def format_event(event: StreamEvent, is_continued: bool = False) -> str:
        """Render one provider or loop event."""
        if event.type == StreamEventType.TOKEN:
            return StreamService.format_part("0", event.content)

        if event.type == StreamEventType.REASONING:
            return StreamService.format_part("g", event.content)

        if event.type == StreamEventType.TOOL_CALL:
            return StreamService.format_part("9", {
                "toolCallId": event.tool_call.id,
                "toolName": event.tool_call.name,
                "args": event.tool_call.arguments,
            })

        if event.type == StreamEventType.STOP:
            return StreamService.format_part("e", {
                "finishReason": StreamService.map_finish_reason(event.finish_reason),
                "usage": StreamService.usage_payload(event.usage),
                "isContinued": is_continued,
            })

        return StreamService.format_part("d", {
            "finishReason": StreamService.map_finish_reason(event.finish_reason),
            "usage": StreamService.usage_payload(event.usage),
        })

    @staticmethod
    def format_tool_result(tool_call_id: str, result: Any) -> str:
        return StreamService.format_part("a", {"toolCallId": tool_call_id, "result": result})

    @staticmethod
    def format_error(message: str) -> str:
        return StreamService.format_part("3", message)

    @staticmethod
    def error_message(error: Exception) -> str:
        """User-facing text for a failure during streaming."""
        if isinstance(error, ProviderError) and error.is_rate_limit:
            return StreamMessages.RATE_LIMITED
        if "rate limit" in str(error).lower():
            return StreamMessages.RATE_LIMITED
        return StreamMessages.GENERIC
