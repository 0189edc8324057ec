import pytest
from models.chat_models import StreamEvent, StreamEventType, TokenUsageInfo, ToolCall
from services.stream_service import DATA_STREAM_HEADERS, StreamService
from utils.constants import StreamMessages
from utils.errors import ProviderError


def test_format_part_uses_compact_json():
    """Given a code and value, format_part should write one compact `code:json` line."""
    assert StreamService.format_part("0", "Hi") == '0:"Hi"\n'
    assert StreamService.format_part("f", {"messageId": "msg-1"}) == 'f:{"messageId":"msg-1"}\n'


def test_format_part_escapes_newlines_in_text():
    """Given text with newlines, format_part should keep the part on a single line."""
    line = StreamService.format_part("0", "line one\nline two")
    assert line.count("\n") == 1
    assert line == '0:"line one\\nline two"\n'


@pytest.mark.parametrize("reason, expected", [
    ("stop", "stop"),
    ("length", "length"),
    ("tool_calls", "tool-calls"),
    ("content_filter", "content-filter"),
    ("something_new", "other"),
    (None, "unknown"),
])
def test_map_finish_reason(reason, expected):
    """Given a provider finish reason, map_finish_reason should return the data-stream value."""
    assert StreamService.map_finish_reason(reason) == expected


def test_format_event_renders_text_and_reasoning():
    """Given token and reasoning events, format_event should use codes 0 and g."""
    assert StreamService.format_event(StreamEvent(StreamEventType.TOKEN, content="Hello")) == '0:"Hello"\n'
    assert StreamService.format_event(StreamEvent(StreamEventType.REASONING, content="hmm")) == 'g:"hmm"\n'


def test_format_event_renders_tool_call():
    """Given a tool call event, format_event should emit a 9 part with id, name and args."""
    event = StreamEvent(
        StreamEventType.TOOL_CALL,
        tool_call=ToolCall(id="call_1", name="get_time", arguments={"timezone": "UTC"}),
    )
    assert StreamService.format_event(event) == (
        '9:{"toolCallId":"call_1","toolName":"get_time","args":{"timezone":"UTC"}}\n'
    )


def test_format_event_renders_step_finish_with_usage():
    """Given a stop event, format_event should emit an e part with usage and isContinued."""
    event = StreamEvent(
        StreamEventType.STOP,
        finish_reason="tool_calls",
        usage=TokenUsageInfo(prompt_tokens=10, completion_tokens=3),
    )
    assert StreamService.format_event(event) == (
        'e:{"finishReason":"tool-calls","usage":{"promptTokens":10,"completionTokens":3},"isContinued":false}\n'
    )


def test_format_event_renders_message_finish():
    """Given a finish event, format_event should emit a d part with the aggregate usage."""
    event = StreamEvent(StreamEventType.FINISH, finish_reason="stop", usage=TokenUsageInfo(20, 7))
    assert StreamService.format_event(event) == (
        'd:{"finishReason":"stop","usage":{"promptTokens":20,"completionTokens":7}}\n'
    )


def test_missing_usage_is_reported_as_zero():
    """Given a stop event without usage, format_event should report zero tokens."""
    line = StreamService.format_event(StreamEvent(StreamEventType.STOP, finish_reason="stop"))
    assert '"usage":{"promptTokens":0,"completionTokens":0}' in line


def test_format_tool_result_and_error():
    """Given a tool result and an error, the a and 3 parts should be rendered."""
    assert StreamService.format_tool_result("call_1", {"ok": True}) == 'a:{"toolCallId":"call_1","result":{"ok":true}}\n'
    assert StreamService.format_error("An error occurred.") == '3:"An error occurred."\n'


@pytest.mark.parametrize("error, expected", [
    (ProviderError("Too many requests", 429), StreamMessages.RATE_LIMITED),
    (RuntimeError("upstream rate limit hit"), StreamMessages.RATE_LIMITED),
    (ProviderError("bad gateway", 502), StreamMessages.GENERIC),
    (ValueError("internal detail that must not leak"), StreamMessages.GENERIC),
])
def test_error_message_hides_details(error, expected):
    """Given a streaming failure, error_message should return only the user-facing text."""
    assert StreamService.error_message(error) == expected


def test_data_stream_header_is_set():
    """Given the streaming headers, they should announce the v1 data stream."""
    assert DATA_STREAM_HEADERS["x-vercel-ai-data-stream"] == "v1"
