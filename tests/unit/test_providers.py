import json
import httpx
import ollama
import pytest

from config import Config
from models.chat_models import StreamEventType
from services.providers import OpenAIStreamParser, ProviderService, split_model_id
from tests.fixtures.mock_clients import OllamaClientBuilder
from tests.fixtures.responses import OPENAI_CITATION_CHUNK, OPENAI_TEXT_CHUNKS, OPENAI_TOOL_CALL_CHUNKS
from utils.errors import ProviderError


def sse_body(chunks):
    lines = [f"data: {json.dumps(chunk)}" for chunk in chunks]
    return ("\n\n".join(lines + ["data: [DONE]"]) + "\n\n").encode()


def feed_all(parser, chunks):
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    return events + parser.finish()


async def collect(stream):
    return [event async for event in stream]


@pytest.mark.parametrize("model_id, expected", [
    ("openrouter/openai/gpt-4.1", ("openrouter", "openai/gpt-4.1")),
    ("requesty/anthropic/claude-3.5-sonnet", ("requesty", "anthropic/claude-3.5-sonnet")),
    ("ollama/llama3.2:3b", ("ollama", "llama3.2:3b")),
])
def test_split_model_id(model_id, expected):
    """Given a prefixed model id, split_model_id should separate provider and provider model."""
    assert split_model_id(model_id) == expected


@pytest.mark.parametrize("model_id", ["gpt-4.1", "unknown/model", "openrouter/"])
def test_split_model_id_rejects_unknown_providers(model_id):
    """Given an unsupported id, split_model_id should raise a 400 ProviderError."""
    with pytest.raises(ProviderError) as exc_info:
        split_model_id(model_id)
    assert exc_info.value.status_code == 400


def test_parser_streams_text_and_usage():
    """Given text chunks and a usage chunk, the parser should emit tokens then a stop with usage."""
    events = feed_all(OpenAIStreamParser("openrouter"), OPENAI_TEXT_CHUNKS)

    assert [e.content for e in events if e.type == StreamEventType.TOKEN] == ["Hello", " there"]
    stop = events[-1]
    assert stop.type == StreamEventType.STOP
    assert stop.finish_reason == "stop"
    assert (stop.usage.prompt_tokens, stop.usage.completion_tokens) == (11, 2)
    assert stop.usage.cost == pytest.approx(0.00004)


def test_parser_accumulates_tool_call_fragments():
    """Given tool call fragments across chunks, the parser should emit one complete tool call."""
    events = feed_all(OpenAIStreamParser("requesty"), OPENAI_TOOL_CALL_CHUNKS)

    tool_calls = [e.tool_call for e in events if e.type == StreamEventType.TOOL_CALL]
    assert len(tool_calls) == 1
    assert tool_calls[0].id == "call_abc"
    assert tool_calls[0].name == "get_time"
    assert tool_calls[0].arguments == {"timezone": "UTC"}
    assert events[-1].finish_reason == "tool_calls"


def test_parser_tolerates_invalid_tool_arguments():
    """Given unparseable tool arguments, the parser should still emit the call with empty args."""
    parser = OpenAIStreamParser("openrouter")
    parser.feed({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "id": "call_1", "function": {"name": "lookup", "arguments": "{not json"}},
    ]}}]})

    events = parser.finish()

    assert events[0].tool_call.arguments == {}
    assert events[-1].finish_reason == "tool_calls"


def test_parser_separates_think_tags_and_reasoning_fields():
    """Given <think> text and reasoning deltas, the parser should emit reasoning events for both."""
    events = feed_all(OpenAIStreamParser("openrouter"), [
        {"choices": [{"delta": {"reasoning": "native thoughts"}}]},
        {"choices": [{"delta": {"content": "<think>tagged</think>Answer"}}]},
    ])

    reasoning = [e.content for e in events if e.type == StreamEventType.REASONING]
    text = [e.content for e in events if e.type == StreamEventType.TOKEN]
    assert reasoning == ["native thoughts", "tagged"]
    assert text == ["Answer"]


def test_parser_collects_annotations():
    """Given url citation annotations, the parser should attach them to the stop event."""
    events = feed_all(OpenAIStreamParser("openrouter"), [OPENAI_CITATION_CHUNK])
    assert events[-1].annotations[0]["url_citation"]["url"] == "https://example.com"


def test_parser_raises_on_error_chunk():
    """Given an error chunk, the parser should raise a ProviderError with its code."""
    parser = OpenAIStreamParser("openrouter")
    with pytest.raises(ProviderError) as exc_info:
        parser.feed({"error": {"message": "Rate limit exceeded", "code": 429}})
    assert exc_info.value.is_rate_limit


def test_build_headers_prefers_user_key(monkeypatch):
    """Given a user-supplied key, build_headers should use it over the server key."""
    monkeypatch.setattr(Config, "OPENROUTER_API_KEY", "server-key")

    headers = ProviderService.build_headers("openrouter", {"OPENROUTER_API_KEY": "user-key"})

    assert headers["Authorization"] == "Bearer user-key"
    assert headers["X-Title"] == Config.APP_TITLE


def test_build_headers_without_any_key_fails(monkeypatch):
    """Given no server or user key, build_headers should raise a 401 ProviderError."""
    monkeypatch.setattr(Config, "REQUESTY_API_KEY", "")
    monkeypatch.delenv("REQUESTY_API_KEY", raising=False)

    with pytest.raises(ProviderError) as exc_info:
        ProviderService.build_headers("requesty")
    assert exc_info.value.status_code == 401


def test_build_request_body_per_provider():
    """Given each provider, build_request_body should request usage the way that provider expects."""
    messages = [{"role": "user", "content": "Hi"}]

    openrouter = ProviderService.build_request_body(
        "openrouter", "openai/gpt-4.1", messages,
        temperature=0.2, max_tokens=100, user_id="chatlima_user_1",
        web_search_options={"web_search_options": {"search_context_size": "high"}},
    )
    requesty = ProviderService.build_request_body("requesty", "openai/gpt-4.1", messages)

    assert openrouter["usage"] == {"include": True}
    assert openrouter["user"] == "chatlima_user_1"
    assert openrouter["web_search_options"] == {"search_context_size": "high"}
    assert openrouter["temperature"] == 0.2 and openrouter["max_tokens"] == 100
    assert "tools" not in openrouter
    assert requesty["stream_options"] == {"include_usage": True}
    assert "user" not in requesty


@pytest.mark.anyio
async def test_stream_openai_compatible_parses_sse():
    """Given an SSE response, stream_openai_compatible should yield parsed events and skip bad lines."""
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        body = b": keep-alive\n\ndata: {broken\n\n" + sse_body(OPENAI_TEXT_CHUNKS)
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        events = await collect(ProviderService.stream_openai_compatible(
            "openrouter", {"Authorization": "Bearer k"}, {"model": "openai/gpt-4.1", "stream": True}, client=client,
        ))

    assert captured["url"].endswith("/chat/completions")
    assert captured["body"]["model"] == "openai/gpt-4.1"
    assert "".join(e.content for e in events if e.type == StreamEventType.TOKEN) == "Hello there"
    assert events[-1].type == StreamEventType.STOP


@pytest.mark.anyio
async def test_stream_openai_compatible_raises_on_http_error():
    """Given a non-200 response, stream_openai_compatible should raise a ProviderError with the status."""
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as exc_info:
            await collect(ProviderService.stream_openai_compatible(
                "requesty", {}, {"model": "m", "stream": True}, client=client,
            ))

    assert exc_info.value.status_code == 429
    assert exc_info.value.is_rate_limit


@pytest.mark.anyio
async def test_stream_ollama_yields_tokens_and_usage(mock_ollama_client):
    """Given an Ollama stream, stream_ollama should yield tokens and a stop with eval counts."""
    events = await collect(ProviderService.stream_ollama(
        "llama3.2:3b", [{"role": "user", "content": "Hi"}], temperature=0.5, client=mock_ollama_client,
    ))

    assert [e.content for e in events if e.type == StreamEventType.TOKEN] == ["streamed ", "response"]
    stop = events[-1]
    assert stop.finish_reason == "stop"
    assert (stop.usage.prompt_tokens, stop.usage.completion_tokens) == (12, 4)
    assert mock_ollama_client.chat.call_args.kwargs["options"] == {"temperature": 0.5}


@pytest.mark.anyio
async def test_stream_ollama_reports_tool_calls():
    """Given tool calls in Ollama chunks, stream_ollama should emit them and finish with tool_calls."""
    client = OllamaClientBuilder().set_response(1, [
        {"message": {"content": "", "tool_calls": [{"function": {"name": "get_time", "arguments": {"tz": "UTC"}}}]}},
        {"message": {"content": ""}, "done": True, "prompt_eval_count": 5, "eval_count": 1},
    ]).build()

    events = await collect(ProviderService.stream_ollama("llama3.2:3b", [], client=client))

    tool_calls = [e.tool_call for e in events if e.type == StreamEventType.TOOL_CALL]
    assert tool_calls[0].name == "get_time"
    assert tool_calls[0].arguments == {"tz": "UTC"}
    assert events[-1].finish_reason == "tool_calls"


@pytest.mark.anyio
async def test_stream_ollama_wraps_response_errors():
    """Given an Ollama ResponseError, stream_ollama should raise a ProviderError with its status."""
    client = OllamaClientBuilder().build()
    client.chat.side_effect = ollama.ResponseError("model not found", 404)

    with pytest.raises(ProviderError) as exc_info:
        await collect(ProviderService.stream_ollama("missing", [], client=client))

    assert exc_info.value.status_code == 404


def test_convert_to_ollama_messages_inlines_images_and_tool_calls():
    """Given OpenAI-style messages, convert_to_ollama_messages should map images and tool calls."""
    messages = [
        {"role": "user", "content": [
            {"type": "text", "text": "What is this?"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}},
        ]},
        {"role": "assistant", "content": None, "tool_calls": [
            {"id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": "{\"q\": \"x\"}"}},
        ]},
        {"role": "tool", "tool_call_id": "call_1", "name": "lookup", "content": "found"},
    ]

    converted = ProviderService.convert_to_ollama_messages(messages)

    assert converted[0] == {"role": "user", "content": "What is this?", "images": ["QUJD"]}
    assert converted[1]["tool_calls"] == [{"function": {"name": "lookup", "arguments": {"q": "x"}}}]
    assert converted[2]["tool_name"] == "lookup"


def test_stream_completion_routes_web_search_to_online_model(monkeypatch):
    """Given web search options for OpenRouter, stream_completion should request the online model variant."""
    calls = []
    monkeypatch.setattr(
        ProviderService, "stream_openai_compatible",
        lambda provider, headers, body, client=None: calls.append((provider, headers, body)) or "stream",
    )

    result = ProviderService.stream_completion(
        "openrouter/openai/gpt-4.1",
        [{"role": "user", "content": "news?"}],
        api_keys={"OPENROUTER_API_KEY": "user-key"},
        web_search_options={"web_search_options": {"search_context_size": "low"}},
    )

    assert result == "stream"
    provider, headers, body = calls[0]
    assert provider == "openrouter"
    assert headers["Authorization"] == "Bearer user-key"
    assert body["model"] == "openai/gpt-4.1:online"
    assert body["web_search_options"] == {"search_context_size": "low"}


def test_stream_completion_dispatches_ollama(monkeypatch):
    """Given an ollama model id, stream_completion should call the Ollama streamer without a key."""
    calls = []
    monkeypatch.setattr(
        ProviderService, "stream_ollama",
        lambda model, messages, tools, temperature, max_tokens: calls.append(model) or "ollama-stream",
    )

    assert ProviderService.stream_completion("ollama/llama3.2:3b", []) == "ollama-stream"
    assert calls == ["llama3.2:3b"]
