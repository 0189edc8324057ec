"""
Completion providers.
Each provider turns one chat-completion call into an async sequence of
StreamEvents: TOKEN, REASONING and TOOL_CALL events followed by one STOP.
"""
import json
from typing import AsyncIterator, Optional
import httpx
import ollama
from config import Config
from models.chat_models import StreamEvent, StreamEventType, TokenUsageInfo, ToolCall
from services.web_search_service import ChatWebSearchService
from utils.errors import ProviderError
from utils.http_client import HTTPClientManager
from utils.logger import app_logger
from utils.streaming_sanitizer import ReasoningTagExtractor

OPENAI_COMPATIBLE_PROVIDERS = ("openrouter", "requesty")
SUPPORTED_PROVIDERS = OPENAI_COMPATIBLE_PROVIDERS + ("ollama",)


def split_model_id(model_id: str) -> tuple[str, str]:
    """`openrouter/openai/gpt-4.1` -> ("openrouter", "openai/gpt-4.1")."""
    provider, _, provider_model = model_id.partition("/")
    if not provider_model or provider not in SUPPORTED_PROVIDERS:
        raise ProviderError(f"Unsupported model provider for {model_id}", 400)
    return provider, provider_model


def _parse_usage(usage: Optional[dict]) -> Optional[TokenUsageInfo]:
    if not usage:
        return None
    return TokenUsageInfo(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        cost=usage.get("cost"),
    )


class OpenAIStreamParser:
    """
    Converts OpenAI-compatible chat-completion chunks into StreamEvents.

    Text passes through a <think> tag extractor; tool call fragments are
    accumulated by index and emitted once the call is complete.
    """

    def __init__(self, provider: str):
        self.provider = provider
        self.extractor = ReasoningTagExtractor()
        self.tool_calls: dict[int, dict] = {}
        self.finish_reason: Optional[str] = None
        self.usage: Optional[TokenUsageInfo] = None
        self.annotations: list[dict] = []

    def _text_events(self, text: str, reasoning: str) -> list[StreamEvent]:
        events = []
        if reasoning:
            events.append(StreamEvent(StreamEventType.REASONING, content=reasoning))
        if text:
            events.append(StreamEvent(StreamEventType.TOKEN, content=text))
        return events

    def feed(self, chunk: dict) -> list[StreamEvent]:
        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ProviderError(message or f"{self.provider} stream error", code if isinstance(code, int) else None)

        events: list[StreamEvent] = []
        usage = _parse_usage(chunk.get("usage"))
        if usage is not None:
            self.usage = usage

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}

            reasoning = delta.get("reasoning") or delta.get("reasoning_content")
            if reasoning:
                events.append(StreamEvent(StreamEventType.REASONING, content=reasoning))

            content = delta.get("content")
            if content:
                events.extend(self._text_events(*self.extractor.process_token(content)))

            for fragment in delta.get("tool_calls") or []:
                entry = self.tool_calls.setdefault(fragment.get("index", 0), {"id": "", "name": "", "arguments": ""})
                if fragment.get("id"):
                    entry["id"] = fragment["id"]
                function = fragment.get("function") or {}
                if function.get("name"):
                    entry["name"] += function["name"]
                if function.get("arguments"):
                    entry["arguments"] += function["arguments"]

            self.annotations.extend(delta.get("annotations") or [])
            self.annotations.extend((choice.get("message") or {}).get("annotations") or [])

            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]

        return events

    def finish(self) -> list[StreamEvent]:
        """Flush buffered text and pending tool calls, then the STOP event."""
        events = self._text_events(*self.extractor.flush())

        for index in sorted(self.tool_calls):
            entry = self.tool_calls[index]
            try:
                arguments = json.loads(entry["arguments"]) if entry["arguments"] else {}
            except json.JSONDecodeError:
                app_logger.warning(f"Invalid tool arguments from {self.provider} for {entry['name']}")
                arguments = {}
            events.append(StreamEvent(
                StreamEventType.TOOL_CALL,
                tool_call=ToolCall(id=entry["id"] or f"call_{index}", name=entry["name"], arguments=arguments),
            ))

        finish_reason = self.finish_reason or ("tool_calls" if self.tool_calls else "stop")
        events.append(StreamEvent(
            StreamEventType.STOP,
            finish_reason=finish_reason,
            usage=self.usage,
            annotations=list(self.annotations),
        ))
        return events


class ProviderService:
    """Service for streaming completions from the configured providers."""

    @staticmethod
    def build_headers(provider: str, api_keys: Optional[dict] = None) -> dict:
        api_key = Config.provider_api_key(provider, api_keys)
        if not api_key:
            raise ProviderError(f"No API key configured for {provider}", 401)

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if provider == "openrouter":
            headers["HTTP-Referer"] = Config.APP_URL
            headers["X-Title"] = Config.APP_TITLE
        return headers

    @staticmethod
    def build_request_body(
        provider: str,
        provider_model: str,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_id: Optional[str] = None,
        web_search_options: Optional[dict] = None,
    ) -> dict:
        body = {"model": provider_model, "messages": messages, "stream": True}
        if tools:
            body["tools"] = tools
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        if provider == "openrouter":
            body["usage"] = {"include": True}
            if user_id:
                body["user"] = user_id
            if web_search_options:
                body.update(web_search_options)
        else:
            body["stream_options"] = {"include_usage": True}

        return body

    @staticmethod
    def base_url(provider: str) -> str:
        if provider == "openrouter":
            return Config.OPENROUTER_BASE_URL
        return Config.REQUESTY_BASE_URL

    @staticmethod
    async def stream_openai_compatible(
        provider: str,
        headers: dict,
        body: dict,
        client: Optional[httpx.AsyncClient] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        POST a streaming chat completion and parse its SSE lines.

        Raises:
            ProviderError: Non-200 response or an error chunk in the stream
        """
        client = client or HTTPClientManager.get_provider_client()
        url = f"{ProviderService.base_url(provider).rstrip('/')}/chat/completions"
        parser = OpenAIStreamParser(provider)

        app_logger.info(f"Streaming {body['model']} from {provider}")
        async with client.stream("POST", url, headers=headers, json=body) as response:
            if response.status_code != 200:
                error_body = (await response.aread()).decode(errors="replace")
                app_logger.error(f"{provider} returned {response.status_code}: {error_body[:500]}")
                raise ProviderError(f"{provider} request failed with status {response.status_code}", response.status_code)

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    app_logger.debug(f"Skipping malformed chunk from {provider}: {data[:200]}")
                    continue
                for event in parser.feed(chunk):
                    yield event

        for event in parser.finish():
            yield event

    @staticmethod
    def convert_to_ollama_messages(messages: list[dict]) -> list[dict]:
        """OpenAI-style messages to the Ollama chat format."""
        converted = []
        for message in messages:
            content = message.get("content")
            entry = {"role": message["role"], "content": ""}

            if isinstance(content, list):
                texts, images = [], []
                for part in content:
                    if part.get("type") == "text":
                        texts.append(part.get("text", ""))
                    elif part.get("type") == "image_url":
                        url = part["image_url"]["url"]
                        if url.startswith("data:") and "," in url:
                            images.append(url.split(",", 1)[1])
                        else:
                            app_logger.warning("Ollama only accepts inline images, skipping image URL")
                entry["content"] = "\n".join(texts)
                if images:
                    entry["images"] = images
            else:
                entry["content"] = content or ""

            if message.get("tool_calls"):
                entry["tool_calls"] = [
                    {"function": {
                        "name": call["function"]["name"],
                        "arguments": json.loads(call["function"]["arguments"] or "{}"),
                    }}
                    for call in message["tool_calls"]
                ]
            if message["role"] == "tool" and message.get("name"):
                entry["tool_name"] = message["name"]

            converted.append(entry)
        return converted

    @staticmethod
    async def stream_ollama(
        model: str,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[ollama.AsyncClient] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat from a self-hosted Ollama server.

        Raises:
            ProviderError: Ollama returned an error
        """
        client = client or ollama.AsyncClient(host=Config.OLLAMA_HOST)
        options = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens

        extractor = ReasoningTagExtractor()
        usage = TokenUsageInfo()
        tool_calls: list[ToolCall] = []
        finish_reason = "stop"

        app_logger.info(f"Streaming {model} from ollama")
        try:
            stream = await client.chat(
                model=model,
                messages=ProviderService.convert_to_ollama_messages(messages),
                tools=tools or None,
                options=options or None,
                stream=True,
            )
            async for chunk in stream:
                text, reasoning = extractor.process_token(chunk['message']['content'] or "")
                if reasoning:
                    yield StreamEvent(StreamEventType.REASONING, content=reasoning)
                if text:
                    yield StreamEvent(StreamEventType.TOKEN, content=text)

                for call in chunk['message'].get('tool_calls') or []:
                    tool_calls.append(ToolCall(
                        id=f"call_{len(tool_calls)}",
                        name=call['function']['name'],
                        arguments=dict(call['function']['arguments'] or {}),
                    ))

                if chunk.get('done'):
                    usage = TokenUsageInfo(
                        prompt_tokens=chunk.get('prompt_eval_count') or 0,
                        completion_tokens=chunk.get('eval_count') or 0,
                    )
                    finish_reason = chunk.get('done_reason') or "stop"
        except ollama.ResponseError as e:
            app_logger.error(f"Ollama error: {e.error}")
            raise ProviderError(e.error, e.status_code) from e

        text, reasoning = extractor.flush()
        if reasoning:
            yield StreamEvent(StreamEventType.REASONING, content=reasoning)
        if text:
            yield StreamEvent(StreamEventType.TOKEN, content=text)

        for call in tool_calls:
            yield StreamEvent(StreamEventType.TOOL_CALL, tool_call=call)

        yield StreamEvent(
            StreamEventType.STOP,
            finish_reason="tool_calls" if tool_calls else finish_reason,
            usage=usage,
        )

    @staticmethod
    def stream_completion(
        model_id: str,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
        api_keys: Optional[dict] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        user_id: Optional[str] = None,
        web_search_options: Optional[dict] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Dispatch one completion call to the provider named by the model id prefix."""
        provider, provider_model = split_model_id(model_id)

        if provider == "ollama":
            return ProviderService.stream_ollama(provider_model, messages, tools, temperature, max_tokens)

        if web_search_options and provider == "openrouter":
            provider_model = ChatWebSearchService.get_web_search_model_id(provider_model)

        headers = ProviderService.build_headers(provider, api_keys)
        body = ProviderService.build_request_body(
            provider,
            provider_model,
            messages,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            user_id=user_id,
            web_search_options=web_search_options,
        )
        return ProviderService.stream_openai_compatible(provider, headers, body)
