"""
Chat service containing core chat processing logic.
Runs the request pipeline before streaming and drives the completion loop
(provider events, MCP tool steps, persistence) while streaming.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession
from config import Config
from db.session import get_sessionmaker
from db.tables import new_id
from models.api_models import ChatRequest
from models.catalog_models import ModelInfo
from models.chat_models import (
    AuthenticatedUser,
    ChatContext,
    StreamEvent,
    StreamEventType,
    TokenUsageInfo,
    ToolCall,
)
from services.credit_service import CreditService
from services.database_service import ChatDatabaseService
from services.mcp_service import ChatMCPServerService, tool_result_to_text
from services.message_processing import ChatMessageProcessingService
from services.model_catalog import ModelCatalogService, get_model_catalog
from services.providers import ProviderService, split_model_id
from services.stream_service import StreamService
from services.usage_limits import DailyMessageUsageService, UsageLimitsService
from services.web_search_service import ChatWebSearchService
from utils.cache import RequestCache
from utils.constants import (
    BASE_SYSTEM_PROMPT,
    MCP_DISABLED_MODELS,
    WEB_SEARCH_PROMPT_SECTION,
    ErrorCode,
)
from utils.errors import (
    AttachmentError,
    ChatLimaError,
    MCPConfigurationError,
    MessageValidationError,
    ProviderError,
)
from utils.logger import app_logger
from utils.token_manager import TokenManager

CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

PROMPT_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:previous|above|earlier)\s+instructions?", re.IGNORECASE),
    re.compile(r"forget\s+(?:everything|all)\s+(?:previous|above|earlier)", re.IGNORECASE),
    re.compile(r"new\s+instructions?:", re.IGNORECASE),
    re.compile(r"system\s*:\s*you\s+are\s+now", re.IGNORECASE),
    re.compile(r"override\s+(?:previous|above|earlier)\s+instructions?", re.IGNORECASE),
    re.compile(r"\[INST\]|\[/INST\]", re.IGNORECASE),
    re.compile(r"<\s*system\s*>", re.IGNORECASE),
    re.compile(r"assistant\s*:\s*i\s+(?:am|will)\s+now", re.IGNORECASE),
]

MIN_SYSTEM_INSTRUCTION_LENGTH = 10


class ChatService:
    """Service for handling chat logic."""

    @staticmethod
    def sanitize_system_instruction(instruction: str) -> str:
        """Strip control characters and collapse whitespace."""
        return re.sub(r"\s+", " ", CONTROL_CHARACTERS.sub("", instruction).strip())

    @staticmethod
    def validate_request_parameters(
        model_info: Optional[ModelInfo],
        max_tokens: Optional[int],
        system_instruction: Optional[str],
    ) -> list[str]:
        """Parameter errors for the selected model; empty when valid."""
        errors = []

        if max_tokens is not None and model_info is not None and model_info.max_tokens_range is not None:
            token_range = model_info.max_tokens_range
            if not token_range.min <= max_tokens <= token_range.max:
                errors.append(f"Max tokens must be between {token_range.min} and {token_range.max}")

        if system_instruction is not None:
            if len(system_instruction) < MIN_SYSTEM_INSTRUCTION_LENGTH:
                errors.append(f"System instruction must be at least {MIN_SYSTEM_INSTRUCTION_LENGTH} characters")
            if any(pattern.search(system_instruction) for pattern in PROMPT_INJECTION_PATTERNS):
                errors.append("System instruction contains potentially unsafe content")

        return errors

    @staticmethod
    def get_system_prompt(request: ChatRequest, web_search_enabled: bool, now: Optional[datetime] = None) -> str:
        """Custom instruction when given, otherwise the default assistant prompt."""
        web_search_section = WEB_SEARCH_PROMPT_SECTION if web_search_enabled else ""

        if request.system_instruction:
            return ChatService.sanitize_system_instruction(request.system_instruction) + web_search_section

        current_date = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        return BASE_SYSTEM_PROMPT.format(current_date=current_date, web_search_section=web_search_section)

    @staticmethod
    async def _resolve_model(catalog: ModelCatalogService, requested_id: str) -> tuple[str, Optional[ModelInfo]]:
        """
        Resolve the requested model.

        Returns:
            (model id after automatic migrations, catalog entry or None)
        """
        model_id = catalog.migrate_model_id(requested_id)
        try:
            split_model_id(model_id)
        except ProviderError as e:
            raise ChatLimaError(ErrorCode.MODEL_NOT_FOUND, str(e), status.HTTP_400_BAD_REQUEST)

        if catalog.blocklist.is_blocked(requested_id) or catalog.blocklist.is_blocked(model_id):
            raise ChatLimaError(ErrorCode.MODEL_NOT_FOUND, f"Model {requested_id} is not available", status.HTTP_404_NOT_FOUND)

        try:
            model_info = await catalog.get_model_details(model_id)
        except Exception as e:
            app_logger.error(f"Model catalog lookup failed for {model_id}: {e}")
            return model_id, None

        if model_info is None:
            app_logger.warning(f"No catalog entry for {model_id}, continuing without model details")
        return model_id, model_info

    @staticmethod
    async def prepare_chat_context(
        db: AsyncSession,
        request: ChatRequest,
        user: AuthenticatedUser,
        cache: Optional[RequestCache] = None,
        catalog: Optional[ModelCatalogService] = None,
    ) -> ChatContext:
        """
        Run every pre-stream check for a chat request.

        Args:
            db: Database session
            request: Parsed chat request
            user: Authenticated user
            cache: Request-scoped cache for credit lookups
            catalog: Model catalog, defaults to the process-wide one

        Returns:
            ChatContext ready for streaming

        Raises:
            ChatLimaError: A check failed; carries the HTTP status to return
        """
        cache = cache or RequestCache()
        catalog = catalog or get_model_catalog()
        model_id = request.selected_model

        try:
            ChatMessageProcessingService.validate_messages(request.messages)
        except MessageValidationError as e:
            raise ChatLimaError(ErrorCode.INVALID_REQUEST, str(e))

        model_id, model_info = await ChatService._resolve_model(catalog, model_id)

        try:
            processed = ChatMessageProcessingService.process_messages_with_attachments(
                request.messages, request.attachments, model_id, model_info
            )
        except AttachmentError as e:
            raise ChatLimaError(ErrorCode.VISION_NOT_SUPPORTED, str(e))

        parameter_errors = ChatService.validate_request_parameters(
            model_info, request.max_tokens, request.system_instruction
        )
        if parameter_errors:
            raise ChatLimaError(ErrorCode.INVALID_PARAMETERS, ", ".join(parameter_errors))

        using_own_api_keys = CreditService.check_if_using_own_api_keys(model_id, request.api_keys)
        credits = await CreditService.validate_credits(
            db, user, model_id, using_own_api_keys, request.web_search.enabled, cache
        )

        CreditService.validate_free_model_access(user, model_id, using_own_api_keys, credits.has_credits)
        CreditService.validate_premium_model_access(user, model_id, model_info, using_own_api_keys, credits.has_credits)

        if not using_own_api_keys:
            if not credits.has_credits:
                await DailyMessageUsageService.check_message_limit(db, user)
            await UsageLimitsService.enforce_usage_limits(db, user.user_id)

        web_search = ChatWebSearchService.validate_and_configure_web_search(
            request.web_search,
            model_id,
            using_own_api_keys,
            user.is_anonymous,
            credits.actual_credits,
            model_info,
        )

        if model_id not in MCP_DISABLED_MODELS:
            try:
                for server in request.mcp_servers:
                    ChatMCPServerService.validate_server_config(server)
            except MCPConfigurationError as e:
                raise ChatLimaError(ErrorCode.INVALID_REQUEST, str(e))

        chat_id = request.chat_id or new_id()
        if await ChatDatabaseService.is_owned_by_other_user(db, chat_id, user.user_id):
            raise ChatLimaError(ErrorCode.FORBIDDEN, "Chat belongs to another user", status.HTTP_403_FORBIDDEN)

        created = await ChatDatabaseService.create_chat_if_not_exists(db, chat_id, user.user_id, processed.messages)
        if not created.success:
            app_logger.error(f"[Chat {chat_id}] Error pre-emptively creating chat: {created.error}")

        return ChatContext(
            request=request,
            user=user,
            chat_id=chat_id,
            model_info=model_info,
            resolved_model_id=model_id,
            messages=processed.messages,
            system_prompt=ChatService.get_system_prompt(request, web_search.enabled),
            web_search=web_search,
            using_own_api_keys=using_own_api_keys,
            has_credits=credits.has_credits,
        )

    @staticmethod
    async def execute_tool_call(context: ChatContext, tool_call: ToolCall) -> Any:
        """Run one tool; failures come back as an error result for the model."""
        tool = context.tools.get(tool_call.name)
        if tool is None:
            app_logger.warning(f"Model requested unknown tool '{tool_call.name}'")
            return {"error": f"Tool {tool_call.name} not found"}

        try:
            return await tool.execute(tool_call.arguments)
        except Exception as e:
            app_logger.error(f"Tool '{tool_call.name}' failed: {e}")
            return {"error": str(e)}

    @staticmethod
    def extract_citations(annotations: list[dict]) -> list[dict]:
        citations = []
        for annotation in annotations:
            if annotation.get("type") != "url_citation":
                continue
            citation = annotation.get("url_citation") or {}
            citations.append({
                "url": citation.get("url"),
                "title": citation.get("title"),
                "content": citation.get("content"),
                "startIndex": citation.get("start_index"),
                "endIndex": citation.get("end_index"),
            })
        return citations

    @staticmethod
    def attach_citations(message: dict, annotations: list[dict]) -> dict:
        """Copy url citations onto the text parts of an assistant message."""
        citations = ChatService.extract_citations(annotations)
        if not citations or message.get("role") != "assistant":
            return message

        message["parts"] = [
            {**part, "citations": citations} if part.get("type") == "text" else part
            for part in message.get("parts") or []
        ]
        return message

    @staticmethod
    def calculate_cost(usage: TokenUsageInfo, model_info: Optional[ModelInfo]) -> float:
        if usage.cost is not None:
            return usage.cost
        if model_info is None or model_info.pricing is None:
            return 0.0
        return TokenManager.estimate_cost(
            usage.prompt_tokens, usage.completion_tokens, model_info.pricing.input, model_info.pricing.output
        )

    @staticmethod
    async def finalize_chat(
        db: AsyncSession,
        context: ChatContext,
        response_message: dict,
        usage: TokenUsageInfo,
        annotations: list[dict],
    ) -> None:
        """Persist the exchange and account for it. Each step is non-fatal."""
        user = context.user
        response_message = ChatService.attach_citations(response_message, annotations)

        result = await ChatDatabaseService.save_chat_and_messages(
            db, context.chat_id, user.user_id, [*context.messages, response_message], context.web_search
        )
        if not result.success:
            app_logger.error(f"[Chat {context.chat_id}] Failed to save chat: {result.error}")

        try:
            await UsageLimitsService.record_token_usage(
                db,
                user.user_id,
                context.chat_id,
                context.model_id,
                usage.prompt_tokens,
                usage.completion_tokens,
                ChatService.calculate_cost(usage, context.model_info),
            )
        except Exception as e:
            await db.rollback()
            app_logger.error(f"[Chat {context.chat_id}] Failed to record token usage: {e}")

        try:
            await DailyMessageUsageService.increment_message_count(db, user.user_id, user.is_anonymous)
        except Exception as e:
            await db.rollback()
            app_logger.error(f"[Chat {context.chat_id}] Failed to increment daily usage: {e}")

        if context.using_own_api_keys or user.is_anonymous:
            return

        cost = CreditService.calculate_request_cost(
            CreditService.is_free_model(context.model_id), context.web_search.additional_cost
        )
        try:
            await CreditService.deduct_credits(db, user.user_id, cost)
        except Exception as e:
            await db.rollback()
            app_logger.error(f"[Chat {context.chat_id}] Failed to deduct {cost} credits: {e}")

    @staticmethod
    async def stream_chat(context: ChatContext) -> AsyncIterator[str]:
        """
        Drive the completion loop and yield data-stream lines.

        MCP clients are opened here and closed in the same task, whatever
        way the stream ends.
        """
        mcp_result = None
        try:
            mcp_result = await ChatMCPServerService.initialize_mcp_servers(
                context.request.mcp_servers, context.model_id
            )
            context.tools = mcp_result.tools
            for failed in mcp_result.failed_servers:
                app_logger.warning(f"[Chat {context.chat_id}] MCP server unavailable: {failed.resource} ({failed.error})")

            model_messages = ChatMessageProcessingService.add_model_specific_instructions(
                context.messages, context.model_id
            )
            provider_messages = ChatMessageProcessingService.convert_to_provider_messages(
                model_messages, context.system_prompt
            )
            tools = [tool.to_openai_tool() for tool in context.tools.values()]
            web_search_options = ChatWebSearchService.create_web_search_options(context.web_search)

            total_usage = TokenUsageInfo()
            annotations: list[dict] = []
            parts: list[dict] = []
            full_text = ""
            finish_reason: Optional[str] = None

            while True:
                step = context.next_step_number()
                yield StreamService.format_step_start(f"msg-{new_id()}")

                step_text, step_reasoning = "", ""
                tool_calls: list[ToolCall] = []
                stop_event: Optional[StreamEvent] = None

                async for event in ProviderService.stream_completion(
                    context.model_id,
                    provider_messages,
                    tools=tools,
                    api_keys=context.api_keys,
                    temperature=context.request.temperature,
                    max_tokens=context.request.max_tokens,
                    user_id=context.user.open_router_user_id,
                    web_search_options=web_search_options,
                ):
                    if event.type == StreamEventType.STOP:
                        stop_event = event
                        continue
                    if event.type == StreamEventType.TOKEN:
                        step_text += event.content
                    elif event.type == StreamEventType.REASONING:
                        step_reasoning += event.content
                    elif event.type == StreamEventType.TOOL_CALL:
                        tool_calls.append(event.tool_call)
                    yield StreamService.format_event(event)

                stop_event = stop_event or StreamEvent(StreamEventType.STOP, finish_reason="stop")
                if stop_event.usage is None:
                    stop_event.usage = TokenUsageInfo(
                        prompt_tokens=TokenManager.calculate_messages_tokens(provider_messages),
                        completion_tokens=TokenManager.estimate_tokens(step_text),
                    )
                total_usage.add(stop_event.usage)
                annotations.extend(stop_event.annotations)

                if step_reasoning:
                    parts.append({
                        "type": "reasoning",
                        "reasoning": step_reasoning,
                        "details": [{"type": "text", "text": step_reasoning}],
                    })
                if step_text:
                    parts.append({"type": "text", "text": step_text})
                    full_text += step_text

                if not tool_calls:
                    finish_reason = stop_event.finish_reason
                    yield StreamService.format_event(stop_event)
                    break

                provider_messages.append({
                    "role": "assistant",
                    "content": step_text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in tool_calls
                    ],
                })
                for call in tool_calls:
                    result = await ChatService.execute_tool_call(context, call)
                    yield StreamService.format_tool_result(call.id, result)
                    parts.append({
                        "type": "tool-invocation",
                        "toolInvocation": {
                            "state": "result",
                            "step": step - 1,
                            "toolCallId": call.id,
                            "toolName": call.name,
                            "args": call.arguments,
                            "result": result,
                        },
                    })
                    provider_messages.append({
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": tool_result_to_text(result),
                    })

                yield StreamService.format_event(stop_event)

                if step >= Config.MAX_TOOL_STEPS:
                    app_logger.warning(f"[Chat {context.chat_id}] Reached {Config.MAX_TOOL_STEPS} tool steps, stopping")
                    finish_reason = stop_event.finish_reason
                    break

            response_message = {
                "id": new_id(),
                "role": "assistant",
                "content": full_text,
                "parts": parts or [{"type": "text", "text": ""}],
            }
            async with get_sessionmaker()() as db:
                await ChatService.finalize_chat(db, context, response_message, total_usage, annotations)

            yield StreamService.format_event(StreamEvent(
                StreamEventType.FINISH,
                finish_reason=finish_reason,
                usage=total_usage,
            ))
            app_logger.info(
                f"[Chat {context.chat_id}] Finished after {context.step_count} step(s), "
                f"{total_usage.total_tokens} tokens"
            )

        except Exception as e:
            app_logger.error(f"[Chat {context.chat_id}] Streaming chat error: {str(e)}")
            yield StreamService.format_error(StreamService.error_message(e))

        finally:
            if mcp_result is not None:
                for closed in await mcp_result.cleanup():
                    if not closed.ok:
                        app_logger.warning(f"[Chat {context.chat_id}] MCP cleanup failed for {closed.resource}: {closed.error}")
