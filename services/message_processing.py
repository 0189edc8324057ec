"""
Message processing for chat requests.
Merges attachments into the conversation, validates message structure and
converts UI messages into the provider chat format.
"""
import copy
import time
from typing import Optional
from models.api_models import Attachment
from models.catalog_models import ModelInfo
from models.chat_models import ProcessedMessages
from utils.constants import THINK_TAG_INSTRUCTION, THINK_TAG_MODELS, VALID_MESSAGE_ROLES
from utils.errors import AttachmentError, MessageValidationError
from utils.logger import app_logger


def _as_dict(message) -> dict:
    if isinstance(message, dict):
        return copy.deepcopy(message)
    return message.model_dump(exclude_none=True)


class ChatMessageProcessingService:
    """Service for attachment merging and message validation."""

    @staticmethod
    def process_messages_with_attachments(
        messages: list,
        attachments: list[Attachment],
        model_id: str,
        model_info: Optional[ModelInfo],
    ) -> ProcessedMessages:
        """
        Append uploaded images to the last user message.

        Args:
            messages: UI messages (models or dicts)
            attachments: Uploaded files
            model_id: Selected model id
            model_info: Catalog entry for the model

        Returns:
            ProcessedMessages with dict messages

        Raises:
            AttachmentError: Attachments given for a model without vision
        """
        processed = [_as_dict(message) for message in messages]

        if not attachments:
            return ProcessedMessages(messages=processed, has_attachments=False)

        if model_info is None or model_info.vision is not True:
            raise AttachmentError(
                f"Selected model {model_id} does not support image inputs. "
                "Please choose a vision-capable model."
            )

        last_message = processed[-1] if processed else None
        if last_message is None or last_message.get("role") != "user":
            app_logger.warning(
                f"Dropping {len(attachments)} attachment(s): last message is not from the user"
            )
            return ProcessedMessages(messages=processed, has_attachments=True)

        parts = last_message.get("parts") or [{"type": "text", "text": last_message.get("content") or ""}]
        for attachment in attachments:
            parts.append({
                "type": "image_url",
                "image_url": {"url": attachment.url, "detail": "auto"},
                "metadata": {
                    "filename": attachment.name,
                    "mimeType": attachment.content_type,
                    "size": 0,
                    "width": 0,
                    "height": 0,
                },
            })
        last_message["parts"] = parts

        app_logger.info(f"Attached {len(attachments)} image(s) to the last user message")
        return ProcessedMessages(messages=processed, has_attachments=True)

    @staticmethod
    def add_model_specific_instructions(messages: list[dict], model_id: str) -> list[dict]:
        """Prepend the <think> tag instruction for reasoning models that need it."""
        model_messages = list(messages)

        if model_id in THINK_TAG_MODELS:
            model_messages.insert(0, {
                "id": f"system_{int(time.time() * 1000)}",
                "role": "system",
                "content": THINK_TAG_INSTRUCTION,
                "parts": [{"type": "text", "text": THINK_TAG_INSTRUCTION}],
            })

        return model_messages

    @staticmethod
    def validate_messages(messages: list) -> None:
        """
        Raises:
            MessageValidationError: Empty list, unknown role, or empty message
        """
        if not messages:
            raise MessageValidationError("Messages array is required and cannot be empty")

        for message in messages:
            data = _as_dict(message)
            role = data.get("role")
            if role not in VALID_MESSAGE_ROLES:
                raise MessageValidationError(f"Invalid message role: {role}")
            if not data.get("content") and not data.get("parts"):
                raise MessageValidationError("Message must have either content or parts")

    @staticmethod
    def get_message_text(message: dict) -> str:
        """Concatenated text of a UI message."""
        parts = message.get("parts")
        if parts:
            return "".join(part.get("text", "") for part in parts if part.get("type") == "text")
        return message.get("content") or ""

    @staticmethod
    def convert_to_provider_messages(messages: list[dict], system_prompt: Optional[str] = None) -> list[dict]:
        """
        Flatten UI messages into OpenAI-style chat messages.
        Image parts become `image_url` content entries; tool and reasoning
        parts are not replayed.
        """
        provider_messages = []
        if system_prompt:
            provider_messages.append({"role": "system", "content": system_prompt})

        for message in messages:
            role = message.get("role")
            parts = message.get("parts")

            if not parts:
                provider_messages.append({"role": role, "content": message.get("content") or ""})
                continue

            content = []
            for part in parts:
                if part.get("type") == "text" and part.get("text"):
                    content.append({"type": "text", "text": part["text"]})
                elif part.get("type") == "image_url" and role == "user":
                    content.append({"type": "image_url", "image_url": part["image_url"]})

            if len(content) == 1 and content[0]["type"] == "text":
                provider_messages.append({"role": role, "content": content[0]["text"]})
            elif content:
                provider_messages.append({"role": role, "content": content})
            else:
                provider_messages.append({"role": role, "content": message.get("content") or ""})

        return provider_messages
