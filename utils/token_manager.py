"""
Token estimation utilities.
Used when a provider stream ends without reporting usage.
"""
from utils.logger import app_logger


class TokenManager:
    """Estimates token counts for text and chat messages."""

    # Per-message framing overhead (role, separators)
    MESSAGE_OVERHEAD = 4

    # Flat estimate for an image part
    IMAGE_TOKENS = 85

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Estimate token count for text using character-based approximation."""
        if not text:
            return 0

        char_estimate = len(text) // 4
        word_estimate = len(text.split())

        return int((char_estimate * 0.6) + (word_estimate * 0.4))

    @staticmethod
    def estimate_content_tokens(content) -> int:
        """Estimate tokens for provider message content (string or content parts)."""
        if isinstance(content, str):
            return TokenManager.estimate_tokens(content)

        total = 0
        for part in content or []:
            if part.get("type") == "text":
                total += TokenManager.estimate_tokens(part.get("text", ""))
            elif part.get("type") == "image_url":
                total += TokenManager.IMAGE_TOKENS
        return total

    @staticmethod
    def calculate_messages_tokens(messages: list[dict]) -> int:
        """Calculate total tokens for a list of provider messages."""
        total_tokens = 0

        for msg in messages:
            total_tokens += TokenManager.estimate_content_tokens(msg.get('content', ''))
            total_tokens += TokenManager.MESSAGE_OVERHEAD

        app_logger.debug(f"Estimated {total_tokens} prompt tokens across {len(messages)} messages")
        return total_tokens

    @staticmethod
    def estimate_cost(prompt_tokens: int, completion_tokens: int, input_price: float, output_price: float) -> float:
        """Cost of a completion given per-token prices."""
        return prompt_tokens * input_price + completion_tokens * output_price
