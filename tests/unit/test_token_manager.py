import pytest
from utils.token_manager import TokenManager


@pytest.mark.parametrize("text, expected", [
    ("", 0),
    ("hello world", 2),
    ("one two three four five six seven eight", 8),
])
def test_estimate_tokens(text, expected):
    """Given text, estimate_tokens should blend character and word estimates."""
    assert TokenManager.estimate_tokens(text) == expected


def test_estimate_content_tokens_counts_images_flat():
    """Given content parts with an image, estimate_content_tokens should add the flat image estimate."""
    content = [
        {"type": "text", "text": "hello world"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ]
    assert TokenManager.estimate_content_tokens(content) == 2 + TokenManager.IMAGE_TOKENS


def test_estimate_content_tokens_accepts_strings_and_none():
    """Given string or missing content, estimate_content_tokens should handle both."""
    assert TokenManager.estimate_content_tokens("hello world") == 2
    assert TokenManager.estimate_content_tokens(None) == 0


def test_calculate_messages_tokens_adds_overhead_per_message():
    """Given a list of messages, calculate_messages_tokens should add framing overhead for each."""
    messages = [
        {"role": "system", "content": "hello world"},
        {"role": "assistant", "content": None, "tool_calls": []},
    ]
    assert TokenManager.calculate_messages_tokens(messages) == 2 + 2 * TokenManager.MESSAGE_OVERHEAD


def test_estimate_cost_uses_per_token_prices():
    """Given token counts and per-token prices, estimate_cost should return the combined cost."""
    cost = TokenManager.estimate_cost(1000, 500, 0.000003, 0.000015)
    assert cost == pytest.approx(0.0105)
