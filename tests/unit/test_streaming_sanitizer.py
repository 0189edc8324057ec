"""Tests for ReasoningTagExtractor class."""
import pytest
from utils.streaming_sanitizer import ReasoningTagExtractor


@pytest.mark.parametrize("token", ["Hello ", "world", "a < b and c > d"])
def test_extractor_passes_plain_text(token):
    """Given text without tags, extractor should pass it through as answer text."""
    extractor = ReasoningTagExtractor()
    assert extractor.process_token(token) == (token, "")


def test_extractor_splits_complete_block():
    """Given a whole think block in one token, extractor should split reasoning from answer."""
    extractor = ReasoningTagExtractor()
    assert extractor.process_token("<think>plan steps</think>Answer") == ("Answer", "plan steps")


def test_extractor_handles_tags_split_across_tokens():
    """Given tags split across tokens, extractor should hold back partial tags until complete."""
    extractor = ReasoningTagExtractor()

    assert extractor.process_token("Hi <thi") == ("Hi ", "")
    assert extractor.process_token("nk>plan</th") == ("", "plan")
    assert extractor.process_token("ink>Done") == ("Done", "")
    assert extractor.in_reasoning is False


def test_extractor_streams_reasoning_before_close_tag():
    """Given an open think block, extractor should emit reasoning as it arrives."""
    extractor = ReasoningTagExtractor()

    assert extractor.process_token("<think>first ") == ("", "first ")
    assert extractor.process_token("second") == ("", "second")
    assert extractor.in_reasoning is True


def test_flush_returns_held_text():
    """Given a held partial tag outside reasoning, flush should return it as text."""
    extractor = ReasoningTagExtractor()
    extractor.process_token("a <")

    assert extractor.flush() == ("<", "")
    assert extractor.flush() == ("", "")


def test_flush_inside_reasoning_returns_reasoning():
    """Given an unterminated think block, flush should report the remainder as reasoning."""
    extractor = ReasoningTagExtractor()
    assert extractor.process_token("<think>abc<") == ("", "abc")

    assert extractor.flush() == ("", "<")


def test_custom_tag_name():
    """Given a custom tag name, extractor should only react to that tag."""
    extractor = ReasoningTagExtractor(tag_name="reasoning")

    assert extractor.process_token("<think>x</think>") == ("<think>x</think>", "")
    assert extractor.process_token("<reasoning>y</reasoning>z") == ("z", "y")


def test_reset_clears_state():
    """Given a mid-block extractor, reset should return it to answer mode with an empty buffer."""
    extractor = ReasoningTagExtractor()
    extractor.process_token("<think>partial</thi")

    extractor.reset()

    assert extractor.in_reasoning is False
    assert extractor.process_token("text") == ("text", "")
