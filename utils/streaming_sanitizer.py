"""
Streaming extractor for reasoning tags.
Splits <think>...</think> content from answer text while tokens arrive.
"""


class ReasoningTagExtractor:
    """Separates reasoning from answer text in real time during streaming.

    Tokens are fed one at a time. Text inside the tag is reported as
    reasoning, everything else as answer text. A tag split across tokens
    is held back until it can be recognized.
    """

    def __init__(self, tag_name: str = "think"):
        self.open_tag = f"<{tag_name}>"
        self.close_tag = f"</{tag_name}>"
        self.buffer = ""
        self.in_reasoning = False

    @staticmethod
    def _partial_suffix_length(text: str, tag: str) -> int:
        """Length of the longest suffix of text that is a proper prefix of tag."""
        for i in range(min(len(text), len(tag) - 1), 0, -1):
            if tag.startswith(text[-i:]):
                return i
        return 0

    def process_token(self, token: str) -> tuple[str, str]:
        """Process a single token and return (text, reasoning) ready to emit."""
        self.buffer += token
        text_out = ""
        reasoning_out = ""

        while self.buffer:
            tag = self.close_tag if self.in_reasoning else self.open_tag
            idx = self.buffer.find(tag)

            if idx != -1:
                before = self.buffer[:idx]
                if self.in_reasoning:
                    reasoning_out += before
                else:
                    text_out += before
                self.buffer = self.buffer[idx + len(tag):]
                self.in_reasoning = not self.in_reasoning
                continue

            # Hold back a possible partial tag at the end
            hold = self._partial_suffix_length(self.buffer, tag)
            safe = self.buffer[:len(self.buffer) - hold]
            self.buffer = self.buffer[len(self.buffer) - hold:]
            if self.in_reasoning:
                reasoning_out += safe
            else:
                text_out += safe
            break

        return text_out, reasoning_out

    def flush(self) -> tuple[str, str]:
        """Flush any remaining buffered content.

        Returns:
            Remaining (text, reasoning)
        """
        remainder = self.buffer
        self.buffer = ""
        if self.in_reasoning:
            return "", remainder
        return remainder, ""

    def reset(self):
        """Reset the extractor state."""
        self.buffer = ""
        self.in_reasoning = False
