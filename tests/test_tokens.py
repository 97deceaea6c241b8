"""Tests for token estimation."""

from stratum.context.tokens import (
    IMAGE_TOKENS,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_text_tokens,
)


class TestEstimateTextTokens:
    def test_empty_text_is_free(self) -> None:
        assert estimate_text_tokens("") == 0

    def test_latin_text_costs_one_token_per_two_and_a_half_chars(self) -> None:
        # ceil(5 / 2.5) + 4 overhead
        assert estimate_text_tokens("abcde") == 6
        # ceil(11 / 2.5) + 4
        assert estimate_text_tokens("hello world") == 9

    def test_cjk_text_is_weighted_heavier(self) -> None:
        # ceil(2 * 1.3) + 4
        assert estimate_text_tokens("你好") == 7

    def test_mixed_text(self) -> None:
        # CJK: ceil(2.6) = 3, other " ab": ceil(1.2) = 2, overhead 4
        assert estimate_text_tokens("你好 ab") == 9


class TestEstimateMessageTokens:
    def test_string_content(self) -> None:
        assert estimate_message_tokens({"role": "user", "content": "abcde"}) == 6

    def test_text_and_image_blocks(self) -> None:
        message = {
            "role": "user",
            "content": [{"type": "text", "text": "abcde"}, {"type": "image"}],
        }
        assert estimate_message_tokens(message) == 6 + IMAGE_TOKENS

    def test_tool_result_with_string_content(self) -> None:
        message = {
            "role": "user",
            "content": [{"type": "tool_result", "content": "abcde"}],
        }
        assert estimate_message_tokens(message) == 6

    def test_tool_result_list_tolerates_bare_items(self) -> None:
        message = {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "content": ["abcde", 7, None, {"type": "text", "text": "abcde"}, {"type": "image"}],
                },
            ],
        }
        # "abcde" 6, "7" 5, "null" 6, text block 6, image block
        assert estimate_message_tokens(message) == 23 + IMAGE_TOKENS

    def test_unknown_content_costs_nothing(self) -> None:
        assert estimate_message_tokens({"role": "user", "content": None}) == 0

    def test_messages_are_summed(self) -> None:
        messages = [
            {"role": "user", "content": "abcde"},
            {"role": "assistant", "content": "hello world"},
        ]
        assert estimate_messages_tokens(messages) == 15
