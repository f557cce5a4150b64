"""Tests for content blocks."""

import pytest

from agentorchestrator.models.content import (
    ImageBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnknownBlock,
    content_text,
    decode_block,
    decode_content,
    encode_content,
)


class TestDecodeBlock:
    def test_text(self):
        assert decode_block({"type": "text", "text": "hi"}) == TextBlock(text="hi")

    def test_image(self):
        block = decode_block({
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "iVBOR"},
        })
        assert isinstance(block, ImageBlock)
        assert block.source.media_type == "image/png"
        assert block.source.data == "iVBOR"

    def test_tool_use_keeps_input_opaque(self):
        block = decode_block({
            "type": "tool_use", "id": "tu_1", "name": "Bash",
            "input": {"command": "ls", "nested": [1, {"a": None}]},
        })
        assert isinstance(block, ToolUseBlock)
        assert block.input == {"command": "ls", "nested": [1, {"a": None}]}

    def test_tool_result_with_nested_blocks(self):
        block = decode_block({
            "type": "tool_result", "tool_use_id": "tu_1", "is_error": True,
            "content": [{"type": "text", "text": "boom"}],
        })
        assert isinstance(block, ToolResultBlock)
        assert block.is_error
        assert block.content == (TextBlock(text="boom"),)

    def test_tool_result_with_string_content(self):
        block = decode_block({"type": "tool_result", "tool_use_id": "tu_1", "content": "ok"})
        assert block.content == "ok"
        assert not block.is_error

    def test_thinking(self):
        block = decode_block({"type": "thinking", "thinking": "hmm", "signature": "sig"})
        assert block == ThinkingBlock(thinking="hmm", signature="sig")

    def test_unknown_block_is_preserved(self):
        raw = {"type": "server_tool_use", "id": "x", "extra": {"deep": [1, 2]}}
        block = decode_block(raw)
        assert isinstance(block, UnknownBlock)
        assert block.type == "server_tool_use"
        assert block.to_dict() == raw

    def test_malformed_known_block_raises(self):
        with pytest.raises(KeyError):
            decode_block({"type": "text"})

    def test_non_object_raises(self):
        with pytest.raises(TypeError):
            decode_block("text")


class TestContent:
    def test_decode_string(self):
        assert decode_content("plain") == "plain"

    def test_decode_none(self):
        assert decode_content(None) == ""

    def test_decode_rejects_numbers(self):
        with pytest.raises(TypeError):
            decode_content(42)

    def test_encode_mixed_blocks(self):
        raw = [
            {"type": "text", "text": "a"},
            {"type": "citation", "ref": 3},
            {"type": "tool_use", "id": "t", "name": "Read", "input": {"path": "x"}},
        ]
        assert encode_content(decode_content(raw)) == raw

    def test_content_text_skips_other_blocks(self):
        content = (
            TextBlock(text="one "),
            ImageBlock.from_base64("AAAA", "image/jpeg"),
            TextBlock(text="two"),
        )
        assert content_text(content) == "one two"

    def test_image_from_base64(self):
        block = ImageBlock.from_base64("AAAA", "image/gif")
        assert block.to_dict() == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/gif", "data": "AAAA"},
        }
