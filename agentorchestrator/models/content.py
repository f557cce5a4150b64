"""Content blocks carried inside assistant and user messages.

The block set is closed and keyed by the ``type`` field. Anything the
decoder does not recognise is kept as an :class:`UnknownBlock` holding the
original JSON object, so it survives a decode/encode round trip untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class TextBlock:
    text: str

    type = "text"

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ImageSource:
    media_type: str
    data: str
    type: str = "base64"

    def to_dict(self) -> dict:
        return {"type": self.type, "media_type": self.media_type, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict) -> ImageSource:
        return cls(
            type=data.get("type", "base64"),
            media_type=data["media_type"],
            data=data["data"],
        )


@dataclass(frozen=True)
class ImageBlock:
    source: ImageSource

    type = "image"

    @classmethod
    def from_base64(cls, data: str, media_type: str) -> ImageBlock:
        """Create an image block from base64-encoded image data."""
        return cls(source=ImageSource(media_type=media_type, data=data))

    def to_dict(self) -> dict:
        return {"type": self.type, "source": self.source.to_dict()}


@dataclass(frozen=True)
class ToolUseBlock:
    """The agent's request to run a tool; ``input`` is opaque JSON."""

    id: str
    name: str
    input: Any = field(default_factory=dict)

    type = "tool_use"

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str | tuple[ContentBlock, ...] = ""
    is_error: bool = False

    type = "tool_result"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "content": encode_content(self.content),
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str
    signature: str = ""

    type = "thinking"

    def to_dict(self) -> dict:
        doc = {"type": self.type, "thinking": self.thinking}
        if self.signature:
            doc["signature"] = self.signature
        return doc


@dataclass(frozen=True)
class UnknownBlock:
    """A block type this library does not model, kept verbatim."""

    raw: dict

    @property
    def type(self) -> str:
        return str(self.raw.get("type", ""))

    def to_dict(self) -> dict:
        return dict(self.raw)


ContentBlock = Union[
    TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock, UnknownBlock
]


def decode_block(data: dict) -> ContentBlock:
    """Decode one content block. Raises KeyError/TypeError on malformed known blocks."""
    if not isinstance(data, dict):
        raise TypeError(f"content block must be an object, got {type(data).__name__}")

    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data["text"])
    if block_type == "image":
        return ImageBlock(source=ImageSource.from_dict(data["source"]))
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input", {}))
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=decode_content(data.get("content", "")),
            is_error=bool(data.get("is_error", False)),
        )
    if block_type == "thinking":
        return ThinkingBlock(thinking=data["thinking"], signature=data.get("signature", ""))
    return UnknownBlock(raw=dict(data))


def decode_content(value: Any) -> str | tuple[ContentBlock, ...]:
    """Decode a content field that is either a plain string or a block list."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return tuple(decode_block(item) for item in value)
    raise TypeError(f"content must be a string or a list, got {type(value).__name__}")


def encode_content(content: str | tuple[ContentBlock, ...]) -> str | list[dict]:
    """Encode content back to the shape it was decoded from."""
    if isinstance(content, str):
        return content
    return [block.to_dict() for block in content]


def content_text(content: str | tuple[ContentBlock, ...]) -> str:
    """Concatenate the text of a content field, ignoring non-text blocks."""
    if isinstance(content, str):
        return content
    return "".join(block.text for block in content if isinstance(block, TextBlock))
