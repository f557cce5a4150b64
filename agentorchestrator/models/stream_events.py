"""Partial-update payloads carried by ``stream_event`` messages.

These only matter for progressive rendering; a session is fully described
by the assistant and result messages without them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from agentorchestrator.models.content import ContentBlock, decode_block


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    def to_dict(self) -> dict:
        doc: dict = {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}
        if self.cache_creation_input_tokens is not None:
            doc["cache_creation_input_tokens"] = self.cache_creation_input_tokens
        if self.cache_read_input_tokens is not None:
            doc["cache_read_input_tokens"] = self.cache_read_input_tokens
        return doc

    @classmethod
    def from_dict(cls, data: dict | None) -> TokenUsage | None:
        if not data:
            return None
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cache_creation_input_tokens=data.get("cache_creation_input_tokens"),
            cache_read_input_tokens=data.get("cache_read_input_tokens"),
        )


# --- Deltas ---

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class InputJsonDelta:
    partial_json: str


@dataclass(frozen=True)
class ThinkingDelta:
    thinking: str


@dataclass(frozen=True)
class UnknownDelta:
    raw: dict


ContentDelta = Union[TextDelta, InputJsonDelta, ThinkingDelta, UnknownDelta]


def _decode_delta(data: dict) -> ContentDelta:
    delta_type = data.get("type")
    if delta_type == "text_delta":
        return TextDelta(text=data["text"])
    if delta_type == "input_json_delta":
        return InputJsonDelta(partial_json=data["partial_json"])
    if delta_type == "thinking_delta":
        return ThinkingDelta(thinking=data["thinking"])
    return UnknownDelta(raw=dict(data))


# --- Events ---

@dataclass(frozen=True)
class ContentBlockStart:
    index: int
    content_block: ContentBlock


@dataclass(frozen=True)
class ContentBlockDelta:
    index: int
    delta: ContentDelta


@dataclass(frozen=True)
class ContentBlockStop:
    index: int


@dataclass(frozen=True)
class MessageStart:
    message: Any


@dataclass(frozen=True)
class MessageDelta:
    stop_reason: str | None = None
    stop_sequence: str | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class MessageStop:
    pass


@dataclass(frozen=True)
class UnknownStreamEvent:
    raw: dict


StreamEvent = Union[
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageStart,
    MessageDelta,
    MessageStop,
    UnknownStreamEvent,
]


def decode_stream_event(data: dict) -> StreamEvent:
    """Decode the ``event`` object of a stream_event message."""
    if not isinstance(data, dict):
        raise TypeError("stream event must be an object")

    event_type = data.get("type")
    if event_type == "content_block_start":
        return ContentBlockStart(
            index=int(data["index"]), content_block=decode_block(data["content_block"])
        )
    if event_type == "content_block_delta":
        return ContentBlockDelta(index=int(data["index"]), delta=_decode_delta(data["delta"]))
    if event_type == "content_block_stop":
        return ContentBlockStop(index=int(data["index"]))
    if event_type == "message_start":
        return MessageStart(message=data.get("message"))
    if event_type == "message_delta":
        delta = data.get("delta") or {}
        return MessageDelta(
            stop_reason=delta.get("stop_reason"),
            stop_sequence=delta.get("stop_sequence"),
            usage=TokenUsage.from_dict(data.get("usage")),
        )
    if event_type == "message_stop":
        return MessageStop()
    return UnknownStreamEvent(raw=dict(data))
