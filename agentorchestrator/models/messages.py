"""Protocol messages exchanged with the agent process.

One line of the agent's stdout is one JSON document; its ``type`` field
selects the variant. Decoding is tolerant: :func:`decode_message` returns
``None`` for malformed JSON, unknown types and structurally broken known
types, and callers skip the line.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from agentorchestrator.models.content import (
    ContentBlock,
    ImageBlock,
    TextBlock,
    decode_block,
    decode_content,
    encode_content,
)
from agentorchestrator.models.stream_events import StreamEvent, TokenUsage, decode_stream_event

logger = logging.getLogger(__name__)


class SystemSubtype:
    INIT = "init"
    COMPACT_BOUNDARY = "compact_boundary"


class ResultSubtype:
    SUCCESS = "success"
    ERROR_MAX_TURNS = "error_max_turns"
    ERROR_DURING_EXECUTION = "error_during_execution"
    ERROR_INTERRUPT = "error_interrupt"
    ERROR_MAX_BUDGET = "error_max_budget"
    ERROR_RATE_LIMIT = "error_rate_limit"
    ERROR_STOP = "error_stop"


@dataclass(frozen=True)
class McpServerInfo:
    name: str
    status: str
    tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompactMetadata:
    messages_removed: int = 0
    tokens_saved: int = 0


@dataclass(frozen=True)
class SystemMessage:
    """``init`` announces the agent session; ``compact_boundary`` marks compaction."""

    subtype: str
    uuid: str = ""
    session_id: str = ""
    api_key_source: str | None = None
    cwd: str | None = None
    tools: tuple[str, ...] = ()
    mcp_servers: tuple[McpServerInfo, ...] = ()
    model: str | None = None
    permission_mode: str | None = None
    slash_commands: tuple[str, ...] = ()
    compact_metadata: CompactMetadata | None = None
    raw: dict | None = field(default=None, repr=False, compare=False)

    type = "system"

    @property
    def is_init(self) -> bool:
        return self.subtype == SystemSubtype.INIT


@dataclass(frozen=True)
class AssistantContent:
    id: str
    model: str = ""
    content: tuple[ContentBlock, ...] = ()
    stop_reason: str | None = None
    stop_sequence: str | None = None
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class AssistantMessage:
    message: AssistantContent
    uuid: str = ""
    session_id: str = ""
    parent_tool_use_id: str | None = None
    raw: dict | None = field(default=None, repr=False, compare=False)

    type = "assistant"

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.message.content if isinstance(b, TextBlock))


@dataclass(frozen=True)
class UserMessage:
    """A user turn; ``content`` is a plain string or a tuple of blocks."""

    content: str | tuple[ContentBlock, ...]
    uuid: str = ""
    session_id: str = ""
    parent_tool_use_id: str | None = None
    raw: dict | None = field(default=None, repr=False, compare=False)

    type = "user"

    @classmethod
    def text(cls, text: str, session_id: str = "") -> UserMessage:
        return cls(content=text, session_id=session_id)

    @classmethod
    def with_images(
        cls, text: str, images: tuple[ImageBlock, ...], session_id: str = ""
    ) -> UserMessage:
        """Images first, then the text, as the agent expects them."""
        return cls(content=(*images, TextBlock(text=text)), session_id=session_id)


@dataclass(frozen=True)
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cost_usd: float | None = None


@dataclass(frozen=True)
class PermissionDenial:
    tool: str
    reason: str | None = None


@dataclass(frozen=True)
class ResultMessage:
    """End of a turn. Nothing follows it until a new turn starts."""

    subtype: str
    is_error: bool
    uuid: str = ""
    session_id: str = ""
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0
    result: str | None = None
    errors: tuple[str, ...] = ()
    total_cost_usd: float = 0.0
    usage: TokenUsage | None = None
    model_usage: dict[str, ModelUsage] = field(default_factory=dict)
    permission_denials: tuple[PermissionDenial, ...] = ()
    structured_output: Any = None
    raw: dict | None = field(default=None, repr=False, compare=False)

    type = "result"


@dataclass(frozen=True)
class StreamEventMessage:
    event: StreamEvent
    uuid: str = ""
    session_id: str = ""
    parent_tool_use_id: str | None = None
    raw: dict | None = field(default=None, repr=False, compare=False)

    type = "stream_event"


AgentMessage = Union[
    SystemMessage, AssistantMessage, UserMessage, ResultMessage, StreamEventMessage
]


# --- Decoding ---

def _decode_system(data: dict) -> SystemMessage:
    compact = data.get("compact_metadata")
    return SystemMessage(
        subtype=str(data["subtype"]),
        uuid=data.get("uuid", ""),
        session_id=data.get("session_id", ""),
        api_key_source=data.get("api_key_source"),
        cwd=data.get("cwd"),
        tools=tuple(data.get("tools") or ()),
        mcp_servers=tuple(
            McpServerInfo(
                name=s["name"], status=s.get("status", ""), tools=tuple(s.get("tools") or ())
            )
            for s in data.get("mcp_servers") or ()
        ),
        model=data.get("model"),
        permission_mode=data.get("permission_mode"),
        slash_commands=tuple(data.get("slash_commands") or ()),
        compact_metadata=(
            CompactMetadata(
                messages_removed=compact.get("messages_removed", 0),
                tokens_saved=compact.get("tokens_saved", 0),
            )
            if compact
            else None
        ),
        raw=data,
    )


def _decode_assistant(data: dict) -> AssistantMessage:
    inner = data["message"]
    if not isinstance(inner, dict):
        raise TypeError("assistant message body must be an object")
    return AssistantMessage(
        message=AssistantContent(
            id=inner.get("id", ""),
            model=inner.get("model", ""),
            content=tuple(decode_block(b) for b in inner.get("content") or ()),
            stop_reason=inner.get("stop_reason"),
            stop_sequence=inner.get("stop_sequence"),
            usage=TokenUsage.from_dict(inner.get("usage")),
        ),
        uuid=data.get("uuid", ""),
        session_id=data.get("session_id", ""),
        parent_tool_use_id=data.get("parent_tool_use_id"),
        raw=data,
    )


def _decode_user(data: dict) -> UserMessage:
    inner = data["message"]
    if not isinstance(inner, dict):
        raise TypeError("user message body must be an object")
    return UserMessage(
        content=decode_content(inner.get("content", "")),
        uuid=data.get("uuid", ""),
        session_id=data.get("session_id", ""),
        parent_tool_use_id=data.get("parent_tool_use_id"),
        raw=data,
    )


def _decode_result(data: dict) -> ResultMessage:
    return ResultMessage(
        subtype=str(data.get("subtype", "")),
        is_error=bool(data["is_error"]),
        uuid=data.get("uuid", ""),
        session_id=data.get("session_id", ""),
        duration_ms=int(data.get("duration_ms", 0)),
        duration_api_ms=int(data.get("duration_api_ms", 0)),
        num_turns=int(data.get("num_turns", 0)),
        result=data.get("result"),
        errors=tuple(data.get("errors") or ()),
        total_cost_usd=float(data.get("total_cost_usd") or 0.0),
        usage=TokenUsage.from_dict(data.get("usage")),
        model_usage={
            name: ModelUsage(
                input_tokens=int(u.get("input_tokens", 0)),
                output_tokens=int(u.get("output_tokens", 0)),
                cache_creation_input_tokens=u.get("cache_creation_input_tokens"),
                cache_read_input_tokens=u.get("cache_read_input_tokens"),
                cost_usd=u.get("cost_usd", u.get("costUSD")),
            )
            for name, u in (data.get("model_usage") or data.get("modelUsage") or {}).items()
        },
        permission_denials=tuple(
            PermissionDenial(tool=d.get("tool", d.get("tool_name", "")), reason=d.get("reason"))
            for d in data.get("permission_denials") or ()
        ),
        structured_output=data.get("structured_output"),
        raw=data,
    )


def _decode_stream_event(data: dict) -> StreamEventMessage:
    return StreamEventMessage(
        event=decode_stream_event(data["event"]),
        uuid=data.get("uuid", ""),
        session_id=data.get("session_id", ""),
        parent_tool_use_id=data.get("parent_tool_use_id"),
        raw=data,
    )


_DECODERS = {
    "system": _decode_system,
    "assistant": _decode_assistant,
    "user": _decode_user,
    "result": _decode_result,
    "stream_event": _decode_stream_event,
}


def decode_message(line: str | bytes) -> AgentMessage | None:
    """Decode one wire line, or return None if it cannot be used."""
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
        logger.debug("Skipping non-JSON line: %.200s", line)
        return None

    if not isinstance(data, dict):
        return None

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        logger.debug("Skipping message without a string type")
        return None

    decoder = _DECODERS.get(msg_type)
    if decoder is None:
        logger.debug("Skipping message with unknown type %r", msg_type)
        return None

    try:
        return decoder(data)
    except (KeyError, TypeError, ValueError, AttributeError):
        logger.debug("Skipping malformed %s message", msg_type, exc_info=True)
        return None


# --- Encoding ---

def encode_user_message(message: UserMessage) -> dict:
    """Wire shape for a user turn written to the agent's stdin."""
    doc: dict = {
        "type": "user",
        "session_id": message.session_id,
        "message": {"role": "user", "content": encode_content(message.content)},
        "parent_tool_use_id": message.parent_tool_use_id,
    }
    if message.uuid:
        doc["uuid"] = message.uuid
    return doc


def encode_command(name: str, payload: dict | None = None) -> dict:
    """Wire shape for a side-channel control line."""
    doc: dict = {"type": name}
    if payload is not None:
        doc["payload"] = payload
    return doc


def encode_line(doc: dict) -> bytes:
    """Frame one JSON document as a UTF-8 line."""
    return json.dumps(doc, ensure_ascii=False).encode("utf-8") + b"\n"
