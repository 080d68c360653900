"""
Link Protocol - Message definitions and the decode/encode boundary.

Message Types:
1. Hello / VersionNegotiate / VersionAck - handshake
2. GetModel / ModelInfo - model descriptor request/response
3. Prompt - generation request
4. Start / Token / ReasoningToken / End / Error - streamed response

Wire Format:
- One JSON object per transport message
- String discriminator field "t"
- Unset optional fields are omitted, never sent as null

Decoding is the only place peer input is validated. Everything past
decode() works with typed messages or an explicit UnknownMessage.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ..logging import preview
from .errors import DecodeFailure, DecodeFailureKind, FieldError

# =============================================================================
# Message Types
# =============================================================================

class MessageType(Enum):
    """Known wire message types."""
    # Handshake
    HELLO = "hello"
    VERSION_NEGOTIATE = "version_negotiate"
    VERSION_ACK = "version_ack"

    # Model metadata
    GET_MODEL = "get_model"
    MODEL_INFO = "model_info"

    # Generation
    PROMPT = "prompt"
    START = "start"
    TOKEN = "token"
    REASONING_TOKEN = "reasoning_token"
    END = "end"
    ERROR = "error"


class Role(Enum):
    """Chat message roles (OpenAI-compatible)."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# =============================================================================
# Field access
# =============================================================================

def _require_str(data: dict[str, Any], owner: str, key: str, *, non_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise FieldError(owner, key, "string")
    if non_empty and not value:
        raise FieldError(owner, key, "non-empty string")
    return value


def _optional_str(data: dict[str, Any], owner: str, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise FieldError(owner, key, "string")
    return value


def _require_bool(data: dict[str, Any], owner: str, key: str) -> bool:
    value = data.get(key)
    if not isinstance(value, bool):
        raise FieldError(owner, key, "boolean")
    return value


def _optional_positive_int(data: dict[str, Any], owner: str, key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise FieldError(owner, key, "positive integer")
    return value


def _put(data: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        data[key] = value


# =============================================================================
# Message Base
# =============================================================================

@dataclass
class Message:
    """
    Base wire message.

    Subclasses pin `type` and add their own fields. to_dict() produces the
    wire object; from_dict() dispatches on "t" and validates fields.
    """
    type: MessageType

    def to_dict(self) -> dict[str, Any]:
        return {"t": self.type.value}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProtocolMessage:
        """Build a typed message from a parsed wire object.

        Raises:
            FieldError: known type with missing or mistyped fields
        """
        tag = data.get("t")
        if not isinstance(tag, str):
            raise FieldError("message", "t", "string")

        try:
            msg_type = MessageType(tag)
        except ValueError:
            return UnknownMessage(tag=tag, fields={k: v for k, v in data.items() if k != "t"})

        return _TYPE_MAP[msg_type]._from_dict_impl(data)

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> Message:
        return cls()  # type: ignore[call-arg]


# =============================================================================
# Handshake Messages
# =============================================================================

@dataclass
class Hello(Message):
    """Informational identity announcement; either side, any time."""
    type: MessageType = field(default=MessageType.HELLO, init=False)

    client_id: str | None = None
    impl: str | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        _put(data, "clientId", self.client_id)
        _put(data, "impl", self.impl)
        _put(data, "version", self.version)
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> Hello:
        return cls(
            client_id=_optional_str(data, "hello", "clientId"),
            impl=_optional_str(data, "hello", "impl"),
            version=_optional_str(data, "hello", "version"),
        )


@dataclass
class VersionNegotiate(Message):
    type: MessageType = field(default=MessageType.VERSION_NEGOTIATE, init=False)

    protocol_version: str = ""
    min_compatible_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "protocolVersion": self.protocol_version,
            "minCompatibleVersion": self.min_compatible_version,
        })
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> VersionNegotiate:
        return cls(
            protocol_version=_require_str(data, "version_negotiate", "protocolVersion"),
            min_compatible_version=_require_str(data, "version_negotiate", "minCompatibleVersion"),
        )


@dataclass
class VersionAck(Message):
    """Terminal negotiation decision from the host."""
    type: MessageType = field(default=MessageType.VERSION_ACK, init=False)

    compatible: bool = False
    protocol_version: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["compatible"] = self.compatible
        _put(data, "protocolVersion", self.protocol_version)
        _put(data, "reason", self.reason)
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> VersionAck:
        return cls(
            compatible=_require_bool(data, "version_ack", "compatible"),
            protocol_version=_optional_str(data, "version_ack", "protocolVersion"),
            reason=_optional_str(data, "version_ack", "reason"),
        )


# =============================================================================
# Model Messages
# =============================================================================

@dataclass
class GetModel(Message):
    type: MessageType = field(default=MessageType.GET_MODEL, init=False)


@dataclass
class ModelInfoMessage(Message):
    type: MessageType = field(default=MessageType.MODEL_INFO, init=False)

    id: str = ""
    display_name: str = ""
    installed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "id": self.id,
            "displayName": self.display_name,
            "installed": self.installed,
        })
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> ModelInfoMessage:
        return cls(
            id=_require_str(data, "model_info", "id"),
            display_name=_require_str(data, "model_info", "displayName"),
            installed=_require_bool(data, "model_info", "installed"),
        )


# =============================================================================
# Generation Messages
# =============================================================================

@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> ChatMessage:
        if not isinstance(data, dict):
            raise FieldError("prompt", "messages[]", "object")
        role_raw = data.get("role")
        try:
            role = Role(role_raw)
        except ValueError:
            raise FieldError("prompt", "messages[].role", "system|user|assistant") from None
        return cls(role=role, content=_require_str(data, "prompt", "content"))


@dataclass
class Prompt(Message):
    """Generation request; `id` correlates the streamed response."""
    type: MessageType = field(default=MessageType.PROMPT, init=False)

    id: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    max_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["id"] = self.id
        data["messages"] = [m.to_dict() for m in self.messages]
        _put(data, "max_tokens", self.max_tokens)
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> Prompt:
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list) or not raw_messages:
            raise FieldError("prompt", "messages", "non-empty array")
        return cls(
            id=_require_str(data, "prompt", "id", non_empty=True),
            messages=[ChatMessage.from_dict(m) for m in raw_messages],
            max_tokens=_optional_positive_int(data, "prompt", "max_tokens"),
        )


@dataclass
class Start(Message):
    type: MessageType = field(default=MessageType.START, init=False)

    id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["id"] = self.id
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> Start:
        return cls(id=_require_str(data, "start", "id", non_empty=True))


@dataclass
class Token(Message):
    """Visible-channel chunk."""
    type: MessageType = field(default=MessageType.TOKEN, init=False)

    id: str = ""
    tok: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"id": self.id, "tok": self.tok})
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> Token:
        return cls(
            id=_require_str(data, "token", "id", non_empty=True),
            tok=_require_str(data, "token", "tok"),
        )


@dataclass
class ReasoningToken(Message):
    """Hidden-channel chunk."""
    type: MessageType = field(default=MessageType.REASONING_TOKEN, init=False)

    id: str = ""
    tok: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"id": self.id, "tok": self.tok})
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> ReasoningToken:
        return cls(
            id=_require_str(data, "reasoning_token", "id", non_empty=True),
            tok=_require_str(data, "reasoning_token", "tok"),
        )


@dataclass
class End(Message):
    type: MessageType = field(default=MessageType.END, init=False)

    id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["id"] = self.id
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> End:
        return cls(id=_require_str(data, "end", "id", non_empty=True))


@dataclass
class Error(Message):
    """
    Terminal failure for a stream.

    Both fields are optional on the wire: hosts report some failures
    (e.g. model not loaded) before any stream id exists.
    """
    type: MessageType = field(default=MessageType.ERROR, init=False)

    id: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        _put(data, "id", self.id)
        _put(data, "message", self.message)
        return data

    @classmethod
    def _from_dict_impl(cls, data: dict[str, Any]) -> Error:
        return cls(
            id=_optional_str(data, "error", "id"),
            message=_optional_str(data, "error", "message"),
        )


# =============================================================================
# Unknown
# =============================================================================

@dataclass
class UnknownMessage:
    """Well-formed message with a tag this client does not implement."""
    tag: str
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"t": self.tag}
        data.update({k: v for k, v in self.fields.items() if k != "t"})
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


ProtocolMessage = Union[Message, UnknownMessage]

_TYPE_MAP: dict[MessageType, type[Message]] = {
    MessageType.HELLO: Hello,
    MessageType.VERSION_NEGOTIATE: VersionNegotiate,
    MessageType.VERSION_ACK: VersionAck,
    MessageType.GET_MODEL: GetModel,
    MessageType.MODEL_INFO: ModelInfoMessage,
    MessageType.PROMPT: Prompt,
    MessageType.START: Start,
    MessageType.TOKEN: Token,
    MessageType.REASONING_TOKEN: ReasoningToken,
    MessageType.END: End,
    MessageType.ERROR: Error,
}


# =============================================================================
# Codec
# =============================================================================

def decode(raw: Any) -> ProtocolMessage | DecodeFailure:
    """
    Decode a transport payload.

    Accepts text or a byte sequence (UTF-8). Never raises; every rejection
    is returned as a DecodeFailure naming the reason.
    """
    if isinstance(raw, str):
        text = raw
    elif isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            return DecodeFailure(DecodeFailureKind.MALFORMED, f"invalid utf-8: {e.reason}", preview(raw))
    else:
        return DecodeFailure(DecodeFailureKind.UNSUPPORTED_PAYLOAD, type(raw).__name__)

    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as e:
        return DecodeFailure(DecodeFailureKind.MALFORMED, f"invalid json: {e}", preview(text))

    if not isinstance(data, dict):
        return DecodeFailure(DecodeFailureKind.MALFORMED, "expected JSON object", preview(text))

    if not isinstance(data.get("t"), str):
        return DecodeFailure(DecodeFailureKind.MISSING_DISCRIMINATOR, 'missing string field "t"', preview(text))

    try:
        return Message.from_dict(data)
    except FieldError as e:
        return DecodeFailure(DecodeFailureKind.INVALID_FIELD, str(e), preview(text))


def encode(message: ProtocolMessage) -> str:
    """Serialize a message to its wire text."""
    return message.to_json()
