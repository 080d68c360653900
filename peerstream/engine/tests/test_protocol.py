from __future__ import annotations

import json

import pytest

from peerstream.engine.errors import DecodeFailure, DecodeFailureKind
from peerstream.engine.protocol import (
    ChatMessage,
    End,
    Error,
    GetModel,
    Hello,
    MessageType,
    ModelInfoMessage,
    Prompt,
    ReasoningToken,
    Role,
    Start,
    Token,
    UnknownMessage,
    VersionAck,
    VersionNegotiate,
    decode,
    encode,
)


def test_hello_uses_camel_case_and_omits_unset_fields() -> None:
    assert json.loads(encode(Hello(client_id="c1", impl="peerstream"))) == {
        "t": "hello",
        "clientId": "c1",
        "impl": "peerstream",
    }
    assert json.loads(encode(Hello())) == {"t": "hello"}


def test_version_negotiate_wire_shape() -> None:
    msg = VersionNegotiate(protocol_version="1.0.0", min_compatible_version="1.0.0")
    assert json.loads(encode(msg)) == {
        "t": "version_negotiate",
        "protocolVersion": "1.0.0",
        "minCompatibleVersion": "1.0.0",
    }


def test_prompt_wire_shape_and_max_tokens_omission() -> None:
    msg = Prompt(
        id="r1",
        messages=[ChatMessage(Role.SYSTEM, "be brief"), ChatMessage(Role.USER, "hi")],
    )
    assert json.loads(encode(msg)) == {
        "t": "prompt",
        "id": "r1",
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ],
    }
    msg.max_tokens = 64
    assert json.loads(encode(msg))["max_tokens"] == 64


def test_encode_keeps_unicode_literal() -> None:
    assert "héllo ✓" in encode(Token(id="x", tok="héllo ✓"))


@pytest.mark.parametrize(
    "message",
    [
        Hello(client_id="c", impl="i", version="1"),
        Hello(),
        VersionNegotiate(protocol_version="1.0.0", min_compatible_version="0.9.0"),
        VersionAck(compatible=True, protocol_version="1.0.0"),
        VersionAck(compatible=False, reason="too old"),
        GetModel(),
        ModelInfoMessage(id="m1", display_name="Test Model", installed=True),
        Prompt(id="r1", messages=[ChatMessage(Role.USER, "hi")], max_tokens=5),
        Start(id="x1"),
        Token(id="x1", tok=""),
        ReasoningToken(id="x1", tok="think"),
        End(id="x1"),
        Error(id="x1", message="oom"),
        Error(),
    ],
)
def test_every_variant_survives_encode_decode(message) -> None:
    assert decode(encode(message)) == message


def test_decode_accepts_utf8_bytes() -> None:
    decoded = decode('{"t":"token","id":"x","tok":"ü"}'.encode("utf-8"))
    assert decoded == Token(id="x", tok="ü")


def test_decode_accepts_bytearray_and_memoryview() -> None:
    raw = b'{"t":"end","id":"x"}'
    assert decode(bytearray(raw)) == End(id="x")
    assert decode(memoryview(raw)) == End(id="x")


def test_unknown_tag_is_preserved_not_rejected() -> None:
    decoded = decode('{"t":"future_thing","a":1}')
    assert isinstance(decoded, UnknownMessage)
    assert decoded.tag == "future_thing"
    assert decoded.fields == {"a": 1}
    assert json.loads(encode(decoded)) == {"t": "future_thing", "a": 1}


@pytest.mark.parametrize(
    "raw, kind",
    [
        (12345, DecodeFailureKind.UNSUPPORTED_PAYLOAD),
        (None, DecodeFailureKind.UNSUPPORTED_PAYLOAD),
        ("not json", DecodeFailureKind.MALFORMED),
        ("[1, 2]", DecodeFailureKind.MALFORMED),
        ('"t"', DecodeFailureKind.MALFORMED),
        (b"\xff\xfe{", DecodeFailureKind.MALFORMED),
        ('{"id":"x"}', DecodeFailureKind.MISSING_DISCRIMINATOR),
        ('{"t":5}', DecodeFailureKind.MISSING_DISCRIMINATOR),
        ('{"t":"token","id":"x"}', DecodeFailureKind.INVALID_FIELD),
        ('{"t":"token","id":"","tok":"a"}', DecodeFailureKind.INVALID_FIELD),
        ('{"t":"version_ack","compatible":"yes"}', DecodeFailureKind.INVALID_FIELD),
        ('{"t":"model_info","id":"m","displayName":"M"}', DecodeFailureKind.INVALID_FIELD),
        ('{"t":"prompt","id":"r","messages":[]}', DecodeFailureKind.INVALID_FIELD),
        ('{"t":"prompt","id":"r","messages":[{"role":"bot","content":"x"}]}', DecodeFailureKind.INVALID_FIELD),
        ('{"t":"prompt","id":"r","messages":[{"role":"user","content":"x"}],"max_tokens":0}',
         DecodeFailureKind.INVALID_FIELD),
        ('{"t":"error","message":7}', DecodeFailureKind.INVALID_FIELD),
    ],
)
def test_decode_failures_are_values_with_a_kind(raw, kind) -> None:
    decoded = decode(raw)
    assert isinstance(decoded, DecodeFailure)
    assert decoded.kind == kind
    assert decoded.describe().startswith(kind.value)


def test_decode_failure_preview_is_truncated() -> None:
    raw = "x" * 1000
    decoded = decode(raw)
    assert isinstance(decoded, DecodeFailure)
    assert len(decoded.preview) <= 260
    assert decoded.preview.startswith("xxx")


def test_error_fields_are_optional() -> None:
    decoded = decode('{"t":"error"}')
    assert decoded == Error(id=None, message=None)
    assert decoded.type == MessageType.ERROR


def test_version_ack_without_protocol_version() -> None:
    decoded = decode('{"t":"version_ack","compatible":true}')
    assert decoded == VersionAck(compatible=True)


def test_extra_fields_on_known_types_are_ignored() -> None:
    assert decode('{"t":"start","id":"x1","extra":[1,2]}') == Start(id="x1")
