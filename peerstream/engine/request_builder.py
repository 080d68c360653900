"""
Generation request construction.

Builds OpenAI-style message arrays from host input:
- optional system prompt first, then the user message
- inputs trimmed; a blank user message is rejected
- max_tokens sent only when it is a finite number > 0
"""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError
from .protocol import ChatMessage, Prompt, Role

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_request_id(prefix: str = "req") -> str:
    """Fresh correlation id: millisecond clock in base36 plus random suffix."""
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{secrets.token_hex(3)}"


def coerce_max_tokens(value: Any) -> int | None:
    """Return a positive int limit, or None when the value should be omitted."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    truncated = int(number)
    return truncated if truncated > 0 else None


@dataclass(frozen=True)
class GenerationRequest:
    """
    Outgoing generation request.

    Invariants (checked on construction):
    - id is non-empty
    - messages contain at least one user message
    - every message has non-blank content
    - max_tokens is None or > 0
    """
    id: str
    messages: tuple[ChatMessage, ...]
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError(ValidationError.EMPTY_REQUEST_ID, "request id must not be empty")
        if not any(m.role == Role.USER for m in self.messages):
            raise ValidationError(ValidationError.MISSING_USER_MESSAGE, "request needs a user message")
        if any(not m.content.strip() for m in self.messages):
            raise ValidationError(ValidationError.BLANK_CONTENT, "message content must not be blank")
        if self.max_tokens is not None and (isinstance(self.max_tokens, bool) or self.max_tokens <= 0):
            raise ValidationError(ValidationError.INVALID_MAX_TOKENS, "max_tokens must be positive")

    def to_message(self) -> Prompt:
        return Prompt(id=self.id, messages=list(self.messages), max_tokens=self.max_tokens)


def build_request(
    request_id: str,
    user_content: str,
    system_prompt: str | None = None,
    max_tokens: Any = None,
) -> GenerationRequest:
    """
    Validate host input and build a GenerationRequest.

    Raises:
        ValidationError: empty-user-message, empty-request-id
    """
    if not request_id or not request_id.strip():
        raise ValidationError(ValidationError.EMPTY_REQUEST_ID, "request id must not be empty")

    user_text = (user_content or "").strip()
    if not user_text:
        raise ValidationError(ValidationError.EMPTY_USER_MESSAGE, "enter a user message before sending")

    messages: list[ChatMessage] = []
    system_text = (system_prompt or "").strip()
    if system_text:
        messages.append(ChatMessage(role=Role.SYSTEM, content=system_text))
    messages.append(ChatMessage(role=Role.USER, content=user_text))

    return GenerationRequest(
        id=request_id.strip(),
        messages=tuple(messages),
        max_tokens=coerce_max_tokens(max_tokens),
    )
