"""Approximate token accounting for budgeting decisions.

The estimates here are deliberately cheap and deterministic. They decide when
to truncate or compact, never what a provider will bill.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Iterable, Mapping, Protocol

from ..messages import ImagePart, Message, TextPart

__all__ = [
    "TokenCounter",
    "HeuristicCounter",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "MESSAGE_OVERHEAD",
    "IMAGE_TOKENS",
    "TOOL_CALL_OVERHEAD",
]

LOGGER = logging.getLogger(__name__)

MESSAGE_OVERHEAD = 4
IMAGE_TOKENS = 85
TOOL_CALL_OVERHEAD = 10

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fa5]")
_CJK_CHARS_PER_TOKEN = 1.5
_OTHER_CHARS_PER_TOKEN = 4


class TokenCounter(Protocol):
    """Anything that can turn text into a token count."""

    def count(self, text: str) -> int:
        ...


class HeuristicCounter:
    """Character-class based estimator (CJK vs. everything else)."""

    def count(self, text: str) -> int:
        return estimate_tokens(text)


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    cjk = len(_CJK_PATTERN.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / _CJK_CHARS_PER_TOKEN + other / _OTHER_CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message | Mapping[str, Any]) -> int:
    """Estimate the cost of one message, structure included.

    Accepts either a transcript :class:`Message` or a chat-completions style
    dictionary so the same accounting works before and after conversion.
    """
    if isinstance(message, Message):
        return _estimate_transcript_message(message)
    return _estimate_payload_message(message)


def estimate_messages_tokens(messages: Iterable[Message | Mapping[str, Any]]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)


def _estimate_transcript_message(message: Message) -> int:
    total = MESSAGE_OVERHEAD
    if isinstance(message.content, str):
        total += estimate_tokens(message.content)
    else:
        for part in message.content:
            if isinstance(part, TextPart):
                total += estimate_tokens(part.text)
            elif isinstance(part, ImagePart):
                total += IMAGE_TOKENS
    for call in message.tool_calls:
        total += TOOL_CALL_OVERHEAD
        total += estimate_tokens(call.name)
        total += estimate_tokens(_dump_arguments(call.arguments))
    return total


def _estimate_payload_message(message: Mapping[str, Any]) -> int:
    total = MESSAGE_OVERHEAD
    content = message.get("content")
    if isinstance(content, str):
        total += estimate_tokens(content)
    elif isinstance(content, list):
        for part in content:
            if not isinstance(part, Mapping):
                continue
            if part.get("type") == "text":
                total += estimate_tokens(str(part.get("text") or ""))
            else:
                total += IMAGE_TOKENS
    for call in message.get("tool_calls") or ():
        function = call.get("function") if isinstance(call, Mapping) else None
        if not isinstance(function, Mapping):
            continue
        total += TOOL_CALL_OVERHEAD
        total += estimate_tokens(str(function.get("name") or ""))
        arguments = function.get("arguments")
        if not isinstance(arguments, str):
            arguments = _dump_arguments(arguments)
        total += estimate_tokens(arguments)
    return total


def _dump_arguments(arguments: Any) -> str:
    if arguments is None:
        return ""
    try:
        return json.dumps(arguments, ensure_ascii=False)
    except (TypeError, ValueError):
        LOGGER.debug("Tool arguments not JSON serializable; using repr", exc_info=True)
        return repr(arguments)
