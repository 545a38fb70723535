"""Token estimation and per-item clipping."""

from __future__ import annotations

import math
from collections.abc import Callable

from core.models import ChatMessage

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4  # role + separators
ELLIPSIS = "…"

TokenCounter = Callable[[str], int]


def estimate_tokens(text: str, counter: TokenCounter | None = None) -> int:
    if not text:
        return 0
    if counter is not None:
        return counter(text)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: ChatMessage, counter: TokenCounter | None = None) -> int:
    return estimate_tokens(f"{message.role}: {message.content}", counter) + MESSAGE_OVERHEAD_TOKENS


def clip_text_to_tokens(
    text: str, limit: int, counter: TokenCounter | None = None
) -> tuple[str, bool, int]:
    """Clip `text` to at most `limit` tokens.

    Returns (text, clipped, token_count). Clipped text ends with an ellipsis
    and is reported at exactly `limit` tokens.
    """
    token_count = estimate_tokens(text, counter)
    if token_count <= limit:
        return text, False, token_count

    cut = max(0, limit * CHARS_PER_TOKEN - len(ELLIPSIS))
    if counter is not None:
        cut = min(cut, len(text))
        while cut > 0 and counter(text[:cut]) > limit:
            cut = int(cut * 0.9)
    clipped = text[:cut].rstrip()
    return f"{clipped}{ELLIPSIS}", True, limit
