"""Token estimation helpers."""

from functools import cache

import tiktoken

from agentloop.utils.logging import get_logger

logger = get_logger(__name__)


@cache
def _get_encoding() -> tiktoken.Encoding | None:
    try:
        # Close approximation for every supported provider
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.warning(f"Tokenizer unavailable, falling back to character estimate: {e}")
        return None


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Args:
        text: Text to measure

    Returns:
        Estimated token count (roughly 4 characters per token without a tokenizer)
    """
    encoding = _get_encoding()
    if encoding is None:
        return len(text) // 4
    try:
        return len(encoding.encode(text, disallowed_special=()))
    except Exception:
        return len(text) // 4
