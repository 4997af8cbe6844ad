"""Token estimation utilities backed by tiktoken."""

import re
from typing import Dict, Iterable, Optional

import tiktoken

from .messages import Message, message_text

MESSAGE_OVERHEAD_TOKENS = 4

_encoder_cache: Dict[str, "tiktoken.Encoding"] = {}
_CJK_RE = re.compile(r'[\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af]')


def _get_encoder(model: str):
    """Get tiktoken encoder for model, with caching."""
    if model in _encoder_cache:
        return _encoder_cache[model]

    try:
        enc = tiktoken.encoding_for_model(model)
    except KeyError:
        # Unknown to tiktoken (anthropic/, deepseek/, local models)
        enc = tiktoken.get_encoding("cl100k_base")

    _encoder_cache[model] = enc
    return enc


def estimate_tokens(text: str, model: Optional[str] = None) -> int:
    """Estimate token count for text.

    With a model name the count comes from tiktoken. Without one a cheap
    character heuristic is used, which is what the budgeter relies on when
    comparing against a configured ceiling.
    """
    if not text:
        return 0

    if model:
        # litellm names look like "openai/gpt-4o"; tiktoken wants the bare model
        enc = _get_encoder(model.split("/")[-1])
        return len(enc.encode(text, disallowed_special=()))

    return _heuristic_estimate(text)


def _heuristic_estimate(text: str) -> int:
    """Heuristic token estimation for mixed CJK/English text."""
    if not text:
        return 0

    cjk_chars = len(_CJK_RE.findall(text))
    non_cjk = _CJK_RE.sub(' ', text)

    # English: ~4 chars per token, CJK: ~1.5 chars per token
    english_tokens = len(non_cjk) / 4
    cjk_tokens = cjk_chars / 1.5

    return max(1, int(english_tokens + cjk_tokens))


def estimate_message_tokens(message: Message, model: Optional[str] = None) -> int:
    """Estimate tokens for a conversation message."""
    return MESSAGE_OVERHEAD_TOKENS + estimate_tokens(message_text(message), model)


def count_message_tokens(messages: Iterable[Message], model: Optional[str] = None) -> int:
    return sum(estimate_message_tokens(m, model) for m in messages)
