from __future__ import annotations

from functools import lru_cache
from typing import Callable, Mapping, Sequence

import tiktoken

from .config import MODEL_CONTEXT_TOKENS
from .errors import ErrorKind, RelayError
from .schemas import ChatMessage

TokenCounter = Callable[[str], int]

SINGLE_TURN_TOO_LONG = "The message is too long, please shorten it a bit."
CONVERSATION_TOO_LONG = (
    "This conversation is too long because continuous conversation is turned on. "
    "Please clear some of the history and try again, or turn off continuous conversation."
)


@lru_cache(maxsize=None)
def _encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def count_tokens(text: str) -> int:
    """Count tokens with the encoding shared by the supported chat models."""
    return len(_encoding("cl100k_base").encode(text, disallowed_special=()))


class TokenBudgeter:
    def __init__(
        self,
        max_input_tokens: Mapping[str, int],
        counter: TokenCounter = count_tokens,
        context_tokens: Mapping[str, int] = MODEL_CONTEXT_TOKENS,
    ) -> None:
        self._max_input_tokens = max_input_tokens
        self._context_tokens = context_tokens
        self._counter = counter

    def estimate(self, messages: Sequence[ChatMessage]) -> int:
        return sum(self._counter(message.content) for message in messages)

    def limit_for(self, model: str, used_builtin_key: bool) -> int:
        limits = self._max_input_tokens if used_builtin_key else self._context_tokens
        try:
            return limits[model]
        except KeyError:
            raise RelayError(ErrorKind.UNKNOWN_MODEL, f"Unsupported model: {model}") from None

    @staticmethod
    def check(estimate: int, limit: int, conversation_length: int) -> None:
        if estimate <= limit:
            return
        if conversation_length > 1:
            raise RelayError(ErrorKind.INPUT_TOO_LONG, CONVERSATION_TOO_LONG)
        raise RelayError(ErrorKind.INPUT_TOO_LONG, SINGLE_TURN_TOO_LONG)

    def enforce(self, messages: Sequence[ChatMessage], model: str, used_builtin_key: bool) -> int:
        limit = self.limit_for(model, used_builtin_key)
        tokens = self.estimate(messages)
        self.check(tokens, limit, len(messages))
        return tokens


__all__ = ["TokenBudgeter", "TokenCounter", "count_tokens"]
