"""Buffering policies that re-chunk a token stream into presentation units.

Two policies exist, one per endpoint:

    sentence (assistant endpoint)
        Flush once the buffer holds 50+ characters or ends a sentence.
        Flushed text is whitespace-normalized, and a buffer equal to the
        previously flushed one is never emitted twice in a row.

    word (chatbot endpoint)
        Flush once the buffer holds 5+ characters or the newest token carries
        punctuation. Flushed text is forwarded raw, so the concatenated
        output equals the upstream reply byte for byte.

The flush decisions and ``normalize`` are pure functions; ``Rechunker`` holds
the per-request buffer and must not be shared between requests.
"""
from __future__ import annotations

import abc
import re
from typing import Optional

SENTENCE_MIN_CHARS = 50
WORD_MIN_CHARS = 5

_SENTENCE_END_RE = re.compile(r"[.!?]\s*$")
_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_SPACING_RE = re.compile(r"([.!?])\s*")
_WORD_FLUSH_CHARS = frozenset(".,!?")


def normalize(text: str) -> str:
    """Collapse whitespace runs, put one space after . ! ? and trim."""
    text = _WHITESPACE_RE.sub(" ", text)
    text = _PUNCTUATION_SPACING_RE.sub(r"\1 ", text)
    return text.strip()


def sentence_flush_decision(buffer: str, token: str, min_chars: int = SENTENCE_MIN_CHARS) -> bool:
    return len(buffer) >= min_chars or _SENTENCE_END_RE.search(buffer) is not None


def word_flush_decision(buffer: str, token: str, min_chars: int = WORD_MIN_CHARS) -> bool:
    return len(buffer) >= min_chars or any(ch in _WORD_FLUSH_CHARS for ch in token)


class BufferingPolicy(abc.ABC):
    """Decides when an accumulated buffer is emitted and how it is rendered."""

    name: str = ""
    deduplicate: bool = False

    @abc.abstractmethod
    def should_flush(self, buffer: str, token: str) -> bool:
        """Whether ``buffer`` (which already ends with ``token``) is ready to emit."""

    def render(self, buffer: str) -> str:
        return buffer


class SentenceBufferingPolicy(BufferingPolicy):
    name = "sentence"
    deduplicate = True

    def __init__(self, min_chars: int = SENTENCE_MIN_CHARS):
        self.min_chars = min_chars

    def should_flush(self, buffer: str, token: str) -> bool:
        return sentence_flush_decision(buffer, token, self.min_chars)

    def render(self, buffer: str) -> str:
        return normalize(buffer)


class WordBufferingPolicy(BufferingPolicy):
    name = "word"

    def __init__(self, min_chars: int = WORD_MIN_CHARS):
        self.min_chars = min_chars

    def should_flush(self, buffer: str, token: str) -> bool:
        return word_flush_decision(buffer, token, self.min_chars)


_POLICIES: dict[str, type[BufferingPolicy]] = {
    SentenceBufferingPolicy.name: SentenceBufferingPolicy,
    WordBufferingPolicy.name: WordBufferingPolicy,
}


def get_policy(name: str) -> BufferingPolicy:
    """Build a fresh policy instance by name ("sentence" or "word")."""
    try:
        return _POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown buffering policy: {name!r}") from None


class Rechunker:
    """
    Per-request accumulation buffer driven by a BufferingPolicy.

    ``feed`` and ``drain`` return the rendered text of a flush, or None when
    nothing is emitted. A flush whose rendered text is empty (a buffer of
    pure whitespace under the sentence policy) clears the buffer but emits
    nothing.
    """

    def __init__(self, policy: BufferingPolicy):
        self.policy = policy
        self._buffer = ""
        self._last_flushed: Optional[str] = None

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, token: str) -> Optional[str]:
        if not token:
            return None
        self._buffer += token
        if self._is_duplicate():
            return None
        if not self.policy.should_flush(self._buffer, token):
            return None
        return self._flush()

    def drain(self) -> Optional[str]:
        """Flush whatever is left once the token stream has ended."""
        if not self._buffer:
            return None
        if self._is_duplicate():
            self._buffer = ""
            return None
        return self._flush()

    def _is_duplicate(self) -> bool:
        return self.policy.deduplicate and self._buffer == self._last_flushed

    def _flush(self) -> Optional[str]:
        raw, self._buffer = self._buffer, ""
        self._last_flushed = raw
        return self.policy.render(raw) or None
