"""
Sentence Splitter for Turn-Based TTS Synthesis.

This module turns one complete block of generated text into an ordered
sequence of speakable chunks, each no longer than the per-request character
budget of the synthesis provider.

Architecture:
    response text → SentenceSplitter.split() → chunk → synthesis request

Splitting works on three levels, in order:
    1. Sentence boundaries (., !, ?), ignoring known abbreviations such as
       "Dr." and two-letter initials such as "U.S.".
    2. Commas, greedily packing comma-separated parts back together while
       they still fit the budget.
    3. Hard wrapping at exactly ``max_chars`` characters when a single part
       is still too long.

Usage:
    splitter = SentenceSplitter(max_chars=500)

    for chunk in splitter.split(response_text):
        async for audio in gateway.stream_speech(chunk, ...):
            ...
"""

from __future__ import annotations

import re
from typing import Iterator

# Words ending in a period that do not close a sentence
ABBREVIATIONS: frozenset[str] = frozenset(
    word.lower()
    for word in (
        "Dr.", "Mr.", "Mrs.", "Ms.", "Prof.", "Jr.", "Sr.", "vs.", "etc.",
        "Inc.", "Ltd.", "Corp.", "Ave.", "Blvd.", "St.", "Rd.", "Mt.", "ft.",
        "lb.", "oz.", "pt.", "qt.", "gal.",
    )
)

SENTENCE_TERMINATORS = (".", "!", "?")

# Two-letter initials such as "U.S." or "a.m."
_INITIALS_PATTERN = re.compile(r"^[A-Z]\.[A-Z]\.$", re.IGNORECASE)

# Length of the ", " joiner used when packing comma-separated parts
_JOINER_WIDTH = 2


def is_sentence_end(word: str) -> bool:
    """Return True if ``word`` closes a sentence."""

    if not word.endswith(SENTENCE_TERMINATORS):
        return False
    if word.lower() in ABBREVIATIONS:
        return False
    if _INITIALS_PATTERN.match(word):
        return False
    return True


def hard_wrap(text: str, max_chars: int) -> Iterator[str]:
    """Slice ``text`` into pieces of exactly ``max_chars`` (last may be shorter)."""

    for start in range(0, len(text), max_chars):
        yield text[start:start + max_chars]


def split_long_sentence(sentence: str, max_chars: int) -> Iterator[str]:
    """Split an oversize sentence at commas, hard-wrapping parts that still overflow."""

    current = ""
    for raw_part in sentence.split(","):
        part = raw_part.strip()
        if not part:
            continue

        if len(current) + len(part) + _JOINER_WIDTH <= max_chars:
            current = f"{current}, {part}" if current else part
            continue

        if current:
            yield current
            current = ""

        if len(part) > max_chars:
            yield from hard_wrap(part, max_chars)
        else:
            current = part

    if current:
        yield current


class SentenceSplitter:
    """
    Split a full response into speakable chunks within a character budget.

    The splitter holds no per-call state: every call to :meth:`split` returns
    a fresh generator that yields chunks lazily and cannot be restarted.

    Attributes:
        max_chars: Maximum characters per emitted chunk
    """

    def __init__(self, max_chars: int):
        if max_chars < 1:
            raise ValueError("max_chars must be at least 1")
        self.max_chars = max_chars

    def split(self, text: str) -> Iterator[str]:
        """
        Yield ordered chunks for ``text``.

        Args:
            text: One complete block of generated text

        Yields:
            Chunks no longer than ``max_chars``, in input order
        """
        if not text or not text.strip():
            return

        buffer: list[str] = []
        for word in text.split():
            buffer.append(word)
            if is_sentence_end(word):
                yield from self._emit(" ".join(buffer))
                buffer = []

        # Text that never reached terminal punctuation
        if buffer:
            yield from self._emit(" ".join(buffer))

    def _emit(self, sentence: str) -> Iterator[str]:
        sentence = sentence.strip()
        if len(sentence) > self.max_chars:
            yield from split_long_sentence(sentence, self.max_chars)
        elif sentence:
            yield sentence


def split_sentences(text: str, max_chars: int) -> Iterator[str]:
    """Shortcut for ``SentenceSplitter(max_chars).split(text)``."""

    return SentenceSplitter(max_chars).split(text)


__all__ = [
    "ABBREVIATIONS",
    "SentenceSplitter",
    "hard_wrap",
    "is_sentence_end",
    "split_long_sentence",
    "split_sentences",
]
