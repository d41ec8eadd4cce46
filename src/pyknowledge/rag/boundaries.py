"""Sentence and paragraph boundary detection."""

import re
from dataclasses import dataclass
from typing import Optional

from .base import BaseBoundaryDetector

SENTENCE_END = re.compile(r"[.!?]+(?=\s|\Z)")
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class TextSpan:
    """A stripped piece of text and its offsets in the source string."""

    text: str
    start: int
    end: int

    def shift(self, offset: int) -> "TextSpan":
        """Return the same span moved by ``offset`` characters."""
        return TextSpan(self.text, self.start + offset, self.end + offset)


def make_span(source: str, start: int, end: int) -> Optional[TextSpan]:
    """Build a span over ``source[start:end]`` with surrounding whitespace removed.

    Returns None when nothing but whitespace is left.
    """
    while start < end and source[start].isspace():
        start += 1
    while end > start and source[end - 1].isspace():
        end -= 1
    if start == end:
        return None
    return TextSpan(source[start:end], start, end)


class RegexBoundaryDetector(BaseBoundaryDetector):
    """Boundary detection with regular expressions.

    A sentence ends at a run of ``.``, ``!`` or ``?`` followed by whitespace
    or the end of the text. Paragraphs are separated by blank lines.
    Abbreviations and non-Latin punctuation are not handled; swap in a
    tokenizer-backed detector when that matters.
    """

    def sentences(self, text: str) -> list[TextSpan]:
        spans = []
        start = 0

        for match in SENTENCE_END.finditer(text):
            span = make_span(text, start, match.end())
            if span:
                spans.append(span)
            start = match.end()

        tail = make_span(text, start, len(text))
        if tail:
            spans.append(tail)

        return spans

    def paragraphs(self, text: str) -> list[TextSpan]:
        spans = []
        start = 0

        for match in PARAGRAPH_BREAK.finditer(text):
            span = make_span(text, start, match.start())
            if span:
                spans.append(span)
            start = match.end()

        tail = make_span(text, start, len(text))
        if tail:
            spans.append(tail)

        return spans
