"""Document chunking strategies.

Every chunker works on normalized text and tracks character offsets from
the boundary detector's spans as it goes, so ``chunk.content`` is always
``text[chunk.start_char:chunk.end_char]`` (markdown chunks additionally
carry their heading in front). Token counts are estimates, see
:mod:`pyknowledge.rag.tokens`.
"""

import re
from typing import Any, Optional, Union

from .base import BaseBoundaryDetector, BaseChunker
from .boundaries import RegexBoundaryDetector, TextSpan, make_span
from .models import Chunk, ChunkingOptions, ChunkingStrategy
from .tokens import CHARS_PER_TOKEN, estimate_token_count

HEADING = re.compile(r"^#{1,6}\s", re.MULTILINE)
HEADING_LINE = re.compile(r"#{1,6}\s[^\n]*")
WORD = re.compile(r"\S+")


def normalize_text(content: str) -> str:
    """Normalize line endings and tabs, then trim."""
    return content.replace("\r\n", "\n").replace("\t", "  ").strip()


def detect_strategy(text: str) -> ChunkingStrategy:
    """Pick a strategy for normalized text."""
    if HEADING.search(text):
        return ChunkingStrategy.MARKDOWN
    if "\n\n" in text:
        return ChunkingStrategy.PARAGRAPHS
    return ChunkingStrategy.SENTENCES


def _make_chunk(
    text: str,
    start: int,
    end: int,
    chunker: str,
    content: Optional[str] = None,
    **metadata: Any,
) -> Chunk:
    body = text[start:end] if content is None else content
    return Chunk(
        content=body,
        token_count=estimate_token_count(body),
        start_char=start,
        end_char=end,
        metadata={"chunker": chunker, **metadata},
    )


class _SpanPacker:
    """Greedy packing of spans into chunks with span-granular overlap.

    Overlap is made of whole trailing spans of the chunk just closed whose
    extent fits in ``chunk_overlap_tokens``. The first span of a closed
    chunk is never carried, so chunk starts strictly advance.
    """

    def __init__(self, text: str, options: ChunkingOptions, chunker: str):
        self.text = text
        self.options = options
        self.chunker = chunker
        self._spans: list[TextSpan] = []
        self._fresh = 0

    def _extent_tokens(self, start: int, end: int) -> int:
        return estimate_token_count(self.text[start:end])

    def add(self, span: TextSpan) -> Optional[Chunk]:
        """Add a span, returning the chunk it closed (if any)."""
        closed = None
        if self._fresh and self._extent_tokens(self._spans[0].start, span.end) > self.options.chunk_size_tokens:
            closed = self._close()
            self._carry_overlap()

        self._spans.append(span)
        self._fresh += 1
        return closed

    def flush(self) -> Optional[Chunk]:
        """Close pending content without carrying overlap forward."""
        closed = self._close() if self._fresh else None
        self._spans = []
        self._fresh = 0
        return closed

    def finish(self, chunks: list[Chunk]) -> None:
        """Emit the final chunk into ``chunks``, merging it if it is too small."""
        if not self._fresh:
            return

        start, end = self._spans[0].start, self._spans[-1].end
        if self._extent_tokens(start, end) >= self.options.min_chunk_size or not chunks:
            chunks.append(self._close())
        else:
            previous = chunks[-1]
            chunks[-1] = _make_chunk(
                self.text,
                previous.start_char,
                end,
                self.chunker,
                **{k: v for k, v in previous.metadata.items() if k != "chunker"},
            )

        self._spans = []
        self._fresh = 0

    def _close(self) -> Chunk:
        return _make_chunk(self.text, self._spans[0].start, self._spans[-1].end, self.chunker)

    def _carry_overlap(self) -> None:
        budget = self.options.chunk_overlap_tokens
        last_end = self._spans[-1].end
        carried: list[TextSpan] = []

        for span in reversed(self._spans[1:]):
            if self._extent_tokens(span.start, last_end) > budget:
                break
            carried.insert(0, span)

        self._spans = carried
        self._fresh = 0


class SentenceChunker(BaseChunker):
    """Pack whole sentences into chunks with sentence-granular overlap."""

    name = "sentences"

    def __init__(
        self,
        options: Optional[ChunkingOptions] = None,
        detector: Optional[BaseBoundaryDetector] = None,
    ):
        """Initialize the sentence chunker.

        Args:
            options: Chunk sizing options (fresh defaults if None)
            detector: Boundary detector (regex-based if None)
        """
        self.options = options or ChunkingOptions()
        self.detector = detector or RegexBoundaryDetector()

    def chunk(self, text: str) -> list[Chunk]:
        return self.pack(text, self.detector.sentences(text))

    def pack(self, text: str, spans: list[TextSpan], chunker: Optional[str] = None) -> list[Chunk]:
        """Pack sentence spans that index into ``text``."""
        packer = _SpanPacker(text, self.options, chunker or self.name)
        chunks: list[Chunk] = []

        for span in spans:
            closed = packer.add(span)
            if closed:
                chunks.append(closed)

        packer.finish(chunks)
        return chunks


class ParagraphChunker(BaseChunker):
    """Pack paragraphs into chunks; oversized paragraphs fall back to sentences."""

    name = "paragraphs"

    def __init__(
        self,
        options: Optional[ChunkingOptions] = None,
        detector: Optional[BaseBoundaryDetector] = None,
    ):
        self.options = options or ChunkingOptions()
        self.detector = detector or RegexBoundaryDetector()
        self._sentences = SentenceChunker(self.options, self.detector)

    def chunk(self, text: str) -> list[Chunk]:
        packer = _SpanPacker(text, self.options, self.name)
        chunks: list[Chunk] = []

        for paragraph in self.detector.paragraphs(text):
            if estimate_token_count(paragraph.text) > self.options.chunk_size_tokens:
                flushed = packer.flush()
                if flushed:
                    chunks.append(flushed)

                # Sentence offsets are relative to the paragraph
                sentences = [s.shift(paragraph.start) for s in self.detector.sentences(paragraph.text)]
                chunks.extend(self._sentences.pack(text, sentences, self.name))
                continue

            closed = packer.add(paragraph)
            if closed:
                chunks.append(closed)

        packer.finish(chunks)
        return chunks


class TokenChunker(BaseChunker):
    """Word-by-word packing against a character budget.

    Used when text has no natural boundaries. Overlap is a trailing
    character slice, not aligned to sentences or paragraphs.
    """

    name = "tokens"

    def __init__(
        self,
        options: Optional[ChunkingOptions] = None,
        detector: Optional[BaseBoundaryDetector] = None,
    ):
        self.options = options or ChunkingOptions()

    def chunk(self, text: str) -> list[Chunk]:
        max_chars = self.options.chunk_size_tokens * CHARS_PER_TOKEN
        overlap_chars = self.options.chunk_overlap_tokens * CHARS_PER_TOKEN
        chunks: list[Chunk] = []
        start: Optional[int] = None
        end = 0

        for word in WORD.finditer(text):
            if start is None:
                start = word.start()
            elif word.end() - start > max_chars:
                chunks.append(_make_chunk(text, start, end, self.name))
                start = self._overlap_start(text, start, end, word.start(), overlap_chars)
            end = word.end()

        if start is None:
            return chunks

        if estimate_token_count(text[start:end]) >= self.options.min_chunk_size or not chunks:
            chunks.append(_make_chunk(text, start, end, self.name))
        else:
            previous = chunks[-1]
            chunks[-1] = _make_chunk(text, previous.start_char, end, self.name)

        return chunks

    @staticmethod
    def _overlap_start(text: str, start: int, end: int, next_word: int, overlap_chars: int) -> int:
        if overlap_chars <= 0:
            return next_word
        position = max(end - overlap_chars, start + 1)
        while position < next_word and text[position].isspace():
            position += 1
        return position


class MarkdownChunker(BaseChunker):
    """Split at heading lines, keeping each heading with its content.

    Small sections are packed together. An oversized section is chunked by
    paragraphs and every resulting chunk gets the heading prepended, so it
    stands on its own at retrieval time.
    """

    name = "markdown"

    def __init__(
        self,
        options: Optional[ChunkingOptions] = None,
        detector: Optional[BaseBoundaryDetector] = None,
    ):
        self.options = options or ChunkingOptions()
        self._paragraphs = ParagraphChunker(self.options, detector)

    def chunk(self, text: str) -> list[Chunk]:
        chunks: list[Chunk] = []
        group_start: Optional[int] = None
        group_end = 0
        group_header = ""

        for section in self._sections(text):
            header, body = self._split_header(text, section)

            if estimate_token_count(section.text) > self.options.chunk_size_tokens:
                if group_start is not None:
                    chunks.append(_make_chunk(text, group_start, group_end, self.name, header=group_header))
                    group_start = None
                chunks.extend(self._chunk_section(text, section, header, body))
                continue

            if group_start is not None and (
                estimate_token_count(text[group_start:section.end]) > self.options.chunk_size_tokens
            ):
                chunks.append(_make_chunk(text, group_start, group_end, self.name, header=group_header))
                group_start = None

            if group_start is None:
                group_start = section.start
                group_header = header
            group_end = section.end

        if group_start is not None:
            chunks.append(_make_chunk(text, group_start, group_end, self.name, header=group_header))

        return chunks

    @staticmethod
    def _sections(text: str) -> list[TextSpan]:
        boundaries = [m.start() for m in HEADING.finditer(text)]
        if not boundaries or boundaries[0] != 0:
            boundaries.insert(0, 0)
        boundaries.append(len(text))

        sections = []
        for start, end in zip(boundaries, boundaries[1:]):
            span = make_span(text, start, end)
            if span:
                sections.append(span)
        return sections

    @staticmethod
    def _split_header(text: str, section: TextSpan) -> tuple[str, Optional[TextSpan]]:
        match = HEADING_LINE.match(text, section.start, section.end)
        if not match:
            return "", section
        return match.group().strip(), make_span(text, match.end(), section.end)

    def _chunk_section(
        self,
        text: str,
        section: TextSpan,
        header: str,
        body: Optional[TextSpan],
    ) -> list[Chunk]:
        if body is None:
            return [_make_chunk(text, section.start, section.end, self.name, header=header)]

        result = []
        for i, piece in enumerate(self._paragraphs.chunk(body.text)):
            # The first chunk of a section also covers its heading line
            start = section.start if i == 0 else body.start + piece.start_char
            content = f"{header}\n\n{piece.content}" if header else piece.content
            result.append(_make_chunk(
                text,
                start,
                body.start + piece.end_char,
                self.name,
                content=content,
                header=header,
            ))
        return result


CHUNKERS: dict[ChunkingStrategy, type[BaseChunker]] = {
    ChunkingStrategy.SENTENCES: SentenceChunker,
    ChunkingStrategy.PARAGRAPHS: ParagraphChunker,
    ChunkingStrategy.TOKENS: TokenChunker,
    ChunkingStrategy.MARKDOWN: MarkdownChunker,
}


def chunk_document(
    content: str,
    options: Optional[ChunkingOptions] = None,
    strategy: Union[ChunkingStrategy, str] = ChunkingStrategy.AUTO,
    detector: Optional[BaseBoundaryDetector] = None,
) -> list[Chunk]:
    """Chunk document content using the given strategy.

    Args:
        content: Raw document text
        options: Chunk sizing options (fresh defaults if None)
        strategy: Chunking strategy, ``auto`` picks one from the content
        detector: Boundary detector for sentence and paragraph splitting

    Returns:
        Chunks with ``chunk_index`` renumbered 0..n-1. Empty input gives [].
        Each ``token_count`` also covers the separator whitespace that
        follows the chunk, so the counts never sum below the estimate of
        the whole document.
    """
    options = options or ChunkingOptions()
    text = normalize_text(content)
    if not text:
        return []

    strategy = ChunkingStrategy(strategy)
    if strategy is ChunkingStrategy.AUTO:
        strategy = detect_strategy(text)

    chunker = CHUNKERS[strategy](options, detector)  # type: ignore[call-arg]
    chunks = chunker.chunk(text)

    return [
        chunk.model_copy(
            update={
                "chunk_index": i,
                "token_count": _count_with_separator(
                    text, chunk, chunks[i + 1].start_char if i + 1 < len(chunks) else None
                ),
            }
        )
        for i, chunk in enumerate(chunks)
    ]


def _count_with_separator(text: str, chunk: Chunk, next_start: Optional[int]) -> int:
    """Estimate a chunk's tokens, including the whitespace up to the next chunk.

    Separators between chunks belong to no chunk's content. Counting each
    with the chunk before it keeps the summed estimate of a document's
    chunks at or above the estimate of the whole document.
    """
    if next_start is None or next_start <= chunk.end_char:
        return estimate_token_count(chunk.content)
    return estimate_token_count(chunk.content + text[chunk.end_char:next_start])


def extract_document_metadata(content: str) -> dict[str, Any]:
    """Extract structural metadata from document content."""
    metadata: dict[str, Any] = {}

    title_match = re.search(r"^#\s+(.+)$", content, re.MULTILINE)
    metadata["title"] = title_match.group(1).strip() if title_match else None

    metadata["header_counts"] = {
        f"h{level}": len(re.findall(rf"^#{{{level}}}\s", content, re.MULTILINE))
        for level in range(1, 7)
    }

    code_block_count = content.count("```") // 2
    metadata["has_code"] = code_block_count > 0
    metadata["code_block_count"] = code_block_count

    metadata["has_bullet_list"] = bool(re.search(r"^\s*[-*+]\s", content, re.MULTILINE))
    metadata["has_numbered_list"] = bool(re.search(r"^\s*\d+\.\s", content, re.MULTILINE))

    metadata["word_count"] = len(content.split())
    metadata["char_count"] = len(content)

    return metadata
