"""Context assembly and citation extraction."""

from .models import AssembledContext, Citation, SearchResultChunk
from .tokens import estimate_token_count, truncate_to_token_limit

CONTEXT_SEPARATOR = "\n\n---\n\n"
CITATION_MAX_TOKENS = 100


def format_context_entry(chunk: SearchResultChunk, content: str | None = None) -> str:
    """Render one chunk as a context entry headed by its document title."""
    return f"[{chunk.document_title}]\n{chunk.content if content is None else content}"


def assemble_context(
    chunks: list[SearchResultChunk],
    max_context_tokens: int = 4000,
    min_truncation_tokens: int = 100,
) -> AssembledContext:
    """Build a token-bounded context string from retrieved chunks.

    Chunks are taken greedily by descending similarity. Title prefixes and
    separators count against the budget, so the estimate of the returned
    text never exceeds ``max_context_tokens``. A chunk that does not fit is
    truncated into the remaining budget when more than
    ``min_truncation_tokens`` are left, and becomes the last entry;
    otherwise assembly stops before it.

    Args:
        chunks: Retrieved chunks
        max_context_tokens: Token budget for the whole context
        min_truncation_tokens: Smallest remainder worth a truncated entry

    Returns:
        The context text, the chunks included and the running token estimate
    """
    ordered = sorted(chunks, key=lambda c: c.similarity, reverse=True)
    separator_tokens = estimate_token_count(CONTEXT_SEPARATOR)

    entries: list[str] = []
    used: list[SearchResultChunk] = []
    total = 0

    for chunk in ordered:
        overhead = separator_tokens if entries else 0
        entry = format_context_entry(chunk)
        entry_tokens = estimate_token_count(entry)

        if total + overhead + entry_tokens <= max_context_tokens:
            entries.append(entry)
            used.append(chunk)
            total += overhead + entry_tokens
            continue

        prefix_tokens = estimate_token_count(format_context_entry(chunk, ""))
        remaining = max_context_tokens - total - overhead - prefix_tokens
        if remaining > min_truncation_tokens:
            truncated = truncate_to_token_limit(chunk.content, remaining)
            entry = format_context_entry(chunk, truncated)
            entries.append(entry)
            used.append(chunk)
            total += overhead + estimate_token_count(entry)
        break

    return AssembledContext(text=CONTEXT_SEPARATOR.join(entries), chunks=used, token_count=total)


def build_citations(chunks: list[SearchResultChunk], include_citations: bool = True) -> list[Citation]:
    """One citation per included chunk, or none when citations are off."""
    if not include_citations:
        return []

    return [
        Citation(
            document_id=chunk.document_id,
            document_title=chunk.document_title,
            chunk_content=truncate_to_token_limit(chunk.content, CITATION_MAX_TOKENS),
            similarity=chunk.similarity,
        )
        for chunk in chunks
    ]
