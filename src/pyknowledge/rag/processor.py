"""Document ingestion: extract, chunk, embed and store."""

import asyncio
import hashlib
import html
import ipaddress
import re
import uuid
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import urljoin, urlsplit

import httpx
from pydantic import BaseModel, Field

from pyknowledge.utils.logging import get_logger

from .base import BaseBoundaryDetector, BaseKnowledgeStore, BaseProcessingQueue
from .chunking import chunk_document, extract_document_metadata
from .embeddings import DEFAULT_BATCH_SIZE, DEFAULT_EMBEDDING_MODEL, EmbeddingClient
from .exceptions import DocumentProcessingError, UnsafeURLError
from .models import (
    ChunkingOptions,
    ChunkingStrategy,
    DocumentSourceType,
    DocumentStatus,
    KnowledgeDocument,
    ProcessingQueueItem,
    StoredChunk,
    utcnow,
)
from .stores import MemoryProcessingQueue

logger = get_logger(__name__)

URL_FETCH_TIMEOUT = 30.0
MAX_CONTENT_SIZE_BYTES = 10 * 1024 * 1024
MAX_REDIRECTS = 5
USER_AGENT = "pyknowledge-fetcher/0.1"

TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".csv", ".json"}
HTML_SUFFIXES = {".html", ".htm"}

_SCRIPT = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_BLOCK_END = re.compile(r"</(p|div|h[1-6]|li|tr)[^>]*>|<br\s*/?>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


class ProcessingStage(str, Enum):
    """Stage reported to progress callbacks."""

    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingProgress(BaseModel):
    """A progress update for one document."""

    stage: ProcessingStage
    progress: int
    message: str
    chunks_processed: Optional[int] = None
    total_chunks: Optional[int] = None


class ProcessingJob(BaseModel):
    """A document to ingest.

    ``raw_content`` is used for text sources, ``source_url`` for URL
    sources and ``file_path`` for file sources.
    """

    document_id: str
    tenant_id: str
    source_type: DocumentSourceType
    title: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    raw_content: Optional[str] = None
    source_url: Optional[str] = None
    file_path: Optional[str] = None


class ProcessingResult(BaseModel):
    """Outcome of processing one document."""

    success: bool
    document_id: str
    chunks_created: int = 0
    tokens_used: int = 0
    error: Optional[str] = None


ProgressCallback = Callable[[ProcessingProgress], None]


def is_url_safe(url: str) -> bool:
    """Check a URL against the fetch guard.

    Only http and https URLs without credentials are allowed, and hosts
    that name the local machine or a private, loopback or link-local
    address are rejected. Host names are not resolved.
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return False

    if parts.scheme not in ("http", "https"):
        return False
    if parts.username or parts.password:
        return False
    if not host:
        return False

    host = host.lower().rstrip(".")
    if host == "localhost" or host.endswith(".localhost"):
        return False

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return True

    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
    )


def extract_text_from_html(markup: str) -> str:
    """Convert HTML to plain text.

    Scripts, styles and comments are dropped, block-level closing tags
    become line breaks and entities are decoded. Blank lines are removed.
    """
    text = _SCRIPT.sub("", markup)
    text = _STYLE.sub("", text)
    text = _COMMENT.sub("", text)
    text = _BLOCK_END.sub("\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")

    lines = (line.strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def read_file_content(file_path: Union[str, Path]) -> str:
    """Read text from a local file based on its suffix.

    Args:
        file_path: Path to a text, markdown, HTML, CSV, JSON, PDF or DOCX file

    Returns:
        The extracted text

    Raises:
        DocumentProcessingError: Unsupported suffix or unreadable file
    """
    path = Path(file_path)
    suffix = path.suffix.lower()

    try:
        if suffix in TEXT_SUFFIXES:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()

        if suffix in HTML_SUFFIXES:
            with open(path, "r", encoding="utf-8") as f:
                return extract_text_from_html(f.read())

        if suffix == ".pdf":
            import pypdf

            reader = pypdf.PdfReader(str(path))
            return "\n".join(page.extract_text() or "" for page in reader.pages)

        if suffix == ".docx":
            from docx import Document as DocxDocument

            doc = DocxDocument(str(path))
            return "\n".join(para.text for para in doc.paragraphs)

    except (OSError, UnicodeDecodeError) as e:
        raise DocumentProcessingError(f"Failed to read {path.name}: {e}") from e

    raise DocumentProcessingError(f"Unsupported file type: {suffix or path.name}")


class URLFetcher:
    """Fetch page text over HTTP with SSRF and size guards.

    Redirects are followed by hand so every hop is checked with
    :func:`is_url_safe`. Bodies are streamed and abandoned once they pass
    ``max_bytes``.
    """

    def __init__(
        self,
        timeout: float = URL_FETCH_TIMEOUT,
        max_bytes: int = MAX_CONTENT_SIZE_BYTES,
        max_redirects: int = MAX_REDIRECTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_redirects = max_redirects
        self._transport = transport

    async def fetch(self, url: str) -> str:
        """Fetch ``url`` and return its text, converted from HTML if needed.

        Raises:
            UnsafeURLError: The URL or a redirect target is blocked
            DocumentProcessingError: HTTP error, timeout or oversized body
        """
        if not is_url_safe(url):
            raise UnsafeURLError(url)

        headers = {"User-Agent": USER_AGENT, "Accept": "text/html, text/plain, */*"}

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
                headers=headers,
                transport=self._transport,
            ) as client:
                return await self._fetch(client, url)
        except httpx.TimeoutException as e:
            raise DocumentProcessingError(f"URL fetch timed out after {self.timeout:g} seconds") from e
        except httpx.HTTPError as e:
            raise DocumentProcessingError(f"URL fetch failed: {e}") from e

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> str:
        current = url

        for _ in range(self.max_redirects + 1):
            async with client.stream("GET", current) as response:
                if response.is_redirect:
                    location = response.headers.get("location")
                    if not location:
                        raise DocumentProcessingError("Redirect without a location")
                    current = urljoin(current, location)
                    if not is_url_safe(current):
                        raise UnsafeURLError(
                            current, "Redirect URL not allowed: blocked for security reasons"
                        )
                    continue

                if response.status_code >= 400:
                    raise DocumentProcessingError(
                        f"Failed to fetch URL: {response.status_code} {response.reason_phrase}"
                    )

                content_length = response.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
                    raise DocumentProcessingError(
                        f"Content too large: {int(content_length) // (1024 * 1024)}MB exceeds limit"
                    )

                body = bytearray()
                async for data in response.aiter_bytes():
                    body.extend(data)
                    if len(body) > self.max_bytes:
                        raise DocumentProcessingError(
                            f"Content too large: exceeds {self.max_bytes // (1024 * 1024)}MB limit"
                        )

                text = bytes(body).decode(response.charset_encoding or "utf-8", errors="replace")
                if "text/html" in response.headers.get("content-type", ""):
                    return extract_text_from_html(text)
                return text

        raise DocumentProcessingError(f"Too many redirects fetching {url}")


class DocumentProcessor:
    """Runs one document through extract, chunk, embed and store.

    The document row's status follows the pipeline (processing, chunking,
    embedding, completed) and ends as failed with ``error_message`` when
    any step raises.

    Example:
        ```python
        processor = DocumentProcessor(EmbeddingClient(), store)
        result = await processor.process(
            ProcessingJob(
                document_id="doc-1",
                tenant_id="acme",
                source_type=DocumentSourceType.TEXT,
                raw_content=text,
            )
        )
        ```
    """

    def __init__(
        self,
        embeddings: EmbeddingClient,
        store: BaseKnowledgeStore,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        fetcher: Optional[URLFetcher] = None,
        detector: Optional[BaseBoundaryDetector] = None,
        queue: Optional[BaseProcessingQueue] = None,
    ):
        self.embeddings = embeddings
        self.store = store
        self.embedding_model = embedding_model
        self.batch_size = batch_size
        self.fetcher = fetcher or URLFetcher()
        self.detector = detector
        self.queue = queue or MemoryProcessingQueue()

    async def process(
        self,
        job: ProcessingJob,
        options: Optional[ChunkingOptions] = None,
        strategy: Union[ChunkingStrategy, str] = ChunkingStrategy.AUTO,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProcessingResult:
        """Process a document end to end.

        Args:
            job: Document and where its content comes from
            options: Chunk sizing options (defaults if None)
            strategy: Chunking strategy
            on_progress: Called with progress updates

        Returns:
            Result with the chunk count and embedding tokens used. Failures
            are reported with ``success=False``, never raised.
        """
        notify = on_progress or (lambda progress: None)
        document = await self._load_or_create(job)

        try:
            document = await self._update(document, status=DocumentStatus.PROCESSING, error_message=None)
            notify(ProcessingProgress(stage=ProcessingStage.EXTRACTING, progress=10, message="Extracting content..."))

            content, size_bytes = await self._extract(job)
            if not content.strip():
                raise DocumentProcessingError("No content extracted from document")

            content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
            duplicate = await self.store.find_document_by_hash(job.tenant_id, content_hash, exclude_id=job.document_id)
            if duplicate:
                raise DocumentProcessingError("Duplicate content detected - document already exists")

            document = await self._update(
                document,
                raw_content=content,
                content_hash=content_hash,
                word_count=len(content.split()),
                file_size_bytes=size_bytes,
                status=DocumentStatus.CHUNKING,
            )
            notify(ProcessingProgress(stage=ProcessingStage.CHUNKING, progress=30, message="Splitting into chunks..."))

            chunks = chunk_document(content, options, strategy, self.detector)
            if not chunks:
                raise DocumentProcessingError("No chunks generated from content")

            total = len(chunks)
            document = await self._update(document, chunks_count=total, status=DocumentStatus.EMBEDDING)
            notify(
                ProcessingProgress(
                    stage=ProcessingStage.EMBEDDING,
                    progress=50,
                    message=f"Generating embeddings for {total} chunks...",
                    chunks_processed=0,
                    total_chunks=total,
                )
            )

            def embedding_progress(processed: int, batch_total: int) -> None:
                notify(
                    ProcessingProgress(
                        stage=ProcessingStage.EMBEDDING,
                        progress=50 + round(processed / batch_total * 30),
                        message=f"Embedded {processed}/{batch_total} chunks...",
                        chunks_processed=processed,
                        total_chunks=batch_total,
                    )
                )

            embedded = await self.embeddings.embed_batched(
                [chunk.content for chunk in chunks],
                batch_size=self.batch_size,
                progress_callback=embedding_progress,
                model=self.embedding_model,
            )
            if len(embedded.embeddings) != total:
                raise DocumentProcessingError(
                    f"Expected {total} embeddings, received {len(embedded.embeddings)}"
                )

            notify(ProcessingProgress(stage=ProcessingStage.STORING, progress=85, message="Storing chunks..."))

            await self.store.add_chunks(
                [
                    StoredChunk(
                        id=str(uuid.uuid4()),
                        document_id=job.document_id,
                        tenant_id=job.tenant_id,
                        content=chunk.content,
                        chunk_index=chunk.chunk_index,
                        token_count=chunk.token_count,
                        start_char=chunk.start_char,
                        end_char=chunk.end_char,
                        embedding=vector.values,
                        metadata=chunk.metadata,
                    )
                    for chunk, vector in zip(chunks, embedded.embeddings)
                ]
            )

            tokens_used = embedded.usage.total_tokens
            await self._update(
                document,
                status=DocumentStatus.COMPLETED,
                embedding_model=embedded.model,
                processed_at=utcnow(),
                metadata={
                    **document.metadata,
                    **extract_document_metadata(content),
                    "processing_tokens_used": tokens_used,
                },
            )
            notify(ProcessingProgress(stage=ProcessingStage.COMPLETED, progress=100, message="Processing complete!"))

        except Exception as e:
            message = str(e) or "Unknown error occurred"
            logger.error(f"Processing failed for document {job.document_id}: {message}")
            await self._update(document, status=DocumentStatus.FAILED, error_message=message)
            notify(ProcessingProgress(stage=ProcessingStage.FAILED, progress=0, message=message))
            return ProcessingResult(success=False, document_id=job.document_id, error=message)

        logger.info(f"Processed document {job.document_id}: {total} chunks, {tokens_used} tokens")
        return ProcessingResult(
            success=True,
            document_id=job.document_id,
            chunks_created=total,
            tokens_used=tokens_used,
        )

    async def reprocess(
        self,
        document_id: str,
        tenant_id: str,
        options: Optional[ChunkingOptions] = None,
        strategy: Union[ChunkingStrategy, str] = ChunkingStrategy.AUTO,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProcessingResult:
        """Drop a document's chunks and run it through the pipeline again."""
        document = await self.store.get_document(document_id)
        if document is None or document.tenant_id != tenant_id:
            return ProcessingResult(success=False, document_id=document_id, error="Document not found")

        removed = await self.store.delete_chunks(document_id)
        logger.debug(f"Removed {removed} chunks of document {document_id}")

        await self._update(
            document,
            status=DocumentStatus.PENDING,
            chunks_count=0,
            error_message=None,
            processed_at=None,
        )

        return await self.process(self._job_for(document), options, strategy, on_progress)

    async def enqueue(
        self,
        document_id: str,
        tenant_id: str,
        priority: int = 5,
    ) -> ProcessingQueueItem:
        """Queue a document for background processing.

        Args:
            document_id: Document to process
            tenant_id: Tenant owning the document
            priority: Lower values are processed first

        Returns:
            The pending queue entry
        """
        item = await self.queue.enqueue(
            ProcessingQueueItem(document_id=document_id, tenant_id=tenant_id, priority=priority)
        )
        logger.debug(f"Queued document {document_id} with priority {priority}")
        return item

    async def process_next(
        self,
        options: Optional[ChunkingOptions] = None,
        strategy: Union[ChunkingStrategy, str] = ChunkingStrategy.AUTO,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[ProcessingResult]:
        """Process the next pending queue entry.

        The entry is marked processing, the document is run through
        :meth:`reprocess`, and the entry ends completed or failed with the
        error message.

        Returns:
            The processing result, or None when the queue is empty
        """
        item = await self.queue.claim_next()
        if item is None:
            return None

        try:
            result = await self.reprocess(item.document_id, item.tenant_id, options, strategy, on_progress)
        except Exception as e:
            message = str(e) or "Unknown error occurred"
            logger.error(f"Queued processing failed for document {item.document_id}: {message}")
            result = ProcessingResult(success=False, document_id=item.document_id, error=message)

        await self.queue.finish(item.id, result.success, result.error)
        return result

    @staticmethod
    def _job_for(document: KnowledgeDocument) -> ProcessingJob:
        return ProcessingJob(
            document_id=document.id,
            tenant_id=document.tenant_id,
            source_type=document.source_type,
            title=document.title,
            tags=document.tags,
            raw_content=document.raw_content,
            source_url=document.source_url,
            file_path=document.file_path,
        )

    async def _load_or_create(self, job: ProcessingJob) -> KnowledgeDocument:
        document = await self.store.get_document(job.document_id)
        if document is not None:
            return document

        document = KnowledgeDocument(
            id=job.document_id,
            tenant_id=job.tenant_id,
            title=job.title or job.source_url or job.document_id,
            source_type=job.source_type,
            tags=job.tags,
            raw_content=job.raw_content,
            source_url=job.source_url,
            file_path=job.file_path,
        )
        await self.store.save_document(document)
        return document

    async def _update(self, document: KnowledgeDocument, **fields) -> KnowledgeDocument:
        updated = document.model_copy(update={**fields, "updated_at": utcnow()})
        await self.store.save_document(updated)
        return updated

    async def _extract(self, job: ProcessingJob) -> tuple[str, int]:
        """Get document content and its size in bytes."""
        if job.source_type is DocumentSourceType.TEXT:
            content = job.raw_content or ""
            return content, len(content.encode("utf-8"))

        if job.source_type is DocumentSourceType.URL:
            if not job.source_url:
                raise DocumentProcessingError("URL document has no source_url")
            content = await self.fetcher.fetch(job.source_url)
            return content, len(content.encode("utf-8"))

        if job.source_type is DocumentSourceType.FILE:
            if not job.file_path:
                raise DocumentProcessingError("File document has no file_path")
            loop = asyncio.get_event_loop()
            content = await loop.run_in_executor(None, read_file_content, job.file_path)
            size = await loop.run_in_executor(None, _file_size, job.file_path)
            return content, size

        raise DocumentProcessingError(f"Unknown source type: {job.source_type}")


def _file_size(file_path: str) -> int:
    return Path(file_path).stat().st_size
