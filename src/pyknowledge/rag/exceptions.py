"""
Knowledge pipeline exceptions.

Validation errors (bad model, oversized batch, empty input, missing
credentials) are never retried. Transient errors (network, rate limit,
provider 5xx) report ``retryable = True``.
"""


class KnowledgeError(Exception):
    """Base exception for knowledge pipeline errors."""

    code = "KNOWLEDGE_ERROR"
    retryable = False

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class EmbeddingError(KnowledgeError):
    """Base exception for embedding client errors."""

    code = "EMBEDDING_ERROR"


class InvalidModelError(EmbeddingError):
    """Raised when the requested embedding model is not recognized."""

    code = "INVALID_MODEL"

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unknown embedding model: {model}")


class BatchTooLargeError(EmbeddingError):
    """Raised when a batch exceeds the provider's hard limit."""

    code = "BATCH_TOO_LARGE"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Batch of {size} texts exceeds the limit of {limit}")


class EmptyInputError(EmbeddingError):
    """Raised when no non-blank text is left to embed."""

    code = "EMPTY_INPUT"

    def __init__(self, message: str = "No non-empty texts to embed"):
        super().__init__(message)


class DimensionMismatchError(EmbeddingError, ValueError):
    """Raised when two vectors of different length are compared."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vectors must have the same dimension ({left} != {right})")


class MissingCredentialsError(KnowledgeError):
    """Raised when a provider API key is not configured."""

    code = "MISSING_API_KEY"

    def __init__(self, message: str = "OPENAI_API_KEY is not configured"):
        super().__init__(message)


class NetworkError(EmbeddingError):
    """Raised on timeouts and connection failures."""

    code = "NETWORK_ERROR"
    retryable = True


class RateLimitedError(EmbeddingError):
    """Raised when the provider rejects a call with a rate limit.

    Attributes:
        retry_after: Provider hint in seconds, or None when absent
    """

    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, message: str = "Rate limited by provider", retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class ApiError(EmbeddingError):
    """Raised on provider error responses and malformed payloads."""

    code = "API_ERROR"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code is not None and self.status_code >= 500


class GenerationError(KnowledgeError):
    """Raised when answer generation fails."""

    code = "GENERATION_FAILED"


class SettingsError(KnowledgeError):
    """Raised when a settings update cannot be applied."""

    code = "SETTINGS_UPDATE_FAILED"


class DocumentProcessingError(KnowledgeError):
    """Raised when a document cannot be ingested."""

    code = "PROCESSING_FAILED"


class UnsafeURLError(DocumentProcessingError):
    """Raised when a URL is blocked by the fetch guard."""

    code = "URL_NOT_ALLOWED"

    def __init__(self, url: str, message: str = "URL not allowed: blocked for security reasons"):
        self.url = url
        super().__init__(message)
