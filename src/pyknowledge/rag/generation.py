"""Answer generation over retrieved context."""

import os
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from pyknowledge.utils.logging import get_logger

from .base import BaseGenerationProvider
from .exceptions import GenerationError, MissingCredentialsError
from .models import GenerationRequest, GenerationResult

logger = get_logger(__name__)

_BASE_INSTRUCTIONS = (
    "You are a helpful assistant that answers questions based on the provided context.\n"
    "Always base your answers on the given context. If the context doesn't contain "
    "enough information to answer the question, say so."
)

_CITATION_INSTRUCTIONS = (
    "When citing information, reference the document title in brackets like [Document Title]."
)


class _ChatMessage(BaseModel):
    content: Optional[str] = None


class _ChatChoice(BaseModel):
    message: _ChatMessage
    finish_reason: Optional[str] = None


class _ChatUsage(BaseModel):
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    """Expected shape of a chat-completion provider response."""

    choices: list[_ChatChoice] = Field(min_length=1)
    usage: _ChatUsage = Field(default_factory=_ChatUsage)


def build_system_prompt(include_citations: bool = True) -> str:
    """System prompt for grounded answering, with citation instructions if asked."""
    if include_citations:
        return f"{_BASE_INSTRUCTIONS}\n{_CITATION_INSTRUCTIONS}"
    return _BASE_INSTRUCTIONS


def build_user_prompt(context: str, query: str) -> str:
    return (
        f"Context:\n{context}\n\n"
        f"Question: {query}\n\n"
        "Please provide a helpful answer based on the context above."
    )


class OpenAIChatProvider(BaseGenerationProvider):
    """Chat-completion provider for the OpenAI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.organization = organization
        self._client = None

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            api_key = self.api_key or os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise MissingCredentialsError()

            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                organization=self.organization,
            )
        return self._client

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> dict[str, Any]:
        """Get a completion from OpenAI."""
        import openai

        client = self._get_client()

        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise GenerationError(f"Chat completion failed: {e}") from e

        return response.model_dump()


async def generate_answer(
    provider: BaseGenerationProvider,
    request: GenerationRequest,
) -> GenerationResult:
    """Ask the provider to answer ``request.query`` from ``request.context``.

    Args:
        provider: Chat-completion provider
        request: Query, assembled context and sampling parameters

    Returns:
        Answer text, total tokens used and finish reason

    Raises:
        GenerationError: Provider failed or returned an unexpected payload
    """
    messages = [
        {"role": "system", "content": build_system_prompt(request.include_citations)},
        {"role": "user", "content": build_user_prompt(request.context, request.query)},
    ]

    raw = await provider.complete(
        messages,
        model=request.model,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )

    try:
        response = ChatCompletionResponse.model_validate(raw)
    except ValidationError as e:
        raise GenerationError(f"Malformed chat completion response: {e}") from e

    choice = response.choices[0]
    if choice.message.content is None:
        raise GenerationError("Chat completion returned no content")

    logger.debug(f"Generated answer with {request.model} ({response.usage.total_tokens} tokens)")

    return GenerationResult(
        content=choice.message.content,
        tokens_used=response.usage.total_tokens,
        finish_reason=choice.finish_reason or "stop",
    )
