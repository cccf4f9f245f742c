"""Embedding clients for corpus documents and analysis queries."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from src.llm.errors import ModelCallError

if TYPE_CHECKING:
    from src.config import Settings


class EmbeddingTask(str, Enum):
    DOCUMENT = "document"
    QUERY = "query"


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str, task: EmbeddingTask) -> list[float]: ...


class OpenAIEmbedder:
    """OpenAI text-embedding-3-small. The API is symmetric, so *task* is ignored."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Created on first use; the SDK refuses to construct without a key
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key or None, max_retries=0)
        return self._client

    async def embed(self, text: str, task: EmbeddingTask) -> list[float]:
        try:
            response = await self.client.embeddings.create(input=[text], model=self.model)
        except APIStatusError as exc:
            raise ModelCallError(exc.message, status_code=exc.status_code) from exc
        except APIConnectionError as exc:
            raise ModelCallError(f"Connection error: {exc}") from exc
        return list(response.data[0].embedding)


class GeminiEmbedder:
    """Gemini embeddings with separate document and query task types."""

    _TASK_TYPES = {
        EmbeddingTask.DOCUMENT: "retrieval_document",
        EmbeddingTask.QUERY: "retrieval_query",
    }

    def __init__(self, api_key: str = "", model: str = "models/text-embedding-004") -> None:
        import google.generativeai as genai

        if api_key:
            genai.configure(api_key=api_key)  # type: ignore[attr-defined]
        self._genai = genai
        self.model = model

    async def embed(self, text: str, task: EmbeddingTask) -> list[float]:
        from google.api_core import exceptions as google_exceptions

        try:
            result = await self._genai.embed_content_async(
                model=self.model,
                content=text,
                task_type=self._TASK_TYPES[task],
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise ModelCallError(exc.message or str(exc), status_code=exc.code) from exc
        return list(result["embedding"])


def build_embedder(settings: Settings) -> Embedder:
    """Return the embedder for the configured ``embedding_provider``.

    Raises:
        ValueError: If the provider name is not recognized.
    """
    if settings.embedding_provider == "openai":
        return OpenAIEmbedder(api_key=settings.openai_api_key, model=settings.embedding_model)
    if settings.embedding_provider == "gemini":
        model = settings.embedding_model
        if not model.startswith("models/"):
            model = f"models/{model}"
        return GeminiEmbedder(api_key=settings.gemini_api_key, model=model)
    msg = f"Unknown embedding provider: {settings.embedding_provider!r}. Supported: ['openai', 'gemini']"
    raise ValueError(msg)
