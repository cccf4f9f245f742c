"""Fixed knowledge corpus and nearest-neighbour lookup over its embeddings."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from src.ingestion.embeddings import Embedder, EmbeddingTask

logger = logging.getLogger(__name__)

CORPUS_PATH = Path(__file__).parent / "data" / "knowledge_corpus.json"


@dataclass(frozen=True)
class CorpusItem:
    id: str
    category: str
    description: str

    @property
    def document_text(self) -> str:
        return f"{self.category}: {self.description}"

    def as_context_line(self) -> str:
        return f"- ID {self.id} ({self.category}): {self.description}"


def load_corpus(path: Path = CORPUS_PATH) -> list[CorpusItem]:
    """Load the knowledge corpus shipped with the package."""
    with open(path, encoding="utf-8") as f:
        return [CorpusItem(**item) for item in json.load(f)]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector has zero length."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class CorpusIndex:
    """Owns the corpus embeddings, computed lazily and at most once.

    One instance is shared by every analysis run of a process; tests build
    a fresh one with a stub embedder.
    """

    def __init__(self, embedder: Embedder, items: Sequence[CorpusItem] | None = None) -> None:
        self.embedder = embedder
        self.items: list[CorpusItem] = list(items) if items is not None else load_corpus()
        self._embeddings: list[list[float]] | None = None
        self._lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._embeddings is not None

    async def embeddings(self) -> list[list[float]]:
        if self._embeddings is not None:
            return self._embeddings
        async with self._lock:
            # Another batch may have filled the cache while we waited
            if self._embeddings is None:
                logger.info("Embedding %d knowledge corpus items", len(self.items))
                vectors = []
                for item in self.items:
                    vectors.append(await self.embedder.embed(item.document_text, EmbeddingTask.DOCUMENT))
                self._embeddings = vectors
        return self._embeddings

    async def most_similar(self, query: str | Sequence[float], k: int) -> list[CorpusItem]:
        """Return the *k* corpus items closest to *query*.

        *query* is either the text to embed or a ready query embedding. Equal
        scores keep corpus order.
        """
        if k <= 0:
            return []
        if isinstance(query, str):
            query_vector: Sequence[float] = await self.embedder.embed(query, EmbeddingTask.QUERY)
        else:
            query_vector = query

        corpus_vectors = await self.embeddings()
        scored = [
            (cosine_similarity(query_vector, vector), index)
            for index, vector in enumerate(corpus_vectors)
        ]
        # sorted() is stable, so ties stay in corpus order
        scored = sorted(scored, key=lambda pair: pair[0], reverse=True)
        return [self.items[index] for _, index in scored[:k]]
