"""Pipeline configuration: grouping policy enum and PipelineConfig dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.config import Settings

# Page count used by the "batched" grouping policy
BATCHED_PAGES_PER_CHUNK = 20


class PageGrouping(str, Enum):
    """How OCR pages are bundled into one model call during parsing."""

    PER_PAGE = "per_page"
    BATCHED = "batched"


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable chunking and batching policy for one protocol run.

    Defaults mirror the project's current behaviour (one page per parse
    call, analysis batches of 15 split on questioner changes).
    """

    pages_per_chunk: int = 1
    analysis_batch_size: int = 15
    analysis_concurrency: int = 3
    split_on_questioner_change: bool = True
    corpus_top_k: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            pages_per_chunk=settings.pages_per_chunk,
            analysis_batch_size=settings.analysis_batch_size,
            analysis_concurrency=settings.analysis_concurrency,
            split_on_questioner_change=settings.split_batches_on_questioner_change,
            corpus_top_k=settings.corpus_top_k,
        )

    @classmethod
    def for_grouping(cls, grouping: str | PageGrouping, **overrides: object) -> PipelineConfig:
        """Build a config whose page grouping follows a named policy."""
        if isinstance(grouping, str):
            grouping = PageGrouping(grouping)
        pages = BATCHED_PAGES_PER_CHUNK if grouping is PageGrouping.BATCHED else 1
        return cls(pages_per_chunk=pages, **overrides)  # type: ignore[arg-type]
