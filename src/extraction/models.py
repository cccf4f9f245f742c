"""Data models for timeline entries and cross-entry insights."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any

# Category value for entries without substantive content
NOT_APPLICABLE_TAG = "Irrelevant / Procedural"

QA_FIELDS = ("questioner", "question", "witness", "answer")


@dataclass
class Entry:
    """One timeline record: either a Q/A item or a procedural note.

    ``id`` and ``source_locator`` are assigned by the pipeline, never by the
    model. The enrichment fields stay ``None`` until analysis runs.
    """

    id: int
    source_locator: str
    questioner: str | None = None
    question: str | None = None
    witness: str | None = None
    answer: str | None = None
    note: str | None = None
    core_statement: str | None = None
    category_tags: str | None = None
    justification: str | None = None

    def __post_init__(self) -> None:
        if self.id < 1:
            raise ValueError(f"Entry id must be positive, got {self.id}")
        has_qa = any(getattr(self, name) is not None for name in QA_FIELDS)
        if self.note is not None and has_qa:
            raise ValueError(f"Entry {self.id} mixes a note with Q/A content")
        if self.note is None and not has_qa:
            raise ValueError(f"Entry {self.id} has neither a note nor Q/A content")

    @property
    def is_note(self) -> bool:
        return self.note is not None

    @property
    def is_pair(self) -> bool:
        """True when both question and answer are present."""
        return self.question is not None and self.answer is not None

    @property
    def is_enriched(self) -> bool:
        return self.core_statement is not None

    def enriched(self, core_statement: str, category_tags: str, justification: str) -> Entry:
        return replace(
            self,
            core_statement=core_statement,
            category_tags=category_tags,
            justification=justification,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KeyInsight:
    title: str
    description: str
    references: list[int] = field(default_factory=list)  # Entry ids


@dataclass
class KeyInsights:
    """Summary plus exactly three ranked insights over the enriched entries."""

    summary: str
    insights: list[KeyInsight] = field(default_factory=list)
