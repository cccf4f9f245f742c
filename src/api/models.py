"""Pydantic request/response schemas for the Protocol Timeline API."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from src.extraction.assembler import ChunkFailure, TimelineRun
from src.extraction.models import Entry, KeyInsights
from src.pipeline_config import PageGrouping


class EntryModel(BaseModel):
    """Wire form of a timeline entry."""

    id: int = Field(ge=1)
    source_locator: str
    questioner: str | None = None
    question: str | None = None
    witness: str | None = None
    answer: str | None = None
    note: str | None = None
    core_statement: str | None = None
    category_tags: str | None = None
    justification: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> EntryModel:
        # Entry enforces note XOR Q/A; surface that as a validation error
        self.to_entry()
        return self

    @classmethod
    def from_entry(cls, entry: Entry) -> EntryModel:
        return cls(**entry.to_dict())

    def to_entry(self) -> Entry:
        return Entry(**self.model_dump())


class StartRunRequest(BaseModel):
    """Request body for POST /api/runs."""

    text: str
    protocol_id: str | None = None
    pages_per_chunk: int | None = Field(default=None, ge=1)
    grouping: PageGrouping | None = None


class StartRunResponse(BaseModel):
    run_id: str
    state: str


class ChunkFailureModel(BaseModel):
    chunk_index: int
    first_page: int
    last_page: int
    message: str

    @classmethod
    def from_failure(cls, failure: ChunkFailure) -> ChunkFailureModel:
        return cls(
            chunk_index=failure.chunk_index,
            first_page=failure.first_page,
            last_page=failure.last_page,
            message=failure.message,
        )


class RunStatusResponse(BaseModel):
    """Snapshot of a timeline run; ``entries`` grows while the run is in progress."""

    run_id: str
    state: str
    protocol_id: str | None = None
    total_chunks: int = 0
    processed_chunks: int = 0
    total_pages: int = 0
    pages_processed: int = 0
    entries: list[EntryModel] = []
    failures: list[ChunkFailureModel] = []
    skipped_pages: list[str] = []
    error: str | None = None
    summary: str = ""

    @classmethod
    def from_run(cls, run_id: str, run: TimelineRun) -> RunStatusResponse:
        return cls(
            run_id=run_id,
            state=run.state.value,
            protocol_id=run.protocol_id,
            total_chunks=run.total_chunks,
            processed_chunks=run.processed_chunks,
            total_pages=run.total_pages,
            pages_processed=run.pages_processed,
            entries=[EntryModel.from_entry(e) for e in list(run.entries)],
            failures=[ChunkFailureModel.from_failure(f) for f in run.failures],
            skipped_pages=run.skipped_pages,
            error=run.error,
            summary=run.summary(),
        )


class AnalyzeRequest(BaseModel):
    """Request body for POST /api/analyze."""

    entries: list[EntryModel]
    concurrency: int | None = Field(default=None, ge=1)


class AnalyzeResponse(BaseModel):
    entries: list[EntryModel]
    unmatched_ids: list[int] = []
    enriched_count: int = 0


class InsightsRequest(BaseModel):
    entries: list[EntryModel]


class KeyInsightModel(BaseModel):
    title: str
    description: str
    references: list[int] = []


class InsightsResponse(BaseModel):
    summary: str
    insights: list[KeyInsightModel]

    @classmethod
    def from_insights(cls, insights: KeyInsights) -> InsightsResponse:
        return cls(
            summary=insights.summary,
            insights=[
                KeyInsightModel(title=i.title, description=i.description, references=i.references)
                for i in insights.insights
            ],
        )


class StoreProtocolRequest(BaseModel):
    """Request body for POST /api/protocols."""

    protocol_id: str
    title: str | None = None
    source_file: str | None = None
    entries: list[EntryModel]


class ProtocolSummary(BaseModel):
    """Summary representation of a stored protocol for list views."""

    id: str
    protocol_id: str
    title: str | None = None
    source_file: str | None = None
    entry_count: int = 0
    created_at: str | None = None


class ProtocolDetail(ProtocolSummary):
    entries: list[EntryModel] = []
