"""Analysis endpoints: enrich entries and synthesize key insights."""

from __future__ import annotations

from fastapi import APIRouter

from src.analysis.analyzer import AnalysisBatchError
from src.analysis.insights import InsufficientDataError
from src.api.errors import to_http_exception
from src.api.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    EntryModel,
    InsightsRequest,
    InsightsResponse,
)
from src.llm.errors import ModelError
from src.services import get_services

router = APIRouter()


@router.post("/api/analyze", response_model=AnalyzeResponse)
async def analyze_entries(request: AnalyzeRequest) -> AnalyzeResponse:
    """Enrich the Q/A pairs of a timeline against the knowledge corpus.

    Raises:
        HTTPException(503): The model stayed overloaded for a batch.
        HTTPException(502): A batch failed for any other model reason.
    """
    services = get_services()
    entries = [e.to_entry() for e in request.entries]
    try:
        result = await services.analyzer.analyze(entries, concurrency=request.concurrency)
    except AnalysisBatchError as exc:
        raise to_http_exception(exc) from exc

    return AnalyzeResponse(
        entries=[EntryModel.from_entry(e) for e in result.entries],
        unmatched_ids=result.unmatched_ids,
        enriched_count=result.enriched_count,
    )


@router.post("/api/insights", response_model=InsightsResponse)
async def synthesize_insights(request: InsightsRequest) -> InsightsResponse:
    """Summarize analyzed entries into three key insights.

    Raises:
        HTTPException(422): Fewer than three analyzed entries.
    """
    services = get_services()
    entries = [e.to_entry() for e in request.entries]
    try:
        insights = await services.synthesizer.synthesize(entries)
    except (InsufficientDataError, ModelError) as exc:
        raise to_http_exception(exc) from exc
    return InsightsResponse.from_insights(insights)
