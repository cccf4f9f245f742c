"""Translation of pipeline exceptions into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException

from src.analysis.analyzer import AnalysisBatchError
from src.analysis.insights import InsufficientDataError
from src.ingestion.chunking import InputContractError
from src.llm.errors import ModelError, ModelOverloadedError


def to_http_exception(exc: Exception) -> HTTPException:
    """Map a pipeline error to the status code the API reports for it.

    Unknown exception types are not expected here; callers only pass what
    they caught from the pipeline.
    """
    cause = exc.cause if isinstance(exc, AnalysisBatchError) else exc
    if isinstance(exc, InsufficientDataError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, InputContractError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(cause, ModelOverloadedError):
        # Keep the batch context in the message while reporting the overload status
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(cause, ModelError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
