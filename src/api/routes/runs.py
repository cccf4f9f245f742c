"""Timeline run endpoints: start a parse run, poll it, cancel or delete it."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from fastapi import APIRouter, BackgroundTasks, HTTPException, Response

from src.api.errors import to_http_exception
from src.api.models import RunStatusResponse, StartRunRequest, StartRunResponse
from src.concurrency import CancellationToken
from src.config import settings
from src.extraction.assembler import RunState, TimelineAssembler
from src.ingestion.chunking import EmptyInputError, InputContractError, find_protocol_id
from src.pipeline_config import PipelineConfig
from src.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_RETAINED_RUNS = settings.max_retained_runs

_FINISHED_STATES = (RunState.COMPLETED, RunState.ABORTED, RunState.FAILED)


@dataclass
class RunRecord:
    assembler: TimelineAssembler
    token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def finished(self) -> bool:
        return self.assembler.state in _FINISHED_STATES


# Insertion-ordered, so iteration starts at the oldest run
_runs: dict[str, RunRecord] = {}


def _get_record(run_id: str) -> RunRecord:
    record = _runs.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return record


def _evict_finished_runs() -> None:
    """Drop the oldest finished runs until at most MAX_RETAINED_RUNS remain."""
    excess = len(_runs) - MAX_RETAINED_RUNS
    if excess <= 0:
        return
    stale = [run_id for run_id, record in _runs.items() if record.finished][:excess]
    for run_id in stale:
        del _runs[run_id]
    if stale:
        logger.info("Evicted %d finished run(s) from the registry", len(stale))


def _pages_per_chunk(request: StartRunRequest) -> int | None:
    if request.pages_per_chunk is not None:
        return request.pages_per_chunk
    if request.grouping is not None:
        return PipelineConfig.for_grouping(request.grouping).pages_per_chunk
    return None


async def _execute(run_id: str, text: str, protocol_id: str) -> None:
    record = _runs[run_id]
    try:
        await record.assembler.start(text, protocol_id=protocol_id, cancel_token=record.token)
    except InputContractError as exc:
        # The assembler has already marked the run as failed
        logger.warning("Run %s failed: %s", run_id, exc)
    except Exception as exc:
        # Marked failed with its error by the assembler; pollers see it there
        logger.error("Run %s failed unexpectedly: %s", run_id, exc)


@router.post("/api/runs", response_model=StartRunResponse, status_code=202)
async def start_run(request: StartRunRequest, background_tasks: BackgroundTasks) -> StartRunResponse:
    """Validate the input and start parsing it in the background.

    Raises:
        HTTPException(400): Empty text or no protocol id in the text.
    """
    try:
        if not request.text.strip():
            raise EmptyInputError()
        protocol_id = request.protocol_id or find_protocol_id(request.text)
    except InputContractError as exc:
        raise to_http_exception(exc) from exc

    services = get_services()
    run_id = uuid.uuid4().hex
    _runs[run_id] = RunRecord(assembler=services.new_assembler(_pages_per_chunk(request)))
    _evict_finished_runs()
    background_tasks.add_task(_execute, run_id, request.text, protocol_id)
    logger.info("Started run %s for %s", run_id, protocol_id)
    return StartRunResponse(run_id=run_id, state=_runs[run_id].assembler.state.value)


@router.get("/api/runs/{run_id}", response_model=RunStatusResponse)
async def get_run(run_id: str) -> RunStatusResponse:
    record = _get_record(run_id)
    return RunStatusResponse.from_run(run_id, record.assembler.run)


@router.post("/api/runs/{run_id}/cancel", response_model=RunStatusResponse)
async def cancel_run(run_id: str) -> RunStatusResponse:
    """Stop the run before its next chunk. Entries parsed so far are kept."""
    record = _get_record(run_id)
    record.token.cancel()
    return RunStatusResponse.from_run(run_id, record.assembler.run)


@router.delete("/api/runs/{run_id}", status_code=204)
async def delete_run(run_id: str) -> Response:
    """Forget a finished run.

    Raises:
        HTTPException(404): Unknown run.
        HTTPException(409): The run is still in progress; cancel it first.
    """
    record = _get_record(run_id)
    if not record.finished:
        raise HTTPException(status_code=409, detail=f"Run {run_id} is still {record.assembler.state.value}")
    del _runs[run_id]
    return Response(status_code=204)
