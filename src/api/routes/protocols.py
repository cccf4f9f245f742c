"""Protocol endpoints: persist a finished timeline and read stored ones back."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.api.models import EntryModel, ProtocolDetail, ProtocolSummary, StoreProtocolRequest
from src.ingestion.storage import (
    get_supabase_client,
    list_protocols,
    load_protocol,
    store_entries,
    store_protocol,
)

router = APIRouter()


def _summary(row: dict[str, Any]) -> ProtocolSummary:
    return ProtocolSummary(
        id=str(row["id"]),
        protocol_id=row["protocol_id"],
        title=row.get("title"),
        source_file=row.get("source_file"),
        entry_count=row.get("entry_count") or 0,
        created_at=row.get("created_at"),
    )


@router.post("/api/protocols", response_model=ProtocolSummary, status_code=201)
async def create_protocol(request: StoreProtocolRequest) -> ProtocolSummary:
    """Store a timeline (parsed or analyzed) with one row per entry."""
    client = get_supabase_client()
    entries = [e.to_entry() for e in request.entries]
    row_id = store_protocol(
        client,
        request.protocol_id,
        title=request.title,
        source_file=request.source_file,
        entry_count=len(entries),
    )
    store_entries(client, row_id, entries)
    return ProtocolSummary(
        id=row_id,
        protocol_id=request.protocol_id,
        title=request.title or request.protocol_id,
        source_file=request.source_file,
        entry_count=len(entries),
    )


@router.get("/api/protocols", response_model=list[ProtocolSummary])
async def get_protocols() -> list[ProtocolSummary]:
    """List stored protocols ordered by creation date (newest first)."""
    return [_summary(row) for row in list_protocols(get_supabase_client())]


@router.get("/api/protocols/{protocol_id}", response_model=ProtocolDetail)
async def get_protocol(protocol_id: str) -> ProtocolDetail:
    loaded = load_protocol(get_supabase_client(), protocol_id)
    if loaded is None:
        raise HTTPException(status_code=404, detail="Protocol not found")

    row, entries = loaded
    return ProtocolDetail(
        **_summary(row).model_dump(),
        entries=[EntryModel.from_entry(e) for e in entries],
    )
