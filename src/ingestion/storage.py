"""Supabase storage helpers for protocols and their timeline entries."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, cast

from supabase import Client, create_client

from src.config import settings
from src.extraction.models import Entry

INSERT_BATCH_SIZE = 50

_ENTRY_COLUMNS = (
    "source_locator",
    "questioner",
    "question",
    "witness",
    "answer",
    "note",
    "core_statement",
    "category_tags",
    "justification",
)


def get_supabase_client() -> Client:
    """Create and return a Supabase client from the configured URL and key."""
    return create_client(settings.supabase_url, settings.supabase_key)


def store_protocol(
    client: Client,
    protocol_id: str,
    title: str | None = None,
    source_file: str | None = None,
    entry_count: int = 0,
) -> str:
    """Store protocol metadata and return the generated row ID."""
    result = (
        client.table("protocols")
        .insert(
            {
                "protocol_id": protocol_id,
                "title": title or protocol_id,
                "source_file": source_file,
                "entry_count": entry_count,
            }
        )
        .execute()
    )
    return str(cast(list[dict[str, Any]], result.data)[0]["id"])


def entry_to_row(protocol_row_id: str, entry: Entry) -> dict[str, Any]:
    row: dict[str, Any] = {"protocol_row_id": protocol_row_id, "entry_id": entry.id}
    for column in _ENTRY_COLUMNS:
        row[column] = getattr(entry, column)
    return row


def row_to_entry(row: dict[str, Any]) -> Entry:
    return Entry(id=row["entry_id"], **{column: row.get(column) for column in _ENTRY_COLUMNS})


def store_entries(client: Client, protocol_row_id: str, entries: Sequence[Entry]) -> None:
    """Store timeline entries in Supabase (batched by 50)."""
    rows = [entry_to_row(protocol_row_id, entry) for entry in entries]
    for i in range(0, len(rows), INSERT_BATCH_SIZE):
        client.table("entries").insert(rows[i : i + INSERT_BATCH_SIZE]).execute()


def list_protocols(client: Client) -> list[dict[str, Any]]:
    """All stored protocols, newest first."""
    result = client.table("protocols").select("*").order("created_at", desc=True).execute()
    return cast(list[dict[str, Any]], result.data)


def load_protocol(client: Client, protocol_row_id: str) -> tuple[dict[str, Any], list[Entry]] | None:
    """Return ``(metadata, entries)`` for a stored protocol, or ``None`` if unknown."""
    result = client.table("protocols").select("*").eq("id", protocol_row_id).execute()
    rows = cast(list[dict[str, Any]], result.data)
    if not rows:
        return None

    entries_result = (
        client.table("entries")
        .select("*")
        .eq("protocol_row_id", protocol_row_id)
        .order("entry_id")
        .execute()
    )
    entries = [row_to_entry(r) for r in cast(list[dict[str, Any]], entries_result.data)]
    return rows[0], entries
