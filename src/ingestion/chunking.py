"""Page splitting and chunking strategies for OCR'd protocols and parsed entries."""

from __future__ import annotations

import re
from collections.abc import Sequence

from src.extraction.models import Entry
from src.ingestion.models import Chunk, PageUnit

PAGE_START_RE = re.compile(r"==Start of OCR for page (\d+)==")
PAGE_END_RE = re.compile(r"==End of OCR for page \d+==")
# Zero-width split point so each marker stays attached to its page
_PAGE_SPLIT_RE = re.compile(r"(?===Start of OCR for page \d+==)")

PROTOCOL_ID_RE = re.compile(r"WP_(\d+)/(\d+)")


class InputContractError(ValueError):
    """The input text does not satisfy a precondition of the pipeline."""


class EmptyInputError(InputContractError):
    def __init__(self) -> None:
        super().__init__("Input text is empty. Please provide OCR text to parse.")


class ProtocolIdNotFoundError(InputContractError):
    def __init__(self) -> None:
        super().__init__(
            "No protocol identifier found. The text must contain a reference like 'WP_80/6'."
        )


def find_protocol_id(full_text: str) -> str:
    """Return the protocol id for the first ``WP_<n>/<m>`` reference, e.g. ``"WP80"``.

    Raises:
        ProtocolIdNotFoundError: If no reference is present.
    """
    match = PROTOCOL_ID_RE.search(full_text)
    if match is None:
        raise ProtocolIdNotFoundError()
    return f"WP{match.group(1)}"


def format_source_locator(protocol_id: str, page_number: int) -> str:
    """``("WP80", 6)`` -> ``"WP80/06"``."""
    return f"{protocol_id}/{page_number:02d}"


def split_into_pages(full_text: str) -> list[PageUnit]:
    """Split OCR text on its ``==Start of OCR for page N==`` markers.

    Start and end markers are removed exactly once each; nothing else is
    touched, so concatenating the page texts gives back the input minus its
    markers. Text before the first marker is kept with the first page. A
    non-blank text without any marker becomes a single page 1.
    """
    if not full_text.strip():
        return []

    parts = _PAGE_SPLIT_RE.split(full_text)
    preamble = ""
    pages: list[PageUnit] = []

    for part in parts:
        match = PAGE_START_RE.match(part)
        if match is None:
            # Only the leading fragment can lack a marker
            preamble += part
            continue
        body = PAGE_END_RE.sub("", part[match.end() :])
        pages.append(PageUnit(page_number=int(match.group(1)), text=body))

    if not pages:
        return [PageUnit(page_number=1, text=PAGE_END_RE.sub("", full_text))]

    if preamble:
        first = pages[0]
        pages[0] = PageUnit(
            page_number=first.page_number,
            text=PAGE_END_RE.sub("", preamble) + first.text,
        )
    return pages


def group_pages(pages: Sequence[PageUnit], max_pages_per_chunk: int) -> list[Chunk]:
    """Bundle consecutive pages into chunks of at most *max_pages_per_chunk*.

    Raises:
        ValueError: If *max_pages_per_chunk* is not positive.
    """
    if max_pages_per_chunk <= 0:
        raise ValueError(f"max_pages_per_chunk must be positive, got {max_pages_per_chunk}")

    return [
        Chunk(pages=list(pages[i : i + max_pages_per_chunk]), chunk_index=idx)
        for idx, i in enumerate(range(0, len(pages), max_pages_per_chunk))
    ]


def batch_questioner(batch: Sequence[Entry]) -> str | None:
    """The first non-null questioner in a batch, if any."""
    for entry in batch:
        if entry.questioner is not None:
            return entry.questioner
    return None


def group_entries(
    entries: Sequence[Entry],
    max_entries_per_chunk: int,
    split_on_questioner_change: bool = True,
) -> list[list[Entry]]:
    """Greedily partition entries into analysis batches, preserving order.

    - A note always sits alone in its own batch.
    - A new batch starts when an entry's questioner differs from the
      current batch's questioner (entries without a questioner never
      trigger a split).
    - A new batch starts when the current one holds *max_entries_per_chunk*.

    Raises:
        ValueError: If *max_entries_per_chunk* is not positive.
    """
    if max_entries_per_chunk <= 0:
        raise ValueError(f"max_entries_per_chunk must be positive, got {max_entries_per_chunk}")

    batches: list[list[Entry]] = []
    current: list[Entry] = []
    current_questioner: str | None = None

    for entry in entries:
        if entry.is_note:
            if current:
                batches.append(current)
                current, current_questioner = [], None
            batches.append([entry])
            continue

        speaker_changed = (
            split_on_questioner_change
            and entry.questioner is not None
            and current_questioner is not None
            and entry.questioner != current_questioner
        )
        if current and (len(current) >= max_entries_per_chunk or speaker_changed):
            batches.append(current)
            current, current_questioner = [], None

        current.append(entry)
        if current_questioner is None:
            current_questioner = entry.questioner

    if current:
        batches.append(current)
    return batches
