"""Sequential chunk-by-chunk assembly of a protocol's entry timeline."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from src.concurrency import CancellationToken
from src.extraction.models import Entry
from src.extraction.parser import ChunkParseError, EntryParser
from src.ingestion.chunking import (
    EmptyInputError,
    find_protocol_id,
    group_pages,
    split_into_pages,
)
from src.ingestion.models import Chunk

logger = logging.getLogger(__name__)

NO_ENTRIES_MESSAGE = "No structured entries could be identified in any chunk of the document."


class RunState(str, Enum):
    """Lifecycle of one timeline run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class ChunkFailure:
    """A chunk that was skipped because parsing it failed."""

    chunk_index: int
    first_page: int
    last_page: int
    message: str

    @property
    def pages_label(self) -> str:
        if self.first_page == self.last_page:
            return str(self.first_page)
        return f"{self.first_page}-{self.last_page}"


@dataclass
class TimelineRun:
    """Observable status of a run. ``entries`` grows as chunks complete."""

    state: RunState = RunState.IDLE
    protocol_id: str | None = None
    entries: list[Entry] = field(default_factory=list)
    total_chunks: int = 0
    processed_chunks: int = 0
    total_pages: int = 0
    pages_processed: int = 0
    failures: list[ChunkFailure] = field(default_factory=list)
    error: str | None = None

    @property
    def skipped_pages(self) -> list[str]:
        return [f.pages_label for f in self.failures]

    def summary(self) -> str:
        if self.state is RunState.FAILED:
            return f"Parsing failed: {self.error}"
        text = (
            f"{len(self.entries)} entries from {self.pages_processed} of "
            f"{self.total_pages} pages ({self.processed_chunks}/{self.total_chunks} chunks)"
        )
        if self.failures:
            text += f"; skipped pages: {', '.join(self.skipped_pages)}"
        if self.state is RunState.COMPLETED and not self.entries:
            text += "; no entries extracted"
        if self.state is RunState.ABORTED:
            text += "; run was cancelled"
        return text


class TimelineAssembler:
    """Drives :class:`EntryParser` over every chunk of one document, in order.

    Chunks are parsed strictly one after another: ids are handed out as
    ``1 + entries so far``, which is only deterministic if chunk ``k + 1``
    starts after chunk ``k`` is settled. The assembler is the only writer
    of the entry list; observers read :meth:`snapshot`.
    """

    def __init__(
        self,
        parser: EntryParser,
        pages_per_chunk: int = 1,
        on_update: Callable[[TimelineRun], None] | None = None,
    ) -> None:
        self.parser = parser
        self.pages_per_chunk = pages_per_chunk
        self.on_update = on_update
        self.run = TimelineRun()

    @property
    def state(self) -> RunState:
        return self.run.state

    def snapshot(self) -> list[Entry]:
        """A copy of the entries collected so far."""
        return list(self.run.entries)

    def _publish(self) -> None:
        if self.on_update is not None:
            self.on_update(self.run)

    async def start(
        self,
        full_text: str,
        protocol_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TimelineRun:
        """Parse *full_text* into a timeline.

        Args:
            full_text: OCR text with ``==Start of OCR for page N==`` markers.
            protocol_id: Explicit protocol id. When omitted it is read from
                the ``WP_<n>/<m>`` reference in the text.
            cancel_token: Checked before each chunk; once set, the run stops
                and keeps what it already has.

        Returns:
            The finished run (``COMPLETED`` or ``ABORTED``). A completed run
            without any entries carries an ``error`` message.

        Raises:
            InputContractError: Empty input or no protocol id (run is ``FAILED``).
            Exception: Any unexpected error while parsing chunks is re-raised
                after the run is marked ``FAILED``.
        """
        self.run = TimelineRun(state=RunState.RUNNING)
        try:
            if not full_text.strip():
                raise EmptyInputError()
            pid = protocol_id or find_protocol_id(full_text)
        except ValueError as exc:
            self.run.state = RunState.FAILED
            self.run.error = str(exc)
            self._publish()
            raise

        pages = split_into_pages(full_text)
        chunks = group_pages(pages, self.pages_per_chunk)
        self.run.protocol_id = pid
        self.run.total_chunks = len(chunks)
        self.run.total_pages = len(pages)
        self._publish()
        logger.info("Parsing %s: %d pages in %d chunks", pid, len(pages), len(chunks))

        try:
            for chunk in chunks:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.warning(
                        "Run for %s cancelled before chunk %d/%d; keeping %d entries",
                        pid,
                        chunk.chunk_index + 1,
                        len(chunks),
                        len(self.run.entries),
                    )
                    self.run.state = RunState.ABORTED
                    self._publish()
                    return self.run
                await self._parse_chunk(chunk, pid, len(chunks))
        except Exception as exc:
            logger.exception("Parsing of %s failed", pid)
            self.run.state = RunState.FAILED
            self.run.error = str(exc) or type(exc).__name__
            self._publish()
            raise

        if not self.run.entries:
            self.run.error = NO_ENTRIES_MESSAGE
            logger.warning("Parsing of %s produced no entries", pid)
        self.run.state = RunState.COMPLETED
        self._publish()
        logger.info("Parsing of %s complete: %s", pid, self.run.summary())
        return self.run

    async def _parse_chunk(self, chunk: Chunk, pid: str, total: int) -> None:
        logger.info(
            "Parsing chunk %d of %d (page %d)...",
            chunk.chunk_index + 1,
            total,
            chunk.first_page,
        )
        current_entry_id = len(self.run.entries) + 1
        try:
            entries = await self.parser.parse_chunk(
                chunk.render(),
                pid,
                chunk.first_page,
                current_entry_id,
                page_numbers=chunk.page_numbers,
            )
        except ChunkParseError as exc:
            logger.warning("Skipping chunk %d: %s", chunk.chunk_index + 1, exc)
            self.run.failures.append(
                ChunkFailure(
                    chunk_index=chunk.chunk_index,
                    first_page=chunk.first_page,
                    last_page=chunk.last_page,
                    message=str(exc),
                )
            )
        else:
            self.run.entries.extend(entries)
            self.run.pages_processed += len(chunk.pages)

        self.run.processed_chunks += 1
        self._publish()
