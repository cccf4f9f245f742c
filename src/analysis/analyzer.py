"""Batch enrichment of Q/A entries against the knowledge corpus."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from src.analysis.corpus import CorpusIndex
from src.concurrency import CancellationToken, Progress, run_bounded
from src.extraction.models import NOT_APPLICABLE_TAG, Entry
from src.ingestion.chunking import group_entries
from src.llm.errors import ModelError
from src.llm.schemas import ANALYSIS_RESULTS, AnalysisItem
from src.llm.structured import StructuredOutputCorrector
from src.pipeline_config import PipelineConfig

logger = logging.getLogger(__name__)

# Keeps the retrieval query well inside embedding model input limits
QUERY_MAX_CHARS = 8000

ANALYSIS_PROMPT = """\
1. Rolle und Ziel
Du bist ein KI-Analyst, spezialisiert auf die Analyse von parlamentarischen \
Protokollen eines Untersuchungsausschusses. Deine Aufgabe ist es, die Kernaussage \
jedes vorgelegten Frage-Antwort-Paares zu identifizieren und sie präzise den \
Kategorien eines festen Wissenskorpus zuzuordnen.

2. Wissenskorpus (relevante Auszüge)
Nur die IDs dieser Punkte (z.B. "1a", "18b") dürfen in "category_tags" verwendet werden.
[START WISSENSKORPUS]
{context}
[ENDE WISSENSKORPUS]

3. Ausführungsregeln
Du erhältst einen Block aufeinanderfolgender Frage-Antwort-Paare. Nutze den Kontext \
der umgebenden Einträge, um jeden einzelnen Eintrag besser zu verstehen.
a. Identifiziere die zentrale Kernaussage: Wer (Akteur) tut was (Sachthema)?
b. Vergleiche Akteure und Sachthema mit den Punkten des Wissenskorpus.
c. Wähle 1-3 passende Kategorie-IDs.
Sonderfall: Liefert eine Aussage keine inhaltliche Substanz (prozedurale Rückfrage, \
reine Zeitangabe, Gesprächsfloskel), setze "category_tags" auf "{not_applicable}".

Input-Block zur Analyse:
{entries}

Output-Format:
Ausschließlich ein valides JSON-Array mit genau einem Objekt pro Input-Eintrag. \
Übernimm die ID jedes Eintrags unverändert in das Feld "id".
"""


class AnalysisBatchError(RuntimeError):
    """One analysis batch failed; the whole analysis run is aborted."""

    def __init__(self, batch_index: int, first_entry_id: int, cause: Exception) -> None:
        super().__init__(
            f"Failed to analyze batch {batch_index + 1} (starting with entry {first_entry_id}): {cause}"
        )
        self.batch_index = batch_index
        self.first_entry_id = first_entry_id
        self.cause = cause


@dataclass
class AnalysisResult:
    """Full entry list in original order, enriched where the model answered."""

    entries: list[Entry]
    unmatched_ids: list[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def enriched_count(self) -> int:
        return sum(1 for e in self.entries if e.is_enriched)


def _format_entry(entry: Entry) -> str:
    return (
        "---\n"
        f"ID: {entry.id}\n"
        f"Fragesteller: {entry.questioner or 'N/A'}\n"
        f"Frage: {entry.question}\n"
        f"Zeuge: {entry.witness or 'N/A'}\n"
        f"Antwort: {entry.answer}\n"
        "---"
    )


class EntryAnalyzer:
    """Enriches Q/A pairs with a core statement, corpus categories and a justification."""

    def __init__(
        self,
        corrector: StructuredOutputCorrector,
        corpus: CorpusIndex,
        model: str,
        config: PipelineConfig | None = None,
    ) -> None:
        self.corrector = corrector
        self.corpus = corpus
        self.model = model
        self.config = config or PipelineConfig()

    def plan_batches(self, entries: Sequence[Entry]) -> list[list[Entry]]:
        """Batches of analyzable pairs. Notes and incomplete pairs are left out."""
        batches = group_entries(
            entries,
            self.config.analysis_batch_size,
            split_on_questioner_change=self.config.split_on_questioner_change,
        )
        planned = []
        for batch in batches:
            pairs = [e for e in batch if e.is_pair]
            if pairs:
                planned.append(pairs)
        return planned

    async def build_prompt(self, batch: Sequence[Entry]) -> str:
        query = "\n".join(f"Frage: {e.question}\nAntwort: {e.answer}" for e in batch)
        similar = await self.corpus.most_similar(query[:QUERY_MAX_CHARS], self.config.corpus_top_k)
        return ANALYSIS_PROMPT.format(
            context="\n".join(item.as_context_line() for item in similar),
            not_applicable=NOT_APPLICABLE_TAG,
            entries="\n".join(_format_entry(e) for e in batch),
        )

    async def analyze_batch(self, batch: Sequence[Entry]) -> list[AnalysisItem]:
        """Analysis items for *batch*. Malformed items are dropped, so their entries stay unmatched."""
        prompt = await self.build_prompt(batch)
        raw = await self.corrector.invoke_structured(self.model, prompt, ANALYSIS_RESULTS)
        items, invalid = ANALYSIS_RESULTS.validate_items(raw)
        if invalid:
            logger.warning(
                "Dropped %d malformed analysis item(s) for batch starting with entry %d",
                invalid,
                batch[0].id,
            )
        return items

    async def analyze(
        self,
        entries: Sequence[Entry],
        concurrency: int | None = None,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[Progress], None] | None = None,
    ) -> AnalysisResult:
        """Enrich every analyzable entry of *entries*.

        The returned list has the same length and order as the input. Entries
        the model did not answer for stay unenriched and their ids are listed
        in ``unmatched_ids``. Once *cancel_token* is set no further batch is
        dispatched; batches already running finish and are merged.

        Raises:
            AnalysisBatchError: A batch failed; no partial result is returned.
        """
        batches = self.plan_batches(entries)
        limit = concurrency or self.config.analysis_concurrency
        logger.info(
            "Analyzing %d pairs in %d batches (concurrency %d)",
            sum(len(b) for b in batches),
            len(batches),
            limit,
        )
        cancelled = False

        async def run_batch(batch: list[Entry], index: int) -> list[AnalysisItem] | None:
            nonlocal cancelled
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                return None
            logger.info("Analyzing batch %d of %d...", index + 1, len(batches))
            try:
                return await self.analyze_batch(batch)
            except ModelError as exc:
                logger.error("Error analyzing batch %d: %s", index + 1, exc)
                raise AnalysisBatchError(index, batch[0].id, exc) from exc

        batch_results = await run_bounded(batches, run_batch, limit, on_progress=on_progress)

        updates: dict[int, AnalysisItem] = {}
        unmatched: list[int] = []
        for batch, items in zip(batches, batch_results):
            if items is None:
                continue
            by_id = {item.id: item for item in items}
            for entry in batch:
                item = by_id.get(entry.id)
                if item is None:
                    unmatched.append(entry.id)
                else:
                    updates[entry.id] = item

        if unmatched:
            logger.warning("No analysis returned for %d entries: %s", len(unmatched), unmatched)
        if cancelled:
            logger.warning("Analysis cancelled; %d entries enriched before stopping", len(updates))

        merged = []
        for entry in entries:
            item = updates.get(entry.id)
            if item is None:
                merged.append(entry)
            else:
                merged.append(entry.enriched(item.core_statement, item.category_tags, item.justification))
        return AnalysisResult(entries=merged, unmatched_ids=unmatched, cancelled=cancelled)
