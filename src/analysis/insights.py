"""Cross-entry synthesis: a summary plus the three key insights of a protocol."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from src.extraction.models import Entry, KeyInsight, KeyInsights
from src.llm.schemas import KEY_INSIGHTS
from src.llm.structured import StructuredOutputCorrector

logger = logging.getLogger(__name__)

MIN_ENRICHED_ENTRIES = 3

INSIGHTS_PROMPT = """\
ROLLE & ZIEL
Du bist ein KI-Analyst, spezialisiert auf parlamentarische Untersuchungsausschüsse. \
Synthetisiere die vorgelegten, bereits analysierten Protokolleinträge und extrahiere \
die wichtigsten strategischen Erkenntnisse. Du fasst nicht nur zusammen, sondern \
identifizierst die wirkungsvollsten und überraschendsten Ergebnisse.

KONTEXT
Jeder Eintrag ist ein Frage-Antwort-Paar, das bereits einzeln zusammengefasst \
("Kernaussage") und kategorisiert wurde. Die Eintragsnummer (#) ist die Nummer, \
unter der der Eintrag in der Zeitleiste angezeigt wird.

EINGABEDATEN
{entries}

AUFGABE (auf Deutsch)
1. Schreibe eine Zusammenfassung von 2-4 Absätzen über Schlüsselthemen und \
wiederkehrende Muster. Verwende Markdown (z.B. **fett**).
2. Identifiziere genau die drei wichtigsten Erkenntnisse, jeweils mit einem kurzen \
Titel, einer Beschreibung in einem Absatz und den Eintragsnummern (#), die den \
Hauptbeweis liefern.

Deine Ausgabe muss ein einziges, gültiges JSON-Objekt sein.
"""


class InsufficientDataError(ValueError):
    def __init__(self, found: int, required: int) -> None:
        super().__init__(
            f"Insufficient analyzed data. At least {required} analyzed entries are "
            f"required to generate key insights (found {found})."
        )
        self.found = found
        self.required = required


def display_numbers(entries: Sequence[Entry]) -> dict[int, int]:
    """Map each non-note entry's id to its 1-based position among non-notes."""
    numbers: dict[int, int] = {}
    for entry in entries:
        if not entry.is_note:
            numbers[entry.id] = len(numbers) + 1
    return numbers


def _format_entry(number: int, entry: Entry) -> str:
    return (
        "---\n"
        f"Eintrag #{number}\n"
        f"Fundstelle: {entry.source_locator}\n"
        f"Frage: {entry.question or 'N/A'}\n"
        f"Antwort: {entry.answer or 'N/A'}\n"
        f"Kernaussage: {entry.core_statement}\n"
        f"Kategorien: {entry.category_tags}\n"
        f"Begründung: {entry.justification}\n"
        "---"
    )


class InsightsSynthesizer:
    def __init__(
        self,
        corrector: StructuredOutputCorrector,
        model: str,
        min_entries: int = MIN_ENRICHED_ENTRIES,
    ) -> None:
        self.corrector = corrector
        self.model = model
        self.min_entries = min_entries

    def build_prompt(self, entries: Sequence[Entry]) -> str:
        numbers = display_numbers(entries)
        blocks = [
            _format_entry(numbers[e.id], e) for e in entries if not e.is_note and e.is_enriched
        ]
        return INSIGHTS_PROMPT.format(entries="\n".join(blocks))

    async def synthesize(self, entries: Sequence[Entry]) -> KeyInsights:
        """Summarize the enriched entries of a timeline in one model call.

        References in the result are entry ids, translated back from the
        display numbers the model sees. Numbers that match no entry are dropped.

        Raises:
            InsufficientDataError: Fewer than ``min_entries`` enriched entries;
                raised before any model call.
        """
        enriched = [e for e in entries if e.is_enriched and not e.is_note]
        if len(enriched) < self.min_entries:
            raise InsufficientDataError(len(enriched), self.min_entries)

        numbers = display_numbers(entries)
        ids_by_number = {number: entry_id for entry_id, number in numbers.items()}

        logger.info("Synthesizing key insights from %d analyzed entries", len(enriched))
        raw = await self.corrector.invoke_structured(
            self.model, self.build_prompt(entries), KEY_INSIGHTS
        )
        payload = KEY_INSIGHTS.validate(raw)

        insights = []
        for item in payload.insights:
            refs = [ids_by_number[n] for n in item.references if n in ids_by_number]
            dropped = len(item.references) - len(refs)
            if dropped:
                logger.warning("Dropped %d unknown references from insight %r", dropped, item.title)
            insights.append(KeyInsight(title=item.title, description=item.description, references=refs))
        return KeyInsights(summary=payload.summary, insights=insights)
