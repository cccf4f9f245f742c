"""Model-powered segmentation of protocol text into Q/A pairs and procedural notes."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from src.extraction.models import QA_FIELDS, Entry
from src.ingestion.chunking import format_source_locator
from src.llm.errors import ModelError
from src.llm.schemas import PARSED_ENTRIES, ParsedItem
from src.llm.structured import StructuredOutputCorrector

logger = logging.getLogger(__name__)

PARSE_PROMPT = """\
Du bist ein Experte im Parsen von deutschen parlamentarischen Protokollen.
Deine Aufgabe ist es, den Text in eine Reihe von Einträgen zu zerlegen:
1. **Frage-Antwort-Paare**: Ein Eintrag, der eine Frage UND die darauf folgende Antwort enthält.
2. **Notizen**: Ein Eintrag für alles andere (Zwischenrufe, Vorsitzenden-Anweisungen, Beifall).

REGELN:
- **Fundstelle (source_reference):** Verwende für JEDEN Eintrag die Fundstelle "{source_ref}".{page_rule}
- **JSON-Gültigkeit:** Deine Antwort MUSS ein valides JSON-Array sein. ALLES andere wird ignoriert.
- **Genauigkeit:** Extrahiere den Text wörtlich.
- **Logik:** Wenn ein Sprecher (z.B. "Vorsitzender") eine prozedurale Ansage macht, ist das eine \
"note". Wenn er eine Frage stellt, ist er der "questioner".
- **Leerer Inhalt:** Wenn der Text KEINEN relevanten Inhalt enthält (nur Metadaten, Kopf-/Fußzeilen, \
Seitenzahlen oder Artefakte), gib ein leeres Array zurück: []

BEISPIEL 1 (Q&A):
Text: "Abg. Müller (SPD): Waren Sie am 15. am Standort? Zeuge Dr. Schmidt: Ja, das war ich."
JSON-Ausgabe (als Teil des Arrays):
{{"source_reference": "{source_ref}", "questioner": "Abg. Müller (SPD)", \
"question": "Waren Sie am 15. am Standort?", "witness": "Zeuge Dr. Schmidt", \
"answer": "Ja, das war ich.", "note": null}}

BEISPIEL 2 (Notiz):
Text: "(Beifall bei der SPD-Fraktion)"
JSON-Ausgabe (als Teil des Arrays):
{{"source_reference": "{source_ref}", "questioner": null, "question": null, "witness": null, \
"answer": null, "note": "(Beifall bei der SPD-Fraktion)"}}

BEISPIEL 3 (Vorsitzender als Notiz):
Text: "Vorsitzender: Ich weise den Zeugen auf die Wahrheitspflicht hin."
JSON-Ausgabe (als Teil des Arrays):
{{"source_reference": "{source_ref}", "questioner": null, "question": null, "witness": null, \
"answer": null, "note": "Vorsitzender: Ich weise den Zeugen auf die Wahrheitspflicht hin."}}

---
PARSE JETZT DEN FOLGENDEN TEXT (Fundstelle {source_ref}):
---
{text}
---
"""

MULTI_PAGE_RULE = (
    " Der Text umfasst mehrere Seiten, markiert mit \"==Start of OCR for page N==\". "
    "Verwende für Einträge auf Seite N stattdessen \"{protocol_id}/NN\" (zweistellig, z.B. \"{example}\")."
)


class ChunkParseError(RuntimeError):
    """Parsing one chunk failed after retries and JSON repair."""

    def __init__(self, source_ref: str, cause: Exception) -> None:
        super().__init__(f"Failed to parse protocol chunk {source_ref}: {cause}")
        self.source_ref = source_ref
        self.cause = cause


def _clean(value: str | None) -> str | None:
    """Blank strings count as absent."""
    if value is None:
        return None
    value = value.strip()
    return value or None


class EntryParser:
    """Turns one chunk of protocol text into numbered :class:`Entry` objects."""

    def __init__(self, corrector: StructuredOutputCorrector, model: str) -> None:
        self.corrector = corrector
        self.model = model

    def build_prompt(self, text: str, protocol_id: str, page_numbers: Sequence[int]) -> str:
        source_ref = format_source_locator(protocol_id, page_numbers[0])
        page_rule = ""
        if len(page_numbers) > 1:
            page_rule = MULTI_PAGE_RULE.format(
                protocol_id=protocol_id,
                example=format_source_locator(protocol_id, page_numbers[-1]),
            )
        return PARSE_PROMPT.format(source_ref=source_ref, page_rule=page_rule, text=text)

    async def parse_chunk(
        self,
        text: str,
        protocol_id: str,
        page_number: int,
        start_id: int,
        page_numbers: Sequence[int] | None = None,
    ) -> list[Entry]:
        """Parse *text* and number the resulting entries from *start_id*.

        Args:
            text: Raw text of the chunk.
            protocol_id: Protocol identifier, e.g. ``"WP80"``.
            page_number: Page the chunk starts on; its locator is the default.
            start_id: Id given to the first entry.
            page_numbers: All pages in the chunk when it spans several. A
                model-supplied locator is kept only if it names one of them.

        Returns:
            Entries with ids ``start_id .. start_id + n - 1``.

        Raises:
            ChunkParseError: If the model output stays unusable.
        """
        if not text.strip():
            logger.info("Text chunk %s/%s is empty, skipping.", protocol_id, page_number)
            return []

        pages = list(page_numbers) if page_numbers else [page_number]
        default_locator = format_source_locator(protocol_id, page_number)
        allowed_locators = {format_source_locator(protocol_id, p) for p in pages}
        prompt = self.build_prompt(text, protocol_id, pages)

        try:
            raw = await self.corrector.invoke_structured(self.model, prompt, PARSED_ENTRIES)
            # The model sometimes returns a single object instead of a one-element array
            items = PARSED_ENTRIES.validate(raw if isinstance(raw, list) else [raw])
        except ModelError as exc:
            logger.error("Error parsing chunk %s: %s", default_locator, exc)
            logger.debug("Text chunk that caused the error: %s...", text[:500])
            raise ChunkParseError(default_locator, exc) from exc

        entries: list[Entry] = []
        for item in items:
            fields = self._normalize(item)
            if fields is None:
                continue
            locator = _clean(item.source_reference)
            if locator not in allowed_locators:
                locator = default_locator
            entries.append(
                Entry(id=start_id + len(entries), source_locator=locator, **fields)  # type: ignore[arg-type]
            )
        return entries

    @staticmethod
    def _normalize(item: ParsedItem) -> dict[str, Any] | None:
        """Explicit ``None`` for every unset field; one shape per entry."""
        fields: dict[str, Any] = {name: _clean(getattr(item, name)) for name in QA_FIELDS}
        note = _clean(item.note)
        has_qa = any(value is not None for value in fields.values())

        if not has_qa and note is None:
            logger.warning("Dropping empty item returned by the model")
            return None
        if has_qa and note is not None:
            logger.warning("Item has both a note and Q/A content; keeping the Q/A content")
            note = None
        fields["note"] = note
        return fields
