"""Tests for corpus retrieval, entry analysis and insights synthesis."""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.analysis.analyzer import AnalysisBatchError, EntryAnalyzer
from src.analysis.corpus import CorpusIndex, CorpusItem, cosine_similarity, load_corpus
from src.analysis.insights import InsightsSynthesizer, InsufficientDataError, display_numbers
from src.concurrency import CancellationToken
from src.extraction.models import Entry
from src.ingestion.embeddings import EmbeddingTask
from src.llm.errors import ModelOverloadedError
from src.llm.schemas import ANALYSIS_RESULTS, KEY_INSIGHTS
from src.pipeline_config import PipelineConfig

ITEMS = [
    CorpusItem(id="1a", category="Kontakte", description="Gespräche mit Nord Stream 2"),
    CorpusItem(id="8a", category="Stiftung", description="Gründung der Klimastiftung"),
    CorpusItem(id="18a", category="E-Mails", description="Gelöschte E-Mails"),
]


class KeywordEmbedder:
    """Maps text onto three axes (Kontakte, Stiftung, E-Mails) by keyword."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, EmbeddingTask]] = []

    async def embed(self, text: str, task: EmbeddingTask) -> list[float]:
        self.calls.append((text, task))
        await asyncio.sleep(0)
        lowered = text.lower()
        return [
            float("kontakt" in lowered or "gespräch" in lowered),
            float("stiftung" in lowered),
            float("mail" in lowered),
        ]


def _pair(entry_id: int, questioner: str = "A", answer: str | None = "Antwort.") -> Entry:
    return Entry(
        id=entry_id,
        source_locator="WP80/01",
        questioner=questioner,
        question=f"Frage {entry_id} zur Stiftung?",
        witness="Zeuge",
        answer=answer,
    )


def _note(entry_id: int) -> Entry:
    return Entry(id=entry_id, source_locator="WP80/01", note="(Beifall)")


# ---------------------------------------------------------------------------
# Corpus
# ---------------------------------------------------------------------------


class TestCosineSimilarity:
    def test_identical(self) -> None:
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 3.0]) == 0.0

    def test_zero_vector(self) -> None:
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


class TestCorpusIndex:
    def test_shipped_corpus_loads(self) -> None:
        corpus = load_corpus()
        assert len(corpus) > 10
        assert len({item.id for item in corpus}) == len(corpus)

    def test_most_similar_by_text(self) -> None:
        index = CorpusIndex(KeywordEmbedder(), ITEMS)
        result = asyncio.run(index.most_similar("Wer hat die Stiftung gegründet?", k=1))
        assert [item.id for item in result] == ["8a"]

    def test_ties_keep_corpus_order(self) -> None:
        index = CorpusIndex(KeywordEmbedder(), ITEMS)
        result = asyncio.run(index.most_similar([0.0, 0.0, 0.0], k=2))
        assert [item.id for item in result] == ["1a", "8a"]

    def test_documents_are_embedded_once(self) -> None:
        embedder = KeywordEmbedder()
        index = CorpusIndex(embedder, ITEMS)

        async def many_lookups() -> None:
            await asyncio.gather(*(index.most_similar([1.0, 0.0, 0.0], k=1) for _ in range(5)))
            await index.most_similar("Mail", k=1)

        asyncio.run(many_lookups())
        documents = [text for text, task in embedder.calls if task is EmbeddingTask.DOCUMENT]
        assert documents == [item.document_text for item in ITEMS]
        assert documents[0] == "Kontakte: Gespräche mit Nord Stream 2"
        assert index.is_ready

    def test_zero_k(self) -> None:
        index = CorpusIndex(KeywordEmbedder(), ITEMS)
        assert asyncio.run(index.most_similar("x", k=0)) == []


# ---------------------------------------------------------------------------
# EntryAnalyzer
# ---------------------------------------------------------------------------


def _analyzer(
    respond: object, config: PipelineConfig | None = None
) -> tuple[EntryAnalyzer, AsyncMock]:
    corrector = MagicMock()
    corrector.invoke_structured = AsyncMock(side_effect=respond)
    index = CorpusIndex(KeywordEmbedder(), ITEMS)
    analyzer = EntryAnalyzer(corrector, index, model="test-model", config=config or PipelineConfig(corpus_top_k=2))
    return analyzer, corrector.invoke_structured


def _answer_all_except(*missing: int) -> object:
    async def respond(model: str, prompt: str, schema: object) -> list[dict[str, object]]:
        ids = [int(m) for m in re.findall(r"^ID: (\d+)$", prompt, flags=re.MULTILINE)]
        results: list[dict[str, object]] = [
            {
                "id": entry_id,
                "core_statement": f"Kernaussage {entry_id}",
                "category_tags": "8a",
                "justification": "Stiftung",
            }
            for entry_id in ids
            if entry_id not in missing
        ]
        # An id the batch never asked for must not be merged anywhere
        results.append({"id": 999, "core_statement": "x", "category_tags": "x", "justification": "x"})
        return results

    return respond


class TestEntryAnalyzer:
    ENTRIES = [
        _pair(1, "A"),
        _note(2),
        _pair(3, "A"),
        _pair(4, "B"),
        _pair(5, "B", answer=None),
    ]

    def test_plan_skips_notes_and_incomplete_pairs(self) -> None:
        analyzer, _ = _analyzer(_answer_all_except())
        batches = analyzer.plan_batches(self.ENTRIES)
        assert [[e.id for e in b] for b in batches] == [[1], [3], [4]]

    def test_merge_by_id_preserves_order(self) -> None:
        analyzer, calls = _analyzer(_answer_all_except(4))
        result = asyncio.run(analyzer.analyze(self.ENTRIES))

        assert [e.id for e in result.entries] == [1, 2, 3, 4, 5]
        assert result.entries[0].core_statement == "Kernaussage 1"
        assert result.entries[2].category_tags == "8a"
        assert result.entries[1] == self.ENTRIES[1]
        assert not result.entries[3].is_enriched
        assert not result.entries[4].is_enriched
        assert result.unmatched_ids == [4]
        assert result.enriched_count == 2
        assert calls.await_count == 3
        assert calls.await_args.args[2] is ANALYSIS_RESULTS

    def test_malformed_item_leaves_only_its_entry_unmatched(self) -> None:
        answer = _answer_all_except()

        async def respond(model: str, prompt: str, schema: object) -> object:
            results = await answer(model, prompt, schema)  # type: ignore[operator]
            for item in results:
                if item["id"] == 3:
                    del item["justification"]
            return results + ["not an object"]

        analyzer, _ = _analyzer(respond)
        result = asyncio.run(analyzer.analyze(self.ENTRIES))

        assert result.unmatched_ids == [3]
        assert result.entries[0].is_enriched
        assert not result.entries[2].is_enriched
        assert result.entries[3].is_enriched

    def test_prompt_carries_retrieved_corpus_context(self) -> None:
        analyzer, _ = _analyzer(_answer_all_except())
        prompt = asyncio.run(analyzer.build_prompt([_pair(1)]))
        assert "- ID 8a (Stiftung): Gründung der Klimastiftung" in prompt
        assert "Irrelevant / Procedural" in prompt
        assert "ID: 1" in prompt

    def test_failing_batch_aborts_the_run(self) -> None:
        analyzer, _ = _analyzer(ModelOverloadedError(4))
        with pytest.raises(AnalysisBatchError) as exc_info:
            asyncio.run(analyzer.analyze(self.ENTRIES, concurrency=1))
        assert exc_info.value.batch_index == 0
        assert exc_info.value.first_entry_id == 1
        assert isinstance(exc_info.value.cause, ModelOverloadedError)

    def test_cancelled_before_start_dispatches_nothing(self) -> None:
        analyzer, calls = _analyzer(_answer_all_except())
        token = CancellationToken()
        token.cancel()
        result = asyncio.run(analyzer.analyze(self.ENTRIES, cancel_token=token))

        assert result.cancelled
        assert result.entries == list(self.ENTRIES)
        calls.assert_not_awaited()

    def test_cancel_mid_run_keeps_finished_batches(self) -> None:
        token = CancellationToken()
        answer = _answer_all_except()

        async def respond_then_cancel(model: str, prompt: str, schema: object) -> object:
            token.cancel()
            return await answer(model, prompt, schema)  # type: ignore[operator]

        analyzer, calls = _analyzer(respond_then_cancel)
        result = asyncio.run(analyzer.analyze(self.ENTRIES, concurrency=1, cancel_token=token))

        assert result.cancelled
        assert calls.await_count == 1
        assert result.entries[0].is_enriched
        assert not result.entries[2].is_enriched

    def test_no_pairs_means_no_calls(self) -> None:
        analyzer, calls = _analyzer(_answer_all_except())
        result = asyncio.run(analyzer.analyze([_note(1), _note(2)]))
        assert result.entries == [_note(1), _note(2)]
        calls.assert_not_awaited()


# ---------------------------------------------------------------------------
# InsightsSynthesizer
# ---------------------------------------------------------------------------


def _enriched(entry_id: int) -> Entry:
    return _pair(entry_id).enriched(f"Kernaussage {entry_id}", "8a", "Stiftung")


INSIGHTS_PAYLOAD = {
    "summary": "**Zusammenfassung**",
    "insights": [
        {"title": "Erste", "description": "d1", "references": "#3, #1"},
        {"title": "Zweite", "description": "d2", "references": ["#2", "#9"]},
        {"title": "Dritte", "description": "d3", "references": []},
    ],
}


class TestInsightsSynthesizer:
    def _synthesizer(self) -> tuple[InsightsSynthesizer, AsyncMock]:
        corrector = MagicMock()
        corrector.invoke_structured = AsyncMock(return_value=INSIGHTS_PAYLOAD)
        return InsightsSynthesizer(corrector, model="test-model"), corrector.invoke_structured

    def test_requires_three_enriched_entries(self) -> None:
        synthesizer, calls = self._synthesizer()
        entries = [_enriched(1), _enriched(2), _pair(3), _note(4)]
        with pytest.raises(InsufficientDataError, match="At least 3"):
            asyncio.run(synthesizer.synthesize(entries))
        assert calls.await_count == 0

    def test_display_numbers_skip_notes(self) -> None:
        entries = [_note(1), _pair(2), _pair(3), _note(4), _pair(5)]
        assert display_numbers(entries) == {2: 1, 3: 2, 5: 3}

    def test_references_map_back_to_entry_ids(self) -> None:
        synthesizer, calls = self._synthesizer()
        entries = [_note(1), _enriched(2), _enriched(3), _note(4), _enriched(5)]
        insights = asyncio.run(synthesizer.synthesize(entries))

        assert insights.summary == "**Zusammenfassung**"
        assert [i.title for i in insights.insights] == ["Erste", "Zweite", "Dritte"]
        assert insights.insights[0].references == [5, 2]
        assert insights.insights[1].references == [3]
        assert calls.await_args.args[2] is KEY_INSIGHTS

    def test_prompt_lists_only_enriched_entries(self) -> None:
        synthesizer, _ = self._synthesizer()
        entries = [_enriched(1), _pair(2), _enriched(3), _enriched(4)]
        prompt = synthesizer.build_prompt(entries)
        assert "Eintrag #1" in prompt
        assert "Eintrag #2" not in prompt
        assert "Eintrag #3" in prompt
        assert "Kernaussage 4" in prompt
