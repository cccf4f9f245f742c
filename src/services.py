"""Explicit construction of the pipeline's long-lived collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from src.analysis.analyzer import EntryAnalyzer
from src.analysis.corpus import CorpusIndex
from src.analysis.insights import InsightsSynthesizer
from src.config import Settings, get_settings
from src.extraction.assembler import TimelineAssembler
from src.extraction.parser import EntryParser
from src.ingestion.embeddings import build_embedder
from src.llm.client import ModelClient, build_model_client
from src.llm.invoker import ResilientModelInvoker
from src.llm.structured import StructuredOutputCorrector
from src.pipeline_config import PipelineConfig


@dataclass
class Services:
    """Everything a run needs, owned by the caller rather than module globals.

    The corpus index (and its embedding cache) lives as long as this object.
    """

    config: PipelineConfig
    client: ModelClient
    invoker: ResilientModelInvoker
    corrector: StructuredOutputCorrector
    corpus: CorpusIndex
    parser: EntryParser
    analyzer: EntryAnalyzer
    synthesizer: InsightsSynthesizer

    def new_assembler(self, pages_per_chunk: int | None = None) -> TimelineAssembler:
        return TimelineAssembler(self.parser, pages_per_chunk or self.config.pages_per_chunk)


def build_services(settings: Settings) -> Services:
    """Wire clients, retry policy and pipeline stages from *settings*."""
    config = PipelineConfig.from_settings(settings)
    client = build_model_client(settings)
    invoker = ResilientModelInvoker(
        client,
        max_attempts=settings.llm_max_attempts,
        initial_delay=settings.llm_initial_delay_seconds,
        max_jitter=settings.llm_max_jitter_seconds,
    )
    corrector = StructuredOutputCorrector(
        invoker,
        repair_model=settings.effective_repair_model,
        max_output_tokens=settings.max_output_tokens,
    )
    corpus = CorpusIndex(build_embedder(settings))
    return Services(
        config=config,
        client=client,
        invoker=invoker,
        corrector=corrector,
        corpus=corpus,
        parser=EntryParser(corrector, settings.llm_model),
        analyzer=EntryAnalyzer(corrector, corpus, settings.llm_model, config),
        synthesizer=InsightsSynthesizer(
            corrector, settings.llm_model, min_entries=settings.insights_min_entries
        ),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Process-wide services used by the API."""
    return build_services(get_settings())
