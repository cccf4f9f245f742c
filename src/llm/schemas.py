"""Declarative output schemas shared by prompt construction and response validation.

Each use case (parsing, analysis, insights) has exactly one ``OutputSchema``.
The same object renders the JSON Schema sent to the model and validates what
comes back, so the two cannot drift apart.
"""

from __future__ import annotations

import re
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from src.llm.errors import InvalidModelOutputError

T = TypeVar("T")


class ParsedItem(BaseModel):
    """One segment of protocol text as returned by the parsing model."""

    model_config = ConfigDict(extra="ignore")

    source_reference: str | None = Field(
        default=None,
        description="The source reference given in the instructions, e.g. 'WP80/06'.",
    )
    questioner: str | None = Field(
        default=None, description="Who asks the question, e.g. 'Abg. Müller (SPD)'. Null for notes."
    )
    question: str | None = Field(default=None, description="Full question text. Null for notes.")
    witness: str | None = Field(
        default=None, description="Who answers, e.g. 'Zeuge Dr. Schmidt'. Null for notes."
    )
    answer: str | None = Field(default=None, description="Full answer text. Null for notes.")
    note: str | None = Field(
        default=None,
        description="A procedural note, e.g. '(Beifall bei der CDU)'. When set, all Q/A fields are null.",
    )


class AnalysisItem(BaseModel):
    """Enrichment for one entry, keyed by the entry's id."""

    model_config = ConfigDict(extra="ignore")

    id: int = Field(description="The original ID of the entry being analyzed.")
    core_statement: str = Field(description="Concise, neutral one-sentence core statement.")
    category_tags: str = Field(
        description="Comma-separated corpus category IDs, e.g. '1a, 5f', or 'Irrelevant / Procedural'."
    )
    justification: str = Field(description="Brief reason why the categories fit the content.")


class InsightItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = Field(description="Short, impactful title for the insight.")
    description: str = Field(description="One paragraph explaining the insight and its significance.")
    references: list[int] = Field(
        default_factory=list,
        description="Entry numbers (#) that provide the main evidence for this insight.",
    )

    @field_validator("references", mode="before")
    @classmethod
    def _coerce_references(cls, value: Any) -> Any:
        # Models often answer with "#5, #12" or ["#5", "#12"]
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, list):
            numbers: list[int] = []
            for ref in value:
                digits = re.sub(r"\D", "", str(ref))
                if digits:
                    numbers.append(int(digits))
            return numbers
        return value


class InsightsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str = Field(description="A 2-4 paragraph Markdown summary of the key themes.")
    insights: list[InsightItem] = Field(
        min_length=3,
        max_length=3,
        description="Exactly the top 3 most important or surprising insights.",
    )


class OutputSchema(Generic[T]):
    """A named, pydantic-backed schema for one kind of model output.

    List schemas may name their ``item_type`` so that callers can keep the
    valid items of a partly broken reply with :meth:`validate_items`.
    """

    def __init__(self, name: str, type_: Any, item_type: Any = None) -> None:
        self.name = name
        self._adapter: TypeAdapter[T] = TypeAdapter(type_)
        self._item_adapter: TypeAdapter[Any] | None = TypeAdapter(item_type) if item_type is not None else None
        self._json_schema: dict[str, Any] | None = None

    def json_schema(self) -> dict[str, Any]:
        if self._json_schema is None:
            self._json_schema = self._adapter.json_schema()
        return self._json_schema

    def validate(self, data: Any) -> T:
        """Deserialize already-parsed JSON.

        Raises:
            InvalidModelOutputError: If the data does not match the schema.
        """
        try:
            return self._adapter.validate_python(data)
        except ValidationError as exc:
            raise InvalidModelOutputError(
                f"AI output does not match the {self.name} schema: {exc.error_count()} error(s)"
            ) from exc

    def validate_items(self, data: Any) -> tuple[list[Any], int]:
        """Validate a list reply item by item.

        Returns:
            The items that match ``item_type`` and the number that did not.
        """
        if self._item_adapter is None:
            raise TypeError(f"{self.name} schema has no item type")
        items = data if isinstance(data, list) else [data]
        valid: list[Any] = []
        for item in items:
            try:
                valid.append(self._item_adapter.validate_python(item))
            except ValidationError:
                continue
        return valid, len(items) - len(valid)

    def __repr__(self) -> str:
        return f"OutputSchema({self.name!r})"


PARSED_ENTRIES: OutputSchema[list[ParsedItem]] = OutputSchema("parsed entries", list[ParsedItem])
ANALYSIS_RESULTS: OutputSchema[list[AnalysisItem]] = OutputSchema(
    "analysis results", list[AnalysisItem], item_type=AnalysisItem
)
KEY_INSIGHTS: OutputSchema[InsightsPayload] = OutputSchema("key insights", InsightsPayload)
