"""JSON-producing model calls with a single AI-driven repair round-trip."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from src.llm.client import GenerationConfig
from src.llm.errors import InvalidModelOutputError, ModelError
from src.llm.invoker import ResilientModelInvoker
from src.llm.schemas import OutputSchema

logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|```\s*$")

REPAIR_PROMPT = """\
The following text is supposed to be valid JSON conforming to the schema below, \
but it contains syntax errors. This is likely due to unescaped double quotes \
inside string values or premature termination.

Your task is to meticulously correct any and all syntax errors to make the JSON valid.
- Ensure ALL double quotes (") inside a JSON string value are properly escaped \
with a backslash (e.g. "content": "He said \\"Hello\\"").
- Ensure all brackets ([]) and braces ({{}}) are correctly paired and closed.
- If the JSON appears truncated, complete it cleanly based on the schema.

Return ONLY the raw, corrected JSON. Do not add any explanatory text, markdown, \
or anything else outside of the JSON itself.

SCHEMA:
---
{schema}
---

BROKEN JSON:
---
{broken}
---
"""


@dataclass(frozen=True)
class Parsed:
    value: Any


@dataclass(frozen=True)
class NeedsRepair:
    raw_text: str
    error: json.JSONDecodeError


@dataclass(frozen=True)
class Failed:
    error: Exception


ParseOutcome = Parsed | NeedsRepair | Failed


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if the model added one."""
    return _CODE_FENCE_RE.sub("", text.strip()).strip()


def parse_model_json(text: str) -> Parsed | NeedsRepair:
    cleaned = strip_code_fences(text)
    try:
        return Parsed(json.loads(cleaned))
    except json.JSONDecodeError as exc:
        return NeedsRepair(raw_text=cleaned, error=exc)


class StructuredOutputCorrector:
    """Every piece of model-derived JSON in the pipeline goes through here.

    A response that fails to parse gets exactly one repair call; the repair
    step only ever yields ``Parsed`` or ``Failed``.
    """

    def __init__(
        self,
        invoker: ResilientModelInvoker,
        repair_model: str | None = None,
        max_output_tokens: int = 16000,
    ) -> None:
        self.invoker = invoker
        self.repair_model = repair_model
        self.max_output_tokens = max_output_tokens

    def _config(self, schema: OutputSchema[Any]) -> GenerationConfig:
        return GenerationConfig(
            response_schema=schema.json_schema(),
            max_output_tokens=self.max_output_tokens,
        )

    async def invoke_structured(self, model: str, prompt: str, schema: OutputSchema[Any]) -> Any:
        """Call the model and return its parsed JSON.

        Model call failures (overload, non-retryable errors) from the first
        call propagate unchanged.

        Raises:
            InvalidModelOutputError: The response was not valid JSON and the
                repair attempt did not produce valid JSON either.
        """
        raw = await self.invoker.invoke(model, prompt, self._config(schema))

        outcome: ParseOutcome = parse_model_json(raw)
        if isinstance(outcome, NeedsRepair):
            logger.warning(
                "Initial JSON parsing of %s failed (%s). Attempting to fix...",
                schema.name,
                outcome.error,
            )
            outcome = await self._repair(outcome, schema, model)

        if isinstance(outcome, Parsed):
            return outcome.value
        raise InvalidModelOutputError(
            "The AI model produced invalid JSON, and the automatic correction attempt also failed."
        ) from outcome.error

    async def _repair(
        self, broken: NeedsRepair, schema: OutputSchema[Any], model: str
    ) -> Parsed | Failed:
        prompt = REPAIR_PROMPT.format(
            schema=json.dumps(schema.json_schema(), ensure_ascii=False),
            broken=broken.raw_text,
        )
        try:
            fixed = await self.invoker.invoke(self.repair_model or model, prompt, self._config(schema))
        except ModelError as exc:
            logger.error("JSON repair call failed: %s", exc)
            return Failed(exc)

        second = parse_model_json(fixed)
        if isinstance(second, NeedsRepair):
            logger.error("Repaired output for %s is still not valid JSON: %s", schema.name, second.error)
            return Failed(second.error)
        logger.info("JSON for %s successfully fixed and parsed.", schema.name)
        return second
