"""Tests for model invocation: retry/backoff, JSON repair, output schemas, clients."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.config import Settings
from src.llm.client import AnthropicModelClient, GenerationConfig, build_model_client
from src.llm.errors import (
    InvalidModelOutputError,
    ModelCallError,
    ModelInvocationError,
    ModelOverloadedError,
)
from src.llm.invoker import ResilientModelInvoker, is_retryable
from src.llm.schemas import ANALYSIS_RESULTS, KEY_INSIGHTS, PARSED_ENTRIES, InsightItem, OutputSchema
from src.llm.structured import (
    REPAIR_PROMPT,
    NeedsRepair,
    Parsed,
    StructuredOutputCorrector,
    parse_model_json,
    strip_code_fences,
)

CONFIG = GenerationConfig()


def _invoker(side_effect: list[object], max_attempts: int = 4) -> tuple[ResilientModelInvoker, MagicMock, AsyncMock]:
    client = MagicMock()
    client.generate = AsyncMock(side_effect=side_effect)
    sleep = AsyncMock()
    invoker = ResilientModelInvoker(client, max_attempts=max_attempts, sleep=sleep, rng=lambda: 0.0)
    return invoker, client, sleep


# ---------------------------------------------------------------------------
# ResilientModelInvoker
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_503_status_is_retryable(self) -> None:
        assert is_retryable(ModelCallError("Service Unavailable", status_code=503))

    def test_overloaded_message_is_retryable(self) -> None:
        assert is_retryable(ModelCallError("Overloaded", status_code=529))

    def test_other_errors_are_not(self) -> None:
        assert not is_retryable(ModelCallError("invalid request", status_code=400))
        assert not is_retryable(ModelCallError("Connection error"))


class TestResilientModelInvoker:
    def test_recovers_after_two_overloads(self) -> None:
        invoker, client, sleep = _invoker(
            [
                ModelCallError("Service Unavailable", status_code=503),
                ModelCallError("Service Unavailable", status_code=503),
                "  {\"ok\": true}  ",
            ]
        )
        text = asyncio.run(invoker.invoke("m", "prompt", CONFIG))

        assert text == '{"ok": true}'
        assert client.generate.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    def test_fourth_overload_raises_overloaded_error(self) -> None:
        invoker, client, sleep = _invoker(
            [ModelCallError("503 Service Unavailable", status_code=503)] * 5
        )
        with pytest.raises(ModelOverloadedError) as exc_info:
            asyncio.run(invoker.invoke("m", "prompt", CONFIG))

        assert exc_info.value.attempts == 4
        assert "overloaded" in str(exc_info.value)
        assert client.generate.await_count == 4
        assert sleep.await_count == 3

    def test_non_retryable_error_fails_immediately(self) -> None:
        invoker, client, sleep = _invoker([ModelCallError("bad request", status_code=400)])
        with pytest.raises(ModelInvocationError, match="bad request"):
            asyncio.run(invoker.invoke("m", "prompt", CONFIG))
        assert client.generate.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.parametrize("response", [None, "", "   "])
    def test_empty_response_is_an_error(self, response: str | None) -> None:
        invoker, _, _ = _invoker([response])
        with pytest.raises(ModelInvocationError, match="empty"):
            asyncio.run(invoker.invoke("m", "prompt", CONFIG))

    def test_backoff_adds_jitter(self) -> None:
        invoker = ResilientModelInvoker(MagicMock(), rng=lambda: 0.5)
        assert invoker.backoff_delay(1) == pytest.approx(2.5)
        assert invoker.backoff_delay(3) == pytest.approx(8.5)

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            ResilientModelInvoker(MagicMock(), max_attempts=0)


# ---------------------------------------------------------------------------
# JSON parsing and repair
# ---------------------------------------------------------------------------


class TestParseModelJson:
    def test_strips_json_fence(self) -> None:
        assert strip_code_fences('```json\n[{"a": 1}]\n```') == '[{"a": 1}]'

    def test_strips_bare_fence(self) -> None:
        assert strip_code_fences("```\n{}\n```") == "{}"

    def test_valid_json_is_parsed(self) -> None:
        assert parse_model_json('```json\n{"a": 1}\n```') == Parsed({"a": 1})

    def test_invalid_json_needs_repair(self) -> None:
        outcome = parse_model_json('{"a": "say "hi""}')
        assert isinstance(outcome, NeedsRepair)
        assert outcome.raw_text == '{"a": "say "hi""}'


ORIGINAL = {"witness": "Zeuge Dr. Schmidt", "answer": 'Er sagte "Nein".', "page": 6}
CORRUPTED = '{"witness": "Zeuge Dr. Schmidt", "answer": "Er sagte "Nein".", "page": 6}'
ANY_OBJECT: OutputSchema[dict[str, object]] = OutputSchema("test object", dict[str, object])


def _corrector(responses: list[object]) -> tuple[StructuredOutputCorrector, MagicMock]:
    invoker = MagicMock()
    invoker.invoke = AsyncMock(side_effect=responses)
    return StructuredOutputCorrector(invoker, repair_model="repair-model"), invoker


class TestStructuredOutputCorrector:
    def test_valid_response_needs_no_repair(self) -> None:
        corrector, invoker = _corrector(["```json\n" + json.dumps(ORIGINAL) + "\n```"])
        result = asyncio.run(corrector.invoke_structured("m", "prompt", ANY_OBJECT))
        assert result == ORIGINAL
        assert invoker.invoke.await_count == 1

    def test_unescaped_quote_is_repaired(self) -> None:
        corrector, invoker = _corrector([CORRUPTED, json.dumps(ORIGINAL)])
        result = asyncio.run(corrector.invoke_structured("m", "prompt", ANY_OBJECT))

        assert result == ORIGINAL
        assert invoker.invoke.await_count == 2
        model, repair_prompt, config = invoker.invoke.await_args_list[1].args
        assert model == "repair-model"
        assert CORRUPTED in repair_prompt
        assert config.response_schema == ANY_OBJECT.json_schema()

    def test_repair_is_attempted_exactly_once(self) -> None:
        corrector, invoker = _corrector([CORRUPTED, CORRUPTED, json.dumps(ORIGINAL)])
        with pytest.raises(InvalidModelOutputError, match="correction attempt also failed"):
            asyncio.run(corrector.invoke_structured("m", "prompt", ANY_OBJECT))
        assert invoker.invoke.await_count == 2

    def test_failed_repair_call_becomes_invalid_output(self) -> None:
        corrector, _ = _corrector([CORRUPTED, ModelInvocationError("boom")])
        with pytest.raises(InvalidModelOutputError):
            asyncio.run(corrector.invoke_structured("m", "prompt", ANY_OBJECT))

    def test_first_call_errors_propagate(self) -> None:
        corrector, invoker = _corrector([ModelOverloadedError(4)])
        with pytest.raises(ModelOverloadedError):
            asyncio.run(corrector.invoke_structured("m", "prompt", ANY_OBJECT))
        assert invoker.invoke.await_count == 1

    def test_repair_model_defaults_to_call_model(self) -> None:
        invoker = MagicMock()
        invoker.invoke = AsyncMock(side_effect=[CORRUPTED, json.dumps(ORIGINAL)])
        corrector = StructuredOutputCorrector(invoker)
        asyncio.run(corrector.invoke_structured("main-model", "prompt", ANY_OBJECT))
        assert invoker.invoke.await_args_list[1].args[0] == "main-model"

    def test_repair_prompt_keeps_literal_braces(self) -> None:
        rendered = REPAIR_PROMPT.format(schema="{}", broken="x")
        assert "({})" in rendered


# ---------------------------------------------------------------------------
# Output schemas
# ---------------------------------------------------------------------------


class TestOutputSchemas:
    def test_parsed_entries_fill_missing_fields_with_none(self) -> None:
        items = PARSED_ENTRIES.validate([{"note": "(Beifall)"}])
        assert items[0].note == "(Beifall)"
        assert items[0].question is None

    def test_schema_is_rendered_once(self) -> None:
        assert PARSED_ENTRIES.json_schema() is PARSED_ENTRIES.json_schema()
        assert PARSED_ENTRIES.json_schema()["type"] == "array"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("#5, #12, #23", [5, 12, 23]), (["#5", "12"], [5, 12]), ([3, 4], [3, 4]), ("", [])],
    )
    def test_insight_references_are_coerced(self, raw: object, expected: list[int]) -> None:
        item = InsightItem(title="t", description="d", references=raw)  # type: ignore[arg-type]
        assert item.references == expected

    def test_analysis_items_validate_one_by_one(self) -> None:
        good = {"id": 1, "core_statement": "k", "category_tags": "1a", "justification": "j"}
        items, invalid = ANALYSIS_RESULTS.validate_items([good, {"id": 2, "core_statement": "k"}])
        assert [item.id for item in items] == [1]
        assert invalid == 1

    def test_single_analysis_object_is_wrapped(self) -> None:
        items, invalid = ANALYSIS_RESULTS.validate_items(
            {"id": 4, "core_statement": "k", "category_tags": "1a", "justification": "j"}
        )
        assert [item.id for item in items] == [4]
        assert invalid == 0

    def test_item_validation_needs_an_item_type(self) -> None:
        with pytest.raises(TypeError):
            KEY_INSIGHTS.validate_items([])

    def test_insights_require_exactly_three(self) -> None:
        payload = {
            "summary": "s",
            "insights": [{"title": "a", "description": "b", "references": []}] * 2,
        }
        with pytest.raises(InvalidModelOutputError, match="key insights"):
            KEY_INSIGHTS.validate(payload)


# ---------------------------------------------------------------------------
# Provider clients
# ---------------------------------------------------------------------------


class TestAnthropicModelClient:
    def _client(self, content: list[object]) -> tuple[AnthropicModelClient, MagicMock]:
        from anthropic.types import TextBlock

        sdk = MagicMock()
        response = MagicMock()
        response.content = [TextBlock(type="text", text=t) for t in content]
        sdk.messages.create = AsyncMock(return_value=response)
        return AnthropicModelClient(client=sdk), sdk

    def test_json_mode_sends_schema_as_system_prompt(self) -> None:
        client, sdk = self._client(["[]"])
        config = GenerationConfig(response_schema={"type": "array"}, max_output_tokens=100)
        text = asyncio.run(client.generate("claude", "hello", config))

        assert text == "[]"
        kwargs = sdk.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude"
        assert kwargs["max_tokens"] == 100
        assert '"type": "array"' in kwargs["system"]

    def test_plain_mode_has_no_system_prompt(self) -> None:
        client, sdk = self._client(["hi ", "there"])
        assert asyncio.run(client.generate("claude", "hello", CONFIG)) == "hi there"
        assert "system" not in sdk.messages.create.await_args.kwargs

    def test_status_errors_are_translated(self) -> None:
        import httpx
        from anthropic import InternalServerError

        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        response = httpx.Response(503, request=request)
        sdk = MagicMock()
        sdk.messages.create = AsyncMock(
            side_effect=InternalServerError("Service Unavailable", response=response, body=None)
        )
        client = AnthropicModelClient(client=sdk)

        with pytest.raises(ModelCallError) as exc_info:
            asyncio.run(client.generate("claude", "hello", CONFIG))
        assert exc_info.value.status_code == 503
        assert is_retryable(exc_info.value)


class TestAnthropicRequestCount:
    """Only ResilientModelInvoker retries; the SDK sends each attempt once."""

    def _invoker(self, status: int) -> tuple[ResilientModelInvoker, list[object]]:
        import anthropic
        import httpx

        requests: list[object] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(status, json={"type": "error", "error": {"type": "api_error", "message": "down"}})

        real_sdk = anthropic.AsyncAnthropic

        def sdk_with_transport(**kwargs: object) -> anthropic.AsyncAnthropic:
            return real_sdk(**kwargs, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with patch("src.llm.client.AsyncAnthropic", side_effect=sdk_with_transport):
            client = AnthropicModelClient(api_key="test-key")
        invoker = ResilientModelInvoker(client, sleep=AsyncMock(), rng=lambda: 0.0)
        return invoker, requests

    def test_persistent_503_sends_four_requests(self) -> None:
        invoker, requests = self._invoker(503)
        with pytest.raises(ModelOverloadedError):
            asyncio.run(invoker.invoke("claude", "hello", CONFIG))
        assert len(requests) == 4

    def test_500_sends_one_request(self) -> None:
        invoker, requests = self._invoker(500)
        with pytest.raises(ModelInvocationError):
            asyncio.run(invoker.invoke("claude", "hello", CONFIG))
        assert len(requests) == 1


class TestBuildModelClient:
    def test_anthropic_is_default(self) -> None:
        settings = Settings(_env_file=None, anthropic_api_key="test-key")  # type: ignore[call-arg]
        assert isinstance(build_model_client(settings), AnthropicModelClient)

    def test_unknown_provider_raises(self) -> None:
        settings = Settings(_env_file=None, llm_provider="nope")  # type: ignore[call-arg]
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            build_model_client(settings)
