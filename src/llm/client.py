"""Provider clients for the generative text endpoint (Claude and Gemini)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic
from anthropic.types import TextBlock

from src.llm.errors import ModelCallError

if TYPE_CHECKING:
    from src.config import Settings

JSON_SYSTEM_PROMPT = (
    "You are a precise data extraction engine. Respond with ONLY valid JSON that "
    "conforms to the JSON Schema below. Do not wrap it in markdown and do not add "
    "any text before or after it.\n\nJSON Schema:\n{schema}"
)


@dataclass(frozen=True)
class GenerationConfig:
    """Per-call generation options shared by all providers."""

    response_schema: dict[str, Any] | None = None
    temperature: float | None = None
    max_output_tokens: int = 16000

    @property
    def json_mode(self) -> bool:
        return self.response_schema is not None


@runtime_checkable
class ModelClient(Protocol):
    async def generate(self, model: str, prompt: str, config: GenerationConfig) -> str | None: ...


class AnthropicModelClient:
    """Claude via the async Anthropic SDK.

    JSON mode is expressed as a system instruction carrying the schema.
    """

    name = "anthropic"

    def __init__(self, api_key: str = "", client: AsyncAnthropic | None = None) -> None:
        # Retries belong to ResilientModelInvoker alone
        self._client = client or AsyncAnthropic(api_key=api_key or None, max_retries=0)

    async def generate(self, model: str, prompt: str, config: GenerationConfig) -> str | None:
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": config.max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if config.response_schema is not None:
            kwargs["system"] = JSON_SYSTEM_PROMPT.format(
                schema=json.dumps(config.response_schema, ensure_ascii=False)
            )
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature

        try:
            response = await self._client.messages.create(**kwargs)
        except APIStatusError as exc:
            # 529 carries an "Overloaded" message, 503 the status itself
            raise ModelCallError(exc.message, status_code=exc.status_code) from exc
        except APIConnectionError as exc:
            raise ModelCallError(f"Connection error: {exc}") from exc

        texts = [block.text for block in response.content if isinstance(block, TextBlock)]
        return "".join(texts) or None


class GeminiModelClient:
    """Gemini via google-generativeai, using its native JSON response mode."""

    name = "gemini"

    def __init__(self, api_key: str = "") -> None:
        import google.generativeai as genai

        if api_key:
            genai.configure(api_key=api_key)  # type: ignore[attr-defined]
        self._genai = genai

    async def generate(self, model: str, prompt: str, config: GenerationConfig) -> str | None:
        from google.api_core import exceptions as google_exceptions

        generation_config: dict[str, Any] = {"max_output_tokens": config.max_output_tokens}
        if config.json_mode:
            generation_config["response_mime_type"] = "application/json"
        if config.temperature is not None:
            generation_config["temperature"] = config.temperature

        gen_model = self._genai.GenerativeModel(model)
        try:
            response = await gen_model.generate_content_async(
                prompt, generation_config=generation_config
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise ModelCallError(exc.message or str(exc), status_code=exc.code) from exc

        try:
            return str(response.text)
        except ValueError:
            # Raised by the SDK when the candidate has no text part (e.g. blocked)
            return None


def build_model_client(settings: Settings) -> ModelClient:
    """Return the client for the configured ``llm_provider``.

    Raises:
        ValueError: If the provider name is not recognized.
    """
    if settings.llm_provider == "anthropic":
        return AnthropicModelClient(api_key=settings.anthropic_api_key)
    if settings.llm_provider == "gemini":
        return GeminiModelClient(api_key=settings.gemini_api_key)
    msg = f"Unknown LLM provider: {settings.llm_provider!r}. Supported: ['anthropic', 'gemini']"
    raise ValueError(msg)
