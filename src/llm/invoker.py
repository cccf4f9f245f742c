"""Single model call wrapped in bounded retry with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from src.llm.client import GenerationConfig, ModelClient
from src.llm.errors import ModelCallError, ModelInvocationError, ModelOverloadedError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 4
INITIAL_DELAY_SECONDS = 2.0
MAX_JITTER_SECONDS = 1.0


def is_retryable(exc: ModelCallError) -> bool:
    """Only overload conditions are retried: HTTP 503 or an "overloaded" message."""
    if exc.status_code == 503:
        return True
    return "503" in exc.message or "overloaded" in exc.message.lower()


class ResilientModelInvoker:
    """Calls a :class:`ModelClient` and returns trimmed text.

    Attempt ``k`` that fails with an overload waits
    ``initial_delay * 2 ** (k - 1) + uniform(0, max_jitter)`` seconds before
    the next attempt. Any other failure is raised immediately.
    """

    def __init__(
        self,
        client: ModelClient,
        max_attempts: int = MAX_ATTEMPTS,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        max_jitter: float = MAX_JITTER_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_jitter = max_jitter
        self._sleep = sleep
        self._rng = rng

    def backoff_delay(self, attempt: int) -> float:
        return self.initial_delay * 2 ** (attempt - 1) + self._rng() * self.max_jitter

    async def invoke(self, model: str, prompt: str, config: GenerationConfig) -> str:
        """Return the model's text response, stripped of surrounding whitespace.

        Raises:
            ModelOverloadedError: Every attempt failed with an overload.
            ModelInvocationError: A non-retryable failure or an empty response.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                text = await self.client.generate(model, prompt, config)
            except ModelCallError as exc:
                if not is_retryable(exc):
                    logger.error("Model call failed after %d attempt(s): %s", attempt, exc)
                    raise ModelInvocationError(
                        f"Failed to get a valid response from the AI model: {exc}"
                    ) from exc
                if attempt == self.max_attempts:
                    logger.error("Model still overloaded after %d attempts", attempt)
                    raise ModelOverloadedError(attempt) from exc

                delay = self.backoff_delay(attempt)
                logger.warning(
                    "AI model error (attempt %d/%d): %s. Retrying in %.1fs",
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                continue

            if text is None or not text.strip():
                raise ModelInvocationError(
                    "Received an invalid or empty response from the AI model."
                )
            return text.strip()

        # Unreachable: the loop either returns or raises on its last attempt
        raise ModelOverloadedError(self.max_attempts)
