"""Error types raised around generative model calls."""

from __future__ import annotations


class ModelError(RuntimeError):
    """Base error for anything that goes wrong talking to a model."""


class ModelCallError(ModelError):
    """A provider call failed. Raised by the provider clients.

    ``status_code`` is the HTTP status reported by the provider, or ``None``
    when the request never got a response (connection failure).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"API Error: {self.status_code} - {self.message}"


class ModelInvocationError(ModelError):
    """The model call failed for a reason that retrying will not fix."""


class ModelOverloadedError(ModelError):
    """The model stayed overloaded through every retry attempt."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            "The AI model is currently overloaded. Please try again in a few moments."
        )
        self.attempts = attempts


class InvalidModelOutputError(ModelError):
    """The model produced output that could not be parsed or validated."""
