"""Error types raised by the chat core and mapped to HTTP responses by the server."""

from __future__ import annotations


class ChatError(Exception):
    """Base exception for all chat-turn failures."""

    def __init__(self, message: str, *, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class InvalidInput(ChatError):
    """User text was empty or whitespace-only. Nothing was read or written."""


class MissingBindings(ChatError):
    """The model or the store is not configured for this process."""


class StoreUnavailable(ChatError):
    """Reading or writing the transcript store failed."""


class ModelInvocationFailure(ChatError):
    """The language model call itself failed (not a malformed reply)."""
