"""Custom exceptions for the landmark voice guide."""

from __future__ import annotations


class ChatClientError(RuntimeError):
    """Raised when the chat service responds with an error or invalid payload."""


class SpeechChannelError(RuntimeError):
    """Raised when a speech streaming channel cannot be opened or written to."""


class VisionClientError(RuntimeError):
    """Raised when the vision endpoint fails or returns an unreadable result."""
