"""Protocol interfaces for dependency injection."""

from __future__ import annotations

from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .models import BotMessage
from .utils import Signal

Frame = Union[str, bytes]


class ChatBackend(Protocol):
    """Creates conversations, posts user input, and polls assistant messages."""

    async def create_conversation(self) -> Optional[str]:
        """Return a new conversation id, or None on failure."""

    async def send_landmark_event(self, conversation_id: str, landmarks: Sequence[str]) -> bool:
        """Signal detected landmarks to trigger the scripted flow."""

    async def send_text(self, conversation_id: str, text: str) -> bool:
        """Post a user-authored text message."""

    async def poll_messages(self, conversation_id: str) -> Optional[BotMessage]:
        """Return the oldest undelivered assistant message, if any."""

    def reset_message_tracking(self) -> None:
        """Forget the dedup cursor."""


class StreamingChannel(Protocol):
    """A bidirectional streaming connection (one per speech direction)."""

    @property
    def is_open(self) -> bool:
        """True while frames can be sent."""

    def connect(self) -> None:
        """Start opening the connection; completion is reported via callbacks."""

    def send_bytes(self, data: bytes) -> None:
        """Send a binary frame."""

    def send_text(self, text: str) -> None:
        """Send a text frame."""

    def close(self) -> None:
        """Close gracefully; safe to call when already closed."""


# (on_open, on_message, on_close(code, reason), on_error(exc)) -> channel
ChannelFactory = Callable[
    [str, Callable[[], Any], Callable[[Frame], Any], Callable[[Optional[int], str], Any], Callable[[Exception], Any]],
    StreamingChannel,
]


class SpeechChannels(Protocol):
    """
    What the orchestrator needs from the speech layer.

    Implementations also expose ``Signal`` attributes ``final_transcript``,
    ``speech_started``, ``speech_ended``, ``stt_connected`` and ``tts_connected``.
    """

    final_transcript: Signal
    speech_started: Signal
    speech_ended: Signal
    stt_connected: Signal
    tts_connected: Signal

    @property
    def is_bot_speaking(self) -> bool:
        """True while synthesized speech holds the turn."""

    def connect_all(self) -> None:
        """Open both streaming channels."""

    def disconnect_all(self) -> None:
        """Close both streaming channels."""

    def suspend(self) -> None:
        """Release channels and devices when the host pauses."""

    def start_listening(self) -> None:
        """Give the turn to the user."""

    def stop_listening(self) -> None:
        """Stop forwarding microphone audio."""

    def send_text(self, text: str) -> None:
        """Voice ``text``."""

    def stop_playback(self) -> None:
        """Cut bot audio immediately."""


class AudioCapture(Protocol):
    """Microphone capture into a circular buffer (single writer, single reader)."""

    @property
    def is_recording(self) -> bool:
        """True while the device is delivering samples."""

    @property
    def position(self) -> int:
        """Current write cursor in samples."""

    def start(self) -> bool:
        """Begin capturing; returns False when no input device is available."""

    def stop(self) -> None:
        """Stop capturing."""

    def read_since(self, position: int) -> Tuple[List[np.ndarray], int]:
        """Return samples written after ``position`` and the new read position."""


class AudioPlayer(Protocol):
    """Plays decoded PCM blocks one at a time."""

    async def play(self, samples: np.ndarray) -> None:
        """Play ``samples`` and return once playback has finished."""

    def stop(self) -> None:
        """Stop any playback in progress immediately."""
