"""Cancellable audio playback through sounddevice."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import numpy as np

logger = logging.getLogger(__name__)


class SoundDevicePlayer:
    """
    Plays one PCM block at a time on the default output device.

    ``play`` starts non-blocking playback and sleeps for the block duration,
    so cancelling the awaiting task (or calling :meth:`stop`) cuts the audio.

    Args:
        sample_rate: Playback sample rate (Hz).
        device: Optional sounddevice output device id/name.
    """

    def __init__(self, *, sample_rate: int = 16000, device: Optional[Any] = None) -> None:
        self.sample_rate = sample_rate
        self.device = device

    async def play(self, samples: np.ndarray) -> None:
        if samples.size == 0:
            return
        sd = _lazy_import_sounddevice()
        sd.play(samples.astype(np.float32), samplerate=self.sample_rate, device=self.device)
        try:
            await asyncio.sleep(samples.size / float(self.sample_rate))
        except asyncio.CancelledError:
            sd.stop()
            raise

    def stop(self) -> None:
        sd = _lazy_import_sounddevice()
        sd.stop()


def _lazy_import_sounddevice():
    try:
        import sounddevice as sd  # type: ignore
    except ImportError as exc:  # pragma: no cover - runtime dependency
        raise RuntimeError("sounddevice and numpy required for audio playback. Install via pip.") from exc
    return sd
