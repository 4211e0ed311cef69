"""PCM conversion helpers shared by capture and playback."""

from __future__ import annotations

import numpy as np


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float32 samples in [-1.0, 1.0] to little-endian 16-bit PCM bytes."""
    pcm = np.clip(np.asarray(samples, dtype=np.float32) * 32767.0, -32768.0, 32767.0)
    return pcm.astype("<i2").tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Convert little-endian 16-bit PCM bytes to float32 samples."""
    usable = len(data) - (len(data) % 2)
    pcm = np.frombuffer(data[:usable], dtype="<i2")
    return pcm.astype(np.float32) / 32768.0
