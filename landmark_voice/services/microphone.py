"""Microphone capture into a circular buffer, backed by sounddevice."""

from __future__ import annotations

import logging
import threading
from typing import Any, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class CircularCaptureBuffer:
    """
    Fixed-size ring of float32 mono samples with a single write cursor.

    The capture callback is the only writer; the speech manager tick is the
    only reader and keeps its own read position.

    Usage:
        >>> ring = CircularCaptureBuffer(capacity=8)
        >>> ring.write(np.ones(3, dtype=np.float32))
        >>> chunks, pos = ring.read_since(0)
        >>> [len(c) for c in chunks], pos
        ([3], 3)
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data = np.zeros(capacity, dtype=np.float32)
        self._position = 0
        self._lock = threading.Lock()

    @property
    def position(self) -> int:
        return self._position

    def write(self, samples: np.ndarray) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size >= self.capacity:
            samples = samples[-self.capacity:]
        with self._lock:
            start = self._position
            end = start + samples.size
            if end <= self.capacity:
                self._data[start:end] = samples
            else:
                first = self.capacity - start
                self._data[start:] = samples[:first]
                self._data[: samples.size - first] = samples[first:]
            self._position = end % self.capacity

    def read_since(self, position: int) -> Tuple[List[np.ndarray], int]:
        """
        Return blocks written after ``position`` and the new read position.

        When the write cursor has wrapped behind ``position``, the tail of the
        buffer is drained first, then the head up to the cursor.
        """
        with self._lock:
            current = self._position
            chunks: List[np.ndarray] = []
            if current < position:
                if position < self.capacity:
                    chunks.append(self._data[position:].copy())
                position = 0
            if current > position:
                chunks.append(self._data[position:current].copy())
        return chunks, current

    def reset(self) -> None:
        with self._lock:
            self._data[:] = 0.0
            self._position = 0


class SoundDeviceMicrophone:
    """
    Records the default input device continuously into a :class:`CircularCaptureBuffer`.

    Args:
        sample_rate: Capture sample rate (Hz).
        buffer_seconds: Ring buffer length.
        device: Optional sounddevice input device id/name.
    """

    def __init__(self, *, sample_rate: int = 16000, buffer_seconds: int = 10, device: Optional[Any] = None) -> None:
        self.sample_rate = sample_rate
        self.device = device
        self.buffer = CircularCaptureBuffer(sample_rate * buffer_seconds)
        self._stream: Optional[Any] = None

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    @property
    def position(self) -> int:
        return self.buffer.position

    def start(self) -> bool:
        sd = _lazy_import_sounddevice()
        if self._stream is not None:
            self.stop()

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            logger.error("No microphone available: %s", exc)
            return False

        self.buffer.reset()
        self._stream = stream
        logger.info("Started recording at %d Hz", self.sample_rate)
        return True

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        stream.stop()
        stream.close()
        logger.info("Stopped recording")

    def read_since(self, position: int) -> Tuple[List[np.ndarray], int]:
        return self.buffer.read_since(position)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Input status: %s", status)
        self.buffer.write(indata[:, 0])


def _lazy_import_sounddevice():
    try:
        import sounddevice as sd  # type: ignore
    except ImportError as exc:  # pragma: no cover - runtime dependency
        raise RuntimeError("sounddevice is required for microphone capture. Install via pip.") from exc
    return sd
