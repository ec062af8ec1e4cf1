"""
Bounded sliding-window audio buffer

Keeps the most recent `capacity` mono samples in a preallocated ring so the
capture callback never allocates in proportion to recording length.
"""

import logging
import threading
from typing import Sequence, Union

import numpy as np

from whisprlocal.errors import InvalidAudioFormat

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1_920_000  # 120 s at 16 kHz

Samples = Union[np.ndarray, Sequence[float]]


class AudioSampleBuffer:
    """
    Thread-safe FIFO of float32 samples clamped to [-1, 1]

    When an append pushes the length past capacity, the oldest samples are
    evicted from the head. Draining returns samples in arrival order.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, sample_rate: int = 16000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.sample_rate = sample_rate
        self._data = np.zeros(capacity, dtype=np.float32)
        self._start = 0
        self._length = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self._length

    @property
    def is_empty(self) -> bool:
        return self._length == 0

    @property
    def duration_seconds(self) -> float:
        return self._length / self.sample_rate

    def append(self, samples: Samples) -> None:
        """
        Append samples to the tail, evicting from the head on overflow

        Args:
            samples: 1-D samples or an (n, 1) array

        Raises:
            InvalidAudioFormat: If samples are not mono numeric data
        """
        chunk = _as_mono(samples)
        n = chunk.shape[0]
        if n == 0:
            return

        np.nan_to_num(chunk, copy=False, nan=0.0, posinf=1.0, neginf=-1.0)
        np.clip(chunk, -1.0, 1.0, out=chunk)

        if n >= self.capacity:
            chunk = chunk[-self.capacity:]
            n = self.capacity

        with self._lock:
            end = (self._start + self._length) % self.capacity
            first = min(n, self.capacity - end)
            self._data[end:end + first] = chunk[:first]
            if first < n:
                self._data[:n - first] = chunk[first:]

            overflow = self._length + n - self.capacity
            if overflow > 0:
                self._start = (self._start + overflow) % self.capacity
                self._length = self.capacity
            else:
                self._length += n

    def drain_all(self) -> np.ndarray:
        """Return all buffered samples in order and clear the buffer"""
        with self._lock:
            out = self._snapshot()
            self._start = 0
            self._length = 0
        return out

    def clear(self) -> None:
        """Discard buffered samples"""
        with self._lock:
            self._start = 0
            self._length = 0

    def _snapshot(self) -> np.ndarray:
        end = self._start + self._length
        if end <= self.capacity:
            return self._data[self._start:end].copy()
        return np.concatenate((self._data[self._start:], self._data[:end - self.capacity]))


def _as_mono(samples: Samples) -> np.ndarray:
    """Convert input to a fresh 1-D float32 array"""
    try:
        array = np.array(samples, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidAudioFormat(f"Audio samples are not numeric: {e}") from e

    if array.ndim == 2 and array.shape[1] == 1:
        array = array[:, 0]
    if array.ndim != 1:
        raise InvalidAudioFormat(f"Expected mono samples, got shape {array.shape}")
    return array
