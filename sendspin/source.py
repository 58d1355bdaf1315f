"""Audio sources that supply interleaved PCM samples for streaming."""

from __future__ import annotations

import abc
import math
import threading

DEFAULT_SAMPLE_RATE = 192000
DEFAULT_CHANNELS = 2
MAX_24BIT = 8388607


class AudioSource(abc.ABC):
    """A supplier of interleaved 24-bit PCM samples held in Python ints."""

    _closed = False

    @property
    @abc.abstractmethod
    def sample_rate(self) -> int:
        """Samples per second per channel."""

    @property
    @abc.abstractmethod
    def channels(self) -> int:
        """Number of interleaved channels."""

    @abc.abstractmethod
    def read(self, count: int) -> list[int]:
        """Return ``count`` interleaved samples."""

    @abc.abstractmethod
    def metadata(self) -> tuple[str, str, str]:
        """Return (title, artist, album)."""

    @property
    def closed(self) -> bool:
        """True once :meth:`close` has been called."""
        return self._closed

    def close(self) -> None:
        """Release any resources held by the source."""
        self._closed = True

    def __enter__(self) -> AudioSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class TestToneSource(AudioSource):
    """A 440 Hz sine wave at half of full 24-bit scale on every channel."""

    __test__ = False

    def __init__(self, sample_rate: int = DEFAULT_SAMPLE_RATE, channels: int = DEFAULT_CHANNELS) -> None:
        self._sample_rate = sample_rate or DEFAULT_SAMPLE_RATE
        self._channels = channels or DEFAULT_CHANNELS
        self.frequency = 440.0
        self._sample_index = 0
        self._lock = threading.Lock()

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def channels(self) -> int:
        return self._channels

    def _value(self, index: int) -> int:
        t = index / self._sample_rate
        return int(math.sin(2 * math.pi * self.frequency * t) * MAX_24BIT * 0.5)

    def read(self, count: int) -> list[int]:
        """Return ``count`` samples; a trailing partial frame is left as zeros."""
        if count < 0:
            raise ValueError("sample count must not be negative")
        frames = count // self._channels
        with self._lock:
            start = self._sample_index
            self._sample_index += frames
        samples = [
            value
            for value in (self._value(start + i) for i in range(frames))
            for _ in range(self._channels)
        ]
        samples.extend([0] * (count - len(samples)))
        return samples

    def metadata(self) -> tuple[str, str, str]:
        return "Test Tone", "Sendspin", "Test Signal"

    def close(self) -> None:
        """Mark the generator closed; it holds no external resources."""
        with self._lock:
            self._closed = True