"""Timestamp-based playback scheduling of decoded audio buffers."""

from __future__ import annotations

import dataclasses
import heapq
import itertools
import logging
import queue
import threading
from collections.abc import Sequence
from dataclasses import dataclass

from .clock import ClockSync, server_micros_now, unix_micros

log = logging.getLogger(__name__)

CHUNK_DURATION_MS = 20
PLAY_WINDOW_US = 50_000
TICK_S = 0.010
OUTPUT_CAPACITY = 10


@dataclass
class AudioBuffer:
    """Decoded samples with their server timestamp and local play time (µs)."""

    timestamp: int
    samples: Sequence[int] = ()
    play_at: int = 0


@dataclass
class SchedulerStats:
    """Counters kept by the scheduler."""

    received: int = 0
    played: int = 0
    dropped: int = 0


class BufferQueue:
    """Priority queue of buffers ordered by play time, FIFO among equals."""

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, AudioBuffer]] = []
        self._order = itertools.count()

    def push(self, buf: AudioBuffer) -> None:
        heapq.heappush(self._heap, (buf.play_at, next(self._order), buf))

    def pop(self) -> AudioBuffer:
        if not self._heap:
            raise IndexError("pop from empty buffer queue")
        return heapq.heappop(self._heap)[2]

    def peek(self) -> AudioBuffer:
        if not self._heap:
            raise IndexError("peek into empty buffer queue")
        return self._heap[0][2]

    def __len__(self) -> int:
        return len(self._heap)


class Scheduler:
    """Releases buffers to the output queue when their play time comes.

    Playback only starts once ``buffer_ms`` worth of chunks has accumulated.
    Buffers more than 50 ms late are dropped.
    """

    def __init__(self, clock_sync: ClockSync, buffer_ms: int) -> None:
        self._clock_sync = clock_sync
        self._queue = BufferQueue()
        self._lock = threading.Lock()
        self._output: queue.Queue[AudioBuffer] = queue.Queue(maxsize=OUTPUT_CAPACITY)
        self._stopped = threading.Event()
        self._buffering = True
        self._buffer_target = max(1, int(buffer_ms / CHUNK_DURATION_MS))
        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()

    @property
    def output(self) -> queue.Queue[AudioBuffer]:
        """Queue of buffers that are due for playback."""
        return self._output

    @property
    def buffering(self) -> bool:
        """True while startup buffering is still in progress."""
        with self._lock:
            return self._buffering

    def schedule(self, buf: AudioBuffer) -> None:
        """Queue a buffer, computing its local play time."""
        buf = dataclasses.replace(
            buf, play_at=self._clock_sync.server_to_local_time(buf.timestamp)
        )

        with self._stats_lock:
            received = self._stats.received
            self._stats.received += 1

        if received < 5:
            server_now = server_micros_now()
            diff = buf.timestamp - server_now
            rtt, quality = self._clock_sync.get_stats()
            log.info(
                "Chunk #%d: timestamp=%dµs, serverNow=%dµs, diff=%dµs (%.1fms), "
                "rtt=%dµs, quality=%s",
                received,
                buf.timestamp,
                server_now,
                diff,
                diff / 1000.0,
                rtt,
                quality.name,
            )

        with self._lock:
            self._queue.push(buf)

    def run(self) -> None:
        """Process the queue every 10 ms until stopped."""
        while not self._stopped.wait(TICK_S):
            self.process_queue()

    def process_queue(self) -> None:
        """Send every due buffer to the output, dropping late ones."""
        with self._lock:
            if self._buffering:
                if len(self._queue) < self._buffer_target:
                    return
                log.info("Startup buffering complete: %d chunks ready", len(self._queue))
                self._buffering = False

        now = unix_micros()
        while True:
            with self._lock:
                ready = self._take_ready(now)
            if ready is None or not self._deliver(ready):
                return

    def _take_ready(self, now: int) -> AudioBuffer | None:
        while self._queue:
            delay = self._queue.peek().play_at - now
            if delay > PLAY_WINDOW_US:
                return None
            buf = self._queue.pop()
            if delay < -PLAY_WINDOW_US:
                with self._stats_lock:
                    self._stats.dropped += 1
                log.info("Dropped late buffer: %.1fms late", -delay / 1000.0)
                continue
            return buf
        return None

    def _deliver(self, buf: AudioBuffer) -> bool:
        while not self._stopped.is_set():
            try:
                self._output.put(buf, timeout=0.05)
            except queue.Full:
                continue
            with self._stats_lock:
                self._stats.played += 1
            return True
        return False

    def stats(self) -> SchedulerStats:
        """Return a snapshot of the counters."""
        with self._stats_lock:
            return dataclasses.replace(self._stats)

    def buffer_depth(self) -> int:
        """Queued audio in milliseconds."""
        with self._lock:
            return len(self._queue) * CHUNK_DURATION_MS

    def stop(self) -> None:
        """Stop the run loop and any pending delivery."""
        self._stopped.set()

    def clear(self) -> None:
        """Drop all queued audio and start buffering again (used on seek)."""
        with self._lock:
            self._queue = BufferQueue()
            self._buffering = True
        log.info("Scheduler buffers cleared, re-entering buffering mode")