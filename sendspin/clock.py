"""Clock synchronisation against a server's loop clock.

Time-sync exchanges give four timestamps: client send (t1, Unix µs),
server receive (t2, server loop µs), server send (t3, server loop µs) and
client receive (t4, Unix µs). The first good exchange fixes where the server
loop started in local Unix time; later ones track round-trip time and quality.
"""

from __future__ import annotations

import enum
import logging
import threading
import time

log = logging.getLogger(__name__)

HIGH_RTT_US = 100_000
GOOD_RTT_US = 50_000
SYNC_TIMEOUT_S = 5.0


class Quality(enum.IntEnum):
    """How trustworthy the current synchronisation is."""

    GOOD = 0
    DEGRADED = 1
    LOST = 2


def unix_micros() -> int:
    """Current wall-clock time in Unix microseconds."""
    return time.time_ns() // 1000


class ClockSync:
    """Maps server loop timestamps onto the local wall clock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._server_loop_start_unix = 0
        self._rtt = 0
        self._quality = Quality.LOST
        self._last_sync: float | None = None
        self._sample_count = 0
        self._synced = False

    @property
    def synced(self) -> bool:
        """True once a sync response has been accepted."""
        with self._lock:
            return self._synced

    @property
    def server_loop_start_unix(self) -> int:
        """Unix microseconds at which the server loop started."""
        with self._lock:
            return self._server_loop_start_unix

    @property
    def sample_count(self) -> int:
        """Number of accepted sync samples."""
        with self._lock:
            return self._sample_count

    def process_sync_response(self, t1: int, t2: int, t3: int, t4: int) -> None:
        """Fold one server/time exchange into the synchronisation state."""
        rtt = (t4 - t1) - (t3 - t2)

        with self._lock:
            self._rtt = rtt
            self._last_sync = time.monotonic()

            if rtt > HIGH_RTT_US:
                log.info("Discarding sync sample: high RTT %dμs", rtt)
                return

            if not self._synced:
                self._server_loop_start_unix = unix_micros() - t2
                self._synced = True
                self._quality = Quality.GOOD
                self._sample_count += 1
                log.info(
                    "Clock sync established: serverLoopStart=%d, rtt=%dμs",
                    self._server_loop_start_unix,
                    rtt,
                )
                return

            self._quality = Quality.GOOD if rtt < GOOD_RTT_US else Quality.DEGRADED
            self._sample_count += 1

            if self._sample_count < 10:
                log.info(
                    "Sync #%d: rtt=%dμs, quality=%s",
                    self._sample_count,
                    rtt,
                    self._quality.name,
                )

    def get_stats(self) -> tuple[int, Quality]:
        """Return the latest round-trip time (µs) and the sync quality."""
        with self._lock:
            return self._rtt, self._quality

    def check_quality(self) -> Quality:
        """Mark the sync as lost when no response arrived for too long."""
        with self._lock:
            if (
                self._last_sync is None
                or time.monotonic() - self._last_sync > SYNC_TIMEOUT_S
            ):
                self._quality = Quality.LOST
            return self._quality

    def server_to_local_time(self, server_time: int) -> int:
        """Convert a server loop timestamp (µs) to local Unix microseconds.

        Before the first sync the server time is taken to be Unix time.
        """
        with self._lock:
            if not self._synced:
                return server_time
            return self._server_loop_start_unix + server_time

    def _server_micros_now(self) -> int:
        with self._lock:
            if not self._synced:
                return unix_micros()
            return unix_micros() - self._server_loop_start_unix


class _GlobalClock:
    """Holds the process-wide clock used by :func:`server_micros_now`."""

    def __init__(self) -> None:
        self.current: ClockSync | None = None


_GLOBAL_CLOCK = _GlobalClock()


def set_global_clock_sync(cs: ClockSync | None) -> None:
    """Set the clock used by :func:`server_micros_now`."""
    _GLOBAL_CLOCK.current = cs


def server_micros_now() -> int:
    """Current time in the server's loop clock, or Unix µs if not synced."""
    cs = _GLOBAL_CLOCK.current
    if cs is None:
        return unix_micros()
    return cs._server_micros_now()