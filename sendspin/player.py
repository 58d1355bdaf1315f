"""High-level player: playback state, volume, callbacks and statistics."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .clock import ClockSync, Quality, set_global_clock_sync
from .scheduler import Scheduler

log = logging.getLogger(__name__)

DEFAULT_VOLUME = 100
DEFAULT_BUFFER_MS = 500
SYNCHRONIZED = "synchronized"


class NotConnectedError(RuntimeError):
    """Raised when an operation needs a server connection and there is none."""


@dataclass
class DeviceInfo:
    """Identification of the player device; empty fields take defaults."""

    product_name: str = ""
    manufacturer: str = ""
    software_version: str = ""


@dataclass(frozen=True)
class Metadata:
    """Track information reported by the server."""

    title: str = ""
    artist: str = ""
    album: str = ""
    album_artist: str = ""
    artwork_url: str = ""
    track: int = 0
    year: int = 0
    duration: int = 0


@dataclass
class PlayerState:
    """Current playback state of a player."""

    state: str = "idle"
    volume: int = DEFAULT_VOLUME
    muted: bool = False
    codec: str = ""
    sample_rate: int = 0
    channels: int = 0
    bit_depth: int = 0
    connected: bool = False


@dataclass(frozen=True)
class PlayerStats:
    """Playback and synchronisation statistics."""

    received: int = 0
    played: int = 0
    dropped: int = 0
    buffer_depth: int = 0
    sync_rtt: int = 0
    sync_quality: Quality = Quality.LOST


@dataclass
class PlayerConfig:
    """Settings for a :class:`Player`; zero values take the defaults."""

    server_addr: str = ""
    player_name: str = ""
    volume: int = 0
    buffer_ms: int = 0
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    on_metadata: Callable[[Metadata], None] | None = None
    on_state_change: Callable[[PlayerState], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class _Connection(Protocol):
    def send_state(self, state: str, volume: int, muted: bool) -> None: ...

    def send_goodbye(self, reason: str) -> None: ...

    def close(self) -> None: ...


def _with_defaults(config: PlayerConfig) -> PlayerConfig:
    info = config.device_info
    device_info = DeviceInfo(
        product_name=info.product_name or "Sendspin Player",
        manufacturer=info.manufacturer or "Sendspin",
        software_version=info.software_version or "1.0.0",
    )
    return dataclasses.replace(
        config,
        volume=config.volume or DEFAULT_VOLUME,
        buffer_ms=config.buffer_ms or DEFAULT_BUFFER_MS,
        device_info=device_info,
    )


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _applies_to_player(roles: Iterable[str] | None) -> bool:
    roles = list(roles or ())
    return not roles or "player" in roles


class Player:
    """Tracks playback state and reports it to the server and to callbacks."""

    def __init__(self, config: PlayerConfig) -> None:
        self.config = _with_defaults(config)
        self.server_addr = self.config.server_addr
        self.clock_sync = ClockSync()
        set_global_clock_sync(self.clock_sync)

        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._client: _Connection | None = None
        self._scheduler: Scheduler | None = None
        self._decoder: Any = None
        self._output: Any = None
        self._state = PlayerState(state="idle", volume=self.config.volume)

    def play(self) -> None:
        """Start or resume playback."""
        self._change_playback("playing")

    def pause(self) -> None:
        """Pause playback."""
        self._change_playback("paused")

    def stop(self) -> None:
        """Stop playback."""
        self._change_playback("idle")

    def set_volume(self, volume: int) -> None:
        """Set the volume, clamped to 0..100."""
        volume = min(100, max(0, volume))
        with self._lock:
            self._state.volume = volume
            setter = getattr(self._output, "set_volume", None)
            if callable(setter):
                setter(volume)
            self._report_state()
        self._notify_state_change()

    def mute(self, muted: bool) -> None:
        """Mute or unmute playback."""
        with self._lock:
            self._state.muted = muted
            setter = getattr(self._output, "set_muted", None)
            if callable(setter):
                setter(muted)
            self._report_state()
        self._notify_state_change()

    def status(self) -> PlayerState:
        """Return a snapshot of the current state."""
        with self._lock:
            return dataclasses.replace(self._state)

    def stats(self) -> PlayerStats:
        """Return playback and clock-sync statistics."""
        received = played = dropped = depth = 0
        with self._lock:
            scheduler = self._scheduler
        if scheduler is not None:
            counters = scheduler.stats()
            received, played, dropped = counters.received, counters.played, counters.dropped
            depth = scheduler.buffer_depth()
        rtt, quality = self.clock_sync.get_stats()
        return PlayerStats(
            received=received,
            played=played,
            dropped=dropped,
            buffer_depth=depth,
            sync_rtt=rtt,
            sync_quality=quality,
        )

    def close(self) -> None:
        """Say goodbye to the server and release every resource."""
        self._closed.set()
        with self._lock:
            client, self._client = self._client, None
            scheduler, decoder, output = self._scheduler, self._decoder, self._output
            self._state.connected = False
            self._state.state = "idle"
        if client is not None:
            client.send_goodbye("shutdown")
            client.close()
        if scheduler is not None:
            scheduler.stop()
        for resource in (decoder, output):
            closer = getattr(resource, "close", None)
            if callable(closer):
                closer()
        self._notify_state_change()

    def __enter__(self) -> Player:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _change_playback(self, state: str) -> None:
        with self._lock:
            if not self._state.connected or self._client is None:
                raise NotConnectedError("not connected")
            self._state.state = state
            client = self._client
            volume, muted = self._state.volume, self._state.muted
        self._notify_state_change()
        client.send_state(SYNCHRONIZED, volume, muted)

    def _report_state(self) -> None:
        if self._client is not None and self._state.connected:
            try:
                self._client.send_state(SYNCHRONIZED, self._state.volume, self._state.muted)
            except Exception as exc:  # noqa: BLE001 - reporting is best effort
                log.info("Failed to report player state: %s", exc)

    def _attach(self, client: _Connection) -> None:
        with self._lock:
            self._client = client
            self._state.connected = True
        log.info("Connected to server: %s", self.server_addr)
        self._notify_state_change()

    def _handle_control(self, command: str, payload: Mapping[str, Any]) -> None:
        if command == "volume":
            self.set_volume(_as_int(payload.get("volume")))
        elif command == "mute":
            self.mute(bool(payload.get("mute", False)))

    def _handle_stream_clear(self, roles: Iterable[str] | None) -> None:
        log.info("Stream clear received for roles: %s", roles)
        if _applies_to_player(roles):
            with self._lock:
                scheduler = self._scheduler
            if scheduler is not None:
                scheduler.clear()

    def _handle_stream_end(self, roles: Iterable[str] | None) -> None:
        log.info("Stream end received for roles: %s", roles)
        if _applies_to_player(roles):
            with self._lock:
                self._state.state = "idle"
            self._notify_state_change()

    def _handle_server_state(self, payload: Mapping[str, Any]) -> None:
        meta = payload.get("metadata")
        if not isinstance(meta, Mapping) or self.config.on_metadata is None:
            return
        progress = meta.get("progress")
        duration_ms = _as_int(progress.get("track_duration")) if isinstance(progress, Mapping) else 0
        self.config.on_metadata(
            Metadata(
                title=_as_str(meta.get("title")),
                artist=_as_str(meta.get("artist")),
                album=_as_str(meta.get("album")),
                album_artist=_as_str(meta.get("album_artist")),
                artwork_url=_as_str(meta.get("artwork_url")),
                track=_as_int(meta.get("track")),
                year=_as_int(meta.get("year")),
                duration=int(duration_ms / 1000),
            )
        )

    def _handle_group_update(self, payload: Mapping[str, Any]) -> None:
        if isinstance(payload.get("playback_state"), str):
            log.info("Group playback state: %s", payload["playback_state"])
        if isinstance(payload.get("group_id"), str):
            log.info("Joined group: %s", payload["group_id"])

    def _notify_state_change(self) -> None:
        if self.config.on_state_change is not None:
            self.config.on_state_change(self.status())

    def _notify_error(self, err: Exception) -> None:
        if self.config.on_error is not None:
            self.config.on_error(err)
        else:
            log.warning("Player error: %s", err)