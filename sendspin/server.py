"""WebSocket server that streams timestamped PCM audio to Sendspin clients."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import struct
import threading
import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from .scheduler import CHUNK_DURATION_MS
from .source import AudioSource

log = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
AUDIO_CHUNK_MESSAGE_TYPE = 4
DEFAULT_BIT_DEPTH = 24
BUFFER_AHEAD_MS = 500
DEFAULT_PORT = 8927
DEFAULT_NAME = "Sendspin Server"
WEBSOCKET_PATH = "/sendspin"
SEND_QUEUE_SIZE = 100
WRITE_TIMEOUT_S = 10.0
PING_INTERVAL_S = 30.0
SHUTDOWN_TIMEOUT_S = 5.0
IMPLEMENTED_ROLES = frozenset({"player", "metadata"})


@dataclass
class ServerConfig:
    """Settings for a :class:`Server`; zero values take the defaults."""

    port: int = 0
    name: str = ""
    source: AudioSource | None = None
    debug: bool = False
    host: str = ""


@dataclass(frozen=True)
class ClientInfo:
    """Snapshot of a connected client."""

    id: str
    name: str
    state: str
    volume: int
    muted: bool
    codec: str


@dataclass
class _Client:
    id: str
    name: str
    connection: ServerConnection
    roles: list[str]
    capabilities: Mapping[str, Any] | None
    state: str = "synchronized"
    volume: int = 100
    muted: bool = False
    codec: str = ""
    send_queue: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=SEND_QUEUE_SIZE)
    )


def create_audio_chunk(timestamp: int, audio_data: bytes) -> bytes:
    """Frame audio as ``[type:1][timestamp:8 big-endian][data]``."""
    header = struct.pack(">BQ", AUDIO_CHUNK_MESSAGE_TYPE, timestamp & 0xFFFFFFFFFFFFFFFF)
    return header + bytes(audio_data)


def encode_pcm(samples: Sequence[int]) -> bytes:
    """Pack samples as little-endian 24-bit PCM, keeping the low 24 bits."""
    count = len(samples)
    packed = struct.pack(f"<{count}I", *(s & 0xFFFFFFFF for s in samples))
    out = bytearray(count * 3)
    for byte in range(3):
        out[byte::3] = packed[byte::4]
    return bytes(out)


def convert_to_int16(samples: Iterable[int]) -> list[int]:
    """Reduce 24-bit samples to signed 16-bit by dropping the low byte."""
    result = []
    for sample in samples:
        value = (sample >> 8) & 0xFFFF
        result.append(value - 0x10000 if value >= 0x8000 else value)
    return result


def has_role(roles: Iterable[str], role: str) -> bool:
    """True if ``role`` appears in ``roles``, bare or versioned (``player@v1``)."""
    return any(r == role or r.startswith(role + "@") for r in roles)


def activate_roles(supported_roles: Iterable[str]) -> list[str]:
    """Keep the first entry of each implemented role family, in input order."""
    seen: set[str] = set()
    result = []
    for role in supported_roles:
        idx = role.find("@")
        family = role[:idx] if idx > 0 else role
        if family in seen or family not in IMPLEMENTED_ROLES:
            continue
        seen.add(family)
        result.append(role)
    return result


def negotiate_codec(capabilities: Mapping[str, Any] | None, source_rate: int) -> str:
    """Pick a codec from a client's ``player_v1_support`` capabilities."""
    if capabilities is None:
        return "pcm"
    formats = [f for f in capabilities.get("supported_formats") or () if isinstance(f, Mapping)]

    for fmt in formats:
        if (
            fmt.get("codec") == "pcm"
            and fmt.get("sample_rate") == source_rate
            and fmt.get("bit_depth") == DEFAULT_BIT_DEPTH
        ):
            return "pcm"

    for fmt in formats:
        if fmt.get("codec") == "opus" and source_rate == 48000:
            return "opus"
        if fmt.get("codec") == "flac":
            return "flac"

    return "pcm"


class Server:
    """Serves one audio source to any number of WebSocket clients."""

    def __init__(self, config: ServerConfig) -> None:
        if config.source is None:
            raise ValueError("audio source is required")
        self.config = dataclasses.replace(
            config,
            port=config.port or DEFAULT_PORT,
            name=config.name or DEFAULT_NAME,
        )
        self.server_id = str(uuid.uuid4())
        self._source: AudioSource = config.source
        self._clients: dict[str, _Client] = {}
        self._clients_lock = threading.Lock()
        self._clock_start = time.monotonic_ns()
        self._control_lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._stop_requested = False
        self._is_shutdown = False

    async def start(self) -> None:
        """Serve clients and stream audio until :meth:`stop` is called."""
        log.info("Server starting: %s (ID: %s)", self.config.name, self.server_id)
        log.info(
            "Audio source: %dHz/%dbit/%dch",
            self._source.sample_rate,
            DEFAULT_BIT_DEPTH,
            self._source.channels,
        )

        stop_event = asyncio.Event()
        with self._control_lock:
            self._stop_event = stop_event
            self._loop = asyncio.get_running_loop()
            if self._stop_requested:
                stop_event.set()

        ws_server = await serve(
            self._handle_connection,
            self.config.host or None,
            self.config.port,
            process_request=self._process_request,
            ping_interval=PING_INTERVAL_S,
        )
        log.info("WebSocket server listening on %s:%d", self.config.host, self.config.port)
        stream_task = asyncio.create_task(self._stream_audio())

        try:
            await stop_event.wait()
            log.info("Server shutting down...")
            self._is_shutdown = True
        finally:
            stream_task.cancel()
            await asyncio.gather(stream_task, return_exceptions=True)
            ws_server.close()
            try:
                await asyncio.wait_for(ws_server.wait_closed(), SHUTDOWN_TIMEOUT_S)
            except asyncio.TimeoutError:
                log.warning("HTTP server shutdown timed out")

        try:
            self._source.close()
        except Exception as exc:  # noqa: BLE001 - a failing source must not break shutdown
            log.warning("Error closing audio source: %s", exc)
        log.info("Server stopped cleanly")

    def stop(self) -> None:
        """Ask a running (or not yet started) server to stop; safe from any thread."""
        with self._control_lock:
            self._stop_requested = True
            loop, event = self._loop, self._stop_event
        if loop is not None and event is not None:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                pass

    def clients(self) -> list[ClientInfo]:
        """Return information about all connected clients."""
        with self._clients_lock:
            return [
                ClientInfo(
                    id=c.id,
                    name=c.name,
                    state=c.state,
                    volume=c.volume,
                    muted=c.muted,
                    codec=c.codec,
                )
                for c in self._clients.values()
            ]

    def _clock_micros(self) -> int:
        return (time.monotonic_ns() - self._clock_start) // 1000

    def _process_request(self, connection: ServerConnection, request: Any) -> Any:
        if request.path.split("?", 1)[0] != WEBSOCKET_PATH:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _stream_audio(self) -> None:
        log.info("Audio streaming started")
        loop = asyncio.get_running_loop()
        interval = CHUNK_DURATION_MS / 1000
        next_tick = loop.time() + interval
        try:
            while True:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                self._generate_and_send_chunk()
                next_tick += interval
                now = loop.time()
                if next_tick < now:
                    next_tick = now + interval
        except asyncio.CancelledError:
            log.info("Audio streaming stopping")
            raise

    def _generate_and_send_chunk(self) -> None:
        playback_time = self._clock_micros() + BUFFER_AHEAD_MS * 1000
        chunk_samples = self._source.sample_rate * CHUNK_DURATION_MS // 1000
        total = chunk_samples * self._source.channels

        try:
            samples = self._source.read(total)
        except Exception as exc:  # noqa: BLE001 - keep streaming on source errors
            log.warning("Error reading audio source: %s", exc)
            return

        pcm_chunk: bytes | None = None
        with self._clients_lock:
            clients = list(self._clients.values())

        for client in clients:
            if client.codec == "opus":
                # Opus clients need an encoder; none is attached, so skip them.
                continue
            if pcm_chunk is None:
                pcm_chunk = create_audio_chunk(playback_time, encode_pcm(samples))
            if not self._enqueue(client, pcm_chunk) and self.config.debug:
                log.info("Error sending audio to %s: send buffer full", client.name)

    def _enqueue(self, client: _Client, item: bytes | dict) -> bool:
        try:
            client.send_queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def _send_message(self, client: _Client, msg_type: str, payload: dict) -> bool:
        return self._enqueue(client, {"type": msg_type, "payload": payload})

    async def _handle_connection(self, connection: ServerConnection) -> None:
        if self._is_shutdown:
            log.info("Rejecting connection during shutdown")
            return
        log.info("New WebSocket connection from %s", connection.remote_address)

        try:
            data = await connection.recv()
        except ConnectionClosed as exc:
            log.info("Error reading hello: %s", exc)
            return

        hello = self._parse_hello(data)
        if hello is None:
            return

        client_id = hello["client_id"]
        roles = [r for r in hello.get("supported_roles") or () if isinstance(r, str)]
        capabilities = hello.get("player_v1_support")
        log.info("Client hello: %s (ID: %s, Roles: %s)", hello["name"], client_id, roles)

        client = _Client(
            id=client_id,
            name=hello["name"],
            connection=connection,
            roles=roles,
            capabilities=capabilities if isinstance(capabilities, Mapping) else None,
        )

        with self._clients_lock:
            if client_id in self._clients:
                log.info("Client ID %s already connected, rejecting duplicate", client_id)
                return
            self._clients[client_id] = client

        writer: asyncio.Task | None = None
        try:
            server_hello = {
                "server_id": self.server_id,
                "name": self.config.name,
                "version": PROTOCOL_VERSION,
                "active_roles": activate_roles(roles),
                "connection_reason": "playback",
            }
            if not self._send_message(client, "server/hello", server_hello):
                log.warning("Error sending server hello: send buffer full")
                return

            writer = asyncio.create_task(self._client_writer(client))

            if has_role(client.roles, "player"):
                self._add_client_to_stream(client)

            try:
                async for message in connection:
                    self._handle_client_message(client, message)
            except ConnectionClosed as exc:
                if exc.rcvd is None or exc.rcvd.code not in (1000, 1001, 1005, 1006):
                    log.info("WebSocket error: %s", exc)
        finally:
            self._remove_client(client)
            if writer is not None:
                writer.cancel()
                await asyncio.gather(writer, return_exceptions=True)
            log.info("Client disconnected: %s", client.name)

    def _parse_hello(self, data: str | bytes) -> dict | None:
        try:
            msg = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            log.info("Error unmarshaling message: %s", exc)
            return None
        if not isinstance(msg, dict):
            log.info("Error unmarshaling message: not an object")
            return None
        if msg.get("type") != "client/hello":
            log.info("Expected client/hello, got %s", msg.get("type"))
            return None
        hello = msg.get("payload")
        if not isinstance(hello, dict):
            log.info("Error unmarshaling client hello")
            return None
        client_id, name = hello.get("client_id"), hello.get("name")
        if not isinstance(client_id, str) or not isinstance(name, str) or not client_id or not name:
            log.info("Client hello missing required fields")
            return None
        return hello

    async def _client_writer(self, client: _Client) -> None:
        while True:
            item = await client.send_queue.get()
            if isinstance(item, bytes):
                payload: str | bytes = item
            else:
                try:
                    payload = json.dumps(item)
                except (TypeError, ValueError):
                    continue
            try:
                await asyncio.wait_for(client.connection.send(payload), WRITE_TIMEOUT_S)
            except (ConnectionClosed, asyncio.TimeoutError):
                return

    def _handle_client_message(self, client: _Client, data: str | bytes) -> None:
        try:
            msg = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            log.info("Error unmarshaling message: %s", exc)
            return
        if not isinstance(msg, dict):
            return

        msg_type = msg.get("type")
        payload = msg.get("payload")
        if msg_type == "client/time":
            self._handle_time_sync(client, payload)
        elif msg_type == "client/state":
            self._handle_client_state(client, payload)
        elif msg_type == "client/goodbye":
            if isinstance(payload, dict):
                log.info("Client %s goodbye: %s", client.name, payload.get("reason", ""))
        elif self.config.debug:
            log.info("Unknown message type: %s", msg_type)

    def _handle_time_sync(self, client: _Client, payload: Any) -> None:
        server_received = self._clock_micros()
        if not isinstance(payload, dict):
            return
        client_transmitted = payload.get("client_transmitted", 0)
        if not isinstance(client_transmitted, int) or isinstance(client_transmitted, bool):
            return
        self._send_message(
            client,
            "server/time",
            {
                "client_transmitted": client_transmitted,
                "server_received": server_received,
                "server_transmitted": self._clock_micros(),
            },
        )

    def _handle_client_state(self, client: _Client, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        player = payload.get("player")
        if not isinstance(player, dict):
            return
        state = player.get("state", "")
        volume = player.get("volume", 0)
        muted = player.get("muted", False)
        if not isinstance(state, str) or not isinstance(volume, int) or not isinstance(muted, bool):
            return
        with self._clients_lock:
            client.state, client.volume, client.muted = state, volume, muted
        if self.config.debug:
            log.info("Client %s state: %s (vol: %d, muted: %s)", client.name, state, volume, muted)

    def _add_client_to_stream(self, client: _Client) -> None:
        codec = negotiate_codec(client.capabilities, self._source.sample_rate)
        if codec == "opus":
            log.info("Opus encoder unavailable for %s, falling back to PCM", client.name)
            codec = "pcm"
        elif codec == "flac":
            log.info("FLAC streaming not supported for %s, using PCM", client.name)
            codec = "pcm"

        with self._clients_lock:
            client.codec = codec
        log.info("Added client %s with codec %s", client.name, codec)

        self._send_message(
            client,
            "stream/start",
            {
                "player": {
                    "codec": codec,
                    "sample_rate": self._source.sample_rate,
                    "channels": self._source.channels,
                    "bit_depth": DEFAULT_BIT_DEPTH,
                }
            },
        )

        title, artist, album = self._source.metadata()
        self._send_message(
            client,
            "server/state",
            {
                "metadata": {
                    "timestamp": self._clock_micros(),
                    "title": title,
                    "artist": artist,
                    "album": album,
                }
            },
        )

        self._send_message(
            client,
            "group/update",
            {"group_id": self.server_id, "playback_state": "playing"},
        )

    def _remove_client(self, client: _Client) -> None:
        with self._clients_lock:
            if self._clients.get(client.id) is client:
                del self._clients[client.id]