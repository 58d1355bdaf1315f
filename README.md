# sendspin

Synchronized audio streaming over WebSockets. The package is made of five
modules:

- `sendspin.server`: `Server`, an asyncio WebSocket server that streams
  timestamped 24-bit PCM chunks from an `AudioSource` to every connected
  player and answers time-sync requests.
- `sendspin.clock`: `ClockSync`, NTP-style round-trip measurement that maps
  server loop timestamps onto the local clock.
- `sendspin.scheduler`: `Scheduler`, a timestamp-ordered buffer queue that
  releases audio inside a ±50 ms window and drops buffers that are too late.
- `sendspin.source`: the `AudioSource` base class and `TestToneSource`, a
  440 Hz sine generator.
- `sendspin.player`: `Player`, which tracks playback state, volume and mute,
  reports changes to callbacks and gathers statistics.

## Installation

```
pip install .
```

## Serving a test tone

`Server.start()` is a coroutine that serves clients until `stop()` is called.
`stop()` may be called from any thread, also before the server has started.

```python
import asyncio

from sendspin.server import Server, ServerConfig
from sendspin.source import TestToneSource


async def main():
    server = Server(ServerConfig(port=8927, name="Living Room", source=TestToneSource(48000, 2)))
    task = asyncio.create_task(server.start())
    await asyncio.sleep(60)
    print(server.clients())
    server.stop()
    await task


asyncio.run(main())
```

`ServerConfig` fields: `port` (default 8927), `name` (default
`"Sendspin Server"`), `source` (required; `Server` raises `ValueError`
without it), `debug` (extra logging) and `host` (empty means all interfaces).
When the server stops it closes the audio source.

### The protocol as served

Clients connect to `ws://<host>:<port>/sendspin`; any other path gets a 404.
The first message must be a JSON `client/hello` whose payload has a non-empty
`client_id` and `name`. A second connection with a `client_id` that is already
connected is closed without a reply.

The server answers with `server/hello` (`server_id`, `name`, `version`,
`active_roles`, `connection_reason: "playback"`). Of the client's
`supported_roles`, only the `player` and `metadata` families are activated,
the first entry of each family in the client's order. Clients with a player
role (`player` or `player@...`) then receive `stream/start`, `server/state`
with the source's title, artist and album, `group/update`, and every 20 ms a
binary audio chunk: one type byte (`4`), an 8-byte big-endian playback
timestamp in server-clock microseconds (500 ms ahead), and the samples as
24-bit little-endian PCM.

Incoming `client/time` messages are answered with `server/time`;
`client/state` messages with a `player` object update the values shown by
`server.clients()` (`ClientInfo`: `id`, `name`, `state`, `volume`, `muted`,
`codec`); `client/goodbye` is logged.

The module-level helpers are usable on their own: `create_audio_chunk`,
`encode_pcm`, `convert_to_int16`, `activate_roles`, `has_role` and
`negotiate_codec`.

## Audio sources

Subclass `AudioSource` and provide the `sample_rate` and `channels`
properties, `read(count)` returning `count` interleaved integer samples, and
`metadata()` returning `(title, artist, album)`. Sources are context managers;
`close()` sets `closed`.

`TestToneSource(sample_rate=192000, channels=2)` produces a 440 Hz sine at
half of full 24-bit scale on every channel. A trailing partial frame in a
read is filled with zeros, and a negative count raises `ValueError`.

## Clock synchronization

```python
from sendspin.clock import ClockSync, Quality

clock = ClockSync()
clock.process_sync_response(t1, t2, t3, t4)
rtt, quality = clock.get_stats()
local_us = clock.server_to_local_time(server_timestamp)
```

`t1` and `t4` are client send and receive times in Unix microseconds, `t2`
and `t3` the server's receive and send times on its loop clock. Samples with
a round-trip time above 100 ms are discarded. The first accepted sample fixes
where the server loop started; after that a round-trip time below 50 ms gives
`Quality.GOOD`, otherwise `Quality.DEGRADED`. Without a sample for five
seconds, `check_quality()` reports `Quality.LOST`. Before the first sync,
`server_to_local_time` returns the server time unchanged.

`set_global_clock_sync(clock)` chooses the clock used by
`server_micros_now()`, which returns the current time on the server's loop
clock, or Unix microseconds while unsynced.

## Scheduling playback

```python
import threading

from sendspin.scheduler import AudioBuffer, Scheduler

scheduler = Scheduler(clock, buffer_ms=500)
threading.Thread(target=scheduler.run, daemon=True).start()
scheduler.schedule(AudioBuffer(timestamp=server_timestamp, samples=pcm))
buf = scheduler.output.get()
```

`schedule` computes each buffer's `play_at` (local Unix µs) from the clock.
Playback starts once `buffer_ms / 20` chunks (at least one) are queued. Each
`process_queue()` call (every 10 ms under `run()`) moves buffers due within
50 ms to the `output` queue and drops those more than 50 ms late. `stats()`
returns received, played and dropped counts, `buffer_depth()` the queued audio
in milliseconds, `clear()` empties the queue and restarts buffering, and
`stop()` ends `run()`.

## Player state

```python
from sendspin.player import Player, PlayerConfig

with Player(PlayerConfig(server_addr="localhost:8927", player_name="Kitchen", volume=80)) as player:
    player.set_volume(50)
    player.mute(True)
    print(player.status())
    print(player.stats())
```

Zero or empty config values take defaults: volume 100, buffer 500 ms, and
device info `"Sendspin Player"` / `"Sendspin"` / `"1.0.0"`. Volume is
clamped to 0–100. `on_state_change` is called with a `PlayerState` on every
change. Creating a player makes its `clock_sync` the global clock.

## What the package does not do

The player has no network client: there is no public way to connect a
`Player` to a server, so `play()`, `pause()` and `stop()` raise
`NotConnectedError`. The package has no audio decoders and no sound-card
output, and the server streams PCM only: clients asking for Opus or FLAC are
given PCM. There is no file-based audio source, no service discovery and no
command-line program.

## Running the tests

```
pip install ".[test]"
pytest
```