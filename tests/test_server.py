import asyncio
import contextlib
import json
import socket

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from sendspin.server import (
    AUDIO_CHUNK_MESSAGE_TYPE,
    Server,
    ServerConfig,
    activate_roles,
    convert_to_int16,
    create_audio_chunk,
    encode_pcm,
    has_role,
    negotiate_codec,
)
from sendspin.source import TestToneSource

PCM_48K_24 = {"codec": "pcm", "channels": 2, "sample_rate": 48000, "bit_depth": 24}


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _hello(client_id, name, roles=("player@v1",), formats=(PCM_48K_24,)):
    payload = {"client_id": client_id, "name": name, "version": 1, "supported_roles": list(roles)}
    if formats is not None:
        payload["player_v1_support"] = {
            "supported_formats": list(formats),
            "buffer_capacity": 1048576,
            "supported_commands": ["volume", "mute"],
        }
    return json.dumps({"type": "client/hello", "payload": payload})


async def _connect(port, path="/sendspin"):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5
    while True:
        try:
            return await connect(f"ws://127.0.0.1:{port}{path}")
        except OSError:
            if loop.time() > deadline:
                raise
            await asyncio.sleep(0.05)


async def _recv_text(ws):
    while True:
        msg = await asyncio.wait_for(ws.recv(), 5)
        if isinstance(msg, str):
            return json.loads(msg)


async def _wait_for(predicate):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5
    while not predicate():
        if loop.time() > deadline:
            break
        await asyncio.sleep(0.02)
    return predicate()


@contextlib.asynccontextmanager
async def running_server(**kwargs):
    port = _free_port()
    server = Server(
        ServerConfig(
            port=port,
            host="127.0.0.1",
            name="Test Server",
            source=TestToneSource(48000, 2),
            **kwargs,
        )
    )
    task = asyncio.create_task(server.start())
    try:
        yield server, port
    finally:
        server.stop()
        await asyncio.wait_for(task, 10)


def test_create_audio_chunk_layout():
    chunk = create_audio_chunk(0x0102030405060708, b"\xaa\xbb")
    assert chunk == bytes([4, 1, 2, 3, 4, 5, 6, 7, 8, 0xAA, 0xBB])


def test_create_audio_chunk_empty_data():
    assert create_audio_chunk(500000, b"") == bytes([4]) + (500000).to_bytes(8, "big")


def test_encode_pcm_little_endian_24bit():
    assert encode_pcm([0x123456, -1, 0]) == bytes([0x56, 0x34, 0x12, 0xFF, 0xFF, 0xFF, 0, 0, 0])


def test_encode_pcm_length():
    assert len(encode_pcm(list(range(100)))) == 300


def test_convert_to_int16():
    assert convert_to_int16([0x123456, -256, 0x7FFFFF, -0x800000, 255]) == [
        0x1234,
        -1,
        32767,
        -32768,
        0,
    ]


@pytest.mark.parametrize(
    "roles, expected",
    [
        (["player@v1"], ["player@v1"]),
        (["player@v2", "player@v1", "metadata@v1"], ["player@v2", "metadata@v1"]),
        (["visualizer@v1", "artwork@v1", "controller@v1"], []),
        (["metadata", "player"], ["metadata", "player"]),
        (["@player", "player@v1"], ["player@v1"]),
        ([], []),
    ],
)
def test_activate_roles(roles, expected):
    assert activate_roles(roles) == expected


def test_has_role():
    assert has_role(["player@v1"], "player") is True
    assert has_role(["player"], "player") is True
    assert has_role(["players"], "player") is False
    assert has_role(["metadata@v1"], "player") is False


@pytest.mark.parametrize(
    "capabilities, rate, expected",
    [
        (None, 48000, "pcm"),
        ({"supported_formats": [PCM_48K_24]}, 48000, "pcm"),
        ({"supported_formats": [{"codec": "opus", "sample_rate": 48000}]}, 48000, "opus"),
        ({"supported_formats": [{"codec": "opus", "sample_rate": 48000}]}, 44100, "pcm"),
        ({"supported_formats": [{"codec": "flac"}]}, 192000, "flac"),
        (
            {"supported_formats": [{"codec": "pcm", "sample_rate": 48000, "bit_depth": 16}, {"codec": "opus"}]},
            48000,
            "opus",
        ),
        ({"supported_formats": []}, 48000, "pcm"),
    ],
)
def test_negotiate_codec(capabilities, rate, expected):
    assert negotiate_codec(capabilities, rate) == expected


def test_new_server_missing_source():
    with pytest.raises(ValueError):
        Server(ServerConfig(port=8928, name="Test Server"))


def test_new_server_defaults():
    server = Server(ServerConfig(source=TestToneSource(48000, 2)))
    assert server.config.port == 8927
    assert server.config.name == "Sendspin Server"


def test_new_server_keeps_explicit_values():
    server = Server(ServerConfig(port=8928, name="Test Server", source=TestToneSource(48000, 2)))
    assert (server.config.port, server.config.name) == (8928, "Test Server")


@pytest.mark.asyncio
async def test_stop_before_start_returns():
    server = Server(ServerConfig(port=_free_port(), host="127.0.0.1", source=TestToneSource(48000, 2)))
    server.stop()
    assert await asyncio.wait_for(server.start(), 5) is None


@pytest.mark.asyncio
async def test_server_start_stop():
    port = _free_port()
    server = Server(ServerConfig(port=port, host="127.0.0.1", source=TestToneSource(48000, 2)))
    task = asyncio.create_task(server.start())
    ws = await _connect(port)
    await ws.close()
    server.stop()
    assert await asyncio.wait_for(task, 10) is None


@pytest.mark.asyncio
async def test_client_connection_flow():
    async with running_server(debug=True) as (server, port):
        ws = await _connect(port)
        await ws.send(_hello("test-client-1", "Test Client"))

        hello = json.loads(await asyncio.wait_for(ws.recv(), 5))
        assert hello["type"] == "server/hello"
        assert hello["payload"]["name"] == "Test Server"
        assert hello["payload"]["version"] == 1
        assert hello["payload"]["active_roles"] == ["player@v1"]
        assert hello["payload"]["connection_reason"] == "playback"

        start = json.loads(await asyncio.wait_for(ws.recv(), 5))
        assert start["type"] == "stream/start"
        assert start["payload"]["player"] == {
            "codec": "pcm",
            "sample_rate": 48000,
            "channels": 2,
            "bit_depth": 24,
        }

        state = json.loads(await asyncio.wait_for(ws.recv(), 5))
        assert state["type"] == "server/state"
        metadata = state["payload"]["metadata"]
        assert (metadata["title"], metadata["artist"], metadata["album"]) == (
            "Test Tone",
            "Sendspin",
            "Test Signal",
        )

        group = json.loads(await asyncio.wait_for(ws.recv(), 5))
        assert group["type"] == "group/update"
        assert group["payload"]["group_id"] == hello["payload"]["server_id"]
        assert group["payload"]["playback_state"] == "playing"

        chunk = await asyncio.wait_for(ws.recv(), 5)
        assert isinstance(chunk, bytes)
        assert chunk[0] == AUDIO_CHUNK_MESSAGE_TYPE
        assert len(chunk) == 9 + 960 * 2 * 3

        clients = server.clients()
        assert [c.id for c in clients] == ["test-client-1"]
        assert clients[0].codec == "pcm"

        await ws.close()
        assert await _wait_for(lambda: server.clients() == [])


@pytest.mark.asyncio
async def test_multiple_clients():
    async with running_server() as (server, port):
        sockets = []
        for i in range(3):
            ws = await _connect(port)
            await ws.send(_hello(f"test-client-{i}", f"Test Client {i}"))
            msg = json.loads(await asyncio.wait_for(ws.recv(), 5))
            assert msg["type"] == "server/hello"
            sockets.append(ws)

        assert await _wait_for(lambda: len(server.clients()) == 3)
        assert sorted(c.id for c in server.clients()) == [f"test-client-{i}" for i in range(3)]

        for ws in sockets:
            await ws.close()
        assert await _wait_for(lambda: server.clients() == [])


@pytest.mark.asyncio
async def test_duplicate_client_id_rejected():
    async with running_server() as (server, port):
        first = await _connect(port)
        await first.send(_hello("duplicate-id", "First Client", formats=None))
        msg = json.loads(await asyncio.wait_for(first.recv(), 5))
        assert msg["type"] == "server/hello"

        second = await _connect(port)
        await second.send(_hello("duplicate-id", "First Client", formats=None))
        with pytest.raises(ConnectionClosed):
            while True:
                await asyncio.wait_for(second.recv(), 5)

        assert [c.name for c in server.clients()] == ["First Client"]
        await first.close()


@pytest.mark.asyncio
async def test_hello_missing_name_closes_connection():
    async with running_server() as (server, port):
        ws = await _connect(port)
        await ws.send(_hello("some-id", ""))
        with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(ws.recv(), 5)
        assert server.clients() == []


@pytest.mark.asyncio
async def test_first_message_must_be_hello():
    async with running_server() as (server, port):
        ws = await _connect(port)
        await ws.send(json.dumps({"type": "client/time", "payload": {"client_transmitted": 1}}))
        with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(ws.recv(), 5)
        assert server.clients() == []


@pytest.mark.asyncio
async def test_wrong_path_is_refused():
    async with running_server() as (server, port):
        good = await _connect(port)
        with pytest.raises(InvalidHandshake):
            await connect(f"ws://127.0.0.1:{port}/other")
        assert server.clients() == []

        await good.send(_hello("path-client", "Path Client"))
        hello = await _recv_text(good)
        assert hello["type"] == "server/hello"
        assert await _wait_for(lambda: len(server.clients()) == 1)
        assert [c.id for c in server.clients()] == ["path-client"]
        await good.close()


@pytest.mark.asyncio
async def test_time_sync_response():
    async with running_server() as (_server, port):
        ws = await _connect(port)
        await ws.send(_hello("time-client", "Time Client"))
        await ws.send(json.dumps({"type": "client/time", "payload": {"client_transmitted": 12345}}))
        while True:
            msg = await _recv_text(ws)
            if msg["type"] == "server/time":
                break
        payload = msg["payload"]
        assert payload["client_transmitted"] == 12345
        assert payload["server_transmitted"] >= payload["server_received"] >= 0
        await ws.close()


@pytest.mark.asyncio
async def test_client_state_updates_client_info():
    async with running_server() as (server, port):
        ws = await _connect(port)
        await ws.send(_hello("state-client", "State Client"))
        await ws.send(
            json.dumps(
                {
                    "type": "client/state",
                    "payload": {"player": {"state": "error", "volume": 30, "muted": True}},
                }
            )
        )
        expected = [("error", 30, True)]
        await _wait_for(lambda: [(c.state, c.volume, c.muted) for c in server.clients()] == expected)
        clients = server.clients()
        assert [(c.state, c.volume, c.muted) for c in clients] == expected
        assert clients[0].id == "state-client"
        await ws.close()


@pytest.mark.asyncio
async def test_metadata_only_client_gets_no_stream_start():
    async with running_server() as (server, port):
        ws = await _connect(port)
        await ws.send(_hello("meta-client", "Meta Client", roles=("metadata@v1", "artwork@v1"), formats=None))
        hello = await _recv_text(ws)
        assert hello["payload"]["active_roles"] == ["metadata@v1"]
        assert await _wait_for(lambda: len(server.clients()) == 1)
        assert server.clients()[0].codec == ""
        await ws.close()


@pytest.mark.asyncio
async def test_opus_client_falls_back_to_pcm():
    async with running_server() as (_server, port):
        ws = await _connect(port)
        opus = {"codec": "opus", "channels": 2, "sample_rate": 48000, "bit_depth": 16}
        await ws.send(_hello("opus-client", "Opus Client", formats=(opus,)))
        assert (await _recv_text(ws))["type"] == "server/hello"
        start = await _recv_text(ws)
        assert start["type"] == "stream/start"
        assert start["payload"]["player"]["codec"] == "pcm"
        await ws.close()