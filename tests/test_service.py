import asyncio
import json

import cbor2
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from rasd.config import RelayRuntimeConfig
from rasd.service import RelayService


def _config(**kw) -> RelayRuntimeConfig:
    base = dict(host="127.0.0.1", port=0, rate_limit_msgs_per_minute=0, ping_interval_s=0.0)
    base.update(kw)
    return RelayRuntimeConfig(**base)


async def _recv(ws, timeout: float = 2.0):
    raw = await asyncio.wait_for(ws.recv(), timeout)
    return cbor2.loads(raw) if isinstance(raw, bytes) else json.loads(raw)


async def _nothing(ws, timeout: float = 0.2) -> bool:
    try:
        await asyncio.wait_for(ws.recv(), timeout)
    except asyncio.TimeoutError:
        return True
    return False


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_session_over_websockets() -> None:
    async def scenario() -> None:
        svc = RelayService(_config())
        await svc.start()
        uri = f"ws://127.0.0.1:{svc.port}"
        try:
            async with connect(uri) as a, connect(uri) as b, connect(uri) as c:
                await a.send(json.dumps({"event": "join-room", "roomId": "482913", "role": "host"}))
                await _wait_for(lambda: svc.room_manager.get_room("482913") is not None)

                await b.send(json.dumps({"event": "join-room", "roomId": "482913", "role": "viewer"}))
                joined = await _recv(a)
                assert joined["event"] == "user-joined"

                await a.send(
                    json.dumps(
                        {"event": "signal", "roomId": "482913", "data": {"type": "offer", "payload": "X"}}
                    )
                )
                sig = await _recv(b)
                assert sig["event"] == "signal"
                assert sig["data"] == {"type": "offer", "payload": "X"}
                assert sig["from"] != joined["from"]
                assert await _nothing(a)

                # Binary frames speak CBOR and get CBOR back.
                await b.send(
                    cbor2.dumps({"event": "chat-message", "roomId": "482913", "text": "merhaba", "role": "VIEWER"})
                )
                chat = await _recv(a)
                assert chat["text"] == "merhaba"
                assert chat["role"] == "VIEWER"

                await a.close()
                ended = await _recv(b)
                assert ended == {"event": "session-ended", "roomId": "482913", "reason": "host-left"}
                await _wait_for(lambda: svc.room_manager.get_room("482913") is None)

                await c.send(json.dumps({"event": "join-room", "roomId": "482913", "role": "viewer"}))
                assert await _recv(c) == {"event": "room-not-found", "roomId": "482913"}
        finally:
            await svc.stop()

    asyncio.run(scenario())


def test_malformed_frames_do_not_close_the_connection() -> None:
    async def scenario() -> None:
        svc = RelayService(_config())
        await svc.start()
        uri = f"ws://127.0.0.1:{svc.port}"
        try:
            async with connect(uri) as ws:
                await ws.send("{not json")
                await ws.send(json.dumps({"event": "pointer", "roomId": "x", "x": "a", "y": 1}))
                await ws.send(json.dumps({"event": "join-room", "roomId": "nope", "role": "viewer"}))
                assert await _recv(ws) == {"event": "room-not-found", "roomId": "nope"}
            assert svc.stats_manager.get("frames_bad") == 2
        finally:
            await svc.stop()

    asyncio.run(scenario())


def test_shutdown_notifies_connected_members() -> None:
    async def scenario() -> None:
        svc = RelayService(_config())
        await svc.start()
        uri = f"ws://127.0.0.1:{svc.port}"
        async with connect(uri) as host, connect(uri) as viewer:
            await host.send(json.dumps({"event": "join-room", "roomId": "r", "role": "host"}))
            await _wait_for(lambda: svc.room_manager.get_room("r") is not None)
            await viewer.send(json.dumps({"event": "join-room", "roomId": "r", "role": "viewer"}))
            await _recv(host)

            await svc.stop()
            assert (await _recv(host))["reason"] == "relay-shutdown"
            assert (await _recv(viewer))["reason"] == "relay-shutdown"

    asyncio.run(scenario())


def test_http_health_and_stats() -> None:
    async def fetch(port: int, path: str) -> str:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n".encode())
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), 2.0)
        writer.close()
        return data.decode("utf-8", "replace")

    async def scenario() -> None:
        svc = RelayService(_config())
        await svc.start()
        try:
            health = await fetch(svc.port, "/")
            assert health.startswith("HTTP/1.1 200")
            assert "signaling relay is running" in health

            stats = await fetch(svc.port, "/stats?x=1")
            assert "rooms=0" in stats

            missing = await fetch(svc.port, "/nope")
            assert missing.startswith("HTTP/1.1 404")
        finally:
            await svc.stop()

    asyncio.run(scenario())


def test_lone_surrogate_chat_does_not_drop_the_host() -> None:
    async def scenario() -> None:
        svc = RelayService(_config())
        await svc.start()
        uri = f"ws://127.0.0.1:{svc.port}"
        try:
            async with connect(uri) as host, connect(uri) as viewer:
                await host.send(json.dumps({"event": "join-room", "roomId": "r1", "role": "host"}))
                await _wait_for(lambda: svc.room_manager.get_room("r1") is not None)
                await viewer.send(json.dumps({"event": "join-room", "roomId": "r1", "role": "viewer"}))
                assert (await _recv(host))["event"] == "user-joined"

                await viewer.send(r'{"event":"chat-message","roomId":"r1","text":"\ud800"}')
                await viewer.send(
                    r'{"event":"signal","roomId":"r1","data":{"type":"offer","payload":"\ud800"}}'
                )
                await viewer.send(json.dumps({"event": "chat-message", "roomId": "r1", "text": "still here"}))

                chat = await _recv(host)
                assert chat["text"] == "still here"
                assert svc.room_manager.get_room("r1").host is not None
                assert svc.stats_manager.get("encode_failures") == 1
        finally:
            await svc.stop()

    asyncio.run(scenario())


def test_slow_peer_is_closed_and_cleaned_up() -> None:
    async def scenario() -> None:
        svc = RelayService(_config(max_outbound_queue=1))
        await svc.start()
        uri = f"ws://127.0.0.1:{svc.port}"
        try:
            async with connect(uri) as host, connect(uri) as viewer:
                await host.send(json.dumps({"event": "join-room", "roomId": "r1", "role": "host"}))
                await _wait_for(lambda: svc.room_manager.get_room("r1") is not None)
                await viewer.send(json.dumps({"event": "join-room", "roomId": "r1", "role": "viewer"}))
                assert (await _recv(host))["event"] == "user-joined"

                room = svc.room_manager.get_room("r1")
                (viewer_cid,) = room.viewers

                # Route a burst before the viewer's writer task gets a turn.
                outgoing = []
                for i in range(3):
                    frame = json.dumps({"event": "pointer", "roomId": "r1", "x": 0.1 * i, "y": 0.5})
                    svc.router.route_packet(room.host, frame, outgoing)
                svc._dispatch(outgoing)

                closed = None
                try:
                    while True:
                        await _recv(viewer)
                except ConnectionClosed as e:
                    closed = e
                assert closed.rcvd is not None
                assert closed.rcvd.code == 1008

                left = await _recv(host)
                assert left["event"] == "user-left"
                assert left["from"] == viewer_cid
                assert svc.stats_manager.get("queue_overflows") == 1
                await _wait_for(lambda: svc.registry.lookup(viewer_cid) is None)
                assert svc.room_manager.get_room("r1").viewers == set()
        finally:
            await svc.stop()

    asyncio.run(scenario())
