import json

import cbor2

from rasd.codec import encode
from rasd.config import RelayRuntimeConfig
from rasd.envelope import ChatMessage, JoinRoom, Pointer, Signal
from rasd.service import RelayService


def _decoded(outgoing) -> list[tuple[str, dict]]:
    return [(cid, json.loads(payload)) for cid, payload in outgoing]


def _send(relay, cid: str, obj) -> list[tuple[str, dict]]:
    outgoing = []
    relay.router.route_packet(cid, encode(obj), outgoing)
    return _decoded(outgoing)


def _room(relay, viewers: int = 2):
    h = relay.registry.register()
    vs = [relay.registry.register() for _ in range(viewers)]
    relay.router.route(JoinRoom("r1", "host"), h)
    for v in vs:
        relay.router.route(JoinRoom("r1", "viewer"), v)
    return h, vs


def test_host_join_emits_nothing(relay) -> None:
    h = relay.registry.register()
    assert _send(relay, h, {"event": "join-room", "roomId": "r1", "role": "host"}) == []
    assert relay.room_manager.get_room("r1").host == h


def test_viewer_join_notifies_host(relay) -> None:
    h = relay.registry.register()
    v = relay.registry.register()
    relay.router.route(JoinRoom("r1", "host"), h)

    out = _send(relay, v, {"event": "join-room", "roomId": "r1", "role": "viewer"})
    assert out == [(h, {"event": "user-joined", "from": v, "roomId": "r1", "viewers": 1})]


def test_viewer_join_to_absent_room_replies_to_sender_only(relay) -> None:
    v = relay.registry.register()
    out = _send(relay, v, {"event": "join-room", "roomId": "nope", "role": "viewer"})
    assert out == [(v, {"event": "room-not-found", "roomId": "nope"})]
    assert relay.room_manager.get_room("nope") is None


def test_second_host_gets_room_already_hosted(relay) -> None:
    h1 = relay.registry.register()
    h2 = relay.registry.register()
    relay.router.route(JoinRoom("r1", "host"), h1)

    out = relay.router.route(JoinRoom("r1", "host"), h2)
    assert out == [(h2, {"event": "room-already-hosted", "roomId": "r1"})]


def test_repeat_viewer_join_does_not_renotify(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    assert relay.router.route(JoinRoom("r1", "viewer"), v) == []


def test_host_messages_reach_every_viewer(relay) -> None:
    h, vs = _room(relay, viewers=3)
    out = relay.router.route(Signal("r1", {"type": "offer", "payload": "X"}), h)
    assert sorted(t for t, _ in out) == sorted(vs)
    for _, env in out:
        assert env == {"event": "signal", "from": h, "data": {"type": "offer", "payload": "X"}}


def test_viewer_messages_reach_host_and_other_viewers(relay) -> None:
    h, (v1, v2, v3) = _room(relay, viewers=3)
    out = relay.router.route(Pointer("r1", 0.5, 0.25), v2)
    assert sorted(t for t, _ in out) == sorted([h, v1, v3])
    assert all(env == {"event": "pointer", "from": v2, "x": 0.5, "y": 0.25} for _, env in out)


def test_chat_defaults_role_and_timestamp(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    out = relay.router.route(ChatMessage("r1", "hello"), v)
    assert len(out) == 1
    target, env = out[0]
    assert target == h
    assert env["text"] == "hello"
    assert env["role"] == "viewer"
    assert isinstance(env["ts"], int)

    out = relay.router.route(ChatMessage("r1", "hi", role="HOST", ts=42), h)
    assert out == [(v, {"event": "chat-message", "from": h, "text": "hi", "role": "HOST", "ts": 42})]


def test_messages_from_non_members_are_dropped(relay) -> None:
    h, vs = _room(relay, viewers=1)
    outsider = relay.registry.register()
    assert relay.router.route(Signal("r1", {"type": "offer", "payload": "X"}), outsider) == []
    assert relay.stats_manager.get("frames_dropped") == 1


def test_messages_for_another_room_are_dropped(relay) -> None:
    h, vs = _room(relay, viewers=1)
    other = relay.registry.register()
    relay.router.route(JoinRoom("r2", "host"), other)
    assert relay.router.route(Pointer("r2", 0.1, 0.1), h) == []


def test_messages_after_disconnect_are_dropped(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    relay.lifecycle.on_disconnect(v, [])
    outgoing = []
    relay.router.route_packet(
        v, encode({"event": "chat-message", "roomId": "r1", "text": "late"}), outgoing
    )
    assert outgoing == []


def test_join_racing_disconnect_is_dropped(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    relay.lifecycle.on_disconnect(v, [])

    assert relay.router.route(JoinRoom("r2", "host"), v) == []
    assert relay.router.route(JoinRoom("r1", "viewer"), v) == []
    assert relay.room_manager.get_room("r2") is None
    assert relay.room_manager.get_room("r1").viewers == set()


def test_lone_surrogates_never_reach_peers(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    for frame in (
        r'{"event":"chat-message","roomId":"r1","text":"\ud800"}',
        r'{"event":"chat-message","roomId":"r1","text":"hi","role":"\udfff"}',
        r'{"event":"join-room","roomId":"r\ud800","role":"host"}',
    ):
        outgoing = []
        relay.router.route_packet(v, frame, outgoing)
        assert outgoing == []
    assert relay.stats_manager.get("frames_bad") == 3

    # Signal data is opaque, so the surrogate is caught when encoding for the target.
    outgoing = []
    relay.router.route_packet(
        v, r'{"event":"signal","roomId":"r1","data":{"type":"offer","payload":"\ud800"}}', outgoing
    )
    assert outgoing == []
    assert relay.stats_manager.get("encode_failures") == 1

    assert _send(relay, v, {"event": "chat-message", "roomId": "r1", "text": "ok"})[0][0] == h


def test_malformed_frames_are_dropped_silently(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    for frame in (
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps({"event": "pointer", "roomId": "r1", "x": "left", "y": 0.5}),
        json.dumps({"event": "pointer", "roomId": "r1", "y": 0.5}),
        json.dumps({"event": "signal", "roomId": "r1"}),
        json.dumps({"event": "chat-message", "roomId": "r1", "text": ""}),
        json.dumps({"event": "agent-register", "roomId": "r1"}),
        b"\xff\xfe",
    ):
        outgoing = []
        relay.router.route_packet(v, frame, outgoing)
        assert outgoing == []
    assert relay.stats_manager.get("frames_bad") == 8
    assert relay.room_manager.get_room("r1").viewers == {v}


def test_unknown_fields_are_ignored(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    out = _send(relay, h, {"event": "pointer", "roomId": "r1", "x": 1, "y": 0, "color": "red"})
    assert out == [(v, {"event": "pointer", "from": h, "x": 1.0, "y": 0.0})]


def test_cbor_peers_get_cbor_replies(relay) -> None:
    h = relay.registry.register()
    v = relay.registry.register()
    outgoing = []
    relay.router.route_packet(
        h, cbor2.dumps({"event": "join-room", "roomId": "r1", "role": "host"}), outgoing
    )
    relay.router.route_packet(
        v, json.dumps({"event": "join-room", "roomId": "r1", "role": "viewer"}), outgoing
    )
    assert len(outgoing) == 1
    target, payload = outgoing[0]
    assert target == h
    assert isinstance(payload, bytes)
    assert cbor2.loads(payload)["event"] == "user-joined"


def test_cbor_only_values_are_not_sent_to_json_peers(relay) -> None:
    h, (v,) = _room(relay, viewers=1)
    outgoing = []
    relay.router.route_packet(
        h,
        cbor2.dumps({"event": "signal", "roomId": "r1", "data": {"type": "offer", "payload": b"\x00"}}),
        outgoing,
    )
    assert outgoing == []
    assert relay.stats_manager.get("encode_failures") == 1


def test_rate_limited_frames_are_dropped() -> None:
    svc = RelayService(RelayRuntimeConfig(rate_limit_msgs_per_minute=2))
    h = svc.registry.register()
    v = svc.registry.register()
    svc.router.route(JoinRoom("r1", "host"), h)
    svc.router.route(JoinRoom("r1", "viewer"), v)

    sent = []
    for _ in range(4):
        outgoing = []
        svc.router.route_packet(
            h, json.dumps({"event": "pointer", "roomId": "r1", "x": 0.1, "y": 0.1}), outgoing
        )
        sent.extend(outgoing)
    assert len(sent) == 2
    assert svc.stats_manager.get("rate_limited") == 2


def test_switching_rooms_notifies_previous_host(relay) -> None:
    h1 = relay.registry.register()
    h2 = relay.registry.register()
    v = relay.registry.register()
    relay.router.route(JoinRoom("a", "host"), h1)
    relay.router.route(JoinRoom("b", "host"), h2)
    relay.router.route(JoinRoom("a", "viewer"), v)

    out = relay.router.route(JoinRoom("b", "viewer"), v)
    assert out == [
        (h1, {"event": "user-left", "from": v, "roomId": "a", "viewers": 0}),
        (h2, {"event": "user-joined", "from": v, "roomId": "b", "viewers": 1}),
    ]
