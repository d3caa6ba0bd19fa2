from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import decode
from .constants import (
    EV_CHAT_MESSAGE,
    EV_POINTER,
    EV_ROOM_ALREADY_HOSTED,
    EV_ROOM_NOT_FOUND,
    EV_SIGNAL,
    EV_USER_JOINED,
    K_DATA,
    K_ROLE,
    K_TEXT,
    K_TS,
    K_VIEWERS,
    K_X,
    K_Y,
    ROLE_HOST,
)
from .envelope import (
    ChatMessage,
    Envelope,
    JoinRoom,
    Pointer,
    Signal,
    make_envelope,
    now_ms,
    parse_envelope,
)
from .rooms import JoinStatus

if TYPE_CHECKING:
    from .messages import Outgoing
    from .service import RelayService


class MessageRouter:
    """
    Handles inbound frame routing for the relay.

    This class is responsible for:
    - Decoding and validating incoming frames
    - Rate limiting
    - Dispatching join-room to the room manager
    - Fanning signal/pointer/chat-message out to the other room members

    It keeps no state of its own. Malformed frames and messages for a room
    the sender is not in are dropped without a reply.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rasd.router")

    def route_packet(self, connection_id: str, data: bytes | str, outgoing: Outgoing) -> None:
        """
        Main entry point for one inbound websocket frame.

        Routed payloads are appended to `outgoing`; nothing is sent here.
        """
        conn = self.hub.registry.lookup(connection_id)
        if conn is None:
            return

        self.hub.stats_manager.inc("frames_in")
        self.hub.stats_manager.inc("bytes_in", len(data))

        if not self.hub.registry.refill_and_take(connection_id, 1.0):
            self.hub.stats_manager.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited conn=%s", connection_id)
            return

        binary = isinstance(data, (bytes, bytearray, memoryview))
        try:
            env = parse_envelope(
                decode(data),
                max_room_id_len=self.hub.config.max_room_id_len,
                max_text_chars=self.hub.config.max_text_chars,
            )
        except Exception as e:
            self.hub.stats_manager.inc("frames_bad")
            self.log.debug(
                "Bad frame conn=%s bytes=%s binary=%s err=%s",
                connection_id,
                len(data),
                binary,
                e,
            )
            return

        self.hub.registry.set_binary(connection_id, binary)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s kind=%s room=%r bytes=%s",
                connection_id,
                type(env).__name__,
                env.room_id,
                len(data),
            )

        self.hub.message_helper.queue_all(outgoing, self.route(env, connection_id))

    def route(self, env: Envelope, sender: str) -> list[tuple[str, dict]]:
        """Compute (target connection id, outbound envelope) pairs."""
        with self.hub._state_lock:
            if isinstance(env, JoinRoom):
                return self._handle_join(env, sender)
            return self._handle_room_message(env, sender)

    def _handle_join(self, env: JoinRoom, sender: str) -> list[tuple[str, dict]]:
        rooms = self.hub.room_manager
        if env.role == ROLE_HOST:
            outcome = rooms.join_as_host(env.room_id, sender)
        else:
            outcome = rooms.join_as_viewer(env.room_id, sender)

        if outcome.status is JoinStatus.CONNECTION_GONE:
            self.hub.stats_manager.inc("frames_dropped")
            return []

        out = self.hub.lifecycle.notifications_for(outcome.previous)

        if outcome.status is JoinStatus.ROOM_NOT_FOUND:
            self.hub.stats_manager.inc("join_failures")
            out.append((sender, make_envelope(EV_ROOM_NOT_FOUND, room=env.room_id)))
            return out

        if outcome.status is JoinStatus.ROOM_ALREADY_HOSTED:
            self.hub.stats_manager.inc("join_failures")
            out.append((sender, make_envelope(EV_ROOM_ALREADY_HOSTED, room=env.room_id)))
            return out

        if not outcome.changed:
            return out

        if env.role == ROLE_HOST:
            self.hub.stats_manager.inc("host_joins")
            return out

        self.hub.stats_manager.inc("viewer_joins")
        if outcome.host is not None:
            out.append(
                (
                    outcome.host,
                    make_envelope(
                        EV_USER_JOINED,
                        src=sender,
                        room=env.room_id,
                        **{K_VIEWERS: outcome.viewers},
                    ),
                )
            )
        return out

    def _handle_room_message(self, env: Envelope, sender: str) -> list[tuple[str, dict]]:
        conn = self.hub.registry.lookup(sender)
        if conn is None or conn.room_id != env.room_id:
            # Sender is not (or no longer) in this room.
            self.hub.stats_manager.inc("frames_dropped")
            self.log.debug(
                "Dropping %s for room=%r from conn=%s (member of %r)",
                type(env).__name__,
                env.room_id,
                sender,
                conn.room_id if conn is not None else None,
            )
            return []

        if isinstance(env, Signal):
            out_env = make_envelope(EV_SIGNAL, src=sender, **{K_DATA: env.data})
            counter = "signals_relayed"
        elif isinstance(env, Pointer):
            out_env = make_envelope(EV_POINTER, src=sender, **{K_X: env.x, K_Y: env.y})
            counter = "pointers_relayed"
        elif isinstance(env, ChatMessage):
            out_env = make_envelope(
                EV_CHAT_MESSAGE,
                src=sender,
                **{
                    K_TEXT: env.text,
                    K_ROLE: env.role or conn.role,
                    K_TS: env.ts if env.ts is not None else now_ms(),
                },
            )
            counter = "chats_relayed"
        else:
            return []

        targets = self.hub.room_manager.members_of(env.room_id, excluding=sender)
        if targets:
            self.hub.stats_manager.inc(counter)
        return [(target, out_env) for target in sorted(targets)]
