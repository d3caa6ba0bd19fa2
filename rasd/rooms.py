"""Room management for the rasd relay.

This module owns every live room:
- Host and viewer membership tracking
- Atomic host/viewer joins (one host per room, viewers need a host)
- Teardown when the host leaves
- Room statistics
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from .constants import REASON_HOST_LEFT, REASON_SHUTDOWN, ROLE_HOST, ROLE_VIEWER

if TYPE_CHECKING:
    from .service import RelayService


@dataclass
class Room:
    room_id: str
    host: str | None = None
    viewers: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)

    def members(self) -> set[str]:
        m = set(self.viewers)
        if self.host is not None:
            m.add(self.host)
        return m

    def is_empty(self) -> bool:
        return self.host is None and not self.viewers


class JoinStatus(enum.Enum):
    OK = "ok"
    ROOM_ALREADY_HOSTED = "room-already-hosted"
    ROOM_NOT_FOUND = "room-not-found"
    # The connection disconnected before its join was handled.
    CONNECTION_GONE = "connection-gone"


@dataclass(frozen=True)
class RoomTeardown:
    """The host left; the room is gone and these viewers were orphaned."""

    room_id: str
    host: str | None
    viewers: frozenset[str]
    reason: str = REASON_HOST_LEFT


@dataclass(frozen=True)
class ViewerLeft:
    room_id: str
    viewer: str
    host: str | None
    viewers_remaining: int


LeaveEvent = Union[RoomTeardown, ViewerLeft]


@dataclass(frozen=True)
class JoinOutcome:
    status: JoinStatus
    room_id: str
    changed: bool = False
    host: str | None = None
    viewers: int = 0
    # Set when a successful join moved the connection out of another room.
    previous: LeaveEvent | None = None

    @property
    def ok(self) -> bool:
        return self.status is JoinStatus.OK


class RoomManager:
    """Owns the room map; the only component that mutates room membership.

    Compound check-then-install operations run under the service state lock,
    so two concurrent host joins on an empty room cannot both succeed.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rasd.rooms")
        self.rooms: dict[str, Room] = {}

    def join_as_host(self, room_id: str, connection_id: str) -> JoinOutcome:
        with self.hub._state_lock:
            conn = self.hub.registry.lookup(connection_id)
            if conn is None:
                self.log.debug("Join from departed conn=%s room=%r", connection_id, room_id)
                return JoinOutcome(JoinStatus.CONNECTION_GONE, room_id)
            room = self.rooms.get(room_id)

            if room is not None and room.host == connection_id:
                return JoinOutcome(
                    JoinStatus.OK,
                    room_id,
                    changed=False,
                    host=connection_id,
                    viewers=len(room.viewers),
                )

            if room is not None and room.host is not None:
                self.log.info(
                    "Host join refused room=%r conn=%s host=%s",
                    room_id,
                    connection_id,
                    room.host,
                )
                return JoinOutcome(
                    JoinStatus.ROOM_ALREADY_HOSTED, room_id, host=room.host
                )

            previous = self.leave(connection_id) if conn.room_id is not None else None

            room = self.rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self.rooms[room_id] = room
                self.log.info("Room created room=%r host=%s", room_id, connection_id)

            room.host = connection_id
            room.viewers.discard(connection_id)
            self.hub.registry.set_room(connection_id, room_id, ROLE_HOST)

            return JoinOutcome(
                JoinStatus.OK,
                room_id,
                changed=True,
                host=connection_id,
                viewers=len(room.viewers),
                previous=previous,
            )

    def join_as_viewer(self, room_id: str, connection_id: str) -> JoinOutcome:
        with self.hub._state_lock:
            conn = self.hub.registry.lookup(connection_id)
            if conn is None:
                self.log.debug("Join from departed conn=%s room=%r", connection_id, room_id)
                return JoinOutcome(JoinStatus.CONNECTION_GONE, room_id)
            room = self.rooms.get(room_id)

            if room is None or room.host is None:
                self.log.info(
                    "Viewer join for absent room room=%r conn=%s", room_id, connection_id
                )
                return JoinOutcome(JoinStatus.ROOM_NOT_FOUND, room_id)

            if room.host == connection_id:
                # A host cannot watch its own room.
                return JoinOutcome(
                    JoinStatus.ROOM_ALREADY_HOSTED, room_id, host=room.host
                )

            if connection_id in room.viewers:
                return JoinOutcome(
                    JoinStatus.OK,
                    room_id,
                    changed=False,
                    host=room.host,
                    viewers=len(room.viewers),
                )

            previous = self.leave(connection_id) if conn.room_id is not None else None

            room.viewers.add(connection_id)
            self.hub.registry.set_room(connection_id, room_id, ROLE_VIEWER)

            self.log.info(
                "Viewer joined room=%r conn=%s viewers=%s",
                room_id,
                connection_id,
                len(room.viewers),
            )
            return JoinOutcome(
                JoinStatus.OK,
                room_id,
                changed=True,
                host=room.host,
                viewers=len(room.viewers),
                previous=previous,
            )

    def leave(self, connection_id: str) -> LeaveEvent | None:
        """Remove a connection from whichever room it occupies.

        The room is found through the connection registry. Returns None when
        the connection is unknown or in no room.
        """
        with self.hub._state_lock:
            conn = self.hub.registry.lookup(connection_id)
            if conn is None or conn.room_id is None:
                return None

            room_id = conn.room_id
            self.hub.registry.set_room(connection_id, None, None)

            room = self.rooms.get(room_id)
            if room is None:
                self.log.warning(
                    "Connection referenced missing room room=%r conn=%s",
                    room_id,
                    connection_id,
                )
                return None

            if room.host == connection_id:
                self.rooms.pop(room_id, None)
                viewers = frozenset(room.viewers)
                for v in viewers:
                    self.hub.registry.set_room(v, None, None)
                self.log.info(
                    "Room torn down room=%r host=%s viewers=%s",
                    room_id,
                    connection_id,
                    len(viewers),
                )
                return RoomTeardown(room_id=room_id, host=connection_id, viewers=viewers)

            if connection_id in room.viewers:
                room.viewers.discard(connection_id)
                if room.is_empty():
                    self.rooms.pop(room_id, None)
                return ViewerLeft(
                    room_id=room_id,
                    viewer=connection_id,
                    host=room.host,
                    viewers_remaining=len(room.viewers),
                )

            return None

    def close_all(self) -> list[RoomTeardown]:
        """Tear down every room (service shutdown)."""
        with self.hub._state_lock:
            events: list[RoomTeardown] = []
            for room_id, room in list(self.rooms.items()):
                for member in room.members():
                    self.hub.registry.set_room(member, None, None)
                events.append(
                    RoomTeardown(
                        room_id=room_id,
                        host=room.host,
                        viewers=frozenset(room.viewers),
                        reason=REASON_SHUTDOWN,
                    )
                )
            self.rooms.clear()
        return events

    def members_of(self, room_id: str, excluding: str | None = None) -> set[str]:
        with self.hub._state_lock:
            room = self.rooms.get(room_id)
            if room is None:
                return set()
            members = room.members()
        members.discard(excluding)
        return members

    def get_room(self, room_id: str) -> Room | None:
        with self.hub._state_lock:
            return self.rooms.get(room_id)

    def room_of(self, connection_id: str) -> str | None:
        conn = self.hub.registry.lookup(connection_id)
        return conn.room_id if conn is not None else None

    def clear_all(self) -> None:
        with self.hub._state_lock:
            self.rooms.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get room statistics for relay stats."""
        with self.hub._state_lock:
            sizes = [(room_id, len(room.members())) for room_id, room in self.rooms.items()]
        top_rooms = sorted(sizes, key=lambda x: (-x[1], x[0]))[:5]
        return {
            "rooms_total": len(sizes),
            "memberships": sum(n for _, n in sizes),
            "top_rooms": top_rooms,
        }
