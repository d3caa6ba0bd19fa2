from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .constants import (
    EV_SESSION_ENDED,
    EV_USER_LEFT,
    K_REASON,
    K_VIEWERS,
    ROLE_HOST,
    ROLE_VIEWER,
)
from .envelope import make_envelope
from .rooms import LeaveEvent, RoomTeardown, ViewerLeft

if TYPE_CHECKING:
    from .messages import Outgoing
    from .service import RelayService


class SessionLifecycle:
    """
    Bridges transport connect/disconnect events to the room manager.

    Leave events become notifications: a torn-down room sends
    `session-ended` to every viewer it orphaned, and a departing viewer
    sends `user-left` to the host.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rasd.lifecycle")

    def on_connect(self, remote: str | None = None) -> str:
        cid = self.hub.registry.register(remote)
        self.hub.stats_manager.inc("connections_opened")
        self.log.info("Connection opened conn=%s remote=%s", cid, remote or "-")
        return cid

    def on_disconnect(self, connection_id: str, outgoing: Outgoing) -> bool:
        """Leave the connection's room, forget it, and queue notifications.

        Returns False (and queues nothing) if the connection was already gone.
        """
        with self.hub._state_lock:
            event = self.hub.room_manager.leave(connection_id)
            conn = self.hub.registry.unregister(connection_id)
            if conn is None:
                return False
            self.hub.stats_manager.inc("connections_closed")
            self.hub.message_helper.queue_all(outgoing, self.notifications_for(event))

        self.log.info(
            "Connection closed conn=%s remote=%s room=%r role=%s",
            connection_id,
            conn.remote or "-",
            event.room_id if event is not None else None,
            self._role_of(event, connection_id),
        )
        return True

    def on_shutdown(self, outgoing: Outgoing) -> int:
        """Tear down every room, telling all occupants the session ended."""
        with self.hub._state_lock:
            events = self.hub.room_manager.close_all()
            for ev in events:
                pairs = self.notifications_for(ev)
                if ev.host is not None:
                    pairs.append(
                        (
                            ev.host,
                            make_envelope(
                                EV_SESSION_ENDED, room=ev.room_id, **{K_REASON: ev.reason}
                            ),
                        )
                    )
                self.hub.message_helper.queue_all(outgoing, pairs)
        return len(events)

    def notifications_for(self, event: LeaveEvent | None) -> list[tuple[str, dict]]:
        if event is None:
            return []

        if isinstance(event, RoomTeardown):
            self.hub.stats_manager.inc("sessions_ended")
            env = make_envelope(EV_SESSION_ENDED, room=event.room_id, **{K_REASON: event.reason})
            return [(viewer, env) for viewer in sorted(event.viewers)]

        if isinstance(event, ViewerLeft):
            if event.host is None:
                return []
            env = make_envelope(
                EV_USER_LEFT,
                src=event.viewer,
                room=event.room_id,
                **{K_VIEWERS: event.viewers_remaining},
            )
            return [(event.host, env)]

        return []

    @staticmethod
    def _role_of(event: LeaveEvent | None, connection_id: str) -> str | None:
        if isinstance(event, RoomTeardown) and event.host == connection_id:
            return ROLE_HOST
        if isinstance(event, ViewerLeft):
            return ROLE_VIEWER
        return None
