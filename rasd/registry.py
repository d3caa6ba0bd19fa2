from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .service import RelayService


@dataclass
class Connection:
    """One live transport endpoint."""

    connection_id: str
    remote: str | None = None
    room_id: str | None = None
    role: str | None = None
    binary: bool = False
    connected_at: float = field(default_factory=time.time)


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


def new_connection_id() -> str:
    return os.urandom(8).hex()


class ConnectionRegistry:
    """
    Tracks every live connection for the relay.

    This class is responsible for:
    - Assigning connection ids at connect time
    - Per-connection room/role bookkeeping used for routing and cleanup
    - Remembering the framing (JSON text or CBOR binary) each peer speaks
    - Rate limiting with token bucket algorithm

    Every method takes the service state lock, so callers may hold it or not.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rasd.registry")
        self.connections: dict[str, Connection] = {}
        self._rate: dict[str, _RateState] = {}

    def register(self, remote: str | None = None) -> str:
        with self.hub._state_lock:
            cid = new_connection_id()
            while cid in self.connections:
                cid = new_connection_id()

            self.connections[cid] = Connection(connection_id=cid, remote=remote)
            self._rate[cid] = _RateState(
                tokens=float(self.hub.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )

        self.log.debug("Connection registered conn=%s remote=%s", cid, remote)
        return cid

    def lookup(self, connection_id: str) -> Connection | None:
        with self.hub._state_lock:
            return self.connections.get(connection_id)

    def set_room(
        self, connection_id: str, room_id: str | None, role: str | None
    ) -> bool:
        """Record (or clear, with None/None) a connection's room and role.

        Returns False if the connection is already gone.
        """
        with self.hub._state_lock:
            conn = self.connections.get(connection_id)
            if conn is None:
                return False
            conn.room_id = room_id
            conn.role = role if room_id is not None else None
            return True

    def set_binary(self, connection_id: str, binary: bool) -> None:
        with self.hub._state_lock:
            conn = self.connections.get(connection_id)
            if conn is not None:
                conn.binary = bool(binary)

    def unregister(self, connection_id: str) -> Connection | None:
        """Remove a connection and return its prior state.

        Returns None if it was already gone; that is not an error since
        cleanup can race with a second disconnect notification.
        """
        with self.hub._state_lock:
            self._rate.pop(connection_id, None)
            conn = self.connections.pop(connection_id, None)

        if conn is None:
            self.log.debug("Unregister for unknown conn=%s (already gone)", connection_id)
        return conn

    def refill_and_take(self, connection_id: str, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        A limit of 0 disables rate limiting.
        """
        per_min_cfg = int(self.hub.config.rate_limit_msgs_per_minute)
        if per_min_cfg <= 0:
            return True

        with self.hub._state_lock:
            state = self._rate.get(connection_id)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(per_min_cfg)
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[str]:
        """Forget every connection and return their ids."""
        with self.hub._state_lock:
            ids = list(self.connections.keys())
            self.connections.clear()
            self._rate.clear()
        return ids

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics for monitoring."""
        with self.hub._state_lock:
            conns = list(self.connections.values())

        return {
            "total": len(conns),
            "in_room": sum(1 for c in conns if c.room_id is not None),
            "binary": sum(1 for c in conns if c.binary),
        }
