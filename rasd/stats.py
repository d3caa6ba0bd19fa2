"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import RelayService


class StatsManager:
    """
    Manages relay statistics collection and reporting.

    Tracks counters for:
    - Bytes and frames in/out
    - Malformed, dropped and rate-limited frames
    - Joins and join failures
    - Relayed signal/pointer/chat messages
    - Connections and session teardowns
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "frames_in": 0,
            "frames_out": 0,
            "frames_bad": 0,
            "frames_dropped": 0,
            "rate_limited": 0,
            "encode_failures": 0,
            "queue_overflows": 0,
            "send_failures": 0,
            "connections_opened": 0,
            "connections_closed": 0,
            "host_joins": 0,
            "viewer_joins": 0,
            "join_failures": 0,
            "signals_relayed": 0,
            "pointers_relayed": 0,
            "chats_relayed": 0,
            "sessions_ended": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        now_mono = time.monotonic()
        started_mono = self.started_monotonic
        uptime_s = (now_mono - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            conn_stats = self.hub.registry.get_stats()
            room_stats = self.hub.room_manager.get_stats()
            c = dict(self._counters)

        cfg = self.hub.config

        lines: list[str] = []
        lines.append(f"rasd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={conn_stats['total']} "
            f"in_room={conn_stats['in_room']} "
            f"binary={conn_stats['binary']}"
        )
        lines.append(
            f"rooms={room_stats['rooms_total']} memberships={room_stats['memberships']}"
        )

        top_rooms = room_stats["top_rooms"]
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            f"limits: rate_limit_msgs_per_minute={cfg.rate_limit_msgs_per_minute} "
            f"max_room_id_len={cfg.max_room_id_len} "
            f"max_text_chars={cfg.max_text_chars} "
            f"max_frame_bytes={cfg.max_frame_bytes} "
            f"max_outbound_queue={cfg.max_outbound_queue}"
        )
        lines.append(
            "io: frames_in={} frames_out={} frames_bad={} frames_dropped={} bytes_in={} bytes_out={}".format(
                c.get("frames_in", 0),
                c.get("frames_out", 0),
                c.get("frames_bad", 0),
                c.get("frames_dropped", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "events: host_joins={} viewer_joins={} join_failures={} sessions_ended={} rate_limited={}".format(
                c.get("host_joins", 0),
                c.get("viewer_joins", 0),
                c.get("join_failures", 0),
                c.get("sessions_ended", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "relayed: signals={} pointers={} chats={}".format(
                c.get("signals_relayed", 0),
                c.get("pointers_relayed", 0),
                c.get("chats_relayed", 0),
            )
        )
        lines.append(
            "connections: opened={} closed={} queue_overflows={} encode_failures={} send_failures={}".format(
                c.get("connections_opened", 0),
                c.get("connections_closed", 0),
                c.get("queue_overflows", 0),
                c.get("encode_failures", 0),
                c.get("send_failures", 0),
            )
        )

        return "\n".join(lines)
