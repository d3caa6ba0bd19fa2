from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    host: str = "0.0.0.0"
    port: int = 3000
    max_room_id_len: int = 64
    max_text_chars: int = 4000
    max_frame_bytes: int = 64 * 1024
    rate_limit_msgs_per_minute: int = 1200
    max_outbound_queue: int = 256
    ping_interval_s: float = 20.0
    ping_timeout_s: float = 20.0
    health_path: str = "/"
    stats_path: str = "/stats"
    log_level: str = "INFO"
    log_websockets_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None
