from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import asdict, replace
from pathlib import Path

from .config import RelayRuntimeConfig
from .logging_config import configure_logging
from .paths import default_config_path, ensure_private_dir
from .service import RelayService
from .util import expand_path


def _load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def _apply_config_file(cfg: RelayRuntimeConfig, path: str) -> RelayRuntimeConfig:
    data = _load_toml(path)

    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        if "level" in log_table:
            mapped["log_level"] = log_table.get("level")
        if "websockets_level" in log_table:
            mapped["log_websockets_level"] = log_table.get("websockets_level")
        if "console" in log_table:
            mapped["log_console"] = log_table.get("console")
        if "file" in log_table:
            mapped["log_file"] = log_table.get("file")
        if "format" in log_table:
            mapped["log_format"] = log_table.get("format")
        if "datefmt" in log_table:
            mapped["log_datefmt"] = log_table.get("datefmt")
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    if "port" in updates:
        updates["port"] = int(updates["port"])
    if "log_file" in updates and updates["log_file"] == "":
        updates["log_file"] = None
    if "log_datefmt" in updates and updates["log_datefmt"] == "":
        updates["log_datefmt"] = None
    return replace(cfg, **updates) if updates else cfg


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    d = RelayRuntimeConfig()
    content = f"""# rasd configuration (TOML)
#
# This file was created on first run. Edit it and restart rasd.

[relay]

# Listen address for the websocket server. The PORT environment variable
# overrides the default port when this file does not set one.
host = {d.host!r}
# port = {d.port}

# Plain HTTP GET on these paths (not a websocket upgrade) returns a liveness
# line and a stats report. Set stats_path = "" to disable stats.
health_path = {d.health_path!r}
stats_path = {d.stats_path!r}

# Limits.
# Frames larger than max_frame_bytes close the connection. Malformed or
# over-limit envelopes are dropped silently.
max_room_id_len = {d.max_room_id_len}
max_text_chars = {d.max_text_chars}
max_frame_bytes = {d.max_frame_bytes}

# Per-connection token bucket (0 disables). Pointer traffic is chatty.
rate_limit_msgs_per_minute = {d.rate_limit_msgs_per_minute}

# Payloads waiting for a slow peer; a peer that falls this far behind is
# disconnected.
max_outbound_queue = {d.max_outbound_queue}

# Websocket keepalive (0 disables). A peer that misses a pong is treated as
# disconnected and its room is cleaned up.
ping_interval_s = {d.ping_interval_s}
ping_timeout_s = {d.ping_timeout_s}

[logging]

# Log level for rasd itself.
level = {d.log_level!r}

# Log level for the websockets library.
websockets_level = {d.log_websockets_level!r}

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = {d.log_format!r}
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rasd", description="Run the remote-assist signaling relay"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument(
        "--no-config",
        action="store_true",
        help="Ignore the config file and run with defaults and flags only",
    )

    p.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=None, help="Listen port (default: $PORT or 3000)")

    p.add_argument(
        "--max-room-id-len", type=int, default=None, help="Max room id length"
    )
    p.add_argument(
        "--max-text-chars", type=int, default=None, help="Max chat message length"
    )
    p.add_argument(
        "--max-frame-bytes", type=int, default=None, help="Max websocket frame size"
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection message rate limit (0 disables)",
    )
    p.add_argument(
        "--max-outbound-queue",
        type=int,
        default=None,
        help="Queued payloads per connection before it is dropped",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Websocket ping interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close connection if pong not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace, environ=None) -> RelayRuntimeConfig:
    environ = os.environ if environ is None else environ

    cfg = RelayRuntimeConfig()

    env_port = environ.get("PORT")
    if env_port:
        try:
            cfg = replace(cfg, port=int(env_port))
        except ValueError:
            pass

    if not args.no_config:
        config_path = expand_path(str(args.config))
        cfg = replace(cfg, config_path=config_path)
        if os.path.exists(config_path):
            cfg = _apply_config_file(cfg, config_path)

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))

    if args.max_room_id_len is not None:
        cfg = replace(cfg, max_room_id_len=int(args.max_room_id_len))
    if args.max_text_chars is not None:
        cfg = replace(cfg, max_text_chars=int(args.max_text_chars))
    if args.max_frame_bytes is not None:
        cfg = replace(cfg, max_frame_bytes=int(args.max_frame_bytes))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )
    if args.max_outbound_queue is not None:
        cfg = replace(cfg, max_outbound_queue=int(args.max_outbound_queue))

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    created = None
    if not args.no_config:
        config_path = expand_path(str(args.config))
        if not os.path.exists(config_path):
            _write_default_config(config_path)
            created = config_path

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if created:
        logging.getLogger("rasd.cli").info("Wrote default config to %s", created)

    svc = RelayService(cfg)
    svc.run_forever()


if __name__ == "__main__":
    main()
