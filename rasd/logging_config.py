"""Logging setup for the relay process.

The CLI calls `configure_logging` once the TOML file and flags are merged.
Relay modules log under `rasd.*`; the websockets library logs handshakes and
keepalive failures under `websockets`, which gets its own level.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import RelayRuntimeConfig


def _parse_level(value: Any, default: int) -> int:
    """Accept a level name from the config file or an integer level."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default

    mapping: dict[str, int] = {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARN": logging.WARNING,
        "WARNING": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
        "NOTSET": logging.NOTSET,
    }
    if text in mapping:
        return mapping[text]

    try:
        return int(text)
    except ValueError:
        return default


def _clean_optional_path(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    if not s.strip():
        return None
    return s


def configure_logging(
    cfg: RelayRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install console and/or file handlers on the root logger.

    `override_level` and `override_file` come from `--log-level` and
    `--log-file`. Existing root handlers are removed first.
    """

    level = _parse_level(override_level or cfg.log_level, logging.INFO)
    ws_level = _parse_level(cfg.log_websockets_level, logging.WARNING)

    handlers: list[logging.Handler] = []

    if bool(cfg.log_console):
        handlers.append(logging.StreamHandler())

    log_file = _clean_optional_path(override_file) if override_file is not None else None
    if log_file is None:
        log_file = _clean_optional_path(cfg.log_file)

    if log_file:
        p = Path(os.path.expanduser(log_file))
        if p.parent:
            p.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(p, encoding="utf-8"))

    fmt = str(cfg.log_format).strip() or "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = _clean_optional_path(cfg.log_datefmt)

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)
    for h in handlers:
        h.setFormatter(formatter)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    for h in handlers:
        root.addHandler(h)

    root.setLevel(level)

    # Library loggers
    logging.getLogger("websockets").setLevel(ws_level)

    logging.captureWarnings(True)
