from __future__ import annotations

import os

from .constants import ROOM_ID_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def is_utf8_clean(s: str) -> bool:
    # JSON escapes can smuggle lone surrogates into a str.
    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return False
    return True


def normalize_room_id(value, *, max_chars: int = ROOM_ID_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Room ids end up in log lines and client UIs.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    if not is_utf8_clean(s):
        return None

    return s


def fmt_remote(addr) -> str:
    if isinstance(addr, (tuple, list)) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    if addr:
        return str(addr)
    return "-"
