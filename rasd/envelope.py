from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Union

from .constants import (
    B_CHAT_FROM,
    B_CHAT_TEXT,
    B_CHAT_TS,
    CHAT_TEXT_MAX_CHARS,
    EV_CHAT_MESSAGE,
    EV_JOIN_ROOM,
    EV_POINTER,
    EV_SIGNAL,
    K_DATA,
    K_EVENT,
    K_FROM,
    K_MESSAGE,
    K_ROLE,
    K_ROOM,
    K_TEXT,
    K_TS,
    K_X,
    K_Y,
    ROLES,
    ROOM_ID_MAX_CHARS,
    SIGNAL_TYPES,
)
from .util import is_utf8_clean, normalize_room_id


@dataclass(frozen=True)
class JoinRoom:
    room_id: str
    role: str


@dataclass(frozen=True)
class Signal:
    room_id: str
    data: dict


@dataclass(frozen=True)
class Pointer:
    room_id: str
    x: float
    y: float


@dataclass(frozen=True)
class ChatMessage:
    room_id: str
    text: str
    role: str | None = None
    ts: int | None = None


Envelope = Union[JoinRoom, Signal, Pointer, ChatMessage]


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(
    event: str,
    *,
    src: str | None = None,
    room: str | None = None,
    **fields: Any,
) -> dict:
    env: dict[str, Any] = {K_EVENT: event}
    if src is not None:
        env[K_FROM] = src
    if room is not None:
        env[K_ROOM] = room
    for k, v in fields.items():
        if v is not None:
            env[k] = v
    return env


def _require_room(env: dict, max_room_id_len: int) -> str:
    if K_ROOM not in env:
        raise ValueError("missing roomId")
    room = env[K_ROOM]
    if not isinstance(room, str):
        raise TypeError("roomId must be a string")
    r = normalize_room_id(room, max_chars=max_room_id_len)
    if r is None:
        raise ValueError("invalid roomId")
    return r


def _coordinate(env: dict, key: str) -> float:
    if key not in env:
        raise ValueError(f"missing pointer coordinate {key}")
    v = env[key]
    # bool is an int subclass but never a coordinate
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise TypeError(f"pointer coordinate {key} must be a number")
    f = float(v)
    if not math.isfinite(f):
        raise ValueError(f"pointer coordinate {key} must be finite")
    if f < 0.0 or f > 1.0:
        raise ValueError(f"pointer coordinate {key} out of range")
    return f


def _optional_ts(value) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("ts must be a number")
    if not math.isfinite(value) or value < 0:
        raise ValueError("ts must be a non-negative finite number")
    return int(value)


def _parse_join(env: dict, max_room_id_len: int) -> JoinRoom:
    room = _require_room(env, max_room_id_len)
    role = env.get(K_ROLE)
    if not isinstance(role, str):
        raise TypeError("role must be a string")
    role = role.strip().lower()
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    return JoinRoom(room_id=room, role=role)


def _parse_signal(env: dict, max_room_id_len: int) -> Signal:
    room = _require_room(env, max_room_id_len)
    data = env.get(K_DATA)
    if not isinstance(data, dict):
        raise TypeError("signal data must be a map")
    t = data.get("type")
    if t not in SIGNAL_TYPES:
        raise ValueError(f"unknown signal type {t!r}")
    if data.get("payload") is None:
        raise ValueError("signal data missing payload")
    return Signal(room_id=room, data=data)


def _parse_pointer(env: dict, max_room_id_len: int) -> Pointer:
    room = _require_room(env, max_room_id_len)
    return Pointer(room_id=room, x=_coordinate(env, K_X), y=_coordinate(env, K_Y))


def _parse_chat(env: dict, max_room_id_len: int, max_text_chars: int) -> ChatMessage:
    room = _require_room(env, max_room_id_len)

    text = env.get(K_TEXT)
    role = env.get(K_ROLE)
    ts = env.get(K_TS)

    # Desktop agents nest the chat body: {"message": {"text", "from", "ts"}}
    nested = env.get(K_MESSAGE)
    if text is None and isinstance(nested, dict):
        text = nested.get(B_CHAT_TEXT)
        if role is None:
            role = nested.get(B_CHAT_FROM)
        if ts is None:
            ts = nested.get(B_CHAT_TS)

    if not isinstance(text, str):
        raise TypeError("chat text must be a string")
    if not text.strip():
        raise ValueError("chat text must not be empty")
    if max_text_chars > 0 and len(text) > max_text_chars:
        raise ValueError("chat text too long")
    if not is_utf8_clean(text):
        raise ValueError("chat text is not valid UTF-8")

    if role is not None and not isinstance(role, str):
        raise TypeError("chat role label must be a string")
    if role is not None and not is_utf8_clean(role):
        raise ValueError("chat role label is not valid UTF-8")

    return ChatMessage(room_id=room, text=text, role=role or None, ts=_optional_ts(ts))


def parse_envelope(
    env,
    *,
    max_room_id_len: int = ROOM_ID_MAX_CHARS,
    max_text_chars: int = CHAT_TEXT_MAX_CHARS,
) -> Envelope:
    """Validate a decoded inbound map and return its typed variant.

    Raises TypeError or ValueError for anything malformed. Keys other than
    the ones a variant needs are ignored.
    """
    if not isinstance(env, dict):
        raise TypeError("envelope must be a map")

    event = env.get(K_EVENT)
    if not isinstance(event, str):
        raise TypeError("event must be a string")

    if event == EV_JOIN_ROOM:
        return _parse_join(env, max_room_id_len)
    if event == EV_SIGNAL:
        return _parse_signal(env, max_room_id_len)
    if event == EV_POINTER:
        return _parse_pointer(env, max_room_id_len)
    if event == EV_CHAT_MESSAGE:
        return _parse_chat(env, max_room_id_len, max_text_chars)

    raise ValueError(f"unknown event {event!r}")
