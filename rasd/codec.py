from __future__ import annotations

import json

import cbor2


def encode(obj, *, binary: bool = False) -> bytes | str:
    if binary:
        return cbor2.dumps(obj)
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def decode(data: bytes | str):
    if isinstance(data, (bytes, bytearray, memoryview)):
        return cbor2.loads(bytes(data))
    return json.loads(data)
