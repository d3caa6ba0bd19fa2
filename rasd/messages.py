"""Outbound message queueing for the relay."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from .codec import encode

if TYPE_CHECKING:
    from .service import RelayService


Outgoing = list[tuple[str, "bytes | str"]]


class MessageHelper:
    """
    Helper methods for queueing outbound envelopes.

    Envelopes are encoded here, in the framing the target connection speaks,
    and appended to an `outgoing` list that the service drains once the state
    lock is released.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = hub.log

    def queue_payload(self, outgoing: Outgoing, connection_id: str, payload: bytes | str) -> None:
        """Add an already-encoded payload to the outgoing queue."""
        outgoing.append((connection_id, payload))

    def queue_env(self, outgoing: Outgoing, connection_id: str, env: dict) -> None:
        """Encode and queue an envelope for one connection."""
        conn = self.hub.registry.lookup(connection_id)
        binary = bool(conn.binary) if conn is not None else False
        try:
            payload = encode(env, binary=binary)
            if isinstance(payload, str):
                # Text frames go out as UTF-8; lone surrogates would fail in send.
                payload.encode("utf-8")
        except (TypeError, ValueError) as e:
            # A CBOR peer can send values JSON has no spelling for.
            self.hub.stats_manager.inc("encode_failures")
            self.log.debug(
                "Dropping unencodable envelope conn=%s event=%r err=%s",
                connection_id,
                env.get("event"),
                e,
            )
            return
        self.queue_payload(outgoing, connection_id, payload)

    def queue_all(self, outgoing: Outgoing, pairs: Iterable[tuple[str, dict]]) -> None:
        for connection_id, env in pairs:
            self.queue_env(outgoing, connection_id, env)
