from __future__ import annotations

import asyncio
import logging
import signal
import threading
from http import HTTPStatus

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from . import __version__
from .config import RelayRuntimeConfig
from .lifecycle import SessionLifecycle
from .messages import MessageHelper, Outgoing
from .registry import ConnectionRegistry
from .rooms import RoomManager
from .router import MessageRouter
from .stats import StatsManager
from .util import fmt_remote


class RelayService:
    def __init__(self, config: RelayRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("rasd.relay")

        # Registry, rooms and counters are shared by every connection task
        # (and by tests driving the managers from threads). Guard them with a
        # single re-entrant lock and never hold it across an await.
        self._state_lock = threading.RLock()

        self.stats_manager = StatsManager(self)

        # Connection registry for per-connection routing state
        self.registry = ConnectionRegistry(self)

        # Room manager owns every room record
        self.room_manager = RoomManager(self)

        # Outbound encoding/queueing
        self.message_helper = MessageHelper(self)

        # Connect/disconnect handling and notifications
        self.lifecycle = SessionLifecycle(self)

        # Inbound frame routing
        self.router = MessageRouter(self)

        self._server: Server | None = None
        self._shutdown: asyncio.Event | None = None
        self._outboxes: dict[str, asyncio.Queue] = {}
        self._sockets: dict[str, ServerConnection] = {}
        self._background: set[asyncio.Task] = set()
        self._closing: set[str] = set()

    @property
    def port(self) -> int | None:
        """Bound port once started (useful when configured with port 0)."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return None

    async def start(self) -> None:
        self.stats_manager.set_start_time()
        self._shutdown = asyncio.Event()

        ping_interval = self.config.ping_interval_s if self.config.ping_interval_s > 0 else None
        ping_timeout = self.config.ping_timeout_s if self.config.ping_timeout_s > 0 else None

        self._server = await serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            process_request=self._process_request,
            max_size=self.config.max_frame_bytes or None,
            ping_interval=ping_interval,
            ping_timeout=ping_timeout,
        )

        self.log.info(
            "Relay running on ws://%s:%s (rasd %s)",
            self.config.host,
            self.port,
            __version__,
        )
        self.log.info(
            "Policy max_room_id_len=%s max_text_chars=%s max_frame_bytes=%s rate_limit_msgs_per_minute=%s",
            self.config.max_room_id_len,
            self.config.max_text_chars,
            self.config.max_frame_bytes,
            self.config.rate_limit_msgs_per_minute,
        )

    async def serve_until_stopped(self) -> None:
        if self._server is None:
            await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                pass

        assert self._shutdown is not None
        await self._shutdown.wait()
        await self.stop()

    def run_forever(self) -> None:
        asyncio.run(self.serve_until_stopped())

    def request_stop(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()

    async def stop(self, *, flush_timeout_s: float = 1.0) -> None:
        if self._server is None:
            return

        outgoing: Outgoing = []
        ended = self.lifecycle.on_shutdown(outgoing)
        self._dispatch(outgoing)
        if ended:
            self.log.info("Ended %s session(s) for shutdown", ended)

        pending = [q.join() for q in self._outboxes.values()]
        if pending:
            try:
                await asyncio.wait_for(asyncio.gather(*pending), timeout=flush_timeout_s)
            except asyncio.TimeoutError:
                self.log.warning("Outbound queues not drained before shutdown")

        server, self._server = self._server, None
        server.close()
        await server.wait_closed()

        with self._state_lock:
            self.registry.clear_all()
            self.room_manager.clear_all()

        if self._shutdown is not None:
            self._shutdown.set()
        self.log.info("Relay stopped")

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        upgrade = request.headers.get("Upgrade", "")
        if upgrade.lower() == "websocket":
            return None

        path = request.path.split("?", 1)[0]
        if self.config.stats_path and path == self.config.stats_path:
            return connection.respond(HTTPStatus.OK, self.stats_manager.format_stats() + "\n")
        if path == self.config.health_path:
            return connection.respond(
                HTTPStatus.OK, f"rasd {__version__} signaling relay is running\n"
            )
        return connection.respond(HTTPStatus.NOT_FOUND, "not found\n")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        remote = fmt_remote(websocket.remote_address)
        cid = self.lifecycle.on_connect(remote)

        maxsize = max(0, int(self.config.max_outbound_queue))
        outbox: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._outboxes[cid] = outbox
        self._sockets[cid] = websocket
        writer = asyncio.create_task(
            self._write_loop(cid, websocket, outbox), name=f"rasd-writer-{cid}"
        )

        try:
            async for data in websocket:
                outgoing: Outgoing = []
                self.router.route_packet(cid, data, outgoing)
                self._dispatch(outgoing)
        except ConnectionClosed:
            pass
        except Exception:
            self.log.exception("Connection handler failed conn=%s", cid)
        finally:
            outgoing = []
            self.lifecycle.on_disconnect(cid, outgoing)
            self._outboxes.pop(cid, None)
            self._sockets.pop(cid, None)
            self._closing.discard(cid)
            writer.cancel()
            self._dispatch(outgoing)
            for result in await asyncio.gather(writer, return_exceptions=True):
                if isinstance(result, Exception):
                    self.log.warning("Writer failed conn=%s err=%s", cid, result)

    async def _write_loop(
        self, cid: str, websocket: ServerConnection, outbox: asyncio.Queue
    ) -> None:
        while True:
            payload = await outbox.get()
            try:
                await websocket.send(payload)
                self.stats_manager.inc("frames_out")
                self.stats_manager.inc("bytes_out", len(payload))
            except ConnectionClosed:
                self.log.debug("Send on closed connection conn=%s", cid)
            except Exception:
                self.stats_manager.inc("send_failures")
                self.log.exception("Send failed conn=%s", cid)
            finally:
                outbox.task_done()

    def _dispatch(self, outgoing: Outgoing) -> None:
        """Hand queued payloads to each target's writer task."""
        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Dispatching %d payload(s)", len(outgoing))

        for cid, payload in outgoing:
            outbox = self._outboxes.get(cid)
            if outbox is None:
                continue
            try:
                outbox.put_nowait(payload)
            except asyncio.QueueFull:
                self._drop_slow_peer(cid)

    def _drop_slow_peer(self, cid: str) -> None:
        if cid in self._closing:
            return
        websocket = self._sockets.get(cid)
        self.stats_manager.inc("queue_overflows")
        self.log.warning("Outbound queue overflow, closing conn=%s", cid)
        if websocket is None:
            return
        self._closing.add(cid)
        task = asyncio.create_task(websocket.close(code=1008, reason="outbound queue overflow"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
