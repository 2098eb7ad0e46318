from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional, Set

import websockets

from msgrelay.config import ServerConfig, parse_listen
from msgrelay.core import proto
from msgrelay.core.broker import MessageBroker
from msgrelay.core.errors import TransportError
from msgrelay.core.registry import SessionRegistry
from msgrelay.core.store import SqliteUserDirectory, UserDirectory

from .channel import Channel, StreamChannel, WebSocketChannel
from .session import ConnectionSession

log = logging.getLogger("msgrelay.server.runtime")


class RelayServer:
    """Accept loops, admission control and shutdown around one broker."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        directory: Optional[UserDirectory] = None,
        broker: Optional[MessageBroker] = None,
    ) -> None:
        self.cfg = config
        self.broker = broker or MessageBroker(shards=config.lock_shards)
        self.registry: SessionRegistry[ConnectionSession] = SessionRegistry()
        self.directory = directory
        self._owns_directory = directory is None

        self._slots = asyncio.Semaphore(config.max_sessions)
        self._sessions: Set[ConnectionSession] = set()
        self._handlers: Set[asyncio.Task] = set()
        self._closing = False
        self._tcp_server: Optional[asyncio.AbstractServer] = None
        self._ws_server = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.directory is None:
            store = await SqliteUserDirectory.open(self.cfg.db_path)
            await store.reset_presence()
            self.directory = store

        host, port = parse_listen(self.cfg.listen)
        self._tcp_server = await asyncio.start_server(
            self._handle_stream, host, port, limit=self.cfg.max_line_bytes
        )
        log.info("Relay listening on tcp://%s:%d", host, self.port)

        if self.cfg.ws_listen:
            ws_host, ws_port = parse_listen(self.cfg.ws_listen)
            self._ws_server = await websockets.serve(
                self._handle_websocket, ws_host, ws_port, max_size=self.cfg.max_line_bytes
            )
            log.info("Relay listening on ws://%s:%d", ws_host, ws_port)

    async def stop(self) -> None:
        self._closing = True
        if self._tcp_server is not None:
            self._tcp_server.close()
        if self._ws_server is not None:
            self._ws_server.close()

        sessions = list(self._sessions)
        if sessions:
            log.info("Closing %d session(s)", len(sessions))
        await asyncio.gather(*(s.disconnect("server shutdown") for s in sessions), return_exceptions=True)
        handlers = list(self._handlers)
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)

        if self._tcp_server is not None:
            await self._tcp_server.wait_closed()
            self._tcp_server = None
        if self._ws_server is not None:
            await self._ws_server.wait_closed()
            self._ws_server = None

        if self._owns_directory and isinstance(self.directory, SqliteUserDirectory):
            await self.directory.close()
            self.directory = None
        log.info("Relay stopped; %s", self.broker.stats())

    @property
    def port(self) -> int:
        """Bound TCP port (useful when configured with port 0)."""

        if self._tcp_server is None or not self._tcp_server.sockets:
            raise RuntimeError("server is not listening")
        return self._tcp_server.sockets[0].getsockname()[1]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await self._serve(StreamChannel(reader, writer))

    async def _handle_websocket(self, websocket) -> None:
        await self._serve(WebSocketChannel(websocket))

    async def _serve(self, channel: Channel) -> None:
        handler = asyncio.current_task()
        self._handlers.add(handler)
        try:
            log.debug("Accepted connection from %s", channel.remote)
            if not await self._admit():
                log.warning("Refused %s: %d sessions already live", channel.remote, self.cfg.max_sessions)
                with contextlib.suppress(TransportError):
                    await channel.write_line(proto.SERVER_BUSY)
                await channel.close()
                return
            if self._closing:
                self._slots.release()
                await channel.close()
                return
            await self._run_session(channel)
        finally:
            self._handlers.discard(handler)

    async def _run_session(self, channel: Channel) -> None:
        session = ConnectionSession(
            channel,
            broker=self.broker,
            registry=self.registry,
            directory=self.directory,
            mailbox_size=self.cfg.mailbox_size,
            drain_timeout=self.cfg.drain_timeout,
            write_timeout=self.cfg.write_timeout,
        )
        self._sessions.add(session)
        try:
            await session.run()
        except Exception:
            # handler tasks are never awaited; report here and close the connection
            log.exception("Session %s failed", session)
            await session.disconnect("internal error")
        finally:
            self._sessions.discard(session)
            self._slots.release()

    async def _admit(self) -> bool:
        try:
            await asyncio.wait_for(self._slots.acquire(), self.cfg.admission_timeout)
        except asyncio.TimeoutError:
            return False
        return True


__all__ = ["RelayServer"]
