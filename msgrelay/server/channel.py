from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional, Protocol

import websockets

from msgrelay.core.errors import ProtocolError, TransportError

log = logging.getLogger("msgrelay.channel")


class Channel(Protocol):
    """Ordered, reliable duplex channel carrying one record per line."""

    remote: str

    async def read_line(self) -> Optional[str]:
        """Next record without its terminator, or None at end of stream."""

    async def write_line(self, text: str) -> None: ...

    async def close(self) -> None: ...


class StreamChannel:
    """Newline-framed records over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.remote = self._fmt_remote(writer.get_extra_info("peername"))

    async def read_line(self) -> Optional[str]:
        try:
            raw = await self.reader.readline()
        except ValueError as exc:
            # StreamReader limit overrun; the oversized line has been discarded.
            raise ProtocolError("Record too long") from exc
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"read from {self.remote} failed: {exc}") from exc
        if not raw:
            return None
        try:
            return raw.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Record is not valid UTF-8") from exc

    async def write_line(self, text: str) -> None:
        if self.writer.is_closing():
            raise TransportError(f"channel to {self.remote} is closed")
        try:
            self.writer.write(text.encode("utf-8") + b"\n")
            await self.writer.drain()
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"write to {self.remote} failed: {exc}") from exc

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self.writer.wait_closed()

    @staticmethod
    def _fmt_remote(peer) -> str:
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


class WebSocketChannel:
    """One record per WebSocket text message."""

    def __init__(self, websocket) -> None:
        self.ws = websocket
        self.remote = StreamChannel._fmt_remote(getattr(websocket, "remote_address", None))

    async def read_line(self) -> Optional[str]:
        try:
            raw = await self.ws.recv()
        except websockets.ConnectionClosed:
            return None
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolError("Record is not valid UTF-8") from exc
        return raw.rstrip("\r\n")

    async def write_line(self, text: str) -> None:
        try:
            await self.ws.send(text)
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"websocket to {self.remote} closed") from exc

    async def close(self) -> None:
        await self.ws.close()


__all__ = ["Channel", "StreamChannel", "WebSocketChannel"]
