from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import DeliveryError
from .proto import Outbound

log = logging.getLogger("msgrelay.mailbox")

_CLOSED = object()


class Mailbox:
    """Outbound queue owned by one session, drained by that session's writer.

    The broker hands records over with :meth:`offer`, which never blocks: a
    full mailbox refuses the offer and the broker keeps the record queued until
    the writer has made room and pumps the backlog again. The owning session
    posts its own replies with :meth:`post`. Both land in one FIFO so every
    write on the channel is serialized by the single reader of :meth:`get`.

    A mailbox belongs to the event loop of its session; it is not thread-safe.
    """

    def __init__(self, identity: str, *, maxsize: int = 256) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be positive")
        self.identity = identity
        self.maxsize = maxsize
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def __len__(self) -> int:
        return max(0, self._queue.qsize() - (1 if self._closed else 0))

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Mailbox {self.identity} {state} size={len(self)}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def has_room(self) -> bool:
        return not self._closed and self._queue.qsize() < self.maxsize

    def offer(self, item: Outbound) -> None:
        if self._closed:
            raise DeliveryError(f"mailbox for {self.identity} is closed")
        if self._queue.qsize() >= self.maxsize:
            log.debug("Mailbox for %s is full (%d)", self.identity, self.maxsize)
            raise DeliveryError(f"mailbox for {self.identity} is full")
        self._queue.put_nowait(item)

    def post(self, item: Outbound) -> None:
        if self._closed:
            raise DeliveryError(f"mailbox for {self.identity} is closed")
        self._queue.put_nowait(item)

    async def get(self) -> Optional[Outbound]:
        """Next record, or None once the mailbox is closed and drained."""

        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)


__all__ = ["Mailbox"]
