import asyncio
from typing import Any, Callable, Dict, List, Optional

import orjson
import pytest

from msgrelay.core.broker import MessageBroker
from msgrelay.core.errors import TransportError
from msgrelay.core.registry import SessionRegistry
from msgrelay.core.store import MemoryUserDirectory


PASSWORDS = {
    "x@example.com": "x-secret",
    "y@example.com": "y-secret",
    "z@example.com": "z-secret",
}


class FakeChannel:
    """In-memory Channel: tests feed inbound lines and inspect what was written."""

    def __init__(self, remote: str = "test:0") -> None:
        self.remote = remote
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.closed = False
        self.fail_writes = False

    def feed(self, item: Any) -> None:
        if not isinstance(item, str):
            item = orjson.dumps(item).decode("utf-8")
        self.inbound.put_nowait(item)

    def feed_eof(self) -> None:
        self.inbound.put_nowait(None)

    async def read_line(self) -> Optional[str]:
        if self.closed:
            return None
        return await self.inbound.get()

    async def write_line(self, text: str) -> None:
        if self.closed or self.fail_writes:
            raise TransportError("fake channel write failed")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(None)

    def records(self) -> List[Dict[str, Any]]:
        return [orjson.loads(s) for s in self.sent if s.startswith("{")]

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [r for r in self.records() if r.get("type") == type_]

    async def wait_until(self, predicate: Callable[["FakeChannel"], bool], timeout: float = 2.0) -> None:
        async def _poll():
            while not predicate(self):
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def broker():
    return MessageBroker(shards=8)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def directory():
    return MemoryUserDirectory(PASSWORDS)


@pytest.fixture
def make_channel():
    return FakeChannel
