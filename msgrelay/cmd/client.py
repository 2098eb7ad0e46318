from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging
import sys
from typing import Any, Dict, Optional

import orjson

from msgrelay.config import parse_listen
from msgrelay.core import proto

log = logging.getLogger("msgrelay.cmd.client")


class ClientApp:
    def __init__(self, host: str, port: int, email: str, password: str) -> None:
        self.host = host
        self.port = port
        self.email = email
        self._password = password

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> bool:
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port)
        try:
            if not await self._login():
                return False
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver
            return True
        finally:
            self.writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await self.writer.wait_closed()

    async def _login(self) -> bool:
        await self._send({"email": self.email, "password": self._password})
        self._password = ""
        reply = (await self.reader.readline()).decode("utf-8").strip()
        if reply == proto.AUTH_SUCCESS:
            print(f"Logged in as {self.email}")
            return True
        if reply == proto.SERVER_BUSY:
            print("Server is busy, try again later")
        else:
            print("Authentication failed")
        return False

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("Commands: /tell <email> <message>, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                await self._logout()
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/tell "):
                parts = line.split(" ", 2)
                if len(parts) < 3 or not parts[2].strip():
                    print("Usage: /tell <email> <message>")
                    continue
                await self._cmd_tell(parts[1], parts[2])
            elif line in {"/quit", "/exit", "/logout"}:
                await self._logout()
                await self._wait_closed()
                break
            else:
                print("Unknown command")

    async def _rx_loop(self) -> None:
        assert self.reader is not None
        try:
            while True:
                raw = await self.reader.readline()
                if not raw:
                    print("Connection closed by server")
                    break
                try:
                    record = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    log.warning("Dropped invalid record: %r", raw)
                    continue
                if isinstance(record, dict):
                    await self._handle_incoming(record)
        except (ConnectionError, OSError) as exc:
            print(f"Lost connection to server: {exc}")
        finally:
            self.stop_event.set()

    async def _handle_incoming(self, record: Dict[str, Any]) -> None:
        typ = record.get("type")
        if typ == proto.MessageType.CHAT.value:
            print(f"[{record.get('senderEmail')}] {record.get('content') or ''}")
            if record.get("id"):
                await self._send({"type": proto.MessageType.ACK.value, "id": record["id"]})
        elif typ == proto.MessageType.CONFIRMATION.value:
            if record.get("status") == proto.MessageStatus.DELIVERED.value:
                print("Message delivered")
            else:
                print("Message queued (recipient offline)")
        elif typ == proto.MessageType.ERROR.value:
            print(f"ERROR: {record.get('content')}")
        elif typ == proto.MessageType.LOGOUT_CONFIRM.value:
            self.stop_event.set()
        else:
            log.debug("Unhandled record %s", typ)

    async def _cmd_tell(self, target: str, text: str) -> None:
        message = proto.Message(sender_id=self.email, receiver_id=target, content=text)
        await self._send(proto.chat_record(message))

    async def _logout(self) -> None:
        with contextlib.suppress(ConnectionError, OSError):
            await self._send({"type": proto.MessageType.LOGOUT.value, "senderEmail": self.email})
        print("Logging out...")

    async def _wait_closed(self, timeout: float = 2.0) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.stop_event.wait(), timeout)

    async def _send(self, record: Dict[str, Any]) -> None:
        assert self.writer is not None
        self.writer.write(proto.encode(record).encode("utf-8") + b"\n")
        await self.writer.drain()


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Message relay client")
    parser.add_argument("--server", default="localhost:5000", help="host:port of the relay")
    parser.add_argument("--email", required=True, help="Account email")
    parser.add_argument("--password", default=None, help="Prompted for when omitted")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    host, port = parse_listen(args.server)
    password = args.password or getpass.getpass("Password: ")
    app = ClientApp(host, port, args.email, password)
    return 0 if await app.run() else 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
