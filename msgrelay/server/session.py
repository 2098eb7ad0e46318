from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from msgrelay.core import proto
from msgrelay.core.broker import MessageBroker
from msgrelay.core.errors import (
    AuthError,
    DeliveryError,
    DirectoryError,
    ProtocolError,
    TransportError,
)
from msgrelay.core.mailbox import Mailbox
from msgrelay.core.registry import SessionRegistry
from msgrelay.core.store import UserDirectory

from .channel import Channel

log = logging.getLogger("msgrelay.session")


class SessionState(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """One client connection: handshake, record dispatch and cleanup.

    Everything written to the channel goes through ``mailbox`` and is written
    by a single drain task, so broker deliveries pushed from other sessions
    never interleave with this session's own replies.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        broker: MessageBroker,
        registry: SessionRegistry["ConnectionSession"],
        directory: UserDirectory,
        mailbox_size: int = 256,
        drain_timeout: float = 2.0,
        write_timeout: float = 10.0,
    ) -> None:
        self.channel = channel
        self.broker = broker
        self.registry = registry
        self.directory = directory
        self.mailbox_size = mailbox_size
        self.drain_timeout = drain_timeout
        self.write_timeout = write_timeout

        self.state = SessionState.CONNECTED
        self.mailbox: Optional[Mailbox] = None
        self._identity: Optional[str] = None
        self._writer: Optional[asyncio.Task] = None
        self._cleanup: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        who = self._identity or self.channel.remote
        return f"<ConnectionSession {who} {self.state.value}>"

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def _bind(self, identity: str) -> None:
        if self._identity is not None:
            raise RuntimeError(f"session already bound to {self._identity}")
        self._identity = identity

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        try:
            await self._authenticate()
            await self._read_loop()
        except AuthError as exc:
            log.info("Rejected %s: %s", self.channel.remote, exc)
        except TransportError as exc:
            log.info("Connection %s lost: %s", self, exc)
        finally:
            await self.disconnect()

    def abort(self, reason: str) -> None:
        """Schedule cleanup without waiting for it. Safe to call repeatedly."""

        if self._cleanup is None:
            log.debug("Closing %s: %s", self, reason)
            self._cleanup = asyncio.get_running_loop().create_task(self._cleanup_once())

    async def disconnect(self, reason: str = "closed") -> None:
        self.abort(reason)
        await asyncio.shield(self._cleanup)

    async def _cleanup_once(self) -> None:
        self.state = SessionState.CLOSED
        identity = self._identity
        if identity is not None:
            self.broker.unregister_consumer(identity, self.mailbox)
            if self.registry.remove_if_current(identity, self):
                await self._set_presence(False)
                log.info("Client disconnected: %s", identity)
            else:
                log.info("Displaced session for %s closed", identity)

        if self.mailbox is not None:
            self.mailbox.close()
        if self._writer is not None:
            try:
                await asyncio.wait_for(self._writer, self.drain_timeout)
            except asyncio.TimeoutError:
                log.warning("Outbound flush for %s timed out", identity)
        await self.channel.close()

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _authenticate(self) -> None:
        try:
            line = await self.channel.read_line()
            if line is None:
                raise AuthError("closed before handshake")
            creds = proto.decode_credentials(line)
        except ProtocolError as exc:
            await self.channel.write_line(proto.AUTH_FAILED)
            raise AuthError(str(exc)) from exc

        if not await self._check_credentials(creds.email, creds.password):
            await self.channel.write_line(proto.AUTH_FAILED)
            raise AuthError(f"bad credentials for {creds.email}")

        self._bind(creds.email)
        await self.channel.write_line(proto.AUTH_SUCCESS)

        self.mailbox = Mailbox(self._identity, maxsize=self.mailbox_size)
        self._writer = asyncio.get_running_loop().create_task(
            self._drain_loop(), name=f"drain:{self._identity}"
        )
        self.state = SessionState.AUTHENTICATED
        self.registry.register(self._identity, self)
        self.broker.register_consumer(self._identity, self.mailbox)
        await self._set_presence(True)
        log.info("Client registered: %s", self._identity)

    async def _check_credentials(self, email: str, password: str) -> bool:
        try:
            return await self.directory.authenticate(email, password)
        except DirectoryError:
            log.exception("User directory failed while authenticating %s", email)
            return False

    async def _set_presence(self, online: bool) -> None:
        try:
            await self.directory.set_presence(self._identity, online)
        except DirectoryError:
            log.exception("Could not set presence of %s to %s", self._identity, online)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        while self.state is SessionState.AUTHENTICATED:
            try:
                line = await self.channel.read_line()
                if line is None:
                    log.debug("End of stream from %s", self._identity)
                    return
                if not line.strip():
                    continue
                await self._dispatch(proto.decode_record(line))
            except ProtocolError as exc:
                log.warning("Bad record from %s: %s", self._identity, exc)
                self._reply(proto.error_record(str(exc)))

    async def _dispatch(self, record: proto.Record) -> None:
        type_ = record.type
        if type_ == proto.MessageType.CHAT.value:
            self._handle_chat(record)
        elif type_ == proto.MessageType.ACK.value:
            self._handle_ack(record)
        elif type_ == proto.MessageType.LOGOUT.value:
            await self._handle_logout()
        else:
            raise ProtocolError(f"Unknown message type: {type_}")

    def _handle_chat(self, record: proto.Record) -> None:
        message = proto.message_from_record(record, sender=self._identity)
        receiver = self.registry.get(message.receiver_id)
        delivered = self.broker.send_message(message, receiver.mailbox if receiver else None)
        log.debug("CHAT %s %s -> %s (%s)", message.id, self._identity, message.receiver_id, message.status.value)
        self._reply(proto.confirmation_record(message.id, delivered))

    def _handle_ack(self, record: proto.Record) -> None:
        if not record.id:
            raise ProtocolError("ACKNOWLEDGE requires id")
        self.broker.acknowledge_message(record.id)

    async def _handle_logout(self) -> None:
        self._reply(proto.logout_confirm_record())
        await self.disconnect("logout")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _reply(self, item: proto.Outbound) -> None:
        try:
            self.mailbox.post(item)
        except DeliveryError:
            log.debug("Dropped reply to closing session %s", self._identity)

    async def _drain_loop(self) -> None:
        mailbox = self.mailbox
        while True:
            item = await mailbox.get()
            if item is None:
                return
            try:
                await asyncio.wait_for(self.channel.write_line(proto.encode(item)), self.write_timeout)
            except (TransportError, asyncio.TimeoutError) as exc:
                log.info("Write to %s failed: %s", self._identity, str(exc) or "timed out")
                self.abort("write failed")
                return
            if mailbox.has_room():
                # backlog larger than the mailbox waits in the broker
                self.broker.pump(self._identity, mailbox)


__all__ = ["ConnectionSession", "SessionState"]
