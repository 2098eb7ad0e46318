from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ProtocolError(RelayError):
    """Malformed or unacceptable record. The session stays open."""


class DuplicateMessageId(ProtocolError):
    """A CHAT reused an id that the broker is still tracking."""


class AuthError(RelayError):
    """Handshake rejected. Terminal for that connection attempt only."""


class TransportError(RelayError):
    """Channel I/O failed or the channel is closed."""


class DeliveryError(RelayError):
    """A mailbox refused an outbound record (closed or full)."""


class DirectoryError(RelayError):
    """The user directory backing store failed."""


class BrokerStateError(RuntimeError):
    """Broker bookkeeping is inconsistent. Never masked."""


__all__ = [
    "RelayError",
    "ProtocolError",
    "DuplicateMessageId",
    "AuthError",
    "TransportError",
    "DeliveryError",
    "DirectoryError",
    "BrokerStateError",
]
