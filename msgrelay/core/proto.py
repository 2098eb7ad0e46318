from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ProtocolError


# ---------------------------------------------------------------------------
# Handshake literals
# ---------------------------------------------------------------------------

AUTH_SUCCESS = "AUTH_SUCCESS"
AUTH_FAILED = "AUTH_FAILED"
SERVER_BUSY = "SERVER_BUSY"


class MessageType(str, Enum):
    CHAT = "CHAT"
    ACK = "ACKNOWLEDGE"
    LOGOUT = "LOGOUT"
    LOGOUT_CONFIRM = "LOGOUT_CONFIRM"
    CONFIRMATION = "CONFIRMATION"
    ERROR = "ERROR"


class MessageStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    DELIVERED = "delivered"


_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.QUEUED: 1,
    MessageStatus.DELIVERED: 2,
}


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return str(uuid.uuid4())


def _coerce_timestamp(value: Any) -> Any:
    # Jackson without WRITE_DATES_AS_TIMESTAMPS disabled sends LocalDateTime
    # as [year, month, day, hour, minute, second, nanos].
    if isinstance(value, (list, tuple)) and 3 <= len(value) <= 7:
        parts = [int(v) for v in value] + [0] * (7 - len(value))
        year, month, day, hour, minute, second, nanos = parts
        return datetime(year, month, day, hour, minute, second, nanos // 1000, tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    """Handshake record. Never retained past authentication."""

    email: str = Field(min_length=1)
    password: str

    model_config = ConfigDict(extra="ignore")


class Record(BaseModel):
    """One inbound wire record, loosely typed until dispatch."""

    type: str
    id: Optional[str] = None
    sender_email: Optional[str] = Field(default=None, alias="senderEmail")
    receiver_email: Optional[str] = Field(default=None, alias="receiverEmail")
    content: Optional[str] = None
    status: Optional[str] = None
    timestamp: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_arrays(cls, value: Any) -> Any:
        return _coerce_timestamp(value)


class Message(BaseModel):
    """A routed message. ``id`` is fixed at creation; ``status`` only moves forward."""

    id: str = Field(default_factory=new_message_id, frozen=True)
    type: MessageType = MessageType.CHAT
    sender_id: Optional[str] = Field(default=None, alias="senderEmail")
    receiver_id: Optional[str] = Field(default=None, alias="receiverEmail")
    content: Optional[str] = None
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow, alias="timestamp")

    model_config = ConfigDict(populate_by_name=True)

    def advance(self, status: MessageStatus) -> None:
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise ValueError(f"message {self.id}: status cannot move from {self.status.value} to {status.value}")
        self.status = status


Outbound = Union[Message, Dict[str, Any], str]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _load_object(line: Union[str, bytes]) -> Dict[str, Any]:
    try:
        obj = orjson.loads(line)
    except orjson.JSONDecodeError as exc:
        raise ProtocolError("Invalid message format") from exc
    if not isinstance(obj, dict):
        raise ProtocolError("Invalid message format")
    return obj


def decode_credentials(line: Union[str, bytes]) -> Credentials:
    try:
        return Credentials.model_validate(_load_object(line))
    except ValidationError as exc:
        raise ProtocolError("Invalid credentials format") from exc


def decode_record(line: Union[str, bytes]) -> Record:
    try:
        return Record.model_validate(_load_object(line))
    except ValidationError as exc:
        raise ProtocolError("Invalid message format") from exc


def message_from_record(record: Record, sender: str) -> Message:
    """Build a CHAT message from an inbound record sent by ``sender``."""

    if record.type != MessageType.CHAT.value:
        raise ProtocolError(f"Expected CHAT, got {record.type}")
    if not record.receiver_email:
        raise ProtocolError("CHAT requires receiverEmail")
    if record.sender_email and record.sender_email != sender:
        raise ProtocolError("senderEmail does not match the authenticated user")

    fields: Dict[str, Any] = {
        "type": MessageType.CHAT,
        "sender_id": sender,
        "receiver_id": record.receiver_email,
        "content": record.content,
    }
    if record.id:
        fields["id"] = record.id
    if record.timestamp is not None:
        fields["created_at"] = record.timestamp
    return Message(**fields)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def chat_record(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


def confirmation_record(message_id: str, delivered: bool) -> Dict[str, Any]:
    status = MessageStatus.DELIVERED if delivered else MessageStatus.QUEUED
    return {"type": MessageType.CONFIRMATION.value, "id": message_id, "status": status.value}


def error_record(content: str) -> Dict[str, Any]:
    return {"type": MessageType.ERROR.value, "content": content}


def logout_confirm_record() -> Dict[str, Any]:
    return {"type": MessageType.LOGOUT_CONFIRM.value}


def encode(item: Outbound) -> str:
    """Serialize an outbound item to one line of text (no trailing newline)."""

    if isinstance(item, str):
        return item
    if isinstance(item, Message):
        item = chat_record(item)
    return orjson.dumps(item).decode("utf-8")


__all__ = [
    "AUTH_SUCCESS",
    "AUTH_FAILED",
    "SERVER_BUSY",
    "MessageType",
    "MessageStatus",
    "Credentials",
    "Record",
    "Message",
    "Outbound",
    "utcnow",
    "new_message_id",
    "decode_credentials",
    "decode_record",
    "message_from_record",
    "chat_record",
    "confirmation_record",
    "error_record",
    "logout_confirm_record",
    "encode",
]
