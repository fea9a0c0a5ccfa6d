from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, TypeAdapter, field_validator

Identity = Annotated[str, Field(min_length=1, max_length=128)]
B64Text = Annotated[str, Field(min_length=1)]


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def new_message_id() -> str:
    return str(uuid.uuid4())


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return STATUS_RANK[self]


STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


# ---------------------------------------------------------------------------
# Envelope & message
# ---------------------------------------------------------------------------

class EncryptedEnvelope(BaseModel):
    """Ciphertext (with GCM tag), RSA-wrapped AES key and IV, all base64 text."""

    ciphertext: B64Text = Field(alias="encryptedMessage")
    wrapped_key: B64Text = Field(alias="encryptedKey")
    iv: B64Text

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


class Message(BaseModel):
    message_id: Identity
    sender: Identity
    receiver: Identity
    envelope: EncryptedEnvelope
    status: MessageStatus = MessageStatus.SENT
    created_at: int = Field(default_factory=now_ms)

    @field_validator("created_at")
    @classmethod
    def _created_at_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("created_at must be non-negative")
        return value

    def to_wire(self) -> Dict[str, Any]:
        """Flat persisted/record layout, as served to clients."""
        return {
            "messageId": self.message_id,
            "sender": self.sender,
            "receiver": self.receiver,
            **self.envelope.to_wire(),
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            message_id=data["messageId"],
            sender=data["sender"],
            receiver=data["receiver"],
            envelope=EncryptedEnvelope.model_validate(data),
            status=data.get("status", MessageStatus.SENT),
            created_at=data["createdAt"],
        )


# ---------------------------------------------------------------------------
# Relay bus publications (closed union on "type")
# ---------------------------------------------------------------------------

class MessagePublication(BaseModel):
    type: Literal["message"] = "message"
    message_id: Identity = Field(alias="messageId")
    sender: Identity
    receiver: Identity
    envelope: EncryptedEnvelope
    created_at: int = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def of(cls, message: Message) -> "MessagePublication":
        return cls(
            message_id=message.message_id,
            sender=message.sender,
            receiver=message.receiver,
            envelope=message.envelope,
            created_at=message.created_at,
        )


class StatusPublication(BaseModel):
    type: Literal["statusUpdate"] = "statusUpdate"
    message_id: Identity = Field(alias="messageId")
    status: MessageStatus
    recipient_of_event: Identity = Field(alias="recipientOfEvent")

    model_config = ConfigDict(populate_by_name=True)


Publication = Annotated[Union[MessagePublication, StatusPublication], Field(discriminator="type")]
PUBLICATION_ADAPTER: TypeAdapter = TypeAdapter(Publication)


# ---------------------------------------------------------------------------
# Durable jobs (closed union on "kind")
# ---------------------------------------------------------------------------

class StoreMessageJob(BaseModel):
    kind: Literal["storeMessage"] = "storeMessage"
    message: Message


class UpdateStatusJob(BaseModel):
    kind: Literal["updateStatus"] = "updateStatus"
    message_id: Identity
    status: MessageStatus
    actor: Optional[str] = None  # user whose receipt produced this job


Job = Annotated[Union[StoreMessageJob, UpdateStatusJob], Field(discriminator="kind")]


class QueuedJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job: Job
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: int = Field(default_factory=now_ms)

    # exact bytes as stored by the queue backend, needed to remove the entry
    _raw: Optional[bytes] = PrivateAttr(default=None)


# ---------------------------------------------------------------------------
# Websocket events
# ---------------------------------------------------------------------------

class Frame(BaseModel):
    """{"event": name, "data": {...}} as exchanged over the websocket."""

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class RegisterPublicKey(BaseModel):
    user_id: Identity = Field(alias="userId")
    public_key: B64Text = Field(alias="publicKey")

    model_config = ConfigDict(populate_by_name=True)


class SendMessage(BaseModel):
    sender: Identity
    receiver: Identity
    encrypted_message: B64Text = Field(alias="encryptedMessage")
    encrypted_key: B64Text = Field(alias="encryptedKey")
    iv: B64Text
    message_id: Optional[Identity] = Field(default=None, alias="messageId")

    model_config = ConfigDict(populate_by_name=True)

    def envelope(self) -> EncryptedEnvelope:
        return EncryptedEnvelope(
            ciphertext=self.encrypted_message,
            wrapped_key=self.encrypted_key,
            iv=self.iv,
        )


class Receipt(BaseModel):
    """Body of messageDelivered / messageRead."""

    message_id: Identity = Field(alias="messageId")
    sender_id: Identity = Field(alias="senderId")

    model_config = ConfigDict(populate_by_name=True)


class RequestPublicKey(BaseModel):
    user_id: Identity = Field(alias="userId")

    model_config = ConfigDict(populate_by_name=True)


ERROR_CODES = {
    "BAD_FRAME",
    "BAD_KEY",
    "FORBIDDEN",
    "UNKNOWN_EVENT",
    "UNAVAILABLE",
}


def build_frame(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": data}


__all__ = [
    "now_ms",
    "new_message_id",
    "MessageStatus",
    "STATUS_RANK",
    "EncryptedEnvelope",
    "Message",
    "MessagePublication",
    "StatusPublication",
    "Publication",
    "PUBLICATION_ADAPTER",
    "StoreMessageJob",
    "UpdateStatusJob",
    "Job",
    "QueuedJob",
    "Frame",
    "RegisterPublicKey",
    "SendMessage",
    "Receipt",
    "RequestPublicKey",
    "ERROR_CODES",
    "build_frame",
]
