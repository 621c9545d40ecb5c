"""
Message envelope, payload and the local-only record metadata.

Wire format::

    {"envelope": {...}, "payload": {"type", "message", "context", "attachments"}}

Stored records add a ``local`` block that is never sent.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from amp_client.models.attachment import Attachment

PROTOCOL_VERSION = "amp/0.1"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    ALERT = "alert"
    TASK = "task"
    STATUS = "status"
    HANDOFF = "handoff"
    ACK = "ack"
    UPDATE = "update"
    SYSTEM = "system"


class Envelope(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    version: str = PROTOCOL_VERSION
    id: str
    from_: str = Field(alias="from")
    to: str
    subject: str
    priority: str = Priority.NORMAL.value
    timestamp: str
    thread_id: str
    in_reply_to: Optional[str] = None
    expires_at: Optional[str] = None
    signature: Optional[str] = None


class Payload(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = MessageType.NOTIFICATION.value
    message: str = ""
    context: Optional[Any] = None
    attachments: list[Attachment] = []

    def wire(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"attachments"})
        data["attachments"] = [att.wire() for att in self.attachments]
        return data


class SecurityInfo(BaseModel):
    trust: str
    injection_flags: list[str] = []
    wrapped: bool = False
    verified_at: Optional[str] = None
    signature: Optional[str] = None  # valid | invalid | missing | unverified


class LocalInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None  # unread | read
    received_at: Optional[str] = None
    sent_at: Optional[str] = None
    fetched_from: Optional[str] = None
    delivered_via: Optional[str] = None
    security: Optional[SecurityInfo] = None


class Message(BaseModel):
    model_config = ConfigDict(extra="allow")

    envelope: Envelope
    payload: Payload
    local: Optional[LocalInfo] = None

    @property
    def id(self) -> str:
        return self.envelope.id

    @property
    def status(self) -> str:
        """Read status, falling back to the legacy ``metadata.status`` field."""
        if self.local and self.local.status:
            return self.local.status
        legacy = (self.model_extra or {}).get("metadata")
        if isinstance(legacy, dict) and legacy.get("status"):
            return legacy["status"]
        return "unread"

    def wire(self) -> dict[str, Any]:
        """The over-the-wire form: no ``local`` block, no local attachment paths."""
        return {
            "envelope": self.envelope.model_dump(by_alias=True),
            "payload": self.payload.wire(),
        }

    def record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=False)
