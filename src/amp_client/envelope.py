"""
Envelope construction and parsing.
"""

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from amp_client.address import AddressResolver
from amp_client.errors import InvalidInputError
from amp_client.models.attachment import Attachment
from amp_client.models.envelope import Envelope, Message, MessageType, Payload, Priority

logger = logging.getLogger(__name__)

PRIORITIES = {p.value for p in Priority}
MESSAGE_TYPES = {t.value for t in MessageType}


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_message_id() -> str:
    return f"msg_{_epoch_ms()}_{secrets.token_hex(4)}"


def generate_attachment_id() -> str:
    return f"att_{_epoch_ms()}_{secrets.token_hex(4)}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def reply_subject(subject: str) -> str:
    return subject if subject.startswith("Re:") else f"Re: {subject}"


def create_envelope(
    sender: str,
    resolver: AddressResolver,
    to: str,
    subject: str,
    body: str,
    type: str = MessageType.NOTIFICATION.value,
    priority: str = Priority.NORMAL.value,
    in_reply_to: Optional[str] = None,
    context: Optional[Any] = None,
    thread_id: Optional[str] = None,
    attachments: Iterable[Attachment] = (),
) -> Message:
    """Build an unsigned message addressed to the fully resolved ``to``.

    ``thread_id`` is the root message id; it defaults to ``in_reply_to`` and,
    for a new conversation, to the message's own id.
    """
    if priority not in PRIORITIES:
        raise InvalidInputError(f"Invalid priority '{priority}'. Valid values: {', '.join(sorted(PRIORITIES))}")
    if type not in MESSAGE_TYPES:
        raise InvalidInputError(f"Invalid type '{type}'. Valid values: {', '.join(sorted(MESSAGE_TYPES))}")
    if not subject:
        raise InvalidInputError("Subject must not be empty")

    message_id = generate_message_id()
    recipient = resolver.resolve(to)
    return Message(
        envelope=Envelope(
            id=message_id,
            from_=sender,
            to=str(recipient),
            subject=subject,
            priority=priority,
            timestamp=utc_timestamp(),
            thread_id=thread_id or in_reply_to or message_id,
            in_reply_to=in_reply_to,
        ),
        payload=Payload(
            type=type,
            message=body,
            context=context,
            attachments=list(attachments),
        ),
    )


def parse_message(raw: Any) -> Optional[Message]:
    """Parse an inbound message dict. Returns None if invalid."""
    if not isinstance(raw, dict):
        return None
    try:
        return Message.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Discarding malformed message: {e.error_count()} validation error(s)")
        return None
