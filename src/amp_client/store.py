"""
Per-identity message store.

One JSON file per message::

    inbox/<sanitized sender>/<id>.json
    sent/<sanitized recipient>/<id>.json

Older installs wrote ``inbox/<id>.json`` directly; lookups still check that
flat layout first. Writes replace whole files, so concurrent writers on
different ids never interfere.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from pydantic import ValidationError

from amp_client.address import sanitize_address_for_path
from amp_client.errors import InvalidInputError, MessageNotFoundError
from amp_client.models.envelope import LocalInfo, Message

logger = logging.getLogger(__name__)

MESSAGE_ID_RE = re.compile(r"^msg[_-][0-9]+[_-][a-zA-Z0-9]+$")
ATTACHMENT_ID_RE = re.compile(r"^att[_-][0-9]+[_-][a-zA-Z0-9]+$")
BOXES = ("inbox", "sent")


def validate_message_id(message_id: str) -> str:
    if not isinstance(message_id, str) or not MESSAGE_ID_RE.fullmatch(message_id):
        raise InvalidInputError(f"Invalid message ID format: {message_id!r}", details={"id": message_id})
    return message_id


def validate_attachment_id(attachment_id: str) -> str:
    if not isinstance(attachment_id, str) or not ATTACHMENT_ID_RE.fullmatch(attachment_id):
        raise InvalidInputError(f"Invalid attachment ID format: {attachment_id!r}", details={"id": attachment_id})
    return attachment_id


def write_json(path: Path, data: Any, mode: Optional[int] = None) -> Path:
    """Write ``data`` to ``path`` through a sibling temp file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    return path


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MessageStore:
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _box_dir(self, box: str) -> Path:
        if box not in BOXES:
            raise InvalidInputError(f"Unknown mailbox {box!r}; expected one of {BOXES}")
        return self.root / box

    # Writing

    def save_inbox(self, message: Message) -> Path:
        validate_message_id(message.id)
        local = message.local or LocalInfo()
        local.received_at = local.received_at or _now()
        local.status = local.status or "unread"
        message.local = local
        sender = sanitize_address_for_path(message.envelope.from_) or "unknown"
        path = self._box_dir("inbox") / sender / f"{message.id}.json"
        write_json(path, message.record())
        logger.debug(f"Stored inbound {message.id} at {path}")
        return path

    def save_sent(self, message: Message) -> Path:
        validate_message_id(message.id)
        local = message.local or LocalInfo()
        local.sent_at = local.sent_at or _now()
        message.local = local
        recipient = sanitize_address_for_path(message.envelope.to) or "unknown"
        path = self._box_dir("sent") / recipient / f"{message.id}.json"
        write_json(path, message.record())
        return path

    # Lookup

    def find(self, message_id: str, box: str = "inbox") -> Optional[Path]:
        validate_message_id(message_id)
        base = self._box_dir(box)
        flat = base / f"{message_id}.json"
        if flat.is_file():
            return flat
        if not base.is_dir():
            return None
        for partition in base.iterdir():
            candidate = partition / f"{message_id}.json"
            if partition.is_dir() and candidate.is_file():
                return candidate
        return None

    def contains(self, message_id: str, box: str = "inbox") -> bool:
        return self.find(message_id, box) is not None

    def get(self, message_id: str, box: str = "inbox") -> Message:
        path = self.find(message_id, box)
        if path is None:
            raise MessageNotFoundError(message_id, box)
        try:
            return _read(path)
        except FileNotFoundError:
            raise MessageNotFoundError(message_id, box)

    def _files(self, box: str) -> Iterator[Path]:
        base = self._box_dir(box)
        if not base.is_dir():
            return
        yield from base.glob("*.json")
        yield from base.glob("*/*.json")

    def list(self, box: str = "inbox", status: Optional[str] = None) -> list[Message]:
        """All messages in ``box``, newest first; ``status`` filters on unread/read."""
        messages = []
        for path in self._files(box):
            try:
                message = _read(path)
            except FileNotFoundError:
                continue  # deleted concurrently
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable message file {path}: {e}")
                continue
            if status and status != "all" and message.status != status:
                continue
            messages.append(message)
        messages.sort(key=lambda m: m.envelope.timestamp, reverse=True)
        return messages

    # Mutation

    def mark_read(self, message_id: str) -> bool:
        """Flip an inbox message to read. Missing messages are a no-op returning False."""
        path = self.find(message_id, "inbox")
        if path is None:
            return False
        try:
            raw = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        raw.setdefault("local", {})
        raw["local"] = raw["local"] or {}
        raw["local"]["status"] = "read"
        if isinstance(raw.get("metadata"), dict):
            raw["metadata"]["status"] = "read"
        if not path.exists():
            return False
        write_json(path, raw)
        return True

    def delete(self, message_id: str, box: str = "inbox") -> bool:
        path = self.find(message_id, box)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


def _read(path: Path) -> Message:
    return Message.model_validate(json.loads(path.read_text()))
