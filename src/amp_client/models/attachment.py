"""
Attachment metadata carried in ``payload.attachments``.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ScanStatus(str, Enum):
    UNSCANNED = "unscanned"
    BASIC_CLEAN = "basic_clean"      # local MIME inspection only
    PENDING = "pending"
    SUSPICIOUS = "suspicious"
    REJECTED = "rejected"
    CLEAN = "clean"                  # provider scan completed
    SCAN_TIMEOUT = "scan_timeout"    # provider never left pending


class Attachment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    digest: str
    scan_status: str = ScanStatus.UNSCANNED.value
    download_url: Optional[str] = None
    expires_at: Optional[str] = None
    local_path: Optional[str] = None  # local-only, never on the wire

    def wire(self) -> dict[str, Any]:
        return self.model_dump(exclude={"local_path"})
