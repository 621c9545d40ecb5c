"""
Attachment transfer: validation, local storage, provider upload/download.

Digests are ``sha256:<hex>`` over the original bytes and are re-checked after
every copy or transfer. A mismatch removes the copy and raises; content that
failed verification is never left behind for the caller.
"""

import asyncio
import hashlib
import logging
import mimetypes
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union
from urllib.parse import unquote, urlparse

import httpx

from amp_client.config import Settings
from amp_client.envelope import generate_attachment_id
from amp_client.errors import (
    AttachmentBlockedError,
    AttachmentRejectedError,
    DeliveryError,
    DigestMismatchError,
    InvalidInputError,
    ProviderError,
    ProviderUnreachableError,
)
from amp_client.models.attachment import Attachment, ScanStatus
from amp_client.providers import HttpProvider
from amp_client.store import validate_attachment_id
from amp_client.transport.http import HttpClient

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

BLOCKED_CONTENT_TYPES = frozenset({
    "application/x-executable",
    "application/x-sharedlib",
    "application/x-dosexec",
    "application/x-msdownload",
    "application/x-msi",
    "application/x-mach-binary",
    "application/x-sh",
    "application/x-shellscript",
    "text/x-shellscript",
    "text/x-script",
    "application/x-bat",
})

# (prefix, content type); order matters where prefixes overlap.
_MAGIC = (
    (b"\x7fELF", "application/x-executable"),
    (b"MZ", "application/x-dosexec"),
    (b"\xfe\xed\xfa\xce", "application/x-mach-binary"),
    (b"\xfe\xed\xfa\xcf", "application/x-mach-binary"),
    (b"\xce\xfa\xed\xfe", "application/x-mach-binary"),
    (b"\xcf\xfa\xed\xfe", "application/x-mach-binary"),
    (b"\xca\xfe\xba\xbe", "application/x-mach-binary"),
    (b"#!", "text/x-shellscript"),
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
)

_RESERVED_NAMES = {"con", "prn", "aux", "nul"} | {f"com{i}" for i in range(1, 10)} | {f"lpt{i}" for i in range(1, 10)}
_UNSAFE_CHARS = re.compile(r"[\x00-\x1f\x7f<>:\"|?*]")
MAX_FILENAME_LENGTH = 255
_CHUNK = 1024 * 1024


def sniff_content_type(path: PathLike) -> str:
    """Content type from the leading bytes; the name is only a tiebreaker for plain data."""
    path = Path(path)
    with open(path, "rb") as f:
        head = f.read(512)
    for prefix, content_type in _MAGIC:
        if head.startswith(prefix):
            return content_type
    guessed, _ = mimetypes.guess_type(path.name)
    if not head:
        return guessed or "application/octet-stream"
    if b"\x00" not in head:
        try:
            head.decode("utf-8")
        except UnicodeDecodeError:
            # A multi-byte character may straddle the 512-byte cut.
            try:
                head[:-3].decode("utf-8")
            except UnicodeDecodeError:
                return "application/octet-stream"
        if guessed and (guessed.startswith("text/") or guessed in ("application/json", "application/xml")):
            return guessed
        return "text/plain"
    return "application/octet-stream"


def is_blocked_content_type(content_type: str) -> bool:
    return content_type.split(";")[0].strip().lower() in BLOCKED_CONTENT_TYPES


def sanitize_filename(name: str) -> str:
    """A single safe path component, never empty, never a reserved device name."""
    base = re.split(r"[\\/]", name or "")[-1]
    base = _UNSAFE_CHARS.sub("_", base).strip().lstrip(".").strip()
    if not base:
        return "attachment"
    stem = base.split(".")[0].rstrip()
    if stem.lower() in _RESERVED_NAMES:
        base = f"_{base}"
    if len(base) > MAX_FILENAME_LENGTH:
        root, ext = os.path.splitext(base)
        ext = ext[:16]
        base = root[: MAX_FILENAME_LENGTH - len(ext)] + ext
    return base


def compute_digest(path: PathLike) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            sha.update(chunk)
    return f"sha256:{sha.hexdigest()}"


def digest_bytes(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def reserve_destination(dest_dir: Path, filename: str) -> Path:
    """Create an empty, not-yet-existing file for ``filename``, suffixing `` (n)`` on collision."""
    stem, ext = os.path.splitext(filename)
    candidate = dest_dir / filename
    counter = 1
    while True:
        try:
            fd = os.open(candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            os.close(fd)
            return candidate
        except FileExistsError:
            candidate = dest_dir / f"{stem} ({counter}){ext}"
            counter += 1


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


@dataclass
class ValidatedFile:
    path: Path
    size: int
    content_type: str
    filename: str


@dataclass
class DownloadReport:
    attachment_id: str
    filename: str
    status: str  # downloaded | blocked | failed
    path: Optional[Path] = None
    reason: Optional[str] = None


class AttachmentEngine:
    def __init__(
        self,
        storage_dir: PathLike,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage_dir = Path(storage_dir)
        self.settings = settings or Settings()
        self._transport = transport

    # Validation

    def validate(self, paths: Iterable[PathLike]) -> list[ValidatedFile]:
        """Enforce count, size, total and content-type limits. No network I/O."""
        paths = [Path(p).expanduser() for p in paths]
        s = self.settings
        if len(paths) > s.max_attachments:
            raise AttachmentRejectedError(
                f"Too many attachments: {len(paths)} (max {s.max_attachments})", limit="max_attachments",
            )
        validated = []
        total = 0
        for path in paths:
            if not path.is_file():
                raise InvalidInputError(f"Attachment not found: {path}", details={"path": str(path)})
            size = path.stat().st_size
            if size > s.max_attachment_bytes:
                raise AttachmentRejectedError(
                    f"Attachment {path.name} is {size} bytes (max {s.max_attachment_bytes})",
                    limit="max_attachment_bytes", details={"filename": path.name, "size": size},
                )
            total += size
            if total > s.max_total_attachment_bytes:
                raise AttachmentRejectedError(
                    f"Attachments total {total} bytes (max {s.max_total_attachment_bytes})",
                    limit="max_total_attachment_bytes", details={"total": total},
                )
            content_type = sniff_content_type(path)
            if is_blocked_content_type(content_type):
                raise AttachmentRejectedError(
                    f"Attachment {path.name} has blocked content type {content_type}",
                    limit="content_type", details={"filename": path.name, "content_type": content_type},
                )
            validated.append(ValidatedFile(path, size, content_type, sanitize_filename(path.name)))
        return validated

    # Local-only path

    def store_local(self, file: Union[ValidatedFile, PathLike]) -> Attachment:
        """Copy into local attachment storage and re-verify the copy's digest."""
        if not isinstance(file, ValidatedFile):
            path = Path(file)
            file = ValidatedFile(path, path.stat().st_size, sniff_content_type(path), sanitize_filename(path.name))

        digest = compute_digest(file.path)
        attachment_id = generate_attachment_id()
        target_dir = self.storage_dir / attachment_id
        target_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(target_dir, 0o700)
        target = target_dir / file.filename
        shutil.copyfile(file.path, target)

        copied = compute_digest(target)
        if copied != digest:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise DigestMismatchError(f"Attachment {file.filename} was corrupted while copying", digest, copied)

        # Only a MIME check ran here, so this is never reported as a scan verdict.
        blocked = is_blocked_content_type(file.content_type)
        return Attachment(
            id=attachment_id,
            filename=file.filename,
            content_type=file.content_type,
            size=file.size,
            digest=digest,
            scan_status=(ScanStatus.REJECTED if blocked else ScanStatus.BASIC_CLEAN).value,
            local_path=str(target),
        )

    # Provider path

    async def upload(self, file: ValidatedFile, provider: HttpProvider) -> Attachment:
        try:
            attachment = await asyncio.wait_for(self._upload(file, provider), timeout=self.settings.transfer_timeout)
        except asyncio.TimeoutError:
            raise ProviderUnreachableError(f"Upload of {file.filename} to {provider.domain} timed out")

        if attachment.scan_status == ScanStatus.PENDING.value:
            attachment.scan_status = await self.poll_scan_status(provider, attachment.id)
        if attachment.scan_status == ScanStatus.REJECTED.value:
            raise AttachmentRejectedError(
                f"Attachment {file.filename} was rejected by the {provider.domain} scanner",
                limit="provider_scan", details={"attachment_id": attachment.id},
            )
        return attachment

    async def _upload(self, file: ValidatedFile, provider: HttpProvider) -> Attachment:
        data = file.path.read_bytes()
        digest = digest_bytes(data)
        if len(data) != file.size:
            raise InvalidInputError(f"Attachment {file.filename} changed while being sent")

        slot = await provider.upload_init(file.filename, file.content_type, len(data), digest)
        attachment_id = validate_attachment_id(str(slot["attachment_id"]))
        await provider.upload_bytes(slot["upload_url"], data, file.content_type)
        info = await provider.upload_confirm(attachment_id)
        logger.info(f"Uploaded {file.filename} ({len(data)} bytes) to {provider.domain}")
        return Attachment(
            id=attachment_id,
            filename=file.filename,
            content_type=file.content_type,
            size=len(data),
            digest=digest,
            scan_status=info.get("scan_status") or ScanStatus.PENDING.value,
            download_url=info.get("download_url") or slot.get("download_url"),
            expires_at=info.get("expires_at") or slot.get("expires_at"),
        )

    async def poll_scan_status(self, provider: HttpProvider, attachment_id: str) -> str:
        """Poll until the scan leaves ``pending``; ``scan_timeout`` once attempts run out."""
        s = self.settings
        delay = s.scan_poll_interval

        async def _poll() -> str:
            nonlocal delay
            for attempt in range(s.scan_poll_attempts):
                try:
                    status = await provider.scan_status(attachment_id)
                except ProviderError as e:
                    logger.warning(f"Scan status check for {attachment_id} failed: {e}")
                    status = ScanStatus.PENDING.value
                if status != ScanStatus.PENDING.value:
                    return status
                if attempt < s.scan_poll_attempts - 1:
                    await asyncio.sleep(delay)
                    delay *= s.scan_poll_backoff
            return ScanStatus.SCAN_TIMEOUT.value

        try:
            status = await asyncio.wait_for(_poll(), timeout=s.transfer_timeout)
        except asyncio.TimeoutError:
            status = ScanStatus.SCAN_TIMEOUT.value
        if status == ScanStatus.SCAN_TIMEOUT.value:
            logger.warning(f"Scan of {attachment_id} did not finish; marked {status}")
        return status

    async def prepare(self, paths: Sequence[PathLike], provider: Optional[HttpProvider] = None) -> list[Attachment]:
        """Validate everything first, then upload (with a provider) or store locally."""
        files = self.validate(paths)
        if provider is None:
            return [self.store_local(f) for f in files]
        return [await self.upload(f, provider) for f in files]

    # Download

    async def download(
        self,
        attachment: Attachment,
        dest_dir: PathLike,
        provider: Optional[HttpProvider] = None,
        allow_suspicious: bool = False,
    ) -> Path:
        status = attachment.scan_status
        if status == ScanStatus.REJECTED.value:
            raise AttachmentBlockedError(
                f"{attachment.filename} was rejected by a security scan and cannot be downloaded",
                attachment.id, status,
            )
        if status == ScanStatus.SUSPICIOUS.value and not allow_suspicious:
            raise AttachmentBlockedError(
                f"{attachment.filename} was flagged suspicious; explicit approval is required to download it",
                attachment.id, status,
            )
        if status in (ScanStatus.PENDING.value, ScanStatus.SCAN_TIMEOUT.value, ScanStatus.UNSCANNED.value):
            logger.warning(f"Downloading {attachment.filename} with scan status '{status}'")

        dest_dir = Path(dest_dir).expanduser()
        dest_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(dest_dir, 0o700)
        dest = reserve_destination(dest_dir, sanitize_filename(attachment.filename))
        try:
            try:
                await asyncio.wait_for(self._fetch(attachment, dest, provider), timeout=self.settings.transfer_timeout)
            except asyncio.TimeoutError:
                raise ProviderUnreachableError(f"Download of {attachment.filename} timed out")
            actual = compute_digest(dest)
            if actual != attachment.digest:
                raise DigestMismatchError(
                    f"Digest mismatch for {attachment.filename}: expected {attachment.digest}, got {actual}",
                    attachment.digest, actual,
                )
        except BaseException:
            dest.unlink(missing_ok=True)
            raise
        return dest

    async def _fetch(self, attachment: Attachment, dest: Path, provider: Optional[HttpProvider]) -> None:
        if attachment.local_path:
            source = Path(attachment.local_path)
            if _is_within(source, self.storage_dir) and source.is_file():
                shutil.copyfile(source, dest)
                return

        url = attachment.download_url or ""
        if url.startswith("file://"):
            source = Path(unquote(urlparse(url).path))
            if not _is_within(source, Path(self.settings.agents_base).expanduser()):
                raise DeliveryError(f"Refusing local attachment source outside the agents directory: {source}")
            if not source.is_file():
                raise DeliveryError(f"Attachment source no longer exists: {source}")
            shutil.copyfile(source, dest)
            return

        if url.startswith(("http://", "https://")):
            if provider is not None and url.startswith(provider.api_url):
                await provider.http.download(url, dest)
                return
            client = HttpClient(
                base_url="",
                connect_timeout=self.settings.connect_timeout,
                request_timeout=self.settings.request_timeout,
                transport=self._transport,
            )
            try:
                await client.download(url, dest, authenticated=False)
            finally:
                await client.close()
            return

        if provider is not None:
            await provider.download_attachment(attachment.id, dest)
            return

        raise DeliveryError(
            f"No download source for {attachment.filename}: no URL and no provider registration",
            code="no_source",
        )

    async def download_all(
        self,
        attachments: Iterable[Attachment],
        dest_dir: PathLike,
        provider: Optional[HttpProvider] = None,
        allow_suspicious: bool = False,
    ) -> list[DownloadReport]:
        """Download each attachment; blocked and failed ones are reported, never skipped silently."""
        reports = []
        for att in attachments:
            try:
                path = await self.download(att, dest_dir, provider, allow_suspicious)
                reports.append(DownloadReport(att.id, att.filename, "downloaded", path=path))
            except AttachmentBlockedError as e:
                logger.warning(str(e))
                reports.append(DownloadReport(att.id, att.filename, "blocked", reason=str(e)))
            except (DigestMismatchError, ProviderError, DeliveryError, OSError) as e:
                logger.error(f"Download of {att.filename} failed: {e}")
                reports.append(DownloadReport(att.id, att.filename, "failed", reason=str(e)))
        return reports
