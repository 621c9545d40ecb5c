"""
Provider capability interface and its two implementations.

The local mesh and external federated providers speak the same REST shape
once registered; they differ only in how registration is requested.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx

from amp_client.errors import ProviderError
from amp_client.identity import Identity, utc_now
from amp_client.models.registration import Registration
from amp_client.transport.http import HttpClient

logger = logging.getLogger(__name__)

KEY_ALGORITHM = "Ed25519"


class ProviderKind(str, Enum):
    MESH = "mesh"
    EXTERNAL = "external"


class Provider(Protocol):
    kind: ProviderKind
    domain: str

    async def register(self, identity: Identity, tenant: str, name: Optional[str] = None) -> Registration: ...
    async def route(self, message: dict[str, Any]) -> dict[str, Any]: ...
    async def fetch(self) -> list[dict[str, Any]]: ...
    async def ack(self, message_id: str) -> None: ...
    async def upload_init(self, filename: str, content_type: str, size: int, digest: str) -> dict[str, Any]: ...
    async def upload_bytes(self, upload_url: str, data: bytes, content_type: str) -> None: ...
    async def upload_confirm(self, attachment_id: str) -> dict[str, Any]: ...
    async def scan_status(self, attachment_id: str) -> str: ...
    async def download_attachment(self, attachment_id: str, dest: Path) -> int: ...
    async def close(self) -> None: ...


class HttpProvider:
    """REST provider bound to a versioned API base and (once registered) a credential."""

    kind = ProviderKind.EXTERNAL

    def __init__(
        self,
        domain: str,
        api_url: str,
        api_key: Optional[str] = None,
        route_url: Optional[str] = None,
        connect_timeout: float = 5.0,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.domain = domain
        self.api_url = api_url.rstrip("/")
        self.route_url = route_url or f"{self.api_url}/route"
        self.http = HttpClient(
            base_url=self.api_url,
            token=api_key,
            connect_timeout=connect_timeout,
            request_timeout=request_timeout,
            transport=transport,
        )

    @classmethod
    def from_registration(cls, registration: Registration, **kwargs: Any) -> "HttpProvider":
        return cls(
            registration.provider,
            registration.api_url,
            api_key=registration.api_key,
            route_url=registration.route_endpoint,
            **kwargs,
        )

    async def __aenter__(self) -> "HttpProvider":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def register(self, identity: Identity, tenant: str, name: Optional[str] = None) -> Registration:
        name = name or identity.name
        body = await self.http.post("/register", {
            "agent_name": name,
            "tenant": tenant,
            "fingerprint": identity.fingerprint,
            "public_key_hex": identity.public_key_hex,
            "key_algorithm": KEY_ALGORITHM,
        }, authenticated=False)
        return self._registration_from(body, identity, tenant, name, self.api_url)

    def _registration_from(self, body: dict[str, Any], identity: Identity, tenant: str, name: str,
                           api_url: str, route_url: Optional[str] = None) -> Registration:
        api_key = body.get("api_key") or body.get("apiKey")
        if not api_key:
            raise ProviderError(f"Provider {self.domain} did not return an API key")
        return Registration(
            provider=self.domain,
            api_url=api_url,
            route_url=route_url or f"{api_url.rstrip('/')}/route",
            address=body.get("address") or f"{name}@{tenant}.{self.domain}",
            api_key=api_key,
            registered_at=utc_now(),
            tenant=tenant,
            agent_name=name,
            provider_agent_id=body.get("agent_id") or body.get("agentId"),
            fingerprint=identity.fingerprint,
        )

    async def route(self, message: dict[str, Any]) -> dict[str, Any]:
        result = await self.http.post(self.route_url, message)
        return result if isinstance(result, dict) else {}

    async def fetch(self) -> list[dict[str, Any]]:
        body = await self.http.get("/inbox")
        messages = body.get("messages") if isinstance(body, dict) else body
        return [m for m in (messages or []) if isinstance(m, dict)]

    async def ack(self, message_id: str) -> None:
        await self.http.post(f"/inbox/{quote(message_id, safe='')}/ack")

    async def upload_init(self, filename: str, content_type: str, size: int, digest: str) -> dict[str, Any]:
        body = await self.http.post("/attachments/upload", {
            "filename": filename,
            "content_type": content_type,
            "size": size,
            "digest": digest,
        })
        if not isinstance(body, dict) or not body.get("upload_url") or not body.get("attachment_id"):
            raise ProviderError(f"Provider {self.domain} returned no upload slot")
        return body

    async def upload_bytes(self, upload_url: str, data: bytes, content_type: str) -> None:
        # Relative slot URLs are served by the provider itself and need the credential.
        await self.http.put_bytes(upload_url, data, content_type, authenticated=not upload_url.startswith("http"))

    async def upload_confirm(self, attachment_id: str) -> dict[str, Any]:
        body = await self.http.post(f"/attachments/{quote(attachment_id, safe='')}/confirm")
        return body if isinstance(body, dict) else {}

    async def scan_status(self, attachment_id: str) -> str:
        body = await self.http.get(f"/attachments/{quote(attachment_id, safe='')}")
        return str((body or {}).get("scan_status") or "pending")

    async def download_attachment(self, attachment_id: str, dest: Path) -> int:
        return await self.http.download(f"/attachments/{quote(attachment_id, safe='')}/download", dest)

    async def close(self) -> None:
        await self.http.close()


class ExternalProvider(HttpProvider):
    kind = ProviderKind.EXTERNAL


class MeshProvider(HttpProvider):
    """The local orchestrator mesh. Registration also carries the PEM key and tenant."""

    kind = ProviderKind.MESH

    async def register(self, identity: Identity, tenant: str, name: Optional[str] = None) -> Registration:
        name = name or identity.name
        body = await self.http.post("/register", {
            "name": name,
            "tenant": tenant,
            "public_key": identity.public_key_pem,
            "key_algorithm": KEY_ALGORITHM,
        }, authenticated=False)
        provider = body.get("provider") if isinstance(body.get("provider"), dict) else {}
        api_url = (provider.get("endpoint") or self.api_url).rstrip("/")
        return self._registration_from(body, identity, tenant, name, api_url)
