"""
REST HTTP client shared by the mesh and external providers.

Every request carries explicit connect/total timeouts. Transport failures are
mapped to ``ProviderUnreachableError`` and HTTP error statuses to
``ProviderError`` carrying the status code and the provider's own message.
"""

import asyncio
from pathlib import Path
from typing import Any, Optional

import httpx

from amp_client.errors import ProviderError, ProviderUnreachableError

USER_AGENT = "amp-client/0.1.0"


def error_message(resp: httpx.Response) -> str:
    """Provider error text: ``error`` or ``message`` from a JSON body, else the raw text."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        msg = body.get("error") or body.get("message")
        if isinstance(msg, dict):
            msg = msg.get("message")
        if msg:
            return str(msg)
    return resp.text[:200] or resp.reason_phrase


class HttpClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        connect_timeout: float = 5.0,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._request_timeout = request_timeout
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=httpx.Timeout(request_timeout, connect=connect_timeout),
            transport=transport,
        )

    def _auth_headers(self, authenticated: bool) -> dict[str, str]:
        headers: dict[str, str] = {}
        if authenticated and self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _send(self, method: str, path: str, authenticated: bool = True, bounded: bool = True,
                    **kwargs: Any) -> httpx.Response:
        # httpx only bounds each read/write phase; the deadline caps the whole exchange.
        deadline = self._request_timeout if bounded else None
        headers = {**self._auth_headers(authenticated), **kwargs.pop("headers", {})}
        try:
            resp = await asyncio.wait_for(self._client.request(method, path, headers=headers, **kwargs), deadline)
        except asyncio.TimeoutError:
            raise ProviderUnreachableError(f"Timed out contacting {self._base_url} after {deadline}s")
        except httpx.TimeoutException as e:
            raise ProviderUnreachableError(f"Timed out contacting {self._base_url}: {e.__class__.__name__}")
        except httpx.TransportError as e:
            raise ProviderUnreachableError(f"Could not connect to {self._base_url}: {e}")
        if resp.status_code >= 400:
            raise ProviderError(f"HTTP {resp.status_code}: {error_message(resp)}", status_code=resp.status_code)
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    async def get(self, path: str, authenticated: bool = True) -> Any:
        return self._json(await self._send("GET", path, authenticated))

    async def post(self, path: str, body: Optional[Any] = None, authenticated: bool = True) -> Any:
        return self._json(await self._send("POST", path, authenticated, json=body))

    async def put_bytes(self, url: str, data: bytes, content_type: str, authenticated: bool = False) -> None:
        """Raw upload; ``url`` is usually an absolute pre-signed slot URL."""
        # Bounded by the caller's transfer timeout instead of the request timeout.
        await self._send("PUT", url, authenticated, bounded=False, content=data, headers={"Content-Type": content_type})

    async def download(self, path: str, dest: Path, authenticated: bool = True) -> int:
        """Stream a response body into ``dest``; returns the byte count."""
        written = 0
        try:
            async with self._client.stream("GET", path, headers=self._auth_headers(authenticated)) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ProviderError(f"HTTP {resp.status_code}: {error_message(resp)}", status_code=resp.status_code)
                with open(dest, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
                        written += len(chunk)
        except httpx.TimeoutException as e:
            raise ProviderUnreachableError(f"Timed out downloading from {self._base_url}: {e.__class__.__name__}")
        except httpx.TransportError as e:
            raise ProviderUnreachableError(f"Could not connect to {self._base_url}: {e}")
        return written

    async def close(self) -> None:
        await self._client.aclose()
