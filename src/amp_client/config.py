"""
Settings and the process-boundary adapter.

Nothing else in the package reads the environment; ``Settings.from_env`` and
``resolve_identity_dir`` turn it into explicit objects once, at startup.
"""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import httpx
from pydantic import BaseModel, ValidationError

from amp_client.address import DEFAULT_PROVIDER_DOMAIN, LEGACY_LOCAL_ALIASES
from amp_client.errors import ConfigError

logger = logging.getLogger(__name__)

MiB = 1024 * 1024
DEFAULT_AGENTS_BASE = Path.home() / ".agent-messaging" / "agents"
DEFAULT_MESH_URL = "http://localhost:23000"

# Known external providers; anything else is assumed to serve https://api.<domain>.
PROVIDER_APIS = {
    "crabmail.ai": "https://api.crabmail.ai",
}


class Settings(BaseModel):
    agents_base: Path = DEFAULT_AGENTS_BASE
    mesh_url: str = DEFAULT_MESH_URL
    local_domain: str = DEFAULT_PROVIDER_DOMAIN
    legacy_local_aliases: tuple[str, ...] = LEGACY_LOCAL_ALIASES

    max_attachments: int = 10
    max_attachment_bytes: int = 25 * MiB
    max_total_attachment_bytes: int = 100 * MiB

    connect_timeout: float = 5.0
    request_timeout: float = 30.0
    transfer_timeout: float = 300.0
    scan_poll_interval: float = 2.0
    scan_poll_attempts: int = 6
    scan_poll_backoff: float = 1.4

    @property
    def mesh_api_url(self) -> str:
        return f"{self.mesh_url.rstrip('/')}/api/v1"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        mapping = {
            "agents_base": "AMP_AGENTS_BASE",
            "mesh_url": "AMP_MESH_URL",
            "local_domain": "AMP_LOCAL_DOMAIN",
            "max_attachments": "AMP_MAX_ATTACHMENTS",
            "max_attachment_bytes": "AMP_MAX_ATTACHMENT_BYTES",
            "max_total_attachment_bytes": "AMP_MAX_TOTAL_ATTACHMENT_BYTES",
            "connect_timeout": "AMP_CONNECT_TIMEOUT",
            "request_timeout": "AMP_REQUEST_TIMEOUT",
            "transfer_timeout": "AMP_TRANSFER_TIMEOUT",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var)}
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid AMP settings in environment: {e}")


def resolve_identity_dir(settings: Settings, env: Optional[Mapping[str, str]] = None) -> Path:
    """``AMP_DIR`` wins; otherwise ``<agents_base>/<AMP_AGENT_NAME>``."""
    env = os.environ if env is None else env
    if env.get("AMP_DIR"):
        return Path(env["AMP_DIR"]).expanduser()
    name = env.get("AMP_AGENT_NAME")
    if name:
        return Path(settings.agents_base).expanduser() / name
    raise ConfigError("Cannot determine agent identity. Set AMP_DIR or AMP_AGENT_NAME.")


def provider_api_url(provider: str, api_url: Optional[str] = None) -> str:
    """Versioned API base for an external provider."""
    base = api_url or PROVIDER_APIS.get(provider.lower()) or f"https://api.{provider.lower()}"
    base = base.rstrip("/")
    return base if base.endswith("/v1") else f"{base}/v1"


def lookup_organization(mesh_url: str, timeout: float = 2.0,
                        transport: Optional[httpx.BaseTransport] = None) -> Optional[str]:
    """Ask the mesh for its organization name; None when unset or unreachable."""
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.get(f"{mesh_url.rstrip('/')}/api/organization")
        if resp.status_code >= 400:
            return None
        org = resp.json().get("organization")
    except (httpx.HTTPError, ValueError, AttributeError) as e:
        logger.debug(f"Organization lookup failed: {e}")
        return None
    return org or None
