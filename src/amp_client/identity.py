"""
Agent identity: name, tenant, provider domain and an Ed25519 keypair.

Layout of an identity directory::

    config.json
    keys/private.pem      0600
    keys/public.pem
    messages/inbox/<sender>/<id>.json
    messages/sent/<recipient>/<id>.json
    registrations/<provider>.json
    attachments/<att-id>/<filename>
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from amp_client.address import DEFAULT_PROVIDER_DOMAIN, DEFAULT_TENANT, build_address
from amp_client.errors import ConfigError, CryptoError, InvalidInputError, NotInitializedError
from amp_client.signing import fingerprint, public_key_hex, public_key_pem
from amp_client.store import write_json

logger = logging.getLogger(__name__)

CONFIG_VERSION = "1.1"
NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class AgentConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    tenant: str = DEFAULT_TENANT
    address: str
    fingerprint: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class ProviderConfig(BaseModel):
    domain: str = DEFAULT_PROVIDER_DOMAIN
    mesh_url: Optional[str] = None


class IdentityConfig(BaseModel):
    version: str = CONFIG_VERSION
    agent: AgentConfig
    provider: ProviderConfig = ProviderConfig()


def validate_agent_name(name: str) -> str:
    normalized = (name or "").strip().lower()
    if not NAME_RE.fullmatch(normalized):
        raise InvalidInputError(
            f"Invalid agent name '{name}': must start with a letter or digit and contain only "
            "letters, digits, dots, underscores and hyphens"
        )
    return normalized


class Identity:
    """One agent's identity, passed explicitly into every operation."""

    def __init__(
        self,
        root: Union[str, Path],
        name: str,
        tenant: str,
        private_key: ed25519.Ed25519PrivateKey,
        provider_domain: str = DEFAULT_PROVIDER_DOMAIN,
        mesh_url: Optional[str] = None,
    ):
        self.root = Path(root)
        self.name = name
        self.tenant = tenant
        self.provider_domain = provider_domain
        self.mesh_url = mesh_url
        self._private_key = private_key
        self._public_key = private_key.public_key()

    def __repr__(self) -> str:
        return f"Identity(address={self.address!r})"

    @property
    def address(self) -> str:
        return build_address(self.name, self.tenant, self.provider_domain)

    @property
    def private_key(self) -> ed25519.Ed25519PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> ed25519.Ed25519PublicKey:
        return self._public_key

    @property
    def public_key_pem(self) -> str:
        return public_key_pem(self._public_key)

    @property
    def public_key_hex(self) -> str:
        return public_key_hex(self._public_key)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self._public_key)

    # Paths

    @property
    def config_path(self) -> Path:
        return self.root / "config.json"

    @property
    def keys_dir(self) -> Path:
        return self.root / "keys"

    @property
    def messages_dir(self) -> Path:
        return self.root / "messages"

    @property
    def registrations_dir(self) -> Path:
        return self.root / "registrations"

    @property
    def attachments_dir(self) -> Path:
        return self.root / "attachments"

    @staticmethod
    def exists(root: Union[str, Path]) -> bool:
        root = Path(root)
        return (root / "config.json").is_file() and (root / "keys" / "private.pem").is_file()

    @classmethod
    def create(
        cls,
        root: Union[str, Path],
        name: str,
        tenant: str = DEFAULT_TENANT,
        provider_domain: str = DEFAULT_PROVIDER_DOMAIN,
        mesh_url: Optional[str] = None,
        force: bool = False,
    ) -> "Identity":
        """Generate a keypair and write config.json.

        ``force`` re-initializes an existing identity with new keys, which
        invalidates every signature made with the old ones.
        """
        root = Path(root)
        if cls.exists(root) and not force:
            raise ConfigError(f"Identity already exists at {root}. Pass force=True to regenerate keys.")
        name = validate_agent_name(name)

        _ensure_dirs(root)
        private_key = ed25519.Ed25519PrivateKey.generate()
        identity = cls(root, name, tenant, private_key, provider_domain, mesh_url)

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        private_path = identity.keys_dir / "private.pem"
        if private_path.exists():
            private_path.unlink()
        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(private_pem)
        (identity.keys_dir / "public.pem").write_text(identity.public_key_pem)
        os.chmod(identity.keys_dir / "public.pem", 0o644)

        config = IdentityConfig(
            agent=AgentConfig(
                name=name,
                tenant=tenant,
                address=identity.address,
                fingerprint=identity.fingerprint,
                created_at=utc_now(),
            ),
            provider=ProviderConfig(domain=provider_domain, mesh_url=mesh_url),
        )
        write_json(identity.config_path, config.model_dump(by_alias=True))
        logger.info(f"Initialized identity {identity.address} ({identity.fingerprint})")
        return identity

    @classmethod
    def load(cls, root: Union[str, Path]) -> "Identity":
        root = Path(root)
        if not cls.exists(root):
            raise NotInitializedError(f"No AMP identity at {root}")
        config = load_identity_config(root)
        try:
            private_key = serialization.load_pem_private_key(
                (root / "keys" / "private.pem").read_bytes(), password=None,
            )
        except (ValueError, TypeError) as e:
            raise CryptoError(f"Unreadable private key at {root / 'keys' / 'private.pem'}: {e}", code="missing_key")
        if not isinstance(private_key, ed25519.Ed25519PrivateKey):
            raise CryptoError("Private key is not Ed25519", code="invalid_key")
        _ensure_dirs(root)
        return cls(
            root,
            config.agent.name,
            config.agent.tenant,
            private_key,
            config.provider.domain,
            config.provider.mesh_url,
        )


def load_identity_config(root: Union[str, Path]) -> IdentityConfig:
    path = Path(root) / "config.json"
    try:
        return IdentityConfig.model_validate(json.loads(path.read_text()))
    except FileNotFoundError:
        raise NotInitializedError(f"No AMP identity at {root}")
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"Invalid identity config {path}: {e}")


def _ensure_dirs(root: Path) -> None:
    for sub in ("messages/inbox", "messages/sent", "registrations", "attachments"):
        (root / sub).mkdir(parents=True, exist_ok=True)
    keys = root / "keys"
    keys.mkdir(parents=True, exist_ok=True)
    os.chmod(keys, 0o700)
