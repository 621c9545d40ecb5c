"""
Address parsing and locality classification.

Format: ``name@[scope.]tenant.provider``. The provider is the last two domain
labels when three or more are present, so ``bob@eng.acme.crabmail.ai`` has
scope ``eng``, tenant ``acme`` and provider ``crabmail.ai``. Counterparties use
the same split, which keeps routing and signing in agreement.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

DEFAULT_TENANT = "default"
DEFAULT_PROVIDER_DOMAIN = "aimaestro.local"
LEGACY_LOCAL_ALIASES = ("local", DEFAULT_PROVIDER_DOMAIN)

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_NAME_RE = re.compile(r"^[^\s\x00-\x1f\x7f@/\\]+$")
_NAME_JUNK_RE = re.compile(r"[\s\x00-\x1f\x7f@/\\]+")


@dataclass(frozen=True)
class Address:
    name: str
    tenant: str
    provider: str
    scope: Optional[str] = None
    is_local: bool = False

    def __str__(self) -> str:
        return build_address(self.name, self.tenant, self.provider, self.scope)


def build_address(name: str, tenant: str = DEFAULT_TENANT, provider: str = DEFAULT_PROVIDER_DOMAIN,
                  scope: Optional[str] = None) -> str:
    domain = f"{scope}.{tenant}.{provider}" if scope else f"{tenant}.{provider}"
    return f"{name}@{domain}"


def sanitize_address_for_path(address: str) -> str:
    """Turn an address into a single safe directory name."""
    return re.sub(r"[^a-zA-Z0-9_-]", "", re.sub(r"[@.]", "_", address))


def split_domain(domain: str) -> Optional[tuple[Optional[str], str, str]]:
    """Return ``(scope, tenant, provider)`` or None if the domain is malformed."""
    labels = domain.lower().split(".")
    if not all(_LABEL_RE.fullmatch(label) for label in labels):
        return None
    if len(labels) == 1:
        return None, DEFAULT_TENANT, labels[0]
    if len(labels) == 2:
        return None, labels[0], labels[1]
    provider = ".".join(labels[-2:])
    tenant = labels[-3]
    scope = ".".join(labels[:-3]) or None
    return scope, tenant, provider


class AddressResolver:
    """Resolves recipient strings against the caller's tenant and mesh domain.

    Pure: the organization fallback is looked up once at the process boundary
    and handed in, never fetched here.
    """

    def __init__(
        self,
        tenant: Optional[str] = None,
        local_domain: str = DEFAULT_PROVIDER_DOMAIN,
        legacy_aliases: Iterable[str] = LEGACY_LOCAL_ALIASES,
        organization: Optional[str] = None,
    ):
        self.tenant = tenant
        self.local_domain = local_domain.lower()
        self.local_providers = frozenset({self.local_domain, *(a.lower() for a in legacy_aliases)})
        self.organization = organization

    @property
    def default_tenant(self) -> str:
        return self.tenant or self.organization or DEFAULT_TENANT

    def is_local_provider(self, provider: str) -> bool:
        return provider.lower() in self.local_providers

    def resolve(self, value: str) -> Address:
        value = (value or "").strip()
        name, sep, domain = value.rpartition("@")
        if sep and name and domain and _NAME_RE.fullmatch(name):
            parts = split_domain(domain)
            if parts is not None:
                scope, tenant, provider = parts
                return Address(name, tenant, provider, scope, self.is_local_provider(provider))
        # Bare name, or anything malformed: the whole string becomes a name, with
        # characters a name cannot hold collapsed to "_" so build() re-resolves to it.
        return Address(_NAME_JUNK_RE.sub("_", value) or "_", self.default_tenant, self.local_domain, None, True)

    def build(self, name: str, tenant: Optional[str] = None, provider: Optional[str] = None,
              scope: Optional[str] = None) -> str:
        return build_address(name, tenant or self.default_tenant, provider or self.local_domain, scope)
