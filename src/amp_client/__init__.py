"""
amp-client — Agent Messaging Protocol client for Python.

Signed, federated, email-like messaging between autonomous agents.
"""

from amp_client.client import AMPClient, AsyncAMPClient
from amp_client.address import Address, AddressResolver
from amp_client.identity import Identity
from amp_client.config import Settings
from amp_client.delivery import DeliveryMethod, DeliveryResult, FetchResult
from amp_client.security import TrustLevel
from amp_client.errors import (
    AMPError,
    ConfigError,
    NotInitializedError,
    InvalidInputError,
    AttachmentRejectedError,
    CryptoError,
    DigestMismatchError,
    DeliveryError,
    NotRegisteredError,
    RecipientNotFoundError,
    ProviderError,
    ProviderUnreachableError,
    AttachmentBlockedError,
    MessageNotFoundError,
)

__version__ = "0.1.0"
__all__ = [
    "AMPClient",
    "AsyncAMPClient",
    "Address",
    "AddressResolver",
    "Identity",
    "Settings",
    "DeliveryMethod",
    "DeliveryResult",
    "FetchResult",
    "TrustLevel",
    "AMPError",
    "ConfigError",
    "NotInitializedError",
    "InvalidInputError",
    "AttachmentRejectedError",
    "CryptoError",
    "DigestMismatchError",
    "DeliveryError",
    "NotRegisteredError",
    "RecipientNotFoundError",
    "ProviderError",
    "ProviderUnreachableError",
    "AttachmentBlockedError",
    "MessageNotFoundError",
]
