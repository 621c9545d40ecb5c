"""
AMP error types.

Every failure surfaced by the client is an ``AMPError`` carrying a stable
``code`` so callers can branch without parsing messages.
"""

from typing import Any, Optional


class AMPError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class ConfigError(AMPError):
    def __init__(self, message: str, code: str = "config_error"):
        super().__init__(code, message)


class NotInitializedError(ConfigError):
    def __init__(self, message: str = "AMP identity not initialized. Create one with Identity.create()."):
        super().__init__(message, code="not_initialized")


# Input validation: rejected before any I/O.

class InvalidInputError(AMPError):
    def __init__(self, message: str, code: str = "invalid_input", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class AttachmentRejectedError(InvalidInputError):
    """An attachment violates a configured limit or the content-type blocklist."""

    def __init__(self, message: str, limit: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code="attachment_rejected", details={"limit": limit, **(details or {})})
        self.limit = limit


# Cryptographic: always fatal to the current operation.

class CryptoError(AMPError):
    def __init__(self, message: str, code: str = "crypto_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class DigestMismatchError(CryptoError):
    def __init__(self, message: str, expected: str, actual: str):
        super().__init__(message, code="digest_mismatch", details={"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


# Routing and delivery.

class DeliveryError(AMPError):
    def __init__(self, message: str, code: str = "delivery_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class NotRegisteredError(DeliveryError):
    def __init__(self, provider: str):
        super().__init__(
            f"Not registered with provider '{provider}'. Register first: client.register('{provider}', tenant=...)",
            code="not_registered",
            details={"provider": provider},
        )
        self.provider = provider


class RecipientNotFoundError(DeliveryError):
    def __init__(self, message: str, recipient: str):
        super().__init__(message, code="recipient_not_found", details={"recipient": recipient})
        self.recipient = recipient


# Transient network: reported with status, never retried automatically.

class ProviderError(AMPError):
    def __init__(self, message: str, status_code: Optional[int] = None, code: str = "provider_error"):
        super().__init__(code, message, {"status_code": status_code} if status_code is not None else None)
        self.status_code = status_code


class ProviderUnreachableError(ProviderError):
    def __init__(self, message: str):
        super().__init__(message, code="provider_unreachable")


# Security policy.

class AttachmentBlockedError(AMPError):
    def __init__(self, message: str, attachment_id: str, scan_status: str):
        super().__init__(
            "attachment_blocked", message,
            {"attachment_id": attachment_id, "scan_status": scan_status},
        )
        self.attachment_id = attachment_id
        self.scan_status = scan_status


class MessageNotFoundError(AMPError):
    def __init__(self, message_id: str, box: str = "inbox"):
        super().__init__("message_not_found", f"Message not found in {box}: {message_id}", {"box": box})
        self.message_id = message_id
