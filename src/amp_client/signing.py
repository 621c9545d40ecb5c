"""
Canonical signing string and Ed25519 sign/verify.

The signing string is a wire contract shared with every counterparty::

    from|to|subject|priority|in_reply_to|base64(sha256(canonical_json(payload)))

``id`` and ``timestamp`` are not covered; providers may assign them.
Ed25519 signs the raw UTF-8 string; it hashes internally.
"""

import base64
import binascii
import hashlib
import json
import logging
from typing import Any, Mapping, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from amp_client.errors import CryptoError
from amp_client.models.envelope import Envelope, Message, Payload

logger = logging.getLogger(__name__)

EnvelopeLike = Union[Envelope, Mapping[str, Any]]
PayloadLike = Union[Payload, Mapping[str, Any]]


def canonical_json(obj: Any) -> str:
    """Compact JSON with lexicographically sorted keys, non-ASCII kept as UTF-8."""
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def _payload_dict(payload: PayloadLike) -> Mapping[str, Any]:
    return payload.wire() if isinstance(payload, Payload) else payload


def _envelope_dict(envelope: EnvelopeLike) -> Mapping[str, Any]:
    return envelope.model_dump(by_alias=True) if isinstance(envelope, Envelope) else envelope


def payload_hash(payload: PayloadLike) -> str:
    digest = hashlib.sha256(canonical_json(_payload_dict(payload)).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def canonical_signing_string(envelope: EnvelopeLike, payload: PayloadLike) -> str:
    env = _envelope_dict(envelope)
    fields = [
        env.get("from") or "",
        env.get("to") or "",
        env.get("subject") or "",
        env.get("priority") or "",
        env.get("in_reply_to") or "",
        payload_hash(payload),
    ]
    return "|".join(str(f) for f in fields)


def sign(private_key: ed25519.Ed25519PrivateKey, text: str) -> str:
    return base64.b64encode(private_key.sign(text.encode("utf-8"))).decode("ascii")


def verify(public_key: ed25519.Ed25519PublicKey, text: str, signature: str) -> bool:
    try:
        raw = base64.b64decode(signature, validate=True)
        public_key.verify(raw, text.encode("utf-8"))
        return True
    except InvalidSignature:
        return False
    except (binascii.Error, ValueError, TypeError) as e:
        logger.warning(f"Malformed signature rejected: {e}")
        return False


def sign_message(message: Message, private_key: ed25519.Ed25519PrivateKey) -> Message:
    """Compute and attach the envelope signature. Must be re-run whenever ``from`` changes."""
    message.envelope.signature = sign(private_key, canonical_signing_string(message.envelope, message.payload))
    return message


def verify_message(message: Union[Message, Mapping[str, Any]], public_key: ed25519.Ed25519PublicKey) -> bool:
    """Verify against the payload exactly as received (extra provider fields included)."""
    if isinstance(message, Message):
        envelope, payload = message.envelope.model_dump(by_alias=True), message.payload.wire()
    else:
        envelope, payload = message.get("envelope") or {}, message.get("payload") or {}
    signature = envelope.get("signature")
    if not signature:
        return False
    return verify(public_key, canonical_signing_string(envelope, payload), signature)


# Key material helpers

def public_key_der(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def public_key_pem(public_key: ed25519.Ed25519PublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def public_key_hex(public_key: ed25519.Ed25519PublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


def fingerprint(public_key: ed25519.Ed25519PublicKey) -> str:
    """``SHA256:`` + base64 of the SHA-256 of the DER SubjectPublicKeyInfo."""
    digest = hashlib.sha256(public_key_der(public_key)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii")


def load_public_key(value: Union[str, bytes]) -> ed25519.Ed25519PublicKey:
    """Accept a PEM document, 64 hex chars, or base64 of the 32 raw bytes."""
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")
    value = value.strip()
    try:
        if value.startswith("-----BEGIN"):
            key = serialization.load_pem_public_key(value.encode("ascii"))
            if not isinstance(key, ed25519.Ed25519PublicKey):
                raise CryptoError("Public key is not Ed25519", code="invalid_key")
            return key
        if len(value) == 64:
            try:
                return ed25519.Ed25519PublicKey.from_public_bytes(bytes.fromhex(value))
            except ValueError:
                pass
        return ed25519.Ed25519PublicKey.from_public_bytes(base64.b64decode(value, validate=True))
    except CryptoError:
        raise
    except (ValueError, TypeError, binascii.Error) as e:
        raise CryptoError(f"Unreadable public key: {e}", code="invalid_key")
