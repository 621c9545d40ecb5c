"""Canonical signing string, Ed25519 sign/verify and key helpers."""

import base64
import hashlib

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from amp_client.address import AddressResolver
from amp_client.envelope import create_envelope
from amp_client.errors import CryptoError
from amp_client.signing import (
    canonical_json,
    canonical_signing_string,
    fingerprint,
    load_public_key,
    payload_hash,
    public_key_der,
    public_key_hex,
    public_key_pem,
    sign,
    sign_message,
    verify,
    verify_message,
)


@pytest.fixture
def keypair():
    private_key = ed25519.Ed25519PrivateKey.generate()
    return private_key, private_key.public_key()


@pytest.fixture
def message():
    resolver = AddressResolver(tenant="acme", local_domain="mesh.local")
    return create_envelope(
        "agent@acme.mesh.local", resolver, "bob@other.provider.ai", "Build status", "All green",
        priority="high", context={"build": 42, "branch": "main"},
    )


def test_canonical_json_is_compact_sorted_utf8():
    assert canonical_json({"b": 1, "a": {"d": [1, 2], "c": "ü"}}) == '{"a":{"c":"ü","d":[1,2]},"b":1}'


def test_signing_string_layout(message):
    text = canonical_signing_string(message.envelope, message.payload)
    parts = text.split("|")
    assert parts[:5] == ["agent@acme.mesh.local", "bob@other.provider.ai", "Build status", "high", ""]
    expected = base64.b64encode(hashlib.sha256(canonical_json(message.payload.wire()).encode()).digest()).decode()
    assert parts[5] == expected == payload_hash(message.payload)


def test_signing_string_same_for_model_and_wire_dict(message):
    wire = message.wire()
    assert canonical_signing_string(message.envelope, message.payload) == \
        canonical_signing_string(wire["envelope"], wire["payload"])


def test_sign_verify(keypair, message):
    private_key, public_key = keypair
    text = canonical_signing_string(message.envelope, message.payload)
    assert verify(public_key, text, sign(private_key, text))


@pytest.mark.parametrize("field,value", [("subject", "Build status!"), ("priority", "low")])
def test_tampered_envelope_fails(keypair, message, field, value):
    private_key, public_key = keypair
    sign_message(message, private_key)
    assert verify_message(message, public_key)

    setattr(message.envelope, field, value)
    assert not verify_message(message, public_key)


def test_tampered_payload_fails(keypair, message):
    private_key, public_key = keypair
    sign_message(message, private_key)
    wire = message.wire()
    wire["payload"]["message"] = "All red"
    assert not verify_message(wire, public_key)


def test_changing_from_requires_resigning(keypair, message):
    private_key, public_key = keypair
    sign_message(message, private_key)
    message.envelope.from_ = "agent@acme.provider.ai"
    assert not verify_message(message, public_key)
    sign_message(message, private_key)
    assert verify_message(message, public_key)


def test_wrong_key_and_malformed_signature(keypair, message):
    private_key, _ = keypair
    other = ed25519.Ed25519PrivateKey.generate().public_key()
    sign_message(message, private_key)
    assert not verify_message(message, other)
    assert not verify(other, "text", "not base64 !!")


def test_missing_signature_does_not_verify(keypair, message):
    assert not verify_message(message, keypair[1])


def test_load_public_key_formats(keypair):
    _, public_key = keypair
    raw = bytes.fromhex(public_key_hex(public_key))
    for value in (public_key_pem(public_key), public_key_hex(public_key), base64.b64encode(raw).decode()):
        assert public_key_hex(load_public_key(value)) == public_key_hex(public_key)

    with pytest.raises(CryptoError):
        load_public_key("definitely not a key")


def test_fingerprint_format(keypair):
    _, public_key = keypair
    fp = fingerprint(public_key)
    assert fp.startswith("SHA256:")
    assert base64.b64decode(fp[len("SHA256:"):]) == hashlib.sha256(public_key_der(public_key)).digest()
