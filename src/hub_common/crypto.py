"""
Key handling and signature verification for validator keys.

Validator keys are 33-byte public keys: an Ed25519 key is the 32 raw key bytes
prefixed with ``0xED``; a secp256k1 key is a compressed curve point (``0x02`` or
``0x03`` prefix). Keys are exchanged either as hex or as base58-check text
using the XRP alphabet with the node-public type prefix (``n9...`` strings).
"""
from __future__ import annotations

import binascii
import hashlib
from typing import Literal, Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)

KeyType = Literal["ed25519", "secp256k1"]
PrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey]

NODE_PUBLIC_PREFIX = b"\x1c"
ED25519_PREFIX = 0xED
PUBLIC_KEY_LENGTH = 33
# Order of the secp256k1 group; canonical signatures keep s in the lower half
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def sha512_half(data: bytes) -> bytes:
    """Return the first 32 bytes of the SHA-512 digest of ``data``."""
    return hashlib.sha512(data).digest()[:32]


def encode_node_public(public_key: bytes) -> str:
    """Encode a 33-byte public key as a base58 node-public string."""
    if len(public_key) != PUBLIC_KEY_LENGTH:
        msg = f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}"
        raise ValueError(msg)
    return base58.b58encode_check(
        NODE_PUBLIC_PREFIX + public_key, alphabet=base58.XRP_ALPHABET
    ).decode("ascii")


def decode_node_public(text: str) -> bytes:
    """Decode a base58 node-public string back into the 33-byte key."""
    try:
        payload = base58.b58decode_check(text, alphabet=base58.XRP_ALPHABET)
    except ValueError as e:
        msg = f"Invalid node public key {text!r}: {e}"
        raise ValueError(msg) from e
    if payload[:1] != NODE_PUBLIC_PREFIX or len(payload) != PUBLIC_KEY_LENGTH + 1:
        msg = f"Invalid node public key {text!r}: unexpected prefix or length"
        raise ValueError(msg)
    return payload[1:]


def parse_public_key(text: str) -> bytes:
    """Accept a public key in hex or base58 node-public form."""
    candidate = text.strip()
    if len(candidate) == PUBLIC_KEY_LENGTH * 2:
        try:
            return binascii.unhexlify(candidate)
        except binascii.Error:
            pass
    return decode_node_public(candidate)


def key_type_of(public_key: bytes) -> KeyType:
    if len(public_key) != PUBLIC_KEY_LENGTH:
        msg = f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}"
        raise ValueError(msg)
    if public_key[0] == ED25519_PREFIX:
        return "ed25519"
    if public_key[0] in (0x02, 0x03):
        return "secp256k1"
    msg = f"Unsupported public key prefix: 0x{public_key[0]:02X}"
    raise ValueError(msg)


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify ``signature`` over ``message`` for a 33-byte validator key.

    Ed25519 keys sign the message itself; secp256k1 keys sign the SHA-512-Half
    of the message with a DER-encoded ECDSA signature whose s lies in the
    lower half of the group order. Malformed keys or signatures verify as
    False.
    """
    try:
        key_type = key_type_of(public_key)
        if key_type == "ed25519":
            ed25519.Ed25519PublicKey.from_public_bytes(public_key[1:]).verify(signature, message)
            return True
        _, s = decode_dss_signature(signature)
        if s > SECP256K1_ORDER // 2:
            return False
        ec_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        ec_key.verify(signature, sha512_half(message), ec.ECDSA(Prehashed(hashes.SHA256())))
        return True
    except InvalidSignature:
        return False
    except (ValueError, TypeError):
        return False


def generate_keypair(key_type: KeyType = "ed25519") -> tuple[PrivateKey, bytes]:
    """Generate a private key and its 33-byte validator public key."""
    if key_type == "ed25519":
        private_key = ed25519.Ed25519PrivateKey.generate()
        raw = private_key.public_key().public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
        return private_key, bytes([ED25519_PREFIX]) + raw
    if key_type == "secp256k1":
        ec_private = ec.generate_private_key(ec.SECP256K1())
        compressed = ec_private.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        )
        return ec_private, compressed
    msg = f"Unsupported key type: {key_type}"
    raise ValueError(msg)


def sign_message(private_key: PrivateKey, message: bytes) -> bytes:
    """Sign ``message`` the way :func:`verify_signature` expects."""
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(message)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        der = private_key.sign(sha512_half(message), ec.ECDSA(Prehashed(hashes.SHA256())))
        r, s = decode_dss_signature(der)
        if s > SECP256K1_ORDER // 2:
            der = encode_dss_signature(r, SECP256K1_ORDER - s)
        return der
    msg = f"Unsupported private key type: {type(private_key).__name__}"
    raise TypeError(msg)
