"""
Manifest wire codec and self-signature verification.

A manifest is a serialized object: a sequence of fields, each a header
(type code, field code) followed by a type-specific payload, in canonical
(type, field) order. The signed portion is the ``MAN\\0`` prefix followed by
every field except Signature and MasterSignature.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional, Union

from hub_common.crypto import (
    PrivateKey,
    decode_node_public,
    encode_node_public,
    key_type_of,
    sign_message,
    verify_signature,
)
from hub_common.exceptions import DecodeError, SignatureInvalid

MANIFEST_PREFIX = b"MAN\x00"
MASTER_REVOCATION_SEQUENCE = 0xFFFFFFFF

TYPE_UINT16 = 1
TYPE_UINT32 = 2
TYPE_BLOB = 7

# (type code, field code)
FIELD_VERSION = (TYPE_UINT16, 16)
FIELD_SEQUENCE = (TYPE_UINT32, 4)
FIELD_PUBLIC_KEY = (TYPE_BLOB, 1)
FIELD_SIGNING_PUB_KEY = (TYPE_BLOB, 3)
FIELD_SIGNATURE = (TYPE_BLOB, 6)
FIELD_DOMAIN = (TYPE_BLOB, 7)
FIELD_MASTER_SIGNATURE = (TYPE_BLOB, 18)

KNOWN_FIELDS = {
    FIELD_VERSION: "version",
    FIELD_SEQUENCE: "sequence",
    FIELD_PUBLIC_KEY: "public_key",
    FIELD_SIGNING_PUB_KEY: "signing_pub_key",
    FIELD_SIGNATURE: "signature",
    FIELD_DOMAIN: "domain",
    FIELD_MASTER_SIGNATURE: "master_signature",
}
SIGNATURE_FIELDS = {FIELD_SIGNATURE, FIELD_MASTER_SIGNATURE}

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")

ENCODING_HEX = "hex"
ENCODING_BASE64 = "base64"


@dataclass(frozen=True, slots=True)
class DecodedManifest:
    """Normalized manifest. Keys are held in base58 node-public form."""

    signing_key: str
    master_key: str | None
    sequence: int
    domain: str | None
    signature: bytes
    master_signature: bytes | None
    version: int | None
    raw: bytes
    signing_data: bytes

    @property
    def hex(self) -> str:
        return self.raw.hex().upper()

    @property
    def signing_public_key(self) -> bytes:
        return decode_node_public(self.signing_key)

    @property
    def master_public_key(self) -> bytes | None:
        if self.master_key is None:
            return None
        return decode_node_public(self.master_key)

    def summary(self) -> dict[str, object]:
        return {
            "signing_key": self.signing_key,
            "master_key": self.master_key,
            "sequence": self.sequence,
            "domain": self.domain,
        }


@dataclass(frozen=True, slots=True)
class EncodedManifest:
    """A manifest still in wire form: raw bytes, or hex/base64 text.

    ``encoding`` pins how text is read; when unset, hex is tried before base64.
    """

    payload: bytes | str
    encoding: Optional[str] = None


ManifestInput = Union[EncodedManifest, DecodedManifest]


def _field_header(type_code: int, field_code: int) -> bytes:
    if type_code < 16 and field_code < 16:
        return bytes([(type_code << 4) | field_code])
    if type_code < 16:
        return bytes([type_code << 4, field_code])
    if field_code < 16:
        return bytes([field_code, type_code])
    return bytes([0, type_code, field_code])


def _encode_length(length: int) -> bytes:
    if length <= 192:
        return bytes([length])
    if length <= 12480:
        length -= 193
        return bytes([193 + (length >> 8), length & 0xFF])
    if length <= 918744:
        length -= 12481
        return bytes([241 + (length >> 16), (length >> 8) & 0xFF, length & 0xFF])
    msg = f"Variable-length field too long: {length}"
    raise ValueError(msg)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    @property
    def exhausted(self) -> bool:
        return self.offset >= len(self.data)

    def take(self, count: int) -> bytes:
        end = self.offset + count
        if end > len(self.data):
            raise DecodeError(f"Manifest truncated at byte {self.offset} (needed {count})")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def field_header(self) -> tuple[int, int]:
        first = self.byte()
        type_code, field_code = first >> 4, first & 0x0F
        if type_code == 0:
            type_code = self.byte()
        if field_code == 0:
            field_code = self.byte()
        return type_code, field_code

    def length(self) -> int:
        b1 = self.byte()
        if b1 <= 192:
            return b1
        if b1 <= 240:
            return 193 + (b1 - 193) * 256 + self.byte()
        if b1 <= 254:
            b2, b3 = self.byte(), self.byte()
            return 12481 + (b1 - 241) * 65536 + b2 * 256 + b3
        raise DecodeError("Invalid variable-length prefix")


def _wire_candidates(payload: bytes | str, encoding: Optional[str]) -> list[bytes]:
    """Possible binary forms of ``payload``, most likely first."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return [bytes(payload)]
    if not isinstance(payload, str):
        raise DecodeError(f"Unsupported manifest payload type: {type(payload).__name__}")
    text = payload.strip()
    if not text:
        raise DecodeError("Empty manifest payload")
    if encoding not in (None, ENCODING_HEX, ENCODING_BASE64):
        raise DecodeError(f"Unsupported manifest encoding: {encoding}")

    candidates: list[bytes] = []
    if encoding in (None, ENCODING_HEX):
        if len(text) % 2 == 0 and _HEX_RE.match(text):
            candidates.append(binascii.unhexlify(text))
        elif encoding == ENCODING_HEX:
            raise DecodeError("Manifest is not valid hex")
    if encoding in (None, ENCODING_BASE64):
        try:
            candidates.append(base64.b64decode(text, validate=True))
        except (binascii.Error, ValueError) as e:
            if not candidates:
                raise DecodeError(f"Manifest is neither hex nor base64: {e}") from e
    return candidates


def _public_key_text(blob: bytes, label: str) -> str:
    try:
        key_type_of(blob)
        return encode_node_public(blob)
    except ValueError as e:
        raise DecodeError(f"Invalid {label}: {e}") from e


def decode_manifest(payload: bytes | str, encoding: Optional[str] = None) -> DecodedManifest:
    """Parse a manifest from binary, hex or base64 form.

    Text that reads as both hex and base64 is parsed as hex first and as
    base64 if the hex bytes are not a manifest. Pass ``encoding`` to pin one.

    Raises:
        DecodeError: on malformed encoding, unknown or repeated fields,
            non-canonical field order, or missing required fields.
    """
    errors: list[DecodeError] = []
    for raw in _wire_candidates(payload, encoding):
        try:
            return _parse_manifest(raw)
        except DecodeError as e:
            errors.append(e)
    raise errors[0]


def _parse_manifest(raw: bytes) -> DecodedManifest:
    reader = _Reader(raw)
    values: dict[str, object] = {}
    signed_parts: list[bytes] = []
    previous: tuple[int, int] | None = None

    while not reader.exhausted:
        start = reader.offset
        key = reader.field_header()
        if previous is not None and key <= previous:
            raise DecodeError(f"Manifest field {key} out of canonical order")
        previous = key

        type_code = key[0]
        if type_code == TYPE_UINT16:
            value: object = int.from_bytes(reader.take(2), "big")
        elif type_code == TYPE_UINT32:
            value = int.from_bytes(reader.take(4), "big")
        elif type_code == TYPE_BLOB:
            value = reader.take(reader.length())
        else:
            raise DecodeError(f"Unsupported field type {type_code} in manifest")

        name = KNOWN_FIELDS.get(key)
        if name is not None:
            values[name] = value
        if key not in SIGNATURE_FIELDS:
            signed_parts.append(raw[start:reader.offset])

    if "sequence" not in values:
        raise DecodeError("Manifest is missing its sequence")
    sequence = int(values["sequence"])

    signing_blob = values.get("signing_pub_key")
    if not signing_blob:
        if sequence == MASTER_REVOCATION_SEQUENCE:
            raise DecodeError("Master key revocation manifests carry no signing key")
        raise DecodeError("Manifest is missing its signing key")
    signature = values.get("signature")
    if not signature:
        raise DecodeError("Manifest is missing its signature")

    master_blob = values.get("public_key")
    domain_blob = values.get("domain")
    domain = None
    if domain_blob:
        try:
            domain = bytes(domain_blob).decode("ascii")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Manifest domain is not ASCII: {e}") from e

    version = values.get("version")
    return DecodedManifest(
        signing_key=_public_key_text(bytes(signing_blob), "signing key"),
        master_key=_public_key_text(bytes(master_blob), "master key") if master_blob else None,
        sequence=sequence,
        domain=domain,
        signature=bytes(signature),
        master_signature=bytes(values["master_signature"]) if values.get("master_signature") else None,
        version=int(version) if version is not None else None,
        raw=raw,
        signing_data=MANIFEST_PREFIX + b"".join(signed_parts),
    )


def normalize_manifest(item: ManifestInput) -> DecodedManifest:
    """Single entry point turning any manifest input into a decoded manifest."""
    if isinstance(item, DecodedManifest):
        return item
    if isinstance(item, EncodedManifest):
        return decode_manifest(item.payload, item.encoding)
    raise DecodeError(f"Unsupported manifest input: {type(item).__name__}")


def verify_manifest_signature(manifest: DecodedManifest, *, include_master: bool = False) -> bool:
    """Check the signing-key signature, and optionally the master cross-signature."""
    try:
        signing_public = manifest.signing_public_key
    except ValueError:
        return False
    if not verify_signature(signing_public, manifest.signing_data, manifest.signature):
        return False
    if not include_master:
        return True
    if manifest.master_key is None or manifest.master_signature is None:
        return False
    return verify_signature(
        manifest.master_public_key, manifest.signing_data, manifest.master_signature
    )


def load_manifest(item: ManifestInput) -> DecodedManifest:
    """Decode a manifest and require a valid embedded signature.

    Raises:
        DecodeError: malformed encoding
        SignatureInvalid: the signing-key signature does not verify
    """
    manifest = normalize_manifest(item)
    if not verify_manifest_signature(manifest):
        raise SignatureInvalid(
            f"Manifest signature invalid for signing key {manifest.signing_key} "
            f"(sequence {manifest.sequence})"
        )
    return manifest


def encode_manifest(
    *,
    sequence: int,
    signing_public_key: bytes | None,
    master_public_key: bytes | None = None,
    domain: str | None = None,
    version: int | None = None,
    signature: bytes | None = None,
    master_signature: bytes | None = None,
) -> bytes:
    """Serialize manifest fields in canonical order."""
    fields: list[tuple[tuple[int, int], bytes]] = []
    if version is not None:
        fields.append((FIELD_VERSION, version.to_bytes(2, "big")))
    fields.append((FIELD_SEQUENCE, sequence.to_bytes(4, "big")))
    for key, blob in (
        (FIELD_PUBLIC_KEY, master_public_key),
        (FIELD_SIGNING_PUB_KEY, signing_public_key),
        (FIELD_SIGNATURE, signature),
        (FIELD_DOMAIN, domain.encode("ascii") if domain is not None else None),
        (FIELD_MASTER_SIGNATURE, master_signature),
    ):
        if blob is not None:
            fields.append((key, _encode_length(len(blob)) + blob))

    fields.sort(key=lambda item: item[0])
    return b"".join(_field_header(*key) + body for key, body in fields)


def build_signed_manifest(
    *,
    sequence: int,
    signing_private_key: PrivateKey,
    signing_public_key: bytes,
    master_private_key: PrivateKey | None,
    master_public_key: bytes | None,
    domain: str | None = None,
) -> bytes:
    """Produce a manifest signed by the signing key and cross-signed by the master key."""
    unsigned = encode_manifest(
        sequence=sequence,
        signing_public_key=signing_public_key,
        master_public_key=master_public_key,
        domain=domain,
    )
    signing_data = MANIFEST_PREFIX + unsigned
    signature = sign_message(signing_private_key, signing_data)
    master_signature = (
        sign_message(master_private_key, signing_data) if master_private_key is not None else None
    )
    return encode_manifest(
        sequence=sequence,
        signing_public_key=signing_public_key,
        master_public_key=master_public_key,
        domain=domain,
        signature=signature,
        master_signature=master_signature,
    )
