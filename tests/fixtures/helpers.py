"""
Test helper functions for the manifest service test suite.

Builders for validator keys, signed manifests, trust files and trusted-list
documents, plus stub fetchers standing in for the network.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, replace
from typing import Optional, Union

from hub_common.crypto import KeyType, PrivateKey, encode_node_public, generate_keypair, sign_message
from hub_common.exceptions import NetworkFailure
from hub_common.infrastructure import DatabaseConfig, DatabaseManager
from manifest_svc.codec import build_signed_manifest
from manifest_svc.domain_verification import DEFAULT_TRUST_FILE_PATH, build_attestation

MEMORY_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@dataclass(frozen=True)
class ValidatorKeys:
    master_private: PrivateKey
    master_public: bytes
    signing_private: PrivateKey
    signing_public: bytes

    @property
    def master_key(self) -> str:
        return encode_node_public(self.master_public)

    @property
    def signing_key(self) -> str:
        return encode_node_public(self.signing_public)


def make_keys(master_type: KeyType = "ed25519", signing_type: KeyType = "ed25519") -> ValidatorKeys:
    master_private, master_public = generate_keypair(master_type)
    signing_private, signing_public = generate_keypair(signing_type)
    return ValidatorKeys(master_private, master_public, signing_private, signing_public)


def rotate(keys: ValidatorKeys, signing_type: KeyType = "ed25519") -> ValidatorKeys:
    """Same master key, fresh operational key."""
    signing_private, signing_public = generate_keypair(signing_type)
    return replace(keys, signing_private=signing_private, signing_public=signing_public)


def make_manifest(keys: ValidatorKeys, sequence: int = 1, domain: Optional[str] = None) -> bytes:
    return build_signed_manifest(
        sequence=sequence,
        signing_private_key=keys.signing_private,
        signing_public_key=keys.signing_public,
        master_private_key=keys.master_private,
        master_public_key=keys.master_public,
        domain=domain,
    )


def make_manifest_b64(keys: ValidatorKeys, sequence: int = 1, domain: Optional[str] = None) -> str:
    return base64.b64encode(make_manifest(keys, sequence, domain)).decode("ascii")


def attestation_for(keys: ValidatorKeys, domain: str) -> str:
    return build_attestation(keys.master_private, domain, keys.master_key)


def trust_file(*entries: tuple[str, str]) -> str:
    """Render a TOML trust file with one VALIDATORS entry per (public_key, attestation)."""
    blocks = [
        f'[[VALIDATORS]]\npublic_key = "{public_key}"\nattestation = "{attestation}"\n'
        for public_key, attestation in entries
    ]
    return "\n".join(blocks) or "[METADATA]\nname = \"empty\"\n"


def trust_file_url(domain: str) -> str:
    return f"https://{domain}{DEFAULT_TRUST_FILE_PATH}"


class StubFetcher:
    """Maps URL to a response body or an exception to raise; unknown URLs 404."""

    def __init__(self, responses: Optional[dict[str, Union[str, Exception]]] = None) -> None:
        self.responses = dict(responses or {})
        self.calls: list[str] = []

    async def __call__(self, url: str) -> str:
        self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            raise NetworkFailure(f"GET {url} returned HTTP 404")
        if isinstance(response, Exception):
            raise response
        return response


def encode_blob(
    entries: list[tuple[str, str]],
    sequence: int = 1,
    expiration: int = 2_000_000_000,
    effective: Optional[int] = None,
) -> str:
    """Base64 list blob from (validation_public_key, manifest) pairs."""
    payload: dict[str, object] = {
        "sequence": sequence,
        "expiration": expiration,
        "validators": [
            {"validation_public_key": key, "manifest": manifest} for key, manifest in entries
        ],
    }
    if effective is not None:
        payload["effective"] = effective
    return base64.b64encode(json.dumps(payload).encode()).decode("ascii")


def sign_blob(publisher: ValidatorKeys, blob: str) -> str:
    return sign_message(publisher.signing_private, base64.b64decode(blob)).hex().upper()


def list_document(blobs: list[str], publisher: Optional[ValidatorKeys] = None, legacy: bool = False) -> dict:
    document: dict[str, object] = {"version": 1 if legacy else 2}
    if publisher is not None:
        document["public_key"] = publisher.master_public.hex().upper()
        document["manifest"] = make_manifest_b64(publisher)
    signatures = [sign_blob(publisher, blob) if publisher else "" for blob in blobs]
    if legacy:
        document["blob"] = blobs[0]
        document["signature"] = signatures[0]
    else:
        document["blobs_v2"] = [
            {"blob": blob, "signature": signature} for blob, signature in zip(blobs, signatures)
        ]
    return document


async def create_database() -> DatabaseManager:
    database = DatabaseManager(DatabaseConfig(url=MEMORY_DATABASE_URL))
    await database.create_all()
    return database
