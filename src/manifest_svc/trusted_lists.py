"""
Trusted-list sources.

A trusted list is published as a JSON document wrapping one or more base64
blobs. Each blob decodes to ``{sequence, expiration, effective?, validators}``
where every validator entry carries the manifest binding its operational key.
The list itself is untrusted input: it is validated structurally, and when a
publisher key is configured, the publisher's signatures are checked too.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from hub_common.crypto import encode_node_public, parse_public_key, verify_signature
from hub_common.exceptions import DecodeError, ManifestServiceError, NetworkFailure, SignatureInvalid
from hub_common.http_client import HttpClient

from .codec import (
    ENCODING_BASE64,
    DecodedManifest,
    EncodedManifest,
    decode_manifest,
    load_manifest,
)
from .models import ListBlob, ListDocument, ListEntry, SignedBlob, TrustedListSnapshot
from .rpc import NodeRpcClient, normalize_url

logger = logging.getLogger(__name__)

# Seconds between the Unix epoch and the ledger epoch (2000-01-01T00:00:00Z)
LEDGER_EPOCH_OFFSET = 946684800


def from_ledger_time(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds + LEDGER_EPOCH_OFFSET, tz=timezone.utc)


def to_ledger_time(moment: datetime) -> int:
    return int(moment.timestamp()) - LEDGER_EPOCH_OFFSET


def _decode_blob(signed: SignedBlob) -> tuple[bytes, ListBlob]:
    try:
        payload = base64.b64decode(signed.blob, validate=True)
        blob = ListBlob.model_validate(json.loads(payload))
    except (binascii.Error, ValueError, ValidationError) as e:
        raise DecodeError(f"Undecodable list blob: {e}") from e
    return payload, blob


def _publisher_manifest(manifest_text: Optional[str], publisher_key: str) -> DecodedManifest:
    if not manifest_text:
        raise SignatureInvalid("List carries no publisher manifest")
    manifest = load_manifest(EncodedManifest(manifest_text, ENCODING_BASE64))
    if manifest.master_key != publisher_key:
        raise SignatureInvalid(
            f"List manifest belongs to {manifest.master_key}, expected publisher {publisher_key}"
        )
    return manifest


def _check_blob_signature(payload: bytes, signed: SignedBlob, manifest: DecodedManifest) -> None:
    try:
        signature = bytes.fromhex(signed.signature or "")
    except ValueError as e:
        raise SignatureInvalid(f"List blob signature is not hex: {e}") from e
    if not signature or not verify_signature(manifest.signing_public_key, payload, signature):
        raise SignatureInvalid("List blob signature does not verify under the publisher key")


def list_signing_keys(entries: list[ListEntry], source: str) -> tuple[list[str], int]:
    """Operational keys named by the entries' manifests.

    Entries whose manifest does not decode are left out. Returns the keys and
    the number of entries excluded.
    """
    keys: list[str] = []
    rejected = 0
    for entry in entries:
        try:
            keys.append(decode_manifest(entry.manifest, ENCODING_BASE64).signing_key)
        except DecodeError as e:
            rejected += 1
            logger.warning(
                f"Excluding list entry from {source}: key={entry.validation_public_key} reason={e.message}"
            )
    return sorted(set(keys)), rejected


def parse_list_document(
    document: Any,
    *,
    source: str,
    publisher_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrustedListSnapshot:
    """
    Validate a published list document and select its active blob.

    Args:
        document: Parsed JSON document
        source: Name of the source, used as the membership tag
        publisher_key: Optional publisher master key (hex or base58); when set,
            the document manifest and every blob signature must verify
        now: Reference time for expiry checks

    Returns:
        Snapshot of the highest-sequence blob that is in effect and unexpired

    Raises:
        DecodeError: If the document is malformed or has no active blob
        SignatureInvalid: If the publisher manifest does not verify
    """
    try:
        parsed = ListDocument.model_validate(document)
    except ValidationError as e:
        raise DecodeError(f"Malformed trusted list from {source}: {e}") from e

    signed_blobs = parsed.signed_blobs()
    if not signed_blobs:
        raise DecodeError(f"No blob found in trusted list from {source}")

    expected_publisher = None
    document_manifest = None
    if publisher_key:
        try:
            expected_publisher = encode_node_public(parse_public_key(publisher_key))
        except ValueError as e:
            raise DecodeError(f"Invalid publisher key for {source}: {e}") from e
        if parsed.manifest:
            document_manifest = _publisher_manifest(parsed.manifest, expected_publisher)

    moment = to_ledger_time(now or datetime.now(timezone.utc))
    active: Optional[ListBlob] = None
    for signed in signed_blobs:
        try:
            payload, blob = _decode_blob(signed)
            if expected_publisher is not None:
                manifest = (
                    _publisher_manifest(signed.manifest, expected_publisher)
                    if signed.manifest
                    else document_manifest
                )
                if manifest is None:
                    raise SignatureInvalid("List carries no publisher manifest")
                _check_blob_signature(payload, signed, manifest)
        except ManifestServiceError as e:
            logger.warning(f"Rejecting blob from {source}: {e.message}")
            continue

        if blob.expiration <= moment:
            logger.info(f"Skipping expired blob {blob.sequence} from {source}")
            continue
        if blob.effective is not None and blob.effective > moment:
            logger.info(f"Skipping blob {blob.sequence} from {source}, not yet effective")
            continue
        if active is None or blob.sequence > active.sequence:
            active = blob

    if active is None:
        raise DecodeError(f"No active blob in trusted list from {source}")

    signing_keys, rejected = list_signing_keys(active.validators, source)
    return TrustedListSnapshot(
        source=source,
        sequence=active.sequence,
        expiration=from_ledger_time(active.expiration),
        effective=from_ledger_time(active.effective) if active.effective is not None else None,
        entries=active.validators,
        signing_keys=signing_keys,
        rejected=rejected,
    )


class TrustedListSource(ABC):
    """A named provider of the current trusted key set."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def fetch(self, now: Optional[datetime] = None) -> TrustedListSnapshot:
        """Fetch and validate the current snapshot."""
        ...


class HttpListSource(TrustedListSource):
    """Trusted list published as a JSON document over HTTP."""

    def __init__(
        self,
        name: str,
        url: str,
        http_client: HttpClient,
        publisher_key: Optional[str] = None,
    ) -> None:
        super().__init__(name)
        self.url = normalize_url(url)
        self.http_client = http_client
        self.publisher_key = publisher_key

    async def fetch(self, now: Optional[datetime] = None) -> TrustedListSnapshot:
        logger.info(f"Fetching trusted list {self.name} from {self.url}")
        document = await self.http_client.get_json(self.url)
        return parse_list_document(
            document, source=self.name, publisher_key=self.publisher_key, now=now
        )


class RpcListSource(TrustedListSource):
    """Trusted key set taken from a node's ``validators`` method.

    Manifests are looked up per key with the node's ``manifest`` method; keys
    the node has no manifest for are left out.
    """

    def __init__(self, name: str, rpc_client: NodeRpcClient, max_concurrency: int = 16) -> None:
        super().__init__(name)
        self.rpc_client = rpc_client
        self.max_concurrency = max_concurrency

    async def fetch(self, now: Optional[datetime] = None) -> TrustedListSnapshot:
        logger.info(f"Fetching trusted validators for {self.name} from {self.rpc_client.url}")
        keys = await self.rpc_client.fetch_trusted_validator_keys()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def lookup(key: str) -> Optional[ListEntry]:
            async with semaphore:
                try:
                    manifest = await self.rpc_client.fetch_manifest(key)
                except NetworkFailure as e:
                    logger.warning(f"Manifest lookup failed for {self.name}: key={key} reason={e.message}")
                    return None
            if manifest is None:
                return None
            return ListEntry(validation_public_key=key, manifest=manifest)

        entries = [entry for entry in await asyncio.gather(*(lookup(k) for k in keys)) if entry]
        signing_keys, rejected = list_signing_keys(entries, self.name)
        return TrustedListSnapshot(
            source=self.name,
            expiration=None,
            entries=entries,
            signing_keys=signing_keys,
            rejected=rejected + len(keys) - len(entries),
        )
