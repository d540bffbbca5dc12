"""
Domain attestation verification.

A validator operator proves control of a domain by publishing, at a fixed
well-known path under that domain, a TOML trust file whose ``VALIDATORS``
array lists ``{public_key, attestation}`` pairs. The attestation is a
signature by the master key over ``[domain-attestation-blob:{domain}:{key}]``.
Ownership of the well-known path is taken to imply control of the domain.
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from hub_common.crypto import PrivateKey, sign_message, verify_signature
from hub_common.exceptions import AttestationInvalid, ManifestServiceError, SignatureInvalid

from .codec import DecodedManifest, ManifestInput, normalize_manifest, verify_manifest_signature

logger = logging.getLogger(__name__)

DEFAULT_TRUST_FILE_PATH = "/.well-known/pft-ledger.toml"

TrustFileFetcher = Callable[[str], Awaitable[str]]


class VerificationReason(str, Enum):
    """Why a verification verdict was reached."""

    VERIFIED = "verified"
    NO_MASTER_KEY = "no_master_key"
    BAD_SIGNATURE = "bad_signature"
    NO_DOMAIN = "no_domain"
    FETCH_FAILED = "fetch_failed"
    MALFORMED_TRUST_FILE = "malformed_trust_file"
    KEY_NOT_LISTED = "key_not_listed"
    ATTESTATION_INVALID = "attestation_invalid"


# Verdicts that reflect the published state rather than a transient failure
DEFINITIVE_REASONS = frozenset(
    {
        VerificationReason.VERIFIED,
        VerificationReason.NO_DOMAIN,
        VerificationReason.KEY_NOT_LISTED,
        VerificationReason.ATTESTATION_INVALID,
    }
)


@dataclass(frozen=True, slots=True)
class DomainVerification:
    verified: bool
    verified_manifest_signature: bool
    message: str
    reason: VerificationReason
    manifest: DecodedManifest

    @property
    def definitive(self) -> bool:
        return self.reason in DEFINITIVE_REASONS

    def ensure_verified(self) -> DecodedManifest:
        """Return the manifest, or raise the error matching the verdict."""
        if not self.verified_manifest_signature:
            if self.reason is VerificationReason.BAD_SIGNATURE:
                raise SignatureInvalid(self.message)
            raise ManifestServiceError(self.message)
        if not self.verified:
            raise AttestationInvalid(self.message)
        return self.manifest

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "verified_manifest_signature": self.verified_manifest_signature,
            "message": self.message,
            "reason": self.reason.value,
            "manifest": self.manifest.summary(),
        }


def attestation_message(domain: str, master_key: str) -> bytes:
    return f"[domain-attestation-blob:{domain}:{master_key}]".encode()


def build_attestation(master_private_key: PrivateKey, domain: str, master_key: str) -> str:
    """Produce the hex attestation an operator publishes in the trust file."""
    return sign_message(master_private_key, attestation_message(domain, master_key)).hex().upper()


class DomainVerifier:
    """Deterministic verdict over (manifest, fetched trust file)."""

    def __init__(
        self,
        fetch_trust_file: TrustFileFetcher,
        trust_file_path: str = DEFAULT_TRUST_FILE_PATH,
    ) -> None:
        self.fetch_trust_file = fetch_trust_file
        self.trust_file_path = trust_file_path

    def trust_file_url(self, domain: str) -> str:
        return f"https://{domain}{self.trust_file_path}"

    async def verify(self, item: ManifestInput) -> DomainVerification:
        """
        Verify a manifest's signatures and its domain claim.

        Args:
            item: Encoded or already-decoded manifest

        Returns:
            The verdict; the first failing check decides it

        Raises:
            DecodeError: If an encoded manifest cannot be parsed
        """
        manifest = normalize_manifest(item)

        def verdict(verified: bool, signature_ok: bool, reason: VerificationReason, message: str):
            return DomainVerification(
                verified=verified,
                verified_manifest_signature=signature_ok,
                message=message,
                reason=reason,
                manifest=manifest,
            )

        if manifest.master_key is None:
            return verdict(
                False, False, VerificationReason.NO_MASTER_KEY,
                "Manifest has no identity key (master key missing)",
            )

        if not verify_manifest_signature(manifest, include_master=True):
            return verdict(
                False, False, VerificationReason.BAD_SIGNATURE,
                f"Cannot verify manifest signature for {manifest.signing_key}",
            )

        domain = manifest.domain
        if domain is None:
            return verdict(
                False, True, VerificationReason.NO_DOMAIN,
                "Manifest has no domain claimed",
            )

        url = self.trust_file_url(domain)
        try:
            document = await self.fetch_trust_file(url)
            trust_file = tomllib.loads(document)
        except (ManifestServiceError, TimeoutError, tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
            detail = getattr(e, "message", None) or str(e)
            return verdict(
                False, True, VerificationReason.FETCH_FAILED,
                f"Failed to fetch trust file from {domain}: {detail}",
            )

        entries = trust_file.get("VALIDATORS")
        if not isinstance(entries, list):
            return verdict(
                False, True, VerificationReason.MALFORMED_TRUST_FILE,
                f"Invalid trust file from {domain}: malformed trust file, missing VALIDATORS section",
            )

        matches = [
            entry
            for entry in entries
            if isinstance(entry, dict) and entry.get("public_key") == manifest.master_key
        ]
        if not matches:
            return verdict(
                False, True, VerificationReason.KEY_NOT_LISTED,
                f"Trust file from {domain} has no matching key in trust file for {manifest.master_key}",
            )

        message = attestation_message(domain, manifest.master_key)
        master_public = manifest.master_public_key
        for entry in matches:
            try:
                signature = bytes.fromhex(entry.get("attestation"))
            except (TypeError, ValueError):
                logger.debug(f"Undecodable attestation for {manifest.master_key} at {domain}")
                signature = None
            if signature is None or not verify_signature(master_public, message, signature):
                return verdict(
                    False, True, VerificationReason.ATTESTATION_INVALID,
                    f"Invalid attestation, cannot verify {domain}",
                )

        return verdict(True, True, VerificationReason.VERIFIED, f"{domain} has been verified")
