"""
Manifest ingestion.

Verification of a batch fans out in parallel under a concurrency bound and
joins fully; the verdicts are then persisted one at a time, each in its own
transaction, so a failure on one item never touches the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from hub_common.exceptions import IntegrityAnomaly, ManifestServiceError
from hub_common.infrastructure import DatabaseManager, ManifestRepository, ParticipantRepository

from .codec import DecodedManifest, ManifestInput
from .domain_verification import DomainVerification, DomainVerifier, VerificationReason
from .models import IngestOutcome, IngestReport, OutcomeStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IngestCandidate:
    """A verified-or-not manifest waiting to be persisted."""

    source: str
    verification: DomainVerification

    @property
    def manifest(self) -> DecodedManifest:
        return self.verification.manifest


def _key_hint(item: ManifestInput) -> Optional[str]:
    return item.signing_key if isinstance(item, DecodedManifest) else None


class ManifestIngestor:
    """Runs decode and domain verification, then stores the verdict."""

    def __init__(
        self,
        database: DatabaseManager,
        verifier: DomainVerifier,
        max_concurrency: int = 16,
    ) -> None:
        self.database = database
        self.verifier = verifier
        self.max_concurrency = max_concurrency

    def _failure(
        self, source: str, reason: str, manifest: Optional[DecodedManifest] = None, key: Optional[str] = None
    ) -> IngestOutcome:
        signing_key = manifest.signing_key if manifest is not None else key
        logger.warning(f"Manifest rejected: source={source} key={signing_key} reason={reason}")
        return IngestOutcome(
            source=source,
            status=OutcomeStatus.FAILED,
            signing_key=signing_key,
            master_key=manifest.master_key if manifest is not None else None,
            sequence=manifest.sequence if manifest is not None else None,
            reason=reason,
        )

    async def verify(self, item: ManifestInput, source: str) -> Union[IngestCandidate, IngestOutcome]:
        """Decode and verify one manifest; a failed outcome is returned instead of raised."""
        try:
            verification = await self.verifier.verify(item)
        except ManifestServiceError as e:
            return self._failure(source, f"{type(e).__name__}: {e.message}", key=_key_hint(item))

        if verification.reason is VerificationReason.NO_MASTER_KEY:
            anomaly = IntegrityAnomaly(
                f"Manifest for {verification.manifest.signing_key} has no master key: {verification.message}"
            )
            return self._failure(
                source, f"IntegrityAnomaly: {anomaly.message}", manifest=verification.manifest
            )
        return IngestCandidate(source=source, verification=verification)

    async def persist(self, candidate: IngestCandidate, seen_at: Optional[datetime] = None) -> IngestOutcome:
        """Store one verdict; a verified signature also records an observation of the key."""
        verification = candidate.verification
        manifest = candidate.manifest
        signature_verified = verification.verified_manifest_signature
        domain_verified = verification.verified if verification.definitive else None
        seen_at = seen_at or datetime.now(timezone.utc)

        try:
            async with self.database.session_scope() as session:
                _, changed = await ManifestRepository(session).save(
                    signing_key=manifest.signing_key,
                    master_key=manifest.master_key,
                    sequence=manifest.sequence,
                    domain=manifest.domain,
                    raw=manifest.raw,
                    signature_verified=signature_verified,
                    domain_verified=domain_verified,
                )
                if signature_verified:
                    await ParticipantRepository(session).observe([manifest.signing_key], seen_at)
        except SQLAlchemyError as e:
            logger.exception(f"Failed to store manifest {manifest.signing_key}#{manifest.sequence}")
            return self._failure(candidate.source, f"store error: {e}", manifest=manifest)

        if not signature_verified:
            return self._failure(
                candidate.source, f"SignatureInvalid: {verification.message}", manifest=manifest
            )

        if verification.verified:
            logger.info(f"Domain {manifest.domain} verified for {manifest.master_key}")
        else:
            logger.info(f"Manifest {manifest.signing_key} stored unverified: {verification.message}")

        return IngestOutcome(
            source=candidate.source,
            status=OutcomeStatus.INGESTED if changed else OutcomeStatus.UNCHANGED,
            signing_key=manifest.signing_key,
            master_key=manifest.master_key,
            sequence=manifest.sequence,
            signature_verified=True,
            domain_verified=verification.verified,
            reason=verification.message,
        )

    async def ingest(
        self, item: ManifestInput, source: str, seen_at: Optional[datetime] = None
    ) -> IngestOutcome:
        """Verify and persist a single manifest."""
        candidate = await self.verify(item, source)
        if isinstance(candidate, IngestOutcome):
            return candidate
        return await self.persist(candidate, seen_at)

    async def ingest_many(
        self, items: Iterable[ManifestInput], source: str, seen_at: Optional[datetime] = None
    ) -> IngestReport:
        """
        Ingest a batch of manifests from one source.

        Args:
            items: Manifests to ingest
            source: Name of the source, for logging and reports
            seen_at: Observation time recorded for verified signing keys

        Returns:
            Per-item outcomes and aggregate counts
        """
        items = list(items)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(item: ManifestInput) -> Union[IngestCandidate, IngestOutcome]:
            async with semaphore:
                return await self.verify(item, source)

        results = await asyncio.gather(*(bounded(item) for item in items), return_exceptions=True)

        report = IngestReport(source=source)
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    f"Unexpected error verifying manifest from {source}", exc_info=result
                )
                report.add(self._failure(source, f"unexpected error: {result}", key=_key_hint(item)))
            elif isinstance(result, IngestOutcome):
                report.add(result)
            else:
                report.add(await self.persist(result, seen_at))

        logger.info(
            f"Ingested {report.ingested} new, {report.unchanged} unchanged, "
            f"{report.failed} failed manifests from {source}"
        )
        return report
