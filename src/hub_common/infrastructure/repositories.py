"""Database repositories used by the manifest service.

Batch passes are expressed as set-based UPDATE/DELETE statements executed on
the caller's session, so each pass commits or rolls back as a whole inside one
``DatabaseManager.session_scope()``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, func, select, tuple_, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import CycleRunRecord, ManifestRecord, ParticipantRecord, ensure_utc

_NO_SYNC = {"synchronize_session": False}


@dataclass(frozen=True, slots=True)
class AuthoritativeManifest:
    """The winning manifest row for one master key."""

    id: int
    master_key: str
    signing_key: str
    sequence: int
    candidates: int

    @property
    def tied(self) -> bool:
        return self.candidates > 1


class ManifestRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, signing_key: str, sequence: int) -> Optional[ManifestRecord]:
        stmt = select(ManifestRecord).where(
            ManifestRecord.signing_key == signing_key, ManifestRecord.sequence == sequence
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_all(self) -> list[ManifestRecord]:
        stmt = select(ManifestRecord).order_by(ManifestRecord.master_key, ManifestRecord.sequence)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_state(self) -> dict[str, int]:
        stmt = select(ManifestRecord.revoked, func.count(ManifestRecord.id)).group_by(
            ManifestRecord.revoked
        )
        result = await self._session.execute(stmt)
        counts = {"active": 0, "revoked": 0}
        for revoked, count in result.all():
            counts["revoked" if revoked else "active"] = count
        return counts

    async def save(
        self,
        *,
        signing_key: str,
        master_key: str | None,
        sequence: int,
        domain: str | None,
        raw: bytes,
        signature_verified: bool,
        domain_verified: bool | None,
    ) -> tuple[ManifestRecord, bool]:
        """Insert or refresh the row keyed by (signing_key, sequence).

        ``domain_verified=None`` means the verdict was not definitive and any
        stored value is kept. A payload with a failed signature never replaces
        a row whose signature verified. Returns the row and whether it changed.
        """
        record = await self.get(signing_key, sequence)
        if record is None:
            record = ManifestRecord(
                signing_key=signing_key,
                master_key=master_key,
                sequence=sequence,
                domain=domain,
                raw=raw,
                signature_verified=signature_verified,
                domain_verified=bool(domain_verified) and signature_verified,
                revoked=not signature_verified,
            )
            self._session.add(record)
            await self._session.flush()
            return record, True

        if record.signature_verified and not signature_verified:
            return record, False

        changed = False
        if not record.signature_verified and signature_verified:
            record.signature_verified = True
            changed = True
        for attr, value in (("master_key", master_key), ("domain", domain), ("raw", raw)):
            if getattr(record, attr) != value:
                setattr(record, attr, value)
                changed = True
        if not signature_verified:
            if record.domain_verified:
                record.domain_verified = False
                changed = True
        elif domain_verified is not None and record.domain_verified != domain_verified:
            record.domain_verified = domain_verified
            changed = True
        if changed:
            record.updated_at = datetime.now(timezone.utc)
        return record, changed

    async def authoritative(self) -> list[AuthoritativeManifest]:
        """Compute the authoritative row per master key.

        The authoritative row has the highest sequence among rows whose
        signature verified; among equal maxima the smallest signing key wins.
        """
        verified = and_(
            ManifestRecord.signature_verified.is_(True), ManifestRecord.master_key.is_not(None)
        )
        max_seq = (
            select(
                ManifestRecord.master_key.label("master_key"),
                func.max(ManifestRecord.sequence).label("max_sequence"),
            )
            .where(verified)
            .group_by(ManifestRecord.master_key)
            .subquery()
        )
        winners = (
            select(
                ManifestRecord.master_key.label("master_key"),
                ManifestRecord.sequence.label("sequence"),
                func.min(ManifestRecord.signing_key).label("signing_key"),
                func.count(ManifestRecord.id).label("candidates"),
            )
            .join(
                max_seq,
                and_(
                    ManifestRecord.master_key == max_seq.c.master_key,
                    ManifestRecord.sequence == max_seq.c.max_sequence,
                ),
            )
            .where(verified)
            .group_by(ManifestRecord.master_key, ManifestRecord.sequence)
            .subquery()
        )
        stmt = (
            select(
                ManifestRecord.id,
                ManifestRecord.master_key,
                ManifestRecord.signing_key,
                ManifestRecord.sequence,
                winners.c.candidates,
            )
            .join(
                winners,
                and_(
                    ManifestRecord.master_key == winners.c.master_key,
                    ManifestRecord.sequence == winners.c.sequence,
                    ManifestRecord.signing_key == winners.c.signing_key,
                ),
            )
            .order_by(ManifestRecord.master_key)
        )
        result = await self._session.execute(stmt)
        return [
            AuthoritativeManifest(
                id=row.id,
                master_key=row.master_key,
                signing_key=row.signing_key,
                sequence=row.sequence,
                candidates=row.candidates,
            )
            for row in result.all()
        ]

    async def apply_revocations(self, authoritative_ids: Iterable[int]) -> tuple[int, int]:
        """Mark exactly ``authoritative_ids`` active and every other row revoked.

        Returns (reinstated, revoked) counts of rows whose flag changed.
        """
        ids = list(authoritative_ids)
        reinstated = 0
        if ids:
            result = await self._session.execute(
                update(ManifestRecord)
                .where(ManifestRecord.id.in_(ids), ManifestRecord.revoked.is_(True))
                .values(revoked=False)
                .execution_options(**_NO_SYNC)
            )
            reinstated = result.rowcount or 0
        result = await self._session.execute(
            update(ManifestRecord)
            .where(ManifestRecord.id.not_in(ids), ManifestRecord.revoked.is_(False))
            .values(revoked=True)
            .execution_options(**_NO_SYNC)
        )
        return reinstated, result.rowcount or 0


def _latest_verified_manifest(column):
    """Scalar subquery: ``column`` of the newest verified manifest for a participant."""
    return (
        select(column)
        .where(
            ManifestRecord.signing_key == ParticipantRecord.signing_key,
            ManifestRecord.signature_verified.is_(True),
        )
        .order_by(ManifestRecord.sequence.desc())
        .limit(1)
        .scalar_subquery()
    )


def _has_verified_manifest():
    return (
        select(ManifestRecord.id)
        .where(
            ManifestRecord.signing_key == ParticipantRecord.signing_key,
            ManifestRecord.signature_verified.is_(True),
        )
        .exists()
    )


class ParticipantRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, signing_key: str) -> Optional[ParticipantRecord]:
        stmt = select(ParticipantRecord).where(ParticipantRecord.signing_key == signing_key)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_all(self) -> list[ParticipantRecord]:
        result = await self._session.execute(
            select(ParticipantRecord).order_by(ParticipantRecord.signing_key)
        )
        return list(result.scalars().all())

    async def count_by_state(self) -> dict[str, int]:
        stmt = select(
            ParticipantRecord.domain_verified, func.count(ParticipantRecord.signing_key)
        ).group_by(ParticipantRecord.domain_verified)
        result = await self._session.execute(stmt)
        counts = {"domain_verified": 0, "domain_unverified": 0}
        for verified, count in result.all():
            counts["domain_verified" if verified else "domain_unverified"] = count
        return counts

    async def list_signing_keys(self) -> list[str]:
        result = await self._session.execute(
            select(ParticipantRecord.signing_key).order_by(ParticipantRecord.signing_key)
        )
        return list(result.scalars().all())

    async def observe(self, signing_keys: Iterable[str], seen_at: datetime) -> int:
        """Create participants for unseen keys and bump ``last_seen`` for known ones.

        Returns the number of newly created records.
        """
        keys = sorted(set(signing_keys))
        if not keys:
            return 0
        seen_at = ensure_utc(seen_at)
        result = await self._session.execute(
            select(ParticipantRecord).where(ParticipantRecord.signing_key.in_(keys))
        )
        existing = {record.signing_key: record for record in result.scalars().all()}
        created = 0
        for key in keys:
            record = existing.get(key)
            if record is None:
                self._session.add(ParticipantRecord(signing_key=key, last_seen=seen_at))
                created += 1
            elif ensure_utc(record.last_seen) < seen_at:
                record.last_seen = seen_at
        await self._session.flush()
        return created

    async def propagate_from_manifests(self) -> int:
        """Mirror master key and domain fields from manifests.

        Domain fields are copied only when the newest verified manifest for the
        signing key claims a domain, so an operator-supplied fallback domain is
        not cleared by a manifest that carries none. Revocation is not copied
        here; see :meth:`revoke_from_manifests` and :meth:`revoke_superseded`.
        """
        result = await self._session.execute(
            update(ParticipantRecord)
            .where(_has_verified_manifest())
            .values(master_key=_latest_verified_manifest(ManifestRecord.master_key))
            .execution_options(**_NO_SYNC)
        )
        updated = result.rowcount or 0
        await self._session.execute(
            update(ParticipantRecord)
            .where(_latest_verified_manifest(ManifestRecord.domain).is_not(None))
            .values(
                domain=_latest_verified_manifest(ManifestRecord.domain),
                domain_verified=_latest_verified_manifest(ManifestRecord.domain_verified),
            )
            .execution_options(**_NO_SYNC)
        )
        return updated

    async def revoke_from_manifests(self) -> int:
        """Copy the manifest-level revocation flag onto participants by signing key."""
        result = await self._session.execute(
            update(ParticipantRecord)
            .where(_has_verified_manifest())
            .values(revoked=_latest_verified_manifest(ManifestRecord.revoked))
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0

    async def revoke_superseded(self, authoritative: Iterable[AuthoritativeManifest]) -> int:
        """Revoke participants whose master key is held by another key's authoritative manifest.

        Covers participants observed before their superseding manifest arrived,
        and does not depend on manifest revocation flags being current.
        """
        holders = {winner.master_key: winner.signing_key for winner in authoritative}
        if not holders:
            return 0
        result = await self._session.execute(
            update(ParticipantRecord)
            .where(
                ParticipantRecord.revoked.is_(False),
                ParticipantRecord.master_key.in_(list(holders)),
                tuple_(ParticipantRecord.master_key, ParticipantRecord.signing_key).not_in(
                    list(holders.items())
                ),
            )
            .values(revoked=True)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0

    async def clear_membership(self, list_tag: str, signing_keys: Iterable[str]) -> int:
        keys = list(signing_keys)
        result = await self._session.execute(
            update(ParticipantRecord)
            .where(ParticipantRecord.list_tag == list_tag, ParticipantRecord.signing_key.not_in(keys))
            .values(list_tag=None)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0

    async def tag_membership(self, list_tag: str, signing_keys: Iterable[str]) -> int:
        keys = list(signing_keys)
        if not keys:
            return 0
        result = await self._session.execute(
            update(ParticipantRecord)
            .where(ParticipantRecord.signing_key.in_(keys))
            .values(list_tag=list_tag)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0

    async def delete_stale(self, cutoff: datetime) -> int:
        result = await self._session.execute(
            delete(ParticipantRecord)
            .where(ParticipantRecord.last_seen < ensure_utc(cutoff))
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0

    async def delete_revoked(self) -> int:
        result = await self._session.execute(
            delete(ParticipantRecord)
            .where(ParticipantRecord.revoked.is_(True))
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0

    async def apply_fallback_domain(self, master_key: str, domain: str) -> int:
        """Set an operator-curated, unverified domain where none is known."""
        result = await self._session.execute(
            update(ParticipantRecord)
            .where(ParticipantRecord.master_key == master_key, ParticipantRecord.domain.is_(None))
            .values(domain=domain, domain_verified=False)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount or 0


class CycleRunRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def start(self, details: dict[str, Any] | None = None) -> CycleRunRecord:
        record = CycleRunRecord(status="running", details=details or {})
        self._session.add(record)
        await self._session.flush()
        return record

    async def complete(
        self,
        run_id: int,
        status: str,
        *,
        records_processed: int = 0,
        errors_count: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        record = await self._session.get(CycleRunRecord, run_id)
        if record is None:
            return
        completed_at = datetime.now(timezone.utc)
        record.status = status
        record.completed_at = completed_at
        record.duration_seconds = (completed_at - ensure_utc(record.started_at)).total_seconds()
        record.records_processed = records_processed
        record.errors_count = errors_count
        if details is not None:
            record.details = details

    async def recent(self, limit: int = 10) -> list[CycleRunRecord]:
        stmt = select(CycleRunRecord).order_by(CycleRunRecord.id.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
