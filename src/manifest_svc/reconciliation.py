"""
Revocation and propagation passes over the manifest store.

Each pass is a query for the authoritative rows followed by set-based
updates, committed as one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from hub_common.exceptions import IntegrityAnomaly
from hub_common.infrastructure import DatabaseManager, ManifestRepository, ParticipantRepository

logger = logging.getLogger(__name__)


@dataclass
class RevocationReport:
    authoritative: int = 0
    reinstated: int = 0
    revoked: int = 0
    anomalies: list[IntegrityAnomaly] = field(default_factory=list)


@dataclass
class PropagationReport:
    updated: int = 0
    superseded: int = 0


class RevocationReconciler:
    """Keeps exactly one manifest per master key active and mirrors it onto participants."""

    def __init__(self, database: DatabaseManager) -> None:
        self.database = database

    async def revoke_manifests(self) -> RevocationReport:
        """Mark the highest-sequence verified manifest per master key active, all others revoked.

        Equal maximum sequences under distinct signing keys are resolved in
        favour of the smallest signing key and reported as anomalies.
        """
        report = RevocationReport()
        async with self.database.session_scope() as session:
            repository = ManifestRepository(session)
            winners = await repository.authoritative()
            for winner in winners:
                if winner.tied:
                    anomaly = IntegrityAnomaly(
                        f"{winner.candidates} manifests for master key {winner.master_key} share "
                        f"sequence {winner.sequence}; keeping {winner.signing_key}"
                    )
                    logger.warning(anomaly.message)
                    report.anomalies.append(anomaly)
            report.reinstated, report.revoked = await repository.apply_revocations(
                winner.id for winner in winners
            )
            report.authoritative = len(winners)

        logger.info(
            f"Manifest revocations: {report.authoritative} authoritative, "
            f"{report.revoked} newly revoked, {report.reinstated} reinstated"
        )
        return report

    async def propagate(self) -> PropagationReport:
        """Mirror master key and domain fields from manifests onto participants."""
        report = PropagationReport()
        async with self.database.session_scope() as session:
            report.updated = await ParticipantRepository(session).propagate_from_manifests()
        logger.info(f"Propagated manifests to {report.updated} participants")
        return report

    async def revoke_participants(self) -> PropagationReport:
        """Copy manifest revocations by signing key, then revoke superseded participants."""
        report = PropagationReport()
        async with self.database.session_scope() as session:
            authoritative = await ManifestRepository(session).authoritative()
            repository = ParticipantRepository(session)
            report.updated = await repository.revoke_from_manifests()
            report.superseded = await repository.revoke_superseded(authoritative)
        logger.info(
            f"Participant revocations: {report.updated} copied, {report.superseded} superseded"
        )
        return report
