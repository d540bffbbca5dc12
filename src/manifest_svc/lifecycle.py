"""Participant lifecycle rules and the manual domain fallback."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from hub_common.infrastructure import DatabaseManager, ParticipantRepository

from .models import FallbackResult

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)


class LifecycleManager:
    """Deletes inactive and revoked participants. Manifest history is kept."""

    def __init__(self, database: DatabaseManager, retention: timedelta = DEFAULT_RETENTION) -> None:
        self.database = database
        self.retention = retention

    async def purge_stale(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - self.retention
        async with self.database.session_scope() as session:
            deleted = await ParticipantRepository(session).delete_stale(cutoff)
        logger.info(f"Deleted {deleted} participants not seen since {cutoff.isoformat()}")
        return deleted

    async def purge_revoked(self) -> int:
        async with self.database.session_scope() as session:
            deleted = await ParticipantRepository(session).delete_revoked()
        logger.info(f"Deleted {deleted} revoked participants")
        return deleted


class ManualDomainFallback:
    """Operator-curated master key to domain overrides.

    Applied only to participants that still have no domain, and always with
    ``domain_verified=False``: the mapping is never a proof of ownership.
    Each key is written in its own transaction.
    """

    def __init__(self, database: DatabaseManager) -> None:
        self.database = database

    async def apply(self, mapping: Mapping[str, str]) -> FallbackResult:
        result = FallbackResult()
        for master_key, domain in mapping.items():
            try:
                async with self.database.session_scope() as session:
                    updated = await ParticipantRepository(session).apply_fallback_domain(
                        master_key, domain
                    )
            except SQLAlchemyError:
                logger.exception(f"Manual domain fallback failed for {master_key}")
                result.failed += 1
                result.failed_keys.append(master_key)
                continue
            if updated:
                result.applied += updated
            else:
                result.unchanged += 1

        logger.info(
            f"Manual domain fallback (unverified): {result.applied} applied, "
            f"{result.unchanged} unchanged, {result.failed} failed"
        )
        return result
