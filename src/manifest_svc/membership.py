"""Trusted-list membership tags on participant records."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from hub_common.infrastructure import DatabaseManager, ParticipantRepository

logger = logging.getLogger(__name__)


class MembershipReconciler:
    """Strict per-source set replacement of ``list_tag``.

    Keys listed by a source are tagged with its name; keys previously tagged
    with that name but no longer listed lose the tag. Sources are applied in
    reverse order so that, when two sources list the same key, the first one
    keeps it.
    """

    def __init__(self, database: DatabaseManager) -> None:
        self.database = database

    async def reconcile(self, memberships: Mapping[str, Iterable[str]]) -> dict[str, dict[str, int]]:
        """
        Replace the membership of every given source in one transaction.

        Args:
            memberships: Source name to its current signing keys, in
                configured priority order. Sources absent from the mapping
                keep their previous tags.

        Returns:
            Per-source ``{"tagged": n, "cleared": n}`` counts
        """
        current = {name: sorted(set(keys)) for name, keys in memberships.items()}
        counts: dict[str, dict[str, int]] = {}
        async with self.database.session_scope() as session:
            repository = ParticipantRepository(session)
            for name, keys in current.items():
                counts[name] = {"cleared": await repository.clear_membership(name, keys)}
            for name in reversed(list(current)):
                counts[name]["tagged"] = await repository.tag_membership(name, current[name])

        for name, result in counts.items():
            logger.info(f"Membership {name}: {result['tagged']} tagged, {result['cleared']} cleared")
        return counts
