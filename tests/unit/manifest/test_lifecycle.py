from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from hub_common.infrastructure import ParticipantRecord, ParticipantRepository
from manifest_svc.lifecycle import LifecycleManager, ManualDomainFallback
from tests.fixtures.helpers import create_database

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


async def _add(database, **fields):
    fields.setdefault("last_seen", NOW)
    async with database.session_scope() as session:
        session.add(ParticipantRecord(**fields))


async def _participants(database):
    async with database.session_scope() as session:
        return {p.signing_key: p for p in await ParticipantRepository(session).list_all()}


@pytest.mark.asyncio
async def test_stale_participants_are_purged():
    database = await create_database()
    await _add(database, signing_key="nEightDays", last_seen=NOW - timedelta(days=8))
    await _add(database, signing_key="nSixDays", last_seen=NOW - timedelta(days=6))

    deleted = await LifecycleManager(database).purge_stale(NOW)

    assert deleted == 1
    assert set(await _participants(database)) == {"nSixDays"}


@pytest.mark.asyncio
async def test_retention_window_is_configurable():
    database = await create_database()
    await _add(database, signing_key="nTwoDays", last_seen=NOW - timedelta(days=2))

    deleted = await LifecycleManager(database, retention=timedelta(days=1)).purge_stale(NOW)

    assert deleted == 1


@pytest.mark.asyncio
async def test_revoked_participants_are_purged():
    database = await create_database()
    await _add(database, signing_key="nRevoked", revoked=True)
    await _add(database, signing_key="nActive")

    deleted = await LifecycleManager(database).purge_revoked()

    assert deleted == 1
    assert set(await _participants(database)) == {"nActive"}


@pytest.mark.asyncio
async def test_fallback_domain_is_applied_unverified():
    database = await create_database()
    await _add(database, signing_key="nA", master_key="nM")
    await _add(database, signing_key="nB", master_key="nOther", domain="own.example", domain_verified=True)

    result = await ManualDomainFallback(database).apply(
        {"nM": "fallback.example", "nOther": "ignored.example", "nMissing": "none.example"}
    )

    participants = await _participants(database)
    assert participants["nA"].domain == "fallback.example"
    assert not participants["nA"].domain_verified
    assert participants["nB"].domain == "own.example"
    assert participants["nB"].domain_verified
    assert (result.applied, result.unchanged, result.failed) == (1, 2, 0)


class _FlakyRepository(ParticipantRepository):
    async def apply_fallback_domain(self, master_key, domain):
        if master_key == "nBroken":
            raise OperationalError("UPDATE participants", {}, Exception("database is locked"))
        return await super().apply_fallback_domain(master_key, domain)


@pytest.mark.asyncio
async def test_fallback_failure_on_one_key_does_not_block_others(monkeypatch):
    database = await create_database()
    await _add(database, signing_key="nA", master_key="nM")
    monkeypatch.setattr("manifest_svc.lifecycle.ParticipantRepository", _FlakyRepository)

    result = await ManualDomainFallback(database).apply({"nBroken": "x.example", "nM": "m.example"})

    assert result.failed == 1
    assert result.failed_keys == ["nBroken"]
    assert result.applied == 1
    assert (await _participants(database))["nA"].domain == "m.example"
