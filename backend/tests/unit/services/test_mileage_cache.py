"""
Tests for the Mileage Cache Store.

Covers find-or-create with the distance oracle, value priority, operator
overrides and the open/close synchronization protocol with the remote mirror.
"""

import json

import pytest

from backend.core.database import DatabaseQueryError
from backend.services.invoicing.address_normalizer import create_cache_key, normalize_address
from backend.services.invoicing.exceptions import CacheEntryNotFoundError, SyncAbortedError
from backend.services.invoicing.mileage_cache import (
    COMPANY_ADDRESS,
    MileageCacheStore,
    SyncStatus,
)
from backend.services.invoicing.models import CacheSyncMetadata, MileageCacheEntry
from backend.services.invoicing.sync_resolver import AlwaysAbortResolver, SyncDecision


def _key():
    return create_cache_key("Jane", "Doe", "123 Main Street, Plymouth, Wisconsin 53073", "45 Oak Avenue, Sheboygan, WI 53081")


def _entry(**overrides):
    values = dict(
        passenger_last_name="DOE",
        passenger_first_name="JANE",
        pu_address="A",
        do_address="B",
        source_miles=5.0,
        resolved_miles=None,
        source_dead_miles=9.0,
        resolved_dead_miles=None,
    )
    values.update(overrides)
    return MileageCacheEntry(**values)


class TestValueResolution:
    """override > resolved > source, rounded to whole miles"""

    def test_override_wins(self):
        entry = _entry(resolved_miles=30.0, override_miles=12.4)
        assert MileageCacheStore.resolved_mileage(entry) == 12

    def test_resolved_used_without_override(self):
        entry = _entry(resolved_miles=7.6)
        assert MileageCacheStore.resolved_mileage(entry) == 8

    def test_source_used_when_nothing_else(self):
        entry = _entry(source_miles=7.5)
        assert MileageCacheStore.resolved_mileage(entry) == 8

    def test_dead_mileage_priority(self):
        entry = _entry(resolved_dead_miles=18.2, override_dead_miles=2.0)
        assert MileageCacheStore.resolved_dead_mileage(entry) == 2
        entry.override_dead_miles = None
        assert MileageCacheStore.resolved_dead_mileage(entry) == 18


class TestEntries:
    """Find-or-create against a local SQLite file"""

    @pytest.mark.asyncio
    async def test_create_entry_resolves_both_legs(self, local_store, distance_resolver):
        await local_store.open()
        key = _key()

        entry = await local_store.create_entry(key, source_miles=7.0, source_dead_miles=15.0)

        assert entry.id is not None
        assert entry.resolved_miles == 8.0
        assert entry.resolved_dead_miles == 20.0
        assert entry.source_miles == 7.0
        assert distance_resolver.calls == [
            (key.pu_address, key.do_address),
            (normalize_address(COMPANY_ADDRESS), key.pu_address),
        ]
        await local_store.close()

    @pytest.mark.asyncio
    async def test_failed_leg_falls_back_to_source(self, cache_db_path, distance_resolver_factory):
        store = MileageCacheStore(cache_db_path, distance_resolver_factory(trip_miles=None, dead_miles=21.0))
        await store.open()

        entry = await store.create_entry(_key(), source_miles=6.5, source_dead_miles=14.0)

        assert entry.resolved_miles == 6.5
        assert entry.resolved_dead_miles == 21.0
        stored = await store.find_entry(_key())
        assert stored.resolved_miles == 6.5
        await store.close()

    @pytest.mark.asyncio
    async def test_find_or_create_creates_once(self, local_store, distance_resolver):
        await local_store.open()

        first = await local_store.find_or_create_entry(_key(), 7.0, 15.0)
        second = await local_store.find_or_create_entry(_key(), 99.0, 99.0)

        assert first.id == second.id
        assert second.source_miles == 7.0
        assert len(distance_resolver.calls) == 2
        await local_store.close()

    @pytest.mark.asyncio
    async def test_address_variants_share_entry(self, local_store):
        await local_store.open()
        await local_store.create_entry(_key(), 7.0, 15.0)

        variant = create_cache_key(" jane ", "DOE", "123 main st, Plymouth, WI 53073", "45 oak ave,  Sheboygan, wisconsin 53081,")
        assert await local_store.find_entry(variant) is not None
        await local_store.close()

    @pytest.mark.asyncio
    async def test_find_entry_requires_open_store(self, local_store):
        with pytest.raises(DatabaseQueryError):
            await local_store.find_entry(_key())

    @pytest.mark.asyncio
    async def test_get_all_entries(self, local_store):
        await local_store.open()
        await local_store.create_entry(_key(), 7.0, 15.0)
        await local_store.create_entry(create_cache_key("Al", "Able", "1 First St", "2 Second St"), 3.0, 4.0)

        entries = await local_store.get_all_entries()

        assert [entry.passenger_last_name for entry in entries] == ["ABLE", "DOE"]
        await local_store.close()


class TestOverrides:
    """Only the override fields are writable"""

    @pytest.mark.asyncio
    async def test_update_override_sets_and_clears(self, local_store):
        await local_store.open()
        entry = await local_store.create_entry(_key(), 7.0, 15.0)

        updated = await local_store.update_override(entry.id, override_miles=12.4, override_dead_miles=2.0)
        assert updated.override_miles == 12.4
        assert updated.override_dead_miles == 2.0
        assert MileageCacheStore.resolved_mileage(updated) == 12

        cleared = await local_store.update_override(entry.id, override_miles=None)
        assert cleared.override_miles is None
        assert cleared.override_dead_miles == 2.0
        await local_store.close()

    @pytest.mark.asyncio
    async def test_update_rejects_non_override_fields(self, local_store):
        await local_store.open()
        entry = await local_store.create_entry(_key(), 7.0, 15.0)

        with pytest.raises(ValueError):
            await local_store.update_override(entry.id, resolved_miles=1.0)

        unchanged = await local_store.get_entry(entry.id)
        assert unchanged.resolved_miles == 8.0
        await local_store.close()

    @pytest.mark.asyncio
    async def test_update_unknown_entry(self, local_store):
        await local_store.open()
        with pytest.raises(CacheEntryNotFoundError):
            await local_store.update_override(4242, override_miles=3.0)
        await local_store.close()


async def _snapshot_bytes(tmp_path, distance_resolver):
    """A populated cache database as it would sit in the mirror"""
    remote_store = MileageCacheStore(tmp_path / "remote" / "snapshot.db", distance_resolver)
    await remote_store.open()
    await remote_store.create_entry(_key(), 7.0, 15.0)
    await remote_store.close()
    return (tmp_path / "remote" / "snapshot.db").read_bytes()


class TestSynchronization:
    """Open/close protocol against the remote mirror"""

    @pytest.mark.asyncio
    async def test_no_mirror_is_local_only(self, local_store):
        await local_store.open()
        assert local_store.local_only is True

        result = await local_store.close()

        assert result.status == SyncStatus.NOT_SYNCED
        assert result.notice
        assert local_store.is_open is False

    @pytest.mark.asyncio
    async def test_open_installs_remote_snapshot(self, tmp_path, cache_db_path, distance_resolver, fake_mirror_factory):
        snapshot = await _snapshot_bytes(tmp_path, distance_resolver)
        mirror = fake_mirror_factory(metadata=CacheSyncMetadata(version=3), database=snapshot)
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror)

        await store.open()

        assert store.local_only is False
        assert await store.find_entry(_key()) is not None
        assert [path.name for path in cache_db_path.parent.iterdir() if path.suffix == ".download"] == []
        await store.close()

    @pytest.mark.asyncio
    async def test_close_increments_version_and_uploads(self, tmp_path, cache_db_path, distance_resolver, fake_mirror_factory):
        snapshot = await _snapshot_bytes(tmp_path, distance_resolver)
        mirror = fake_mirror_factory(metadata=CacheSyncMetadata(version=3), database=snapshot)
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror)

        await store.open()
        result = await store.close()

        assert result.status == SyncStatus.SYNCED
        assert result.metadata.version == 4
        assert result.metadata.file_size == cache_db_path.stat().st_size
        assert mirror.uploads == 1
        assert mirror.uploaded_metadata[-1].version == 4
        local_metadata = json.loads(store.metadata_path.read_text())
        assert local_metadata["version"] == 4
        assert set(local_metadata) == {"version", "lastSync", "lastModified", "fileSize"}

        await store.open()
        second = await store.close()
        assert second.metadata.version == 5

    @pytest.mark.asyncio
    async def test_missing_remote_snapshot_starts_at_version_one(self, cache_db_path, distance_resolver, fake_mirror_factory):
        mirror = fake_mirror_factory(metadata=None)
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror)

        await store.open()
        assert store.local_only is False
        result = await store.close()

        assert result.status == SyncStatus.SYNCED
        assert result.metadata.version == 1

    @pytest.mark.asyncio
    async def test_continue_at_open_never_uploads(self, cache_db_path, distance_resolver, fake_mirror_factory, scripted_resolver_factory):
        mirror = fake_mirror_factory()
        mirror.fail_fetch = 1
        resolver = scripted_resolver_factory(SyncDecision.CONTINUE)
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror, sync_resolver=resolver)

        await store.open()
        assert store.local_only is True
        await store.create_entry(_key(), 7.0, 15.0)
        result = await store.close()

        assert result.status == SyncStatus.NOT_SYNCED
        assert mirror.uploads == 0
        assert mirror.uploaded_metadata == []
        error, attempt = resolver.calls[0]
        assert error.stage == "open"
        assert attempt == 1

    @pytest.mark.asyncio
    async def test_retry_at_open_then_sync(self, tmp_path, cache_db_path, distance_resolver, fake_mirror_factory, scripted_resolver_factory):
        snapshot = await _snapshot_bytes(tmp_path, distance_resolver)
        mirror = fake_mirror_factory(metadata=CacheSyncMetadata(version=1), database=snapshot)
        mirror.fail_fetch = 2
        resolver = scripted_resolver_factory(SyncDecision.RETRY)
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror, sync_resolver=resolver)

        await store.open()

        assert store.local_only is False
        assert [attempt for _, attempt in resolver.calls] == [1, 2]
        assert await store.find_entry(_key()) is not None
        await store.close()

    @pytest.mark.asyncio
    async def test_abort_at_open_leaves_local_file_untouched(self, cache_db_path, distance_resolver, fake_mirror_factory):
        cache_db_path.parent.mkdir(parents=True)
        cache_db_path.write_bytes(b"local database bytes")
        mirror = fake_mirror_factory(metadata=CacheSyncMetadata(version=2), database=b"remote")
        mirror.fail_download = 1
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror, sync_resolver=AlwaysAbortResolver())

        with pytest.raises(SyncAbortedError):
            await store.open()

        assert store.is_open is False
        assert cache_db_path.read_bytes() == b"local database bytes"
        assert sorted(path.name for path in cache_db_path.parent.iterdir()) == ["mileage_cache.db"]

    @pytest.mark.asyncio
    async def test_continue_at_close_skips_backup(self, cache_db_path, distance_resolver, fake_mirror_factory, scripted_resolver_factory):
        mirror = fake_mirror_factory(metadata=None)
        mirror.fail_upload = 1
        resolver = scripted_resolver_factory(SyncDecision.CONTINUE)
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror, sync_resolver=resolver)

        await store.open()
        result = await store.close()

        assert result.status == SyncStatus.SKIPPED
        assert result.notice
        assert store.is_open is False
        assert mirror.uploads == 0
        assert resolver.calls[0][0].stage == "close"

    @pytest.mark.asyncio
    async def test_abort_at_close_keeps_connection(self, cache_db_path, distance_resolver, fake_mirror_factory):
        mirror = fake_mirror_factory(metadata=None)
        mirror.fail_upload = 1
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror, sync_resolver=AlwaysAbortResolver())

        await store.open()
        await store.create_entry(_key(), 7.0, 15.0)
        result = await store.close()

        assert result.status == SyncStatus.ABORTED
        assert result.connection_closed is False
        assert store.is_open is True
        assert await store.find_entry(_key()) is not None

        retried = await store.close()
        assert retried.status == SyncStatus.SYNCED
        assert retried.metadata.version == 1
        assert mirror.uploads == 1
        assert store.is_open is False

    @pytest.mark.asyncio
    async def test_close_when_not_open(self, local_store):
        result = await local_store.close()
        assert result.status == SyncStatus.NOT_OPEN

    @pytest.mark.asyncio
    async def test_close_without_sync_after_abort(self, cache_db_path, distance_resolver, fake_mirror_factory):
        mirror = fake_mirror_factory(metadata=None)
        mirror.fail_upload = 1
        store = MileageCacheStore(cache_db_path, distance_resolver, remote_mirror=mirror, sync_resolver=AlwaysAbortResolver())

        await store.open()
        await store.create_entry(_key(), 7.0, 15.0)
        assert (await store.close()).status == SyncStatus.ABORTED

        store.close_without_sync()
        store.close_without_sync()

        assert store.is_open is False
        assert mirror.uploads == 0
        assert cache_db_path.exists()
        assert (await store.close()).status == SyncStatus.NOT_OPEN
