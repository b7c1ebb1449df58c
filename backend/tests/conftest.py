"""
Shared fixtures for the invoicing service tests.

Test doubles for the three external collaborators of the mileage cache:
the distance oracle, the remote mirror and the sync conflict resolver.
"""

from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from backend.services.invoicing.address_normalizer import normalize_address
from backend.services.invoicing.exceptions import (
    DistanceResolverError,
    RemoteMirrorError,
    SyncUnavailableError,
)
from backend.services.invoicing.mileage_cache import COMPANY_ADDRESS, MileageCacheStore
from backend.services.invoicing.models import CacheSyncMetadata
from backend.services.invoicing.sync_resolver import SyncDecision


class FakeDistanceResolver:
    """Returns fixed trip and dead-leg distances; None makes that leg fail"""

    def __init__(self, trip_miles: Optional[float] = None, dead_miles: Optional[float] = None):
        self.trip_miles = trip_miles
        self.dead_miles = dead_miles
        self.calls: List[Tuple[str, str]] = []

    async def get_distance_miles(self, origin: str, destination: str) -> float:
        self.calls.append((origin, destination))
        miles = self.dead_miles if origin == normalize_address(COMPANY_ADDRESS) else self.trip_miles
        if miles is None:
            raise DistanceResolverError("no route")
        return miles


class FakeRemoteMirror:
    """In-memory mirror; the fail_* counters inject that many failures"""

    def __init__(self, metadata: Optional[CacheSyncMetadata] = None, database: bytes = b""):
        self.metadata = metadata
        self.database = database
        self.fail_fetch = 0
        self.fail_download = 0
        self.fail_upload = 0
        self.uploads = 0
        self.uploaded_metadata: List[CacheSyncMetadata] = []

    async def fetch_metadata(self) -> Optional[CacheSyncMetadata]:
        if self.fail_fetch:
            self.fail_fetch -= 1
            raise RemoteMirrorError("mirror unreachable")
        return self.metadata

    async def download_database(self, destination: Path) -> None:
        if self.fail_download:
            self.fail_download -= 1
            Path(destination).write_bytes(b"partial")
            raise RemoteMirrorError("download interrupted")
        Path(destination).write_bytes(self.database)

    async def upload_database(self, source: Path) -> None:
        if self.fail_upload:
            self.fail_upload -= 1
            raise RemoteMirrorError("upload failed")
        self.uploads += 1
        self.database = Path(source).read_bytes()

    async def upload_metadata(self, metadata: CacheSyncMetadata) -> None:
        self.uploaded_metadata.append(metadata)
        self.metadata = metadata


class ScriptedSyncResolver:
    """Answers with the given decisions in order, repeating the last one"""

    def __init__(self, *decisions: SyncDecision):
        self.decisions = list(decisions)
        self.calls: List[Tuple[SyncUnavailableError, int]] = []

    async def resolve(self, error: SyncUnavailableError, attempt: int) -> SyncDecision:
        self.calls.append((error, attempt))
        index = min(len(self.calls), len(self.decisions)) - 1
        return self.decisions[index]


@pytest.fixture
def distance_resolver():
    return FakeDistanceResolver(trip_miles=8.0, dead_miles=20.0)


@pytest.fixture
def fake_mirror_factory():
    return FakeRemoteMirror


@pytest.fixture
def scripted_resolver_factory():
    return ScriptedSyncResolver


@pytest.fixture
def distance_resolver_factory():
    return FakeDistanceResolver


@pytest.fixture
def cache_db_path(tmp_path):
    return tmp_path / "cache" / "mileage_cache.db"


@pytest.fixture
def local_store(cache_db_path, distance_resolver):
    """Store without a remote mirror"""
    return MileageCacheStore(cache_db_path, distance_resolver)
