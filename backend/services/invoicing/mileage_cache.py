"""
Mileage Cache Store for the Transportation Invoicing Engine.

Trip distances are stored once per (passenger, pickup, dropoff) in a local
SQLite file that is mirrored to a shared bucket. Several operators share the
remote copy, so the store follows a strict open/close protocol:

1. open(): download the remote snapshot and atomically replace the local file
   before any read or write. If the mirror is unreachable the caller decides
   (retry / continue locally / abort); continuing marks the store local-only.
2. close() on a local-only store never uploads, because the local file was
   never synced and would overwrite a newer remote version.
3. close() otherwise writes metadata with the next version and uploads the
   database followed by the metadata. An upload failure goes back to the
   caller; "continue" closes without a backup, "abort" keeps the connection
   open so close() can be tried again or close_without_sync() can release it.

Value priority for both trip and dead mileage is override > resolved
(distance oracle) > source (RouteGenie), rounded to whole miles.
"""

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from backend.core.config import Settings
from backend.core.database import EmbeddedDatabase, DatabaseQueryError
from .address_normalizer import normalize_address
from .distance import DistanceResolver
from .exceptions import (
    CacheEntryNotFoundError,
    CacheMissRecoverable,
    DistanceResolverError,
    RemoteMirrorError,
    SyncAbortedError,
    SyncUnavailableError,
)
from .models import CacheKey, CacheSyncMetadata, MileageCacheEntry
from .remote_mirror import RemoteMirror
from .rules import round_miles
from .sync_resolver import AlwaysContinueResolver, SyncConflictResolver, SyncDecision, SyncStage

logger = structlog.get_logger(__name__)


COMPANY_ADDRESS = "N5806 Co Rd M, Plymouth, WI 53073, USA"

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS mileage_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    passenger_last_name TEXT NOT NULL,
    passenger_first_name TEXT NOT NULL,
    PU_address TEXT NOT NULL,
    DO_address TEXT NOT NULL,
    RG_miles REAL NOT NULL,
    Google_miles REAL NOT NULL,
    overwrite_miles REAL,
    RG_dead_miles REAL NOT NULL,
    Google_dead_miles REAL NOT NULL,
    overwrite_dead_miles REAL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mileage_cache_lookup
ON mileage_cache(passenger_last_name, passenger_first_name, PU_address, DO_address);
"""

# override field name -> column
OVERRIDE_COLUMNS: Dict[str, str] = {
    "override_miles": "overwrite_miles",
    "override_dead_miles": "overwrite_dead_miles",
}


class SyncStatus(str, Enum):
    SYNCED = "synced"
    NOT_SYNCED = "not_synced"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    NOT_OPEN = "not_open"


@dataclass
class SyncResult:
    """Outcome of close(), including any notice the caller should surface"""
    status: SyncStatus
    notice: Optional[str] = None
    metadata: Optional[CacheSyncMetadata] = None

    @property
    def connection_closed(self) -> bool:
        return self.status != SyncStatus.ABORTED


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MileageCacheStore:
    """
    Find-or-create store of trip distances with a remote mirror.

    The store is an explicit handle: the caller constructs it, calls open()
    before the aggregation run and close() afterwards.

    Args:
        db_path: Local SQLite file
        distance_resolver: Distance oracle used on a cache miss
        remote_mirror: Remote copy; None means a purely local cache
        sync_resolver: Decides retry/continue/abort when the mirror fails
        company_address: Origin of dead-mile legs
        metadata_path: Local copy of the sync metadata
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        distance_resolver: DistanceResolver,
        remote_mirror: Optional[RemoteMirror] = None,
        sync_resolver: Optional[SyncConflictResolver] = None,
        company_address: str = COMPANY_ADDRESS,
        metadata_path: Optional[Union[str, Path]] = None,
    ):
        self.db_path = Path(db_path)
        self.metadata_path = Path(metadata_path) if metadata_path else self.db_path.with_suffix(".meta.json")
        self.distance_resolver = distance_resolver
        self.remote_mirror = remote_mirror
        self.sync_resolver = sync_resolver or AlwaysContinueResolver()
        self.company_address = company_address

        self.database = EmbeddedDatabase(self.db_path)
        self.local_only = False
        self.remote_metadata: Optional[CacheSyncMetadata] = None
        self._logger = logger.bind(component="mileage_cache")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        distance_resolver: DistanceResolver,
        remote_mirror: Optional[RemoteMirror] = None,
        sync_resolver: Optional[SyncConflictResolver] = None,
    ) -> "MileageCacheStore":
        return cls(
            db_path=settings.mileage_cache.mileage_cache_db_path,
            distance_resolver=distance_resolver,
            remote_mirror=remote_mirror,
            sync_resolver=sync_resolver,
            company_address=settings.mileage_cache.company_address,
            metadata_path=settings.mileage_cache.metadata_path,
        )

    @property
    def is_open(self) -> bool:
        return self.database.is_connected

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """
        Sync from the remote mirror, then connect and ensure the schema.

        Raises:
            SyncAbortedError: the resolver chose ABORT; the local file is untouched
        """
        if self.is_open:
            return

        await self._download_snapshot()

        self.database.connect()
        self.database.execute_script(CREATE_TABLE_SQL)
        self._logger.info(
            "mileage_cache_opened",
            db_path=str(self.db_path),
            local_only=self.local_only,
            remote_version=self.remote_metadata.version if self.remote_metadata else None,
        )

    async def _download_snapshot(self) -> None:
        if self.remote_mirror is None:
            self.local_only = True
            self._logger.warning("remote_mirror_not_configured", db_path=str(self.db_path))
            return

        attempt = 0
        while True:
            attempt += 1
            try:
                metadata = await self.remote_mirror.fetch_metadata()
                if metadata is None:
                    self._logger.info("remote_snapshot_absent", db_path=str(self.db_path))
                    self.local_only = False
                    self.remote_metadata = None
                    return
                await self._replace_local_file(metadata)
                self.local_only = False
                return
            except RemoteMirrorError as e:
                error = SyncUnavailableError(SyncStage.OPEN.value, e)
                decision = await self.sync_resolver.resolve(error, attempt)
                self._logger.warning(
                    "remote_download_failed",
                    attempt=attempt,
                    decision=decision.value,
                    error=str(e),
                )
                if decision == SyncDecision.RETRY:
                    continue
                if decision == SyncDecision.CONTINUE:
                    self.local_only = True
                    return
                raise SyncAbortedError(
                    f"Mileage cache download aborted after {attempt} attempt(s): {e}"
                ) from e

    async def _replace_local_file(self, metadata: CacheSyncMetadata) -> None:
        """Download into a temp file and swap it in only once it is complete"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        handle, temp_name = tempfile.mkstemp(prefix=".mileage_cache.", suffix=".download", dir=self.db_path.parent)
        os.close(handle)
        temp_path = Path(temp_name)
        try:
            await self.remote_mirror.download_database(temp_path)
            os.replace(temp_path, self.db_path)
        finally:
            if temp_path.exists():
                temp_path.unlink()

        self.remote_metadata = metadata
        self._write_local_metadata(metadata)
        self._logger.info(
            "remote_snapshot_installed",
            version=metadata.version,
            file_size=metadata.file_size,
            last_sync=metadata.last_sync,
        )

    async def close(self) -> SyncResult:
        """
        Upload the cache (unless local-only) and close the connection.

        Returns:
            SyncResult; status ABORTED means the connection is still open
        """
        if not self.is_open:
            return SyncResult(status=SyncStatus.NOT_OPEN)

        if self.local_only:
            self.database.close()
            notice = (
                "Mileage cache changes were saved locally only and were NOT synced "
                "to the shared remote copy."
            )
            self._logger.warning("mileage_cache_not_synced", db_path=str(self.db_path))
            return SyncResult(status=SyncStatus.NOT_SYNCED, notice=notice)

        metadata = self._next_metadata()
        self._write_local_metadata(metadata)

        attempt = 0
        while True:
            attempt += 1
            try:
                await self.remote_mirror.upload_database(self.db_path)
                await self.remote_mirror.upload_metadata(metadata)
            except RemoteMirrorError as e:
                error = SyncUnavailableError(SyncStage.CLOSE.value, e)
                decision = await self.sync_resolver.resolve(error, attempt)
                self._logger.warning(
                    "remote_upload_failed",
                    attempt=attempt,
                    decision=decision.value,
                    error=str(e),
                )
                if decision == SyncDecision.RETRY:
                    continue
                if decision == SyncDecision.CONTINUE:
                    self.database.close()
                    return SyncResult(
                        status=SyncStatus.SKIPPED,
                        notice=f"Mileage cache closed without a remote backup: {e}",
                    )
                return SyncResult(
                    status=SyncStatus.ABORTED,
                    notice=f"Mileage cache upload aborted; the remote copy was not updated: {e}",
                )

            self.database.close()
            self.remote_metadata = metadata
            self._logger.info("mileage_cache_synced", version=metadata.version, file_size=metadata.file_size)
            return SyncResult(status=SyncStatus.SYNCED, metadata=metadata)

    def close_without_sync(self) -> None:
        """Close the local connection after an aborted upload; the local file is kept"""
        if not self.is_open:
            return
        self.database.close()
        self._logger.warning("mileage_cache_closed_without_sync", db_path=str(self.db_path))

    def _next_metadata(self) -> CacheSyncMetadata:
        # one past the last version seen in the mirror
        previous = self.remote_metadata
        stat = self.db_path.stat()
        return CacheSyncMetadata(
            version=(previous.version if previous else 0) + 1,
            last_sync=_utc_now(),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            file_size=stat.st_size,
        )

    def _write_local_metadata(self, metadata: CacheSyncMetadata) -> None:
        self.metadata_path.parent.mkdir(parents=True, exist_ok=True)
        self.metadata_path.write_text(json.dumps(metadata.to_dict(), indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if not self.is_open:
            raise DatabaseQueryError("Mileage cache is not open; call open() first")

    async def find_entry(self, key: CacheKey) -> Optional[MileageCacheEntry]:
        """Exact match on the four normalized key fields"""
        self._require_open()
        row = self.database.execute_query(
            """
            SELECT * FROM mileage_cache
            WHERE passenger_last_name = ?
            AND passenger_first_name = ?
            AND PU_address = ?
            AND DO_address = ?
            """,
            (key.last_name, key.first_name, key.pu_address, key.do_address),
            fetch="one",
        )
        return MileageCacheEntry.from_row(row) if row else None

    async def create_entry(self, key: CacheKey, source_miles: float, source_dead_miles: float) -> MileageCacheEntry:
        """
        Resolve both legs with the distance oracle and insert a new entry.

        A failed leg falls back to its source value; the entry is always created.
        """
        self._require_open()

        resolved_miles = await self._resolve_leg("trip", key.pu_address, key.do_address, source_miles)
        resolved_dead_miles = await self._resolve_leg(
            "dead", normalize_address(self.company_address), key.pu_address, source_dead_miles
        )

        entry_id = self.database.execute_query(
            """
            INSERT INTO mileage_cache (
                passenger_last_name, passenger_first_name, PU_address, DO_address,
                RG_miles, Google_miles, RG_dead_miles, Google_dead_miles
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key.last_name, key.first_name, key.pu_address, key.do_address,
                source_miles, resolved_miles, source_dead_miles, resolved_dead_miles,
            ),
            fetch="lastrowid",
        )

        self._logger.info(
            "cache_entry_created",
            entry_id=entry_id,
            cache_key=key.as_string(),
            resolved_miles=resolved_miles,
            resolved_dead_miles=resolved_dead_miles,
        )
        return MileageCacheEntry(
            id=entry_id,
            passenger_last_name=key.last_name,
            passenger_first_name=key.first_name,
            pu_address=key.pu_address,
            do_address=key.do_address,
            source_miles=source_miles,
            resolved_miles=resolved_miles,
            source_dead_miles=source_dead_miles,
            resolved_dead_miles=resolved_dead_miles,
        )

    async def _resolve_leg(self, leg: str, origin: str, destination: str, fallback: float) -> float:
        try:
            return await self.distance_resolver.get_distance_miles(origin, destination)
        except DistanceResolverError as e:
            miss = CacheMissRecoverable(leg, origin, destination, e)
            self._logger.warning(
                "distance_lookup_failed_using_source",
                leg=leg,
                origin=origin,
                destination=destination,
                fallback_miles=fallback,
                error=str(miss),
            )
            return fallback

    async def find_or_create_entry(
        self,
        key: CacheKey,
        source_miles: float,
        source_dead_miles: float,
    ) -> MileageCacheEntry:
        entry = await self.find_entry(key)
        if entry is not None:
            return entry
        return await self.create_entry(key, source_miles, source_dead_miles)

    async def get_entry(self, entry_id: int) -> MileageCacheEntry:
        self._require_open()
        row = self.database.execute_query(
            "SELECT * FROM mileage_cache WHERE id = ?", (entry_id,), fetch="one"
        )
        if not row:
            raise CacheEntryNotFoundError(f"No mileage cache entry with id {entry_id}")
        return MileageCacheEntry.from_row(row)

    async def get_all_entries(self) -> List[MileageCacheEntry]:
        """All entries, for the operator's cache editor"""
        self._require_open()
        rows = self.database.execute_query(
            "SELECT * FROM mileage_cache ORDER BY passenger_last_name, passenger_first_name, id",
            fetch="all",
        )
        return [MileageCacheEntry.from_row(row) for row in rows or []]

    async def update_override(self, entry_id: int, **fields: Optional[float]) -> MileageCacheEntry:
        """
        Set or clear operator overrides on one entry.

        Only ``override_miles`` and ``override_dead_miles`` are writable; source
        and resolved values are write-once.

        Raises:
            ValueError: a non-override field was passed
            CacheEntryNotFoundError: no entry has this id
        """
        self._require_open()
        invalid = sorted(set(fields) - set(OVERRIDE_COLUMNS))
        if invalid:
            raise ValueError(f"Only override fields can be updated, got: {invalid}")

        await self.get_entry(entry_id)
        if fields:
            assignments = ", ".join(f"{OVERRIDE_COLUMNS[name]} = ?" for name in fields)
            self.database.execute_query(
                f"UPDATE mileage_cache SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (*fields.values(), entry_id),
            )
            self._logger.info("cache_entry_override_updated", entry_id=entry_id, fields=sorted(fields))
        return await self.get_entry(entry_id)

    # ------------------------------------------------------------------
    # Value resolution
    # ------------------------------------------------------------------

    @staticmethod
    def resolved_mileage(entry: MileageCacheEntry) -> int:
        """Priority: override > resolved > source, rounded to whole miles"""
        for value in (entry.override_miles, entry.resolved_miles, entry.source_miles):
            if value is not None:
                return round_miles(value)
        return 0

    @staticmethod
    def resolved_dead_mileage(entry: MileageCacheEntry) -> int:
        """Priority: override > resolved > source, rounded to whole miles"""
        for value in (entry.override_dead_miles, entry.resolved_dead_miles, entry.source_dead_miles):
            if value is not None:
                return round_miles(value)
        return 0

    def health_check(self) -> Dict[str, Any]:
        return {
            "open": self.is_open,
            "local_only": self.local_only,
            "database_healthy": self.database.health_check() if self.is_open else False,
            "remote_version": self.remote_metadata.version if self.remote_metadata else None,
        }
