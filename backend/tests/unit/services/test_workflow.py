"""
End-to-end tests for the Build Invoices workflow.
"""

import csv
from unittest.mock import patch

import pytest

from backend.services.invoicing.csv_io import OPTIONAL_COLUMNS, REQUIRED_COLUMNS
from backend.services.invoicing.exceptions import SyncAbortedError
from backend.services.invoicing.mileage_cache import MileageCacheStore, SyncStatus
from backend.services.invoicing.sync_resolver import AlwaysAbortResolver
from backend.services.invoicing.workflow import build_invoices, create_mileage_store
from backend.core.config import (
    DistanceConfig,
    MileageCacheConfig,
    RemoteMirrorConfig,
    Settings,
)

HEADER = [
    "Passenger's First Name",
    "Passenger's Last Name",
    "Order Pick Up Address",
    "Order Drop Off Address",
    "Payer Name",
    "Order ID",
    "Orders Client Authorization",
    "Order Date of Service",
    "Custom Field: CaseWorker",
    "Custom Field: CaseWorker Email",
    "Order Mileage Service Code",
    "Order Mileage Modifier",
    "Order Mileage Quantity",
    "Order Mileage Cost",
    "Order Custom Service codes",
]


@pytest.fixture
def export_csv(tmp_path):
    path = tmp_path / "export.csv"
    rows = [
        ["Jane", "Doe", "123 Main St, Plymouth, WI", "45 Oak Ave, Sheboygan, WI", "I", "A1", "AUTH1", "03/01/2024",
         "Pat Smith", "pat@example.org", "S0209", "U1", "8", "16.00",
         "Service code: S0215, Modifier: U1, Quantity:10, Cost: 15.00"],
        ["Jane", "Doe", "123 Main Street, Plymouth, Wisconsin", "45 Oak Avenue, Sheboygan, WI", "I", "A2", "AUTH1", "03/02/2024",
         "Pat Smith", "pat@example.org", "S0209", "U1", "4", "8.00", ""],
        ["John", "Roe", "9 Lake Rd, Plymouth, WI", "1 Elm Ct, Kohler, WI", "CC", "B1", "", "03/03/2024",
         "", "", "S0209", "U1", "3", "6.00", ""],
    ]
    with path.open("w", encoding="utf-8", newline="") as fh:
        fh.write("RouteGenie Billing Report\n")
        writer = csv.DictWriter(fh, fieldnames=list(REQUIRED_COLUMNS + OPTIONAL_COLUMNS), restval="")
        writer.writeheader()
        writer.writerows(dict(zip(HEADER, row)) for row in rows)
    return path


def read_output(path):
    with path.open(encoding="utf-8", newline="") as fh:
        return list(csv.DictReader(fh))


class TestBuildInvoices:

    @pytest.mark.asyncio
    async def test_without_cache(self, export_csv, tmp_path):
        output = tmp_path / "invoices.csv"

        metrics = await build_invoices(export_csv, output, None, starting_invoice_number=500)

        records = read_output(output)
        assert [(r["InvoiceNumber"], r["ServiceItem"], r["Quantity"]) for r in records] == [
            ("500", "S0209-U1-I", "12"),
            ("500", "S0215-U1-I", "10"),
            ("501", "S0209-U1-CC", "0"),
        ]
        assert records[0]["Order IDs"] == "A1;A2"
        assert metrics.rows_read == 3
        assert metrics.invoices == 2
        assert metrics.last_invoice_number == 501
        assert metrics.sync_result is None

    @pytest.mark.asyncio
    async def test_with_local_cache(self, export_csv, tmp_path, cache_db_path, distance_resolver_factory):
        resolver = distance_resolver_factory(trip_miles=9.6, dead_miles=16.0)
        store = MileageCacheStore(cache_db_path, resolver)
        output = tmp_path / "invoices.csv"

        metrics = await build_invoices(export_csv, output, store, starting_invoice_number=1)

        records = read_output(output)
        jane_mileage = records[0]
        assert jane_mileage["ServiceItem"] == "S0209-U1-I"
        assert jane_mileage["Quantity"] == "20"
        assert records[2]["Quantity"] == "10"
        assert metrics.aggregation.cache_entries_created == 2
        assert metrics.aggregation.cache_hits == 1
        assert metrics.sync_result.status == SyncStatus.NOT_SYNCED
        assert store.is_open is False

    @pytest.mark.asyncio
    async def test_abort_at_open_reads_nothing(self, export_csv, tmp_path, cache_db_path, distance_resolver, fake_mirror_factory):
        mirror = fake_mirror_factory()
        mirror.fail_fetch = 1
        store = MileageCacheStore(
            cache_db_path,
            distance_resolver,
            remote_mirror=mirror,
            sync_resolver=AlwaysAbortResolver(),
        )
        output = tmp_path / "invoices.csv"

        with patch("backend.services.invoicing.workflow.read_billing_rows") as read_rows:
            with pytest.raises(SyncAbortedError):
                await build_invoices(export_csv, output, store, starting_invoice_number=1)

        read_rows.assert_not_called()
        assert not output.exists()
        assert not cache_db_path.exists()

    @pytest.mark.asyncio
    async def test_abort_at_close_still_writes_and_releases_cache(self, export_csv, tmp_path, cache_db_path, distance_resolver, fake_mirror_factory):
        mirror = fake_mirror_factory(metadata=None)
        mirror.fail_upload = 1
        store = MileageCacheStore(
            cache_db_path,
            distance_resolver,
            remote_mirror=mirror,
            sync_resolver=AlwaysAbortResolver(),
        )
        output = tmp_path / "invoices.csv"

        metrics = await build_invoices(export_csv, output, store, starting_invoice_number=1)

        assert metrics.sync_result.status == SyncStatus.ABORTED
        assert metrics.sync_result.notice
        assert store.is_open is False
        assert mirror.uploads == 0
        assert cache_db_path.exists()
        assert len(read_output(output)) == 3


class TestCreateMileageStore:

    def test_local_only_without_mirror(self, tmp_path):
        settings = Settings(
            mileage_cache=MileageCacheConfig(mileage_cache_db_path=tmp_path / "cache.db"),
            remote_mirror=RemoteMirrorConfig(remote_mirror_enabled=False),
            distance=DistanceConfig(google_maps_api_key=None),
        )

        store = create_mileage_store(settings)

        assert store.remote_mirror is None
        assert store.db_path == tmp_path / "cache.db"
        assert store.metadata_path == tmp_path / "cache.meta.json"

    def test_mirror_from_settings(self, tmp_path):
        settings = Settings(
            mileage_cache=MileageCacheConfig(mileage_cache_db_path=tmp_path / "cache.db"),
            remote_mirror=RemoteMirrorConfig(remote_mirror_enabled=True, remote_mirror_bucket="fleet-cache"),
            distance=DistanceConfig(google_maps_api_key="test-key"),
        )

        with patch("backend.services.invoicing.remote_mirror.boto3") as boto3:
            store = create_mileage_store(settings)

        assert store.remote_mirror.bucket == "fleet-cache"
        boto3.client.assert_called_once()
        assert store.distance_resolver.api_key == "test-key"
