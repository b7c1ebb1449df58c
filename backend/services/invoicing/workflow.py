"""
Build Invoices workflow for the Transportation Invoicing Engine.

Reads a RouteGenie billing export, resolves trip mileage through the mileage
cache, aggregates per passenger and authorization, numbers the invoices and
writes the invoice CSV.

The mileage cache is opened before any row is read. If the operator (or the
configured policy) aborts while the remote copy is unavailable, the run stops
there rather than aggregating against a database that may be stale.

Usage:
    python -m backend.services.invoicing.workflow export.csv invoices.csv
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import structlog

from backend.core.config import Settings, get_settings
from .aggregator import InvoiceAggregator
from .csv_io import read_billing_rows, write_invoice_csv
from .distance import DistanceResolver, GoogleMapsDistanceResolver, UnavailableDistanceResolver
from .flattener import flatten_aggregates
from .mileage_cache import MileageCacheStore, SyncResult, SyncStatus
from .models import AggregationMetrics
from .remote_mirror import S3RemoteMirror
from .sync_resolver import BoundedRetryResolver

logger = structlog.get_logger(__name__)


@dataclass
class InvoiceBuildMetrics:
    """Metrics for one Build Invoices run"""
    start_time: datetime
    end_time: Optional[datetime] = None
    rows_read: int = 0
    invoices: int = 0
    records_written: int = 0
    exclusions: int = 0
    parse_errors: int = 0
    first_invoice_number: int = 0
    last_invoice_number: Optional[int] = None
    aggregation: Optional[AggregationMetrics] = None
    sync_result: Optional[SyncResult] = None
    processing_time_seconds: float = 0.0


async def build_invoices(
    input_csv: Union[str, Path],
    output_csv: Union[str, Path],
    store: Optional[MileageCacheStore],
    starting_invoice_number: int,
    leading_lines: int = 1,
) -> InvoiceBuildMetrics:
    """
    Run the whole Build Invoices workflow.

    Args:
        input_csv: RouteGenie billing export
        output_csv: Invoice CSV to write
        store: Mileage cache store (not yet opened); None skips the cache
        starting_invoice_number: Number of the first invoice
        leading_lines: Physical lines before the export's header row

    Returns:
        InvoiceBuildMetrics including the cache SyncResult. The store is closed
        on return even when the upload was aborted.

    Raises:
        SyncAbortedError: the cache download was aborted; nothing was read
    """
    metrics = InvoiceBuildMetrics(start_time=datetime.now(), first_invoice_number=starting_invoice_number)
    run_logger = logger.bind(component="build_invoices", input_csv=str(input_csv))
    run_logger.info("build_invoices_started", starting_invoice_number=starting_invoice_number)

    if store is not None:
        await store.open()

    try:
        rows = read_billing_rows(input_csv, leading_lines=leading_lines)
        metrics.rows_read = len(rows)

        result = await InvoiceAggregator(mileage_store=store).aggregate(rows)
        records = flatten_aggregates(result.aggregates, starting_invoice_number)
    finally:
        if store is not None:
            metrics.sync_result = await store.close()
            if metrics.sync_result.status == SyncStatus.ABORTED:
                # nothing retries this close; release the connection, keep the local file
                run_logger.warning("mileage_cache_upload_aborted", notice=metrics.sync_result.notice)
                store.close_without_sync()

    metrics.aggregation = result.metrics
    metrics.exclusions = len(result.exclusions)
    metrics.parse_errors = len(result.parse_errors)
    invoice_numbers = sorted({record.invoice_number for record in records})
    metrics.invoices = len(invoice_numbers)
    metrics.last_invoice_number = invoice_numbers[-1] if invoice_numbers else None

    metrics.records_written = write_invoice_csv(output_csv, records)

    metrics.end_time = datetime.now()
    metrics.processing_time_seconds = (metrics.end_time - metrics.start_time).total_seconds()
    run_logger.info(
        "build_invoices_completed",
        rows_read=metrics.rows_read,
        invoices=metrics.invoices,
        records_written=metrics.records_written,
        exclusions=metrics.exclusions,
        parse_errors=metrics.parse_errors,
        sync_status=metrics.sync_result.status.value if metrics.sync_result else None,
        processing_time=metrics.processing_time_seconds,
    )
    return metrics


def create_mileage_store(settings: Settings, local_only: bool = False) -> MileageCacheStore:
    """Wire the mileage cache store and its collaborators from settings"""
    resolver: DistanceResolver
    if settings.distance.google_maps_api_key:
        resolver = GoogleMapsDistanceResolver.from_config(settings.distance)
    else:
        logger.warning("google_maps_api_key_missing", fallback="source_mileage")
        resolver = UnavailableDistanceResolver()

    mirror = None
    if settings.remote_mirror.remote_mirror_enabled and not local_only:
        mirror = S3RemoteMirror.from_config(settings.remote_mirror)

    return MileageCacheStore.from_settings(
        settings,
        distance_resolver=resolver,
        remote_mirror=mirror,
        sync_resolver=BoundedRetryResolver.from_config(settings.sync),
    )


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    logging.basicConfig(level=getattr(logging, level), format="%(message)s", stream=sys.stderr)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# CLI interface for running the workflow
if __name__ == "__main__":
    import argparse

    from .exceptions import SyncAbortedError

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Build invoices from a RouteGenie billing export")
    parser.add_argument("input_csv", help="RouteGenie billing export CSV")
    parser.add_argument("output_csv", help="Invoice CSV to write")
    parser.add_argument("--starting-invoice-number", type=int,
                        default=settings.invoicing.starting_invoice_number,
                        help="Number of the first invoice")
    parser.add_argument("--no-cache", action="store_true", help="Use reported mileage without the cache")
    parser.add_argument("--local-only", action="store_true", help="Use the local cache without the remote mirror")
    parser.add_argument("--log-level", default=settings.app.app_log_level,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args()
    configure_logging(args.log_level, settings.app.app_log_json)

    async def main():
        store = None if args.no_cache else create_mileage_store(settings, local_only=args.local_only)
        try:
            print(f"🔄 Building invoices from {args.input_csv}...")
            print(f"   Starting invoice number: {args.starting_invoice_number}")

            metrics = await build_invoices(
                args.input_csv,
                args.output_csv,
                store,
                args.starting_invoice_number,
                leading_lines=settings.invoicing.input_leading_lines,
            )

            print(f"\n✅ Invoices written to {args.output_csv}")
            print(f"   Rows read: {metrics.rows_read:,}")
            print(f"   Invoices: {metrics.invoices:,}")
            print(f"   Line items: {metrics.records_written:,}")
            print(f"   Business rule exclusions: {metrics.exclusions:,}")
            print(f"   Parse errors: {metrics.parse_errors:,}")
            print(f"   Processing time: {metrics.processing_time_seconds:.2f} seconds")

            if metrics.sync_result is not None:
                print(f"   Mileage cache: {metrics.sync_result.status.value}")
                if metrics.sync_result.notice:
                    print(f"\n⚠️  {metrics.sync_result.notice}")
                if metrics.sync_result.status == SyncStatus.ABORTED:
                    sys.exit(2)

        except SyncAbortedError as e:
            print(f"\n❌ Aborted before processing: {e}")
            sys.exit(2)
        except Exception as e:
            print(f"\n❌ Build invoices failed: {e}")
            sys.exit(1)

    asyncio.run(main())
