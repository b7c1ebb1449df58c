"""
Transportation Invoicing Service.

This service turns a RouteGenie billing export into numbered, payer-aware
invoice line items, resolving trip mileage through a SQLite mileage cache that
is mirrored to a shared object store.

Main Components:
- MileageCacheStore: Find-or-create trip distances with remote sync
- InvoiceAggregator: Per passenger/authorization accumulation with payer rules
- flatten_aggregates: Invoice numbering and output records
- build_invoices: End-to-end CSV workflow

Key Features:
- Override > distance oracle > source mileage priority
- Short-trip and dead-mileage payer rules
- Retry/continue/abort handling when the remote mirror is unavailable
- Free-text service code and order item parsing with error reporting
"""

from .address_normalizer import create_cache_key, normalize_address, normalize_name
from .aggregator import AggregationResult, InvoiceAggregator, aggregate_rows
from .csv_io import read_billing_rows, write_invoice_csv
from .distance import DistanceResolver, GoogleMapsDistanceResolver
from .exceptions import (
    CacheEntryNotFoundError,
    CacheMissRecoverable,
    DistanceResolverError,
    InvoicingError,
    ParseError,
    RemoteMirrorError,
    SyncAbortedError,
    SyncUnavailableError,
)
from .flattener import flatten_aggregates
from .mileage_cache import MileageCacheStore, SyncResult, SyncStatus
from .models import (
    BillingRow,
    BusinessRuleExclusion,
    CacheKey,
    MileageCacheEntry,
    OutputRecord,
    PassengerAggregate,
    PassengerAggregateKey,
)
from .remote_mirror import RemoteMirror, S3RemoteMirror
from .sync_resolver import (
    AlwaysAbortResolver,
    AlwaysContinueResolver,
    BoundedRetryResolver,
    SyncConflictResolver,
    SyncDecision,
)
from .workflow import InvoiceBuildMetrics, build_invoices

__all__ = [
    "normalize_name",
    "normalize_address",
    "create_cache_key",
    "InvoiceAggregator",
    "AggregationResult",
    "aggregate_rows",
    "read_billing_rows",
    "write_invoice_csv",
    "DistanceResolver",
    "GoogleMapsDistanceResolver",
    "InvoicingError",
    "ParseError",
    "CacheMissRecoverable",
    "DistanceResolverError",
    "RemoteMirrorError",
    "SyncUnavailableError",
    "SyncAbortedError",
    "CacheEntryNotFoundError",
    "flatten_aggregates",
    "MileageCacheStore",
    "SyncResult",
    "SyncStatus",
    "BillingRow",
    "BusinessRuleExclusion",
    "CacheKey",
    "MileageCacheEntry",
    "OutputRecord",
    "PassengerAggregate",
    "PassengerAggregateKey",
    "RemoteMirror",
    "S3RemoteMirror",
    "SyncConflictResolver",
    "SyncDecision",
    "AlwaysContinueResolver",
    "AlwaysAbortResolver",
    "BoundedRetryResolver",
    "build_invoices",
    "InvoiceBuildMetrics",
]
