"""
Data structures for the invoicing service.

BillingRow is the read-only input, MileageCacheEntry and CacheSyncMetadata
are persisted by the mileage cache, PassengerAggregate and ServiceItemBucket
live for one aggregation run, and OutputRecord is handed to the writers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple


# RouteGenie billing export columns
FIRST_NAME_COLUMN = "Passenger's First Name"
LAST_NAME_COLUMN = "Passenger's Last Name"
PU_ADDRESS_COLUMN = "Order Pick Up Address"
DO_ADDRESS_COLUMN = "Order Drop Off Address"
PAYER_COLUMN = "Payer Name"
ORDER_ID_COLUMN = "Order ID"
AUTHORIZATION_COLUMN = "Orders Client Authorization"
DATE_OF_SERVICE_COLUMN = "Order Date of Service"
CASE_WORKER_COLUMN = "Custom Field: CaseWorker"
CASE_WORKER_EMAIL_COLUMN = "Custom Field: CaseWorker Email"
BILLING_FREQUENCY_COLUMN = "Custom Field: Billing Frequency"
CUSTOM_SERVICE_CODES_COLUMN = "Order Custom Service codes"
ORDER_ITEMS_COLUMN = "Order Item(s)"
INVOICE_ITEM_CODES_COLUMN = "Invoice Item Service Code(s)"
INVOICE_ITEM_MODIFIERS_COLUMN = "Invoice Item Modifier(s)"


@dataclass(frozen=True)
class DetailFieldGroup:
    """Column names of one (service code, modifier, quantity, cost) group"""
    name: str
    service_code_column: str
    modifier_column: str
    quantity_column: str
    cost_column: str
    is_mileage: bool = False


@dataclass(frozen=True)
class BillingRow:
    """One trip from the RouteGenie billing export"""
    first_name: str
    last_name: str
    pu_address: str
    do_address: str
    payer_name: str
    order_id: str = ""
    client_authorization: str = ""
    date_of_service: str = ""
    case_worker: str = ""
    case_worker_email: str = ""
    billing_frequency: str = ""
    # group name -> (service codes, modifiers, quantities, costs), comma-joined
    detail_fields: Dict[str, Tuple[str, str, str, str]] = field(default_factory=dict, hash=False)
    custom_service_codes: str = ""
    order_items: str = ""
    invoice_item_service_codes: str = ""
    invoice_item_modifiers: str = ""

    @classmethod
    def from_csv_row(
        cls,
        row: Mapping[str, Optional[str]],
        detail_groups: Iterable[DetailFieldGroup] = (),
    ) -> "BillingRow":
        """
        Build a row from a csv.DictReader record, trimming every value.

        Args:
            row: Column name -> raw cell text
            detail_groups: Detail field groups to collect from the row
        """
        def value(column: str) -> str:
            return (row.get(column) or "").strip()

        return cls(
            first_name=value(FIRST_NAME_COLUMN),
            last_name=value(LAST_NAME_COLUMN),
            pu_address=value(PU_ADDRESS_COLUMN),
            do_address=value(DO_ADDRESS_COLUMN),
            payer_name=value(PAYER_COLUMN),
            order_id=value(ORDER_ID_COLUMN),
            client_authorization=value(AUTHORIZATION_COLUMN),
            date_of_service=value(DATE_OF_SERVICE_COLUMN),
            case_worker=value(CASE_WORKER_COLUMN),
            case_worker_email=value(CASE_WORKER_EMAIL_COLUMN),
            billing_frequency=value(BILLING_FREQUENCY_COLUMN),
            detail_fields={
                group.name: (
                    value(group.service_code_column),
                    value(group.modifier_column),
                    value(group.quantity_column),
                    value(group.cost_column),
                )
                for group in detail_groups
            },
            custom_service_codes=value(CUSTOM_SERVICE_CODES_COLUMN),
            order_items=value(ORDER_ITEMS_COLUMN),
            invoice_item_service_codes=value(INVOICE_ITEM_CODES_COLUMN),
            invoice_item_modifiers=value(INVOICE_ITEM_MODIFIERS_COLUMN),
        )


@dataclass(frozen=True)
class CacheKey:
    """Normalized (last name, first name, pickup, dropoff) lookup key"""
    last_name: str
    first_name: str
    pu_address: str
    do_address: str

    @classmethod
    def from_raw(cls, first_name: str, last_name: str, pu_address: str, do_address: str) -> "CacheKey":
        """Normalize raw names and addresses into a key"""
        from .address_normalizer import create_cache_key

        return create_cache_key(first_name, last_name, pu_address, do_address)

    @property
    def is_complete(self) -> bool:
        return all((self.last_name, self.first_name, self.pu_address, self.do_address))

    def as_string(self) -> str:
        return f"{self.last_name}|{self.first_name}|{self.pu_address}|{self.do_address}"


@dataclass
class MileageCacheEntry:
    """Persistent trip distance record"""
    passenger_last_name: str
    passenger_first_name: str
    pu_address: str
    do_address: str
    source_miles: float
    resolved_miles: Optional[float]
    source_dead_miles: float
    resolved_dead_miles: Optional[float]
    override_miles: Optional[float] = None
    override_dead_miles: Optional[float] = None
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MileageCacheEntry":
        """Build an entry from a ``mileage_cache`` table row"""
        return cls(
            id=row.get("id"),
            passenger_last_name=row["passenger_last_name"],
            passenger_first_name=row["passenger_first_name"],
            pu_address=row["PU_address"],
            do_address=row["DO_address"],
            source_miles=row["RG_miles"],
            resolved_miles=row.get("Google_miles"),
            override_miles=row.get("overwrite_miles"),
            source_dead_miles=row["RG_dead_miles"],
            resolved_dead_miles=row.get("Google_dead_miles"),
            override_dead_miles=row.get("overwrite_dead_miles"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def key(self) -> CacheKey:
        return CacheKey(
            last_name=self.passenger_last_name,
            first_name=self.passenger_first_name,
            pu_address=self.pu_address,
            do_address=self.do_address,
        )

    @property
    def has_override(self) -> bool:
        return self.override_miles is not None

    @property
    def has_dead_override(self) -> bool:
        return self.override_dead_miles is not None


@dataclass
class CacheSyncMetadata:
    """Metadata object stored next to the cache database in the remote mirror"""
    version: int
    last_sync: Optional[str] = None
    last_modified: Optional[str] = None
    file_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "lastSync": self.last_sync,
            "lastModified": self.last_modified,
            "fileSize": self.file_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheSyncMetadata":
        return cls(
            version=int(data.get("version", 0)),
            last_sync=data.get("lastSync"),
            last_modified=data.get("lastModified"),
            file_size=int(data.get("fileSize", 0)),
        )


@dataclass
class TripMileage:
    """Mileage resolved for one row, with the override flags the rules need"""
    miles: Optional[int] = None
    dead_miles: Optional[int] = None
    has_override: bool = False
    has_dead_override: bool = False
    entry_id: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.miles is not None


@dataclass(frozen=True)
class PassengerAggregateKey:
    """One invoice group: a passenger under one authorization"""
    first_name: str
    last_name: str
    client_authorization: str


@dataclass(frozen=True)
class ServiceItemKey:
    """(service code, modifier, normalized payer) within a passenger aggregate"""
    service_code: str
    modifier: str
    payer: str

    @property
    def label(self) -> str:
        if self.modifier:
            return f"{self.service_code}-{self.modifier}-{self.payer}"
        return f"{self.service_code}-{self.payer}"


@dataclass
class ServiceItemBucket:
    """Running totals for one service item"""
    key: ServiceItemKey
    quantity: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")
    order_ids: Set[str] = field(default_factory=set)

    def add(self, quantity: Decimal, cost: Decimal, order_id: Optional[str] = None) -> None:
        self.quantity += quantity
        self.cost += cost
        if order_id:
            self.order_ids.add(order_id)


@dataclass
class PassengerAggregate:
    """All buckets for one PassengerAggregateKey plus invoice header data"""
    key: PassengerAggregateKey
    customer_name: str
    case_worker: str = ""
    case_worker_email: str = ""
    client_authorization: str = ""
    billing_frequency: str = ""
    items: Dict[ServiceItemKey, ServiceItemBucket] = field(default_factory=dict)
    first_service_date: Optional[date] = None
    last_service_date: Optional[date] = None
    original_payers: List[str] = field(default_factory=list)

    def bucket(self, key: ServiceItemKey) -> ServiceItemBucket:
        if key not in self.items:
            self.items[key] = ServiceItemBucket(key=key)
        return self.items[key]

    def track_service_date(self, service_date: Optional[date]) -> None:
        if service_date is None:
            return
        if self.first_service_date is None or service_date < self.first_service_date:
            self.first_service_date = service_date
        if self.last_service_date is None or service_date > self.last_service_date:
            self.last_service_date = service_date

    def track_payer(self, payer_name: str) -> None:
        if payer_name and payer_name not in self.original_payers:
            self.original_payers.append(payer_name)


@dataclass
class BusinessRuleExclusion:
    """A contribution deliberately dropped by a payer or threshold rule"""
    rule: str
    passenger: PassengerAggregateKey
    item: ServiceItemKey
    quantity: Decimal
    reason: str
    order_id: str = ""


@dataclass
class OutputRecord:
    """Flattened invoice line consumed by the CSV and QuickBooks writers"""
    invoice_number: int
    customer_name: str
    service_item: str
    service_code: str
    modifier: str
    payer: str
    quantity: Decimal
    total_cost: Decimal
    case_worker: str
    case_worker_email: str
    client_authorization: str
    billing_frequency: str
    service_date_start: Optional[date]
    service_date_end: Optional[date]
    order_ids: List[str]


@dataclass
class AggregationMetrics:
    """Metrics for one aggregation run"""
    start_time: datetime
    end_time: Optional[datetime] = None
    rows_processed: int = 0
    cache_hits: int = 0
    cache_entries_created: int = 0
    cache_unresolved_rows: int = 0
    exclusions: int = 0
    parse_errors: int = 0
    processing_time_seconds: float = 0.0
