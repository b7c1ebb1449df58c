"""
Invoice Aggregation Engine for the Transportation Invoicing Engine.

Rows from the RouteGenie billing export are accumulated into one
PassengerAggregate per (passenger, client authorization). Within an aggregate
every contribution lands in a ServiceItemBucket keyed by service code,
modifier and normalized payer.

Per row, strictly in order:
1. Build the aggregate key and normalize the payer.
2. Resolve trip and dead mileage through the mileage cache.
3. Accumulate the detail field groups (mileage replaced by the cached value,
   short trips zeroed for the short-trip payers).
4. Accumulate the custom service codes (dead mileage replaced by the cached
   value and filtered by the payer rules).
5. Accumulate the order items.
6. Track order ids, service dates and original payers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from .address_normalizer import create_cache_key, normalize_name
from .exceptions import ParseError
from .mileage_cache import MileageCacheStore
from .models import (
    AggregationMetrics,
    BillingRow,
    BusinessRuleExclusion,
    PassengerAggregate,
    PassengerAggregateKey,
    ServiceItemKey,
    TripMileage,
)
from .rules import (
    DEAD_MILEAGE_SERVICE_CODE,
    DETAIL_FIELD_GROUPS,
    MILEAGE_GROUP,
    MILEAGE_SERVICE_CODE,
    apply_short_trip_floor,
    dead_mileage_allowed,
    normalize_authorization,
    normalize_payer,
    rescale_cost,
)
from .text_parsers import (
    parse_custom_service_codes,
    parse_order_items,
    split_detail_group,
)

logger = structlog.get_logger(__name__)

SERVICE_DATE_FORMATS = (
    "%m/%d/%Y",
    "%Y-%m-%d",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%m/%d/%y",
)


def parse_service_date(value: str) -> Optional[date]:
    """Parse a date-of-service cell, returning None when it cannot be read"""
    text = (value or "").strip()
    if not text:
        return None
    for fmt in SERVICE_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


@dataclass
class AggregationResult:
    """Output of one aggregation run"""
    aggregates: Dict[PassengerAggregateKey, PassengerAggregate]
    exclusions: List[BusinessRuleExclusion] = field(default_factory=list)
    parse_errors: List[ParseError] = field(default_factory=list)
    metrics: Optional[AggregationMetrics] = None


class InvoiceAggregator:
    """
    Accumulates billing rows into per-passenger service item buckets.

    Args:
        mileage_store: Open MileageCacheStore; without one every row keeps
            the mileage reported by the export
    """

    def __init__(self, mileage_store: Optional[MileageCacheStore] = None):
        self.mileage_store = mileage_store
        self._logger = logger.bind(component="invoice_aggregator")

    async def aggregate(self, rows: Iterable[BillingRow]) -> AggregationResult:
        """
        Aggregate all rows sequentially.

        Args:
            rows: Billing rows in export order

        Returns:
            AggregationResult with aggregates in first-seen order
        """
        result = AggregationResult(
            aggregates={},
            metrics=AggregationMetrics(start_time=datetime.now()),
        )
        self._logger.info("aggregation_started", cache_enabled=self.mileage_store is not None)

        for row in rows:
            await self._process_row(row, result)
            result.metrics.rows_processed += 1

        metrics = result.metrics
        metrics.exclusions = len(result.exclusions)
        metrics.parse_errors = len(result.parse_errors)
        metrics.end_time = datetime.now()
        metrics.processing_time_seconds = (metrics.end_time - metrics.start_time).total_seconds()

        self._logger.info(
            "aggregation_completed",
            rows_processed=metrics.rows_processed,
            aggregates=len(result.aggregates),
            cache_hits=metrics.cache_hits,
            cache_entries_created=metrics.cache_entries_created,
            cache_unresolved_rows=metrics.cache_unresolved_rows,
            exclusions=metrics.exclusions,
            parse_errors=metrics.parse_errors,
            processing_time=metrics.processing_time_seconds,
        )
        return result

    async def _process_row(self, row: BillingRow, result: AggregationResult) -> None:
        key = PassengerAggregateKey(
            first_name=normalize_name(row.first_name),
            last_name=normalize_name(row.last_name),
            client_authorization=normalize_authorization(row.client_authorization),
        )
        payer = normalize_payer(row.payer_name)
        aggregate = self._aggregate_for(key, row, result)

        mileage = await self._resolve_mileage(row, result)

        self._accumulate_detail_groups(row, payer, mileage, aggregate)
        self._accumulate_custom_service_codes(row, payer, mileage, aggregate, result)
        self._accumulate_order_items(row, payer, aggregate, result)

        aggregate.track_service_date(parse_service_date(row.date_of_service))
        aggregate.track_payer(row.payer_name)

    def _aggregate_for(
        self,
        key: PassengerAggregateKey,
        row: BillingRow,
        result: AggregationResult,
    ) -> PassengerAggregate:
        aggregate = result.aggregates.get(key)
        if aggregate is None:
            aggregate = PassengerAggregate(
                key=key,
                customer_name=" ".join(part for part in (row.first_name, row.last_name) if part),
                case_worker=row.case_worker,
                case_worker_email=row.case_worker_email,
                client_authorization=key.client_authorization,
                billing_frequency=row.billing_frequency,
            )
            result.aggregates[key] = aggregate
        return aggregate

    # ------------------------------------------------------------------
    # Mileage
    # ------------------------------------------------------------------

    @staticmethod
    def _source_mileage(row: BillingRow) -> Tuple[Decimal, Decimal]:
        """Trip and dead mileage as reported by the export"""
        codes, modifiers, quantities, costs = row.detail_fields.get(MILEAGE_GROUP.name, ("", "", "", ""))
        miles = sum(
            (item.quantity for item in split_detail_group(codes, modifiers, quantities, costs)
             if item.service_code == MILEAGE_SERVICE_CODE),
            Decimal("0"),
        )
        dead_miles = sum(
            (token.quantity for token in parse_custom_service_codes(row.custom_service_codes).tokens
             if token.service_code == DEAD_MILEAGE_SERVICE_CODE),
            Decimal("0"),
        )
        return miles, dead_miles

    async def _resolve_mileage(self, row: BillingRow, result: AggregationResult) -> TripMileage:
        if self.mileage_store is None:
            result.metrics.cache_unresolved_rows += 1
            return TripMileage()

        cache_key = create_cache_key(row.first_name, row.last_name, row.pu_address, row.do_address)
        if not cache_key.is_complete:
            result.metrics.cache_unresolved_rows += 1
            self._logger.warning(
                "mileage_cache_key_incomplete",
                order_id=row.order_id,
                cache_key=cache_key.as_string(),
            )
            return TripMileage()

        entry = await self.mileage_store.find_entry(cache_key)
        if entry is not None:
            result.metrics.cache_hits += 1
        else:
            source_miles, source_dead_miles = self._source_mileage(row)
            entry = await self.mileage_store.create_entry(cache_key, float(source_miles), float(source_dead_miles))
            result.metrics.cache_entries_created += 1

        return TripMileage(
            miles=MileageCacheStore.resolved_mileage(entry),
            dead_miles=MileageCacheStore.resolved_dead_mileage(entry),
            has_override=entry.has_override,
            has_dead_override=entry.has_dead_override,
            entry_id=entry.id,
        )

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def _accumulate_detail_groups(
        self,
        row: BillingRow,
        payer: str,
        mileage: TripMileage,
        aggregate: PassengerAggregate,
    ) -> None:
        for group in DETAIL_FIELD_GROUPS:
            codes, modifiers, quantities, costs = row.detail_fields.get(group.name, ("", "", "", ""))
            for item in split_detail_group(codes, modifiers, quantities, costs):
                quantity = item.quantity
                cost = item.cost

                if group.is_mileage and item.service_code == MILEAGE_SERVICE_CODE:
                    if mileage.resolved:
                        quantity = Decimal(mileage.miles)
                        cost = rescale_cost(item.cost, item.quantity, quantity)
                    floored = apply_short_trip_floor(payer, quantity, mileage.has_override)
                    if floored != quantity:
                        self._logger.info(
                            "short_trip_mileage_zeroed",
                            order_id=row.order_id,
                            payer=payer,
                            miles=str(quantity),
                        )
                        quantity = floored
                        cost = Decimal("0")

                bucket = aggregate.bucket(ServiceItemKey(item.service_code, item.modifier, payer))
                bucket.add(quantity, cost, row.order_id)

    def _accumulate_custom_service_codes(
        self,
        row: BillingRow,
        payer: str,
        mileage: TripMileage,
        aggregate: PassengerAggregate,
        result: AggregationResult,
    ) -> None:
        parsed = parse_custom_service_codes(row.custom_service_codes)
        self._record_parse_errors(row, parsed.errors, result)

        for token in parsed.tokens:
            quantity = token.quantity
            cost = token.cost
            item_key = ServiceItemKey(token.service_code, token.modifier, payer)

            if token.service_code == DEAD_MILEAGE_SERVICE_CODE:
                if mileage.dead_miles is not None:
                    quantity = Decimal(mileage.dead_miles)
                    cost = rescale_cost(token.cost, token.quantity, quantity)
                allowed, reason = dead_mileage_allowed(payer, quantity, mileage.has_dead_override)
                if not allowed:
                    result.exclusions.append(BusinessRuleExclusion(
                        rule="dead_mileage",
                        passenger=aggregate.key,
                        item=item_key,
                        quantity=quantity,
                        reason=reason,
                        order_id=row.order_id,
                    ))
                    self._logger.debug(
                        "dead_mileage_excluded",
                        order_id=row.order_id,
                        payer=payer,
                        quantity=str(quantity),
                        reason=reason,
                    )
                    continue

            aggregate.bucket(item_key).add(quantity, cost, row.order_id)

    def _accumulate_order_items(
        self,
        row: BillingRow,
        payer: str,
        aggregate: PassengerAggregate,
        result: AggregationResult,
    ) -> None:
        parsed = parse_order_items(
            row.order_items,
            row.invoice_item_service_codes,
            row.invoice_item_modifiers,
        )
        self._record_parse_errors(row, parsed.errors, result)

        for token in parsed.tokens:
            bucket = aggregate.bucket(ServiceItemKey(token.service_code, token.modifier, payer))
            bucket.add(token.quantity, token.cost, row.order_id)

    def _record_parse_errors(self, row: BillingRow, errors: List[ParseError], result: AggregationResult) -> None:
        for error in errors:
            self._logger.warning(
                "free_text_segment_skipped",
                order_id=row.order_id,
                field=error.field,
                segment=error.segment,
                reason=error.reason,
            )
        result.parse_errors.extend(errors)


async def aggregate_rows(
    rows: Iterable[BillingRow],
    mileage_store: Optional[MileageCacheStore] = None,
) -> AggregationResult:
    """Convenience function to aggregate rows with an optional open cache"""
    aggregator = InvoiceAggregator(mileage_store=mileage_store)
    return await aggregator.aggregate(rows)
