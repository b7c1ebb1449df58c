"""
Flatten passenger aggregates into numbered invoice records.

Each PassengerAggregate becomes one invoice. Invoice numbers are assigned in
first-seen order starting at the configured base, and every bucket of the
aggregate becomes one OutputRecord sharing that number. An aggregate whose
items were all excluded still uses up its number.
"""

from typing import List, Mapping

import structlog

from .models import OutputRecord, PassengerAggregate, PassengerAggregateKey, ServiceItemKey
from .rules import normalize_payer

logger = structlog.get_logger(__name__)


def original_payer_name(aggregate: PassengerAggregate, item: ServiceItemKey) -> str:
    """First original payer name of the aggregate that normalizes to the bucket's payer"""
    for payer_name in aggregate.original_payers:
        if normalize_payer(payer_name) == item.payer:
            return payer_name
    return item.payer


def flatten_aggregates(
    aggregates: Mapping[PassengerAggregateKey, PassengerAggregate],
    starting_invoice_number: int,
) -> List[OutputRecord]:
    """
    Turn aggregates into invoice records.

    Args:
        aggregates: Aggregates in first-seen order
        starting_invoice_number: Number given to the first aggregate

    Returns:
        One OutputRecord per service item bucket
    """
    records: List[OutputRecord] = []
    invoice_number = starting_invoice_number

    for aggregate in aggregates.values():
        for item, bucket in aggregate.items.items():
            records.append(OutputRecord(
                invoice_number=invoice_number,
                customer_name=aggregate.customer_name,
                service_item=item.label,
                service_code=item.service_code,
                modifier=item.modifier,
                payer=original_payer_name(aggregate, item),
                quantity=bucket.quantity,
                total_cost=bucket.cost,
                case_worker=aggregate.case_worker,
                case_worker_email=aggregate.case_worker_email,
                client_authorization=aggregate.client_authorization,
                billing_frequency=aggregate.billing_frequency,
                service_date_start=aggregate.first_service_date,
                service_date_end=aggregate.last_service_date,
                order_ids=sorted(bucket.order_ids),
            ))
        invoice_number += 1

    logger.info(
        "aggregates_flattened",
        invoice_numbers_used=invoice_number - starting_invoice_number,
        records=len(records),
        first_invoice_number=starting_invoice_number,
    )
    return records
