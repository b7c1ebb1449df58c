"""
CSV input and output for the invoicing workflow.

The RouteGenie billing export starts with a report title line before the
header row, so the reader skips a fixed number of leading physical lines.
The invoice CSV keeps the column names the QuickBooks import expects.
"""

import csv
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Union

import structlog

from .models import (
    AUTHORIZATION_COLUMN,
    BILLING_FREQUENCY_COLUMN,
    BillingRow,
    CASE_WORKER_COLUMN,
    CASE_WORKER_EMAIL_COLUMN,
    CUSTOM_SERVICE_CODES_COLUMN,
    DATE_OF_SERVICE_COLUMN,
    DO_ADDRESS_COLUMN,
    FIRST_NAME_COLUMN,
    INVOICE_ITEM_CODES_COLUMN,
    INVOICE_ITEM_MODIFIERS_COLUMN,
    LAST_NAME_COLUMN,
    ORDER_ID_COLUMN,
    ORDER_ITEMS_COLUMN,
    OutputRecord,
    PAYER_COLUMN,
    PU_ADDRESS_COLUMN,
)
from .rules import CENT, DETAIL_FIELD_GROUPS

logger = structlog.get_logger(__name__)

DETAIL_FIELD_COLUMNS = tuple(
    column
    for group in DETAIL_FIELD_GROUPS
    for column in (group.service_code_column, group.modifier_column, group.quantity_column, group.cost_column)
)

# Columns a row cannot be aggregated without
REQUIRED_COLUMNS = (
    FIRST_NAME_COLUMN,
    LAST_NAME_COLUMN,
    PU_ADDRESS_COLUMN,
    DO_ADDRESS_COLUMN,
    PAYER_COLUMN,
    ORDER_ID_COLUMN,
    AUTHORIZATION_COLUMN,
    DATE_OF_SERVICE_COLUMN,
) + DETAIL_FIELD_COLUMNS + (
    CUSTOM_SERVICE_CODES_COLUMN,
    ORDER_ITEMS_COLUMN,
    INVOICE_ITEM_CODES_COLUMN,
    INVOICE_ITEM_MODIFIERS_COLUMN,
)

# Case worker metadata only decorates the invoice
OPTIONAL_COLUMNS = (
    CASE_WORKER_COLUMN,
    CASE_WORKER_EMAIL_COLUMN,
    BILLING_FREQUENCY_COLUMN,
)

INVOICE_CSV_HEADERS = [
    "InvoiceNumber",
    "CustomerName",
    "ServiceItem",
    "Quantity",
    "TotalCost",
    "Custom Field: CaseWorker",
    "Custom Field: CaseWorker Email",
    "Orders Client Authorization",
    "Payer",
    "Billing Frequency",
    "Service Date Start",
    "Service Date End",
    "Order IDs",
]


def read_billing_rows(path: Union[str, Path], leading_lines: int = 1) -> List[BillingRow]:
    """
    Read the billing export into BillingRows.

    Args:
        path: Export CSV file
        leading_lines: Physical lines to skip before the header row

    Returns:
        Rows in file order

    Raises:
        ValueError: the header is missing a required column
    """
    path = Path(path)
    with path.open("r", encoding="utf-8-sig", newline="") as fh:
        for _ in range(leading_lines):
            fh.readline()

        reader = csv.DictReader(fh)
        header = [name.strip() for name in (reader.fieldnames or [])]
        reader.fieldnames = header

        missing = [column for column in REQUIRED_COLUMNS if column not in header]
        if missing:
            raise ValueError(f"Billing export {path.name} is missing columns: {missing}")

        absent_optional = [column for column in OPTIONAL_COLUMNS if column not in header]
        if absent_optional:
            logger.warning("billing_export_optional_columns_missing", path=str(path), columns=absent_optional)

        rows = [BillingRow.from_csv_row(record, DETAIL_FIELD_GROUPS) for record in reader]

    logger.info("billing_rows_read", path=str(path), rows=len(rows))
    return rows


def _format_decimal(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return str(value.normalize())


def write_invoice_csv(path: Union[str, Path], records: Iterable[OutputRecord]) -> int:
    """
    Write invoice records to CSV.

    Returns:
        Number of records written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    count = 0
    with path.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(INVOICE_CSV_HEADERS)
        for record in records:
            writer.writerow([
                record.invoice_number,
                record.customer_name,
                record.service_item,
                _format_decimal(record.quantity),
                str(record.total_cost.quantize(CENT)),
                record.case_worker,
                record.case_worker_email,
                record.client_authorization,
                record.payer,
                record.billing_frequency,
                record.service_date_start.isoformat() if record.service_date_start else "",
                record.service_date_end.isoformat() if record.service_date_end else "",
                ";".join(record.order_ids),
            ])
            count += 1

    logger.info("invoice_csv_written", path=str(path), records=count)
    return count
