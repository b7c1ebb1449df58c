"""
Payer and service-code business rules for invoice aggregation.

These codes, payers and thresholds are fixed contract constants. They are
kept as named module constants rather than settings.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Tuple, Union

from .models import DetailFieldGroup


MILEAGE_SERVICE_CODE = "S0209"
DEAD_MILEAGE_SERVICE_CODE = "S0215"

# Mileage below the floor is not billable for these payers unless an
# operator has entered an override for the trip.
SHORT_TRIP_PAYERS: Tuple[str, ...] = ("CC", "MCW")
SHORT_TRIP_MILEAGE_FLOOR = 5

# Dead mileage: always billed for the first group, billed for the second
# group only at or above the threshold, never billed for anyone else.
DEAD_MILEAGE_UNCONDITIONAL_PAYERS: Tuple[str, ...] = ("I",)
DEAD_MILEAGE_THRESHOLD_PAYERS: Tuple[str, ...] = ("CC", "MCW", "PP")
DEAD_MILEAGE_THRESHOLD = 15

# RouteGenie fills blank authorizations with generated numbers above this.
AUTHORIZATION_PLACEHOLDER_LIMIT = Decimal("1e15")

# "PP - Jane Doe Recurring", "Recurring Payment (Doe, Jane)", ...
RECURRING_PAYER_PATTERN = re.compile(r"\brecurring\b", re.IGNORECASE)
RECURRING_PAYER_CANONICAL = "PP"

DETAIL_FIELD_GROUPS: Tuple[DetailFieldGroup, ...] = (
    DetailFieldGroup(
        name="load_fee",
        service_code_column="Order Load Fee Service Code",
        modifier_column="Order Load Fee Modifier",
        quantity_column="Order Load Fee Quantity",
        cost_column="Order Load Fee Cost",
    ),
    DetailFieldGroup(
        name="mileage",
        service_code_column="Order Mileage Service Code",
        modifier_column="Order Mileage Modifier",
        quantity_column="Order Mileage Quantity",
        cost_column="Order Mileage Cost",
        is_mileage=True,
    ),
    DetailFieldGroup(
        name="flat_rate",
        service_code_column="Order Flat Rate Service Code",
        modifier_column="Order Flat Rate Modifier",
        quantity_column="Order Flat Rate Quantity",
        cost_column="Order Flat Rate Cost",
    ),
    DetailFieldGroup(
        name="no_show",
        service_code_column="Order No Show Rate Service Code",
        modifier_column="Order No Show Rate Modifier",
        quantity_column="Order No Show Rate Quantity",
        cost_column="Order No Show Rate Cost",
    ),
    DetailFieldGroup(
        name="wait_time",
        service_code_column="Order Pick Up Wait Time Service Code",
        modifier_column="Order Pick Up Wait Time Modifier",
        quantity_column="Order Pick Up Wait Time Quantity",
        cost_column="Order Pick Up Wait Time Cost",
    ),
)

MILEAGE_GROUP = next(group for group in DETAIL_FIELD_GROUPS if group.is_mileage)

CENT = Decimal("0.01")


def to_decimal(value: Union[str, float, int, Decimal, None]) -> Decimal:
    """Parse a numeric cell, treating blanks and garbage as zero"""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    text = str(value).strip().replace("$", "").replace(",", "")
    if not text:
        return Decimal("0")
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    if not parsed.is_finite():
        return Decimal("0")
    return parsed


def round_miles(value: Union[float, int, Decimal]) -> int:
    """Round a distance to the nearest whole mile, halves rounding up"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_payer(payer_name: Optional[str]) -> str:
    """Collapse recurring-payment payer names onto the canonical payer"""
    payer = (payer_name or "").strip()
    if RECURRING_PAYER_PATTERN.search(payer):
        return RECURRING_PAYER_CANONICAL
    return payer


def normalize_authorization(client_authorization: Optional[str]) -> str:
    """Blank out system-generated placeholder authorizations"""
    authorization = (client_authorization or "").strip()
    if not authorization:
        return ""
    try:
        numeric = Decimal(authorization)
    except InvalidOperation:
        return authorization
    if numeric.is_finite() and numeric > AUTHORIZATION_PLACEHOLDER_LIMIT:
        return ""
    return authorization


def apply_short_trip_floor(payer: str, quantity: Decimal, has_override: bool) -> Decimal:
    """
    Zero out short mileage for the short-trip payers.

    An operator override always wins over the floor.
    """
    if has_override:
        return quantity
    if payer in SHORT_TRIP_PAYERS and quantity < SHORT_TRIP_MILEAGE_FLOOR:
        return Decimal("0")
    return quantity


def dead_mileage_allowed(payer: str, quantity: Decimal, has_override: bool) -> Tuple[bool, str]:
    """
    Decide whether a dead-mileage contribution is billed.

    Returns:
        Tuple of (allowed, reason); the reason explains an exclusion
    """
    if has_override:
        return True, "override"
    if payer in DEAD_MILEAGE_UNCONDITIONAL_PAYERS:
        return True, "unconditional_payer"
    if payer in DEAD_MILEAGE_THRESHOLD_PAYERS:
        if quantity >= DEAD_MILEAGE_THRESHOLD:
            return True, "threshold_met"
        return False, f"below {DEAD_MILEAGE_THRESHOLD} mile threshold for payer {payer}"
    return False, f"payer {payer or '<blank>'} is not billed for dead mileage"


def rescale_cost(cost: Decimal, source_quantity: Decimal, quantity: Decimal) -> Decimal:
    """Reprice a line at its source unit rate for a replaced quantity"""
    if source_quantity == 0:
        return cost
    if quantity == source_quantity:
        return cost
    return (cost / source_quantity * quantity).quantize(CENT, rounding=ROUND_HALF_UP)
