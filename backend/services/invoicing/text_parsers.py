"""
Parsers for the semi-structured text columns of the billing export.

Each parser returns a ParseResult holding typed tokens plus the ParseErrors
for segments it had to skip, so malformed input never aborts a row.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Generic, List, TypeVar

from .exceptions import ParseError
from .rules import CENT, to_decimal


T = TypeVar("T")


@dataclass
class ParseResult(Generic[T]):
    tokens: List[T] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)


@dataclass(frozen=True)
class CustomServiceCodeToken:
    service_code: str
    modifier: str
    quantity: Decimal
    cost: Decimal


@dataclass(frozen=True)
class OrderItemToken:
    service_code: str
    modifier: str
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return (self.quantity * self.unit_cost).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DetailItem:
    service_code: str
    modifier: str
    quantity: Decimal
    cost: Decimal


_NUMBER = r"\d+(?:\.\d+)?"

_SEGMENT_START = re.compile(r"Service code:", re.IGNORECASE)
_CUSTOM_CODE_SEGMENT = re.compile(
    r"Service code:\s*(?P<code>[\w-]+)\s*,\s*"
    r"Modifier:\s*(?P<modifier>[\w-]*)\s*,\s*"
    rf"Quantity:\s*(?P<quantity>{_NUMBER})\s*,\s*"
    rf"Cost:\s*\$?(?P<cost>{_NUMBER})",
    re.IGNORECASE,
)

_ORDER_ITEM_SPLIT = re.compile(r"\r?\n|,")
_ORDER_ITEM_PRICE = re.compile(rf"\((?P<quantity>{_NUMBER})@\$(?P<unit_cost>{_NUMBER})\)")


def split_list(value: str) -> List[str]:
    """Split a comma-joined cell into trimmed parts"""
    if not value:
        return []
    return [part.strip() for part in value.split(",")]


def parse_custom_service_codes(text: str) -> ParseResult[CustomServiceCodeToken]:
    """
    Parse the "Order Custom Service codes" column.

    Grammar, repeated:
        Service code: <code>, Modifier: <mod>, Quantity:<qty>, Cost: <cost>

    Args:
        text: Raw column value

    Returns:
        ParseResult with one token per well-formed segment
    """
    result: ParseResult[CustomServiceCodeToken] = ParseResult()
    if not text or not text.strip():
        return result

    starts = [match.start() for match in _SEGMENT_START.finditer(text)]
    if not starts:
        result.errors.append(ParseError("custom_service_codes", text.strip(), "no service code segment"))
        return result

    boundaries = starts + [len(text)]
    for begin, end in zip(boundaries, boundaries[1:]):
        segment = text[begin:end].strip().rstrip(",;").strip()
        match = _CUSTOM_CODE_SEGMENT.match(segment)
        if not match:
            result.errors.append(ParseError("custom_service_codes", segment, "malformed segment"))
            continue
        result.tokens.append(CustomServiceCodeToken(
            service_code=match.group("code"),
            modifier=match.group("modifier"),
            quantity=Decimal(match.group("quantity")),
            cost=Decimal(match.group("cost")),
        ))

    return result


def parse_order_items(order_items: str, service_codes: str, modifiers: str) -> ParseResult[OrderItemToken]:
    """
    Parse the "Order Item(s)" column against its parallel code/modifier lists.

    Each item looks like ``T2003-RD-U5C2-CC: Wait Time (2.0@$21.0)``. The
    service code is the text before the first dash, its modifier comes from the
    same position in the modifier list, or the first modifier when the code is
    not listed. Items without a price default to quantity 1 at no cost.
    """
    result: ParseResult[OrderItemToken] = ParseResult()
    if not order_items or not service_codes or not modifiers:
        return result

    codes = split_list(service_codes)
    mods = split_list(modifiers)

    for description in (part.strip() for part in _ORDER_ITEM_SPLIT.split(order_items)):
        if not description:
            continue
        left, separator, right = description.partition(":")
        if not separator or not left.strip() or not right.strip():
            result.errors.append(ParseError("order_items", description, "missing item code separator"))
            continue

        code = left.split("-")[0].strip()
        if code in codes:
            modifier = mods[codes.index(code)] if codes.index(code) < len(mods) else ""
        else:
            modifier = mods[0] if mods else ""

        price = _ORDER_ITEM_PRICE.search(right)
        if price:
            quantity = Decimal(price.group("quantity"))
            unit_cost = Decimal(price.group("unit_cost"))
        else:
            quantity = Decimal("1")
            unit_cost = Decimal("0")

        result.tokens.append(OrderItemToken(
            service_code=code,
            modifier=modifier or "",
            quantity=quantity,
            unit_cost=unit_cost,
        ))

    return result


def _value_at(values: List[str], index: int) -> str:
    return values[index] if index < len(values) else ""


def split_detail_group(codes: str, modifiers: str, quantities: str, costs: str) -> List[DetailItem]:
    """
    Split one detail field group into its (code, modifier, qty, cost) tuples.

    The code list drives iteration. Positions missing from a shorter parallel
    list read as empty, so a code without a quantity is skipped. Tuples with an
    empty code or zero quantity are skipped.
    """
    code_list = split_list(codes)
    modifier_list = split_list(modifiers)
    quantity_list = split_list(quantities)
    cost_list = split_list(costs)

    items = []
    for index, code in enumerate(code_list):
        if not code:
            continue
        quantity = to_decimal(_value_at(quantity_list, index))
        if quantity == 0:
            continue
        items.append(DetailItem(
            service_code=code,
            modifier=_value_at(modifier_list, index),
            quantity=quantity,
            cost=to_decimal(_value_at(cost_list, index)),
        ))
    return items
