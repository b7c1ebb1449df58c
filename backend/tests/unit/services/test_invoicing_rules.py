"""
Tests for payer and service-code business rules.
"""

from decimal import Decimal

import pytest

from backend.services.invoicing.rules import (
    DEAD_MILEAGE_THRESHOLD,
    DETAIL_FIELD_GROUPS,
    MILEAGE_GROUP,
    apply_short_trip_floor,
    dead_mileage_allowed,
    normalize_authorization,
    normalize_payer,
    rescale_cost,
    round_miles,
    to_decimal,
)


class TestConversions:

    @pytest.mark.parametrize("raw, expected", [
        ("12.5", Decimal("12.5")),
        ("$1,250.00", Decimal("1250.00")),
        ("", Decimal("0")),
        ("n/a", Decimal("0")),
        (None, Decimal("0")),
        ("NaN", Decimal("0")),
    ])
    def test_to_decimal(self, raw, expected):
        assert to_decimal(raw) == expected

    @pytest.mark.parametrize("value, expected", [(12.4, 12), (7.6, 8), (7.5, 8), (2.5, 3), (0, 0)])
    def test_round_miles_half_up(self, value, expected):
        assert round_miles(value) == expected


class TestPayerNormalization:

    def test_recurring_payers_collapse(self):
        assert normalize_payer("PP - Jane Doe Recurring") == "PP"
        assert normalize_payer("RECURRING payment") == "PP"

    def test_other_payers_trimmed(self):
        assert normalize_payer(" MCW ") == "MCW"
        assert normalize_payer("Recurrence Health") == "Recurrence Health"
        assert normalize_payer(None) == ""


class TestAuthorization:

    def test_placeholder_is_blanked(self):
        assert normalize_authorization("1000000000000001") == ""

    def test_real_values_kept(self):
        assert normalize_authorization("AUTH1") == "AUTH1"
        assert normalize_authorization("1000000000000000") == "1000000000000000"
        assert normalize_authorization(" 12345 ") == "12345"
        assert normalize_authorization(None) == ""


class TestShortTripFloor:

    def test_short_trip_payers_zeroed(self):
        assert apply_short_trip_floor("CC", Decimal("3"), has_override=False) == 0
        assert apply_short_trip_floor("MCW", Decimal("4.9"), has_override=False) == 0

    def test_floor_is_inclusive_of_five(self):
        assert apply_short_trip_floor("CC", Decimal("5"), has_override=False) == Decimal("5")

    def test_override_wins(self):
        assert apply_short_trip_floor("CC", Decimal("3"), has_override=True) == Decimal("3")

    def test_other_payers_untouched(self):
        assert apply_short_trip_floor("I", Decimal("1"), has_override=False) == Decimal("1")


class TestDeadMileage:

    @pytest.mark.parametrize("payer, quantity, expected", [
        ("I", 1, True),
        ("CC", DEAD_MILEAGE_THRESHOLD, True),
        ("MCW", 20, True),
        ("PP", 14, False),
        ("MCW", 10, False),
        ("Medicaid", 40, False),
        ("", 40, False),
    ])
    def test_payer_rules(self, payer, quantity, expected):
        allowed, reason = dead_mileage_allowed(payer, Decimal(quantity), has_override=False)
        assert allowed is expected
        assert reason

    def test_override_always_allowed(self):
        allowed, reason = dead_mileage_allowed("Medicaid", Decimal("2"), has_override=True)
        assert allowed is True
        assert reason == "override"


class TestRescaleCost:

    def test_unit_rate_kept(self):
        assert rescale_cost(Decimal("25.00"), Decimal("10"), Decimal("13")) == Decimal("32.50")

    def test_zero_source_quantity_keeps_cost(self):
        assert rescale_cost(Decimal("5.00"), Decimal("0"), Decimal("3")) == Decimal("5.00")


def test_detail_field_groups():
    assert [group.name for group in DETAIL_FIELD_GROUPS] == ["load_fee", "mileage", "flat_rate", "no_show", "wait_time"]
    assert MILEAGE_GROUP.service_code_column == "Order Mileage Service Code"
