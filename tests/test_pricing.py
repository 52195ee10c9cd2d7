from datetime import datetime, timedelta

import pytest

from rentdesk.errors import ValidationError
from rentdesk.pricing import (PackageLine, PricingInput, calculate, estimate_booking_total,
                              mileage_breakdown, package_line_charge, rental_days, tax_for)

START = datetime(2026, 3, 1, 9, 0)


@pytest.mark.parametrize('elapsed, expected', [
    (timedelta(hours=3), 1),
    (timedelta(days=1), 1),
    (timedelta(days=1, minutes=1), 2),
    (timedelta(days=3), 3),
    (timedelta(days=2, hours=23), 3),
    (timedelta(0), 1),
])
def test_rental_days_round_up_with_minimum_of_one(elapsed, expected):
    assert rental_days(START, START + elapsed) == expected


def test_extra_mileage_is_distance_above_allowance():
    mileage = mileage_breakdown(10000, 10450, days=3, free_per_day=100, rate=50)
    assert mileage.total == 450
    assert mileage.free == 300
    assert mileage.extra == 150
    assert mileage.cost == 7500


def test_mileage_within_allowance_costs_nothing():
    mileage = mileage_breakdown(10000, 10120, days=2, free_per_day=100, rate=50)
    assert mileage.extra == 0
    assert mileage.cost == 0


def test_missing_odometer_counts_as_no_distance():
    mileage = mileage_breakdown(None, 10450, days=3, free_per_day=100, rate=50)
    assert mileage.total == 0
    assert mileage.cost == 0


def test_return_reading_below_collection_is_rejected():
    with pytest.raises(ValidationError):
        mileage_breakdown(10000, 9000, days=1, free_per_day=100, rate=50)


def _three_day_rental(**overrides):
    values = dict(daily_rate=5000, days=3, collection_odometer=10000, return_odometer=10450,
                  free_mileage_per_day=100, extra_mileage_rate=50,
                  advance_amount=5000, advance_paid=True)
    values.update(overrides)
    return PricingInput(**values)


def test_three_day_rental_with_extra_mileage_and_advance():
    result = calculate(_three_day_rental())
    assert result.base_rental == 15000
    assert result.extra_mileage_cost == 7500
    assert result.final_amount == 22500
    assert result.advance_credited == 5000
    assert result.balance_due == 17500
    assert result.refund_due == 0


def test_final_amount_adds_surcharges_and_subtracts_discount():
    result = calculate(_three_day_rental(fuel_charge=1200, damage_charge=3000,
                                         late_return_charge=800, other_charges=500,
                                         discount_amount=2000))
    expected = 15000 + 7500 + 1200 + 3000 + 800 + 500 - 2000
    assert result.final_amount == expected
    assert result.additional_charges == 7500 + 1200 + 3000 + 800 + 500
    assert result.balance_due == expected - 5000


def test_unpaid_advance_is_not_credited():
    result = calculate(_three_day_rental(advance_paid=False))
    assert result.advance_credited == 0
    assert result.balance_due == 22500


def test_advance_larger_than_final_amount_becomes_refund():
    result = calculate(_three_day_rental(return_odometer=10100, advance_amount=20000))
    assert result.final_amount == 15000
    assert result.balance_due == 0
    assert result.refund_due == 5000


def test_flat_rate_applies_to_package_bookings_only():
    flat = calculate(_three_day_rental(is_package_booking=True, use_flat_rate=True))
    assert flat.flat_rate is True
    assert flat.base_rental == 5000

    ignored = calculate(_three_day_rental(use_flat_rate=True))
    assert ignored.flat_rate is False
    assert ignored.base_rental == 15000


def test_package_booking_adds_base_price_and_custom_costs():
    result = calculate(_three_day_rental(is_package_booking=True, package_base_price=3000,
                                         custom_costs_total=1500,
                                         packages=[PackageLine('ignored', 999)]))
    assert result.package_charges == 4500


def test_add_on_packages_use_base_price_or_day_price():
    lines = [PackageLine('Airport drop', base_price=2500),
             PackageLine('Driver', price_per_day=1500),
             PackageLine('Child seat', price_per_day=200, quantity=2)]
    result = calculate(_three_day_rental(packages=lines))
    assert result.package_charges == 2500 + 1500 * 3 + 200 * 3 * 2


def test_package_line_charge_without_prices_is_zero():
    assert package_line_charge(None, None, 5) == 0


def test_discount_above_charges_is_rejected():
    with pytest.raises(ValidationError):
        calculate(_three_day_rental(discount_amount=50000))


@pytest.mark.parametrize('field', ['fuel_charge', 'discount_amount', 'daily_rate'])
def test_negative_inputs_are_rejected(field):
    with pytest.raises(ValidationError):
        calculate(_three_day_rental(**{field: -1}))


def test_calculation_is_deterministic():
    data = _three_day_rental(fuel_charge=333.33, discount_amount=10.01,
                             packages=[PackageLine('Driver', price_per_day=1234.56)])
    assert calculate(data) == calculate(data)
    assert calculate(data).as_dict() == calculate(data).as_dict()


def test_amounts_are_rounded_to_cents():
    result = calculate(_three_day_rental(daily_rate=1000.005, return_odometer=10000,
                                         advance_paid=False))
    assert result.final_amount == round(result.final_amount, 2)


def test_estimate_and_tax_helpers():
    assert estimate_booking_total(5000, 3, 2500) == 17500
    assert tax_for(10000, 15) == 1500
    assert tax_for(10000, 0) == 0
