"""Rental pricing.

Everything in this module is a pure function of its arguments: no database
access, no clock reads.  The admin "complete rental" preview and the values
persisted on the booking both go through :func:`calculate`, so the number a
manager sees before pressing the button is the number that is stored.

The arithmetic follows the shop's rules:

* rental days are the elapsed time rounded up to whole days, never less
  than one;
* free mileage is the per-day allowance times the rental days, and only the
  distance above it is charged;
* the final amount is the base rental plus package charges, extra mileage
  and the four manual surcharges, less any discount;
* an advance is credited against the final amount only when it was marked
  as actually received at confirmation.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from .errors import ValidationError

ONE_DAY = timedelta(days=1)


def _money(value) -> float:
    return round(float(value or 0), 2)


def rental_days(start: datetime, end: datetime) -> int:
    """Whole days between ``start`` and ``end``, rounded up, minimum one."""
    elapsed = (end - start) / ONE_DAY
    return max(1, math.ceil(elapsed))


def free_mileage_for(days: int, per_day: float) -> float:
    return max(0, days) * float(per_day or 0)


def package_line_charge(base_price: Optional[float], price_per_day: Optional[float],
                        days: int, quantity: int = 1) -> float:
    """Charge for one package line: its base price when it has one,
    otherwise its day price over the rental."""
    if base_price:
        charge = float(base_price)
    elif price_per_day:
        charge = float(price_per_day) * days
    else:
        charge = 0.0
    return _money(charge * max(1, quantity or 1))


@dataclass(frozen=True)
class Mileage:
    total: float
    free: float
    extra: float
    rate: float
    cost: float


def mileage_breakdown(collection_odometer: Optional[int], return_odometer: Optional[int],
                      days: int, free_per_day: float, rate: float) -> Mileage:
    """Work out driven, free and chargeable distance for a rental.

    Missing odometer readings count as no distance driven.  A return reading
    below the collection reading is rejected rather than producing a
    negative distance.
    """
    if collection_odometer is None or return_odometer is None:
        total = 0.0
    else:
        total = float(return_odometer) - float(collection_odometer)
        if total < 0:
            raise ValidationError(
                "Return odometer reading cannot be lower than the collection reading",
                collection_odometer=collection_odometer,
                return_odometer=return_odometer)
    free = free_mileage_for(days, free_per_day)
    extra = max(0.0, total - free)
    rate = float(rate or 0)
    return Mileage(total=total, free=free, extra=extra, rate=rate, cost=_money(extra * rate))


@dataclass(frozen=True)
class PackageLine:
    name: str
    base_price: Optional[float] = None
    price_per_day: Optional[float] = None
    quantity: int = 1


@dataclass(frozen=True)
class PricingInput:
    """Everything the calculator needs, already resolved from the booking."""

    daily_rate: float
    days: int
    is_package_booking: bool = False
    use_flat_rate: bool = False
    # Package bookings carry a fixed package price plus selected custom
    # costs; regular bookings list add-on packages instead.
    package_base_price: float = 0.0
    custom_costs_total: float = 0.0
    packages: List[PackageLine] = field(default_factory=list)
    collection_odometer: Optional[int] = None
    return_odometer: Optional[int] = None
    free_mileage_per_day: float = 0.0
    extra_mileage_rate: float = 0.0
    fuel_charge: float = 0.0
    damage_charge: float = 0.0
    late_return_charge: float = 0.0
    other_charges: float = 0.0
    discount_amount: float = 0.0
    advance_amount: float = 0.0
    advance_paid: bool = False


@dataclass(frozen=True)
class PriceBreakdown:
    rental_days: int
    daily_rate: float
    flat_rate: bool
    base_rental: float
    package_charges: float
    total_mileage: float
    free_mileage: float
    extra_mileage: float
    extra_mileage_rate: float
    extra_mileage_cost: float
    fuel_charge: float
    damage_charge: float
    late_return_charge: float
    other_charges: float
    discount_amount: float
    final_amount: float
    advance_credited: float
    balance_due: float
    refund_due: float

    @property
    def additional_charges(self) -> float:
        return _money(self.extra_mileage_cost + self.fuel_charge + self.damage_charge
                      + self.late_return_charge + self.other_charges)

    def as_dict(self) -> dict:
        data = asdict(self)
        data['additional_charges'] = self.additional_charges
        return data


_NON_NEGATIVE = ('daily_rate', 'package_base_price', 'custom_costs_total',
                 'free_mileage_per_day', 'extra_mileage_rate', 'fuel_charge',
                 'damage_charge', 'late_return_charge', 'other_charges',
                 'discount_amount', 'advance_amount')


def _check_inputs(data: PricingInput) -> None:
    for name in _NON_NEGATIVE:
        if (getattr(data, name) or 0) < 0:
            raise ValidationError(f"{name} cannot be negative", field=name)
    if data.days < 1:
        raise ValidationError("Rental must last at least one day", field='days')


def calculate(data: PricingInput) -> PriceBreakdown:
    """Compute the full charge breakdown for a rental."""
    _check_inputs(data)
    days = data.days
    flat = bool(data.is_package_booking and data.use_flat_rate)
    daily_rate = _money(data.daily_rate)
    base_rental = daily_rate if flat else _money(daily_rate * days)

    if data.is_package_booking:
        package_charges = _money(data.package_base_price) + _money(data.custom_costs_total)
    else:
        package_charges = sum(package_line_charge(p.base_price, p.price_per_day, days, p.quantity)
                              for p in data.packages)
    package_charges = _money(package_charges)

    mileage = mileage_breakdown(data.collection_odometer, data.return_odometer,
                                days, data.free_mileage_per_day, data.extra_mileage_rate)

    fuel = _money(data.fuel_charge)
    damage = _money(data.damage_charge)
    late = _money(data.late_return_charge)
    other = _money(data.other_charges)
    discount = _money(data.discount_amount)

    gross = _money(base_rental + package_charges + mileage.cost + fuel + damage + late + other)
    if discount > gross:
        raise ValidationError("Discount cannot exceed the total charges", field='discount_amount')
    final_amount = _money(gross - discount)
    credited = _money(data.advance_amount) if data.advance_paid else 0.0
    return PriceBreakdown(
        rental_days=days,
        daily_rate=daily_rate,
        flat_rate=flat,
        base_rental=base_rental,
        package_charges=package_charges,
        total_mileage=mileage.total,
        free_mileage=mileage.free,
        extra_mileage=mileage.extra,
        extra_mileage_rate=mileage.rate,
        extra_mileage_cost=mileage.cost,
        fuel_charge=fuel,
        damage_charge=damage,
        late_return_charge=late,
        other_charges=other,
        discount_amount=discount,
        final_amount=final_amount,
        advance_credited=credited,
        balance_due=_money(max(0.0, final_amount - credited)),
        refund_due=_money(max(0.0, credited - final_amount)),
    )


def estimate_booking_total(daily_rate: float, days: int, package_charges: float = 0.0) -> float:
    """Quoted price shown when a booking is requested."""
    return _money(float(daily_rate) * days + (package_charges or 0))


def tax_for(taxable: float, rate_percent: float) -> float:
    if not rate_percent or rate_percent <= 0:
        return 0.0
    return _money(taxable * float(rate_percent) / 100)
