"""Booking requests and vehicle availability.

A vehicle is held from the moment a booking is requested until it comes
back: PENDING, CONFIRMED and COLLECTED bookings all block their dates.  Two
periods overlap when each starts before the other ends, so a booking that
ends at 10:00 does not clash with one starting at 10:00 the same day.
"""

import logging
from typing import List, Optional

from . import audit, notifications
from .errors import Conflict, NotFound, ValidationError
from .models import (Booking, BookingCustomCost, BookingPackage, BookingStatus, Package,
                     User, Vehicle, VehiclePackage, db, utcnow)
from .pricing import estimate_booking_total, package_line_charge, rental_days

logger = logging.getLogger(__name__)

TO_BE_CONFIRMED = 'To be confirmed'


def find_conflict(vehicle_id: int, start, end, exclude_id: int = None) -> Optional[Booking]:
    """Return an active booking for the vehicle overlapping [start, end)."""
    query = Booking.query.filter(
        Booking.vehicle_id == vehicle_id,
        Booking.status.in_(BookingStatus.ACTIVE),
        Booking.start_date < end,
        Booking.end_date > start,
    )
    if exclude_id is not None:
        query = query.filter(Booking.id != exclude_id)
    return query.order_by(Booking.start_date.asc()).first()


def available_vehicles(start, end) -> List[Vehicle]:
    """Vehicles marked available with no active booking overlapping the period."""
    _check_period(start, end)
    busy = (db.select(Booking.vehicle_id)
            .where(Booking.status.in_(BookingStatus.ACTIVE),
                   Booking.start_date < end,
                   Booking.end_date > start))
    return (Vehicle.query
            .filter(Vehicle.available.is_(True), Vehicle.id.not_in(busy))
            .order_by(Vehicle.price_per_day.asc())
            .all())


def _check_period(start, end) -> None:
    if start is None or end is None:
        raise ValidationError("Start date and end date are required")
    if end <= start:
        raise ValidationError("End date must be after start date", field='end_date')


def _load_vehicle(vehicle_id) -> Vehicle:
    vehicle = db.session.get(Vehicle, vehicle_id) if vehicle_id is not None else None
    if vehicle is None:
        raise NotFound("Vehicle not found")
    if not vehicle.available:
        raise ValidationError("Vehicle not available", vehicle_id=vehicle.id)
    return vehicle


def _check_free(vehicle: Vehicle, start, end) -> None:
    clash = find_conflict(vehicle.id, start, end)
    if clash is not None:
        raise Conflict(
            f"Vehicle is already booked from {clash.start_date:%d/%m/%Y} "
            f"to {clash.end_date:%d/%m/%Y}. Please choose a different vehicle or adjust dates.",
            booking_id=clash.id)


def create_booking(actor, customer: User, vehicle_id: int, start, end,
                   pickup_location: str = None, dropoff_location: str = None,
                   package_ids=None, request=None) -> Booking:
    """Request a regular booking, optionally with add-on packages."""
    actor.require('bookings:create')
    if customer.id != actor.user_id:
        actor.require('bookings:manage')
    _check_period(start, end)
    vehicle = _load_vehicle(vehicle_id)
    _check_free(vehicle, start, end)

    days = rental_days(start, end)
    lines = []
    for package_id in dict.fromkeys(package_ids or []):
        package = db.session.get(Package, package_id)
        if package is None or not package.is_active:
            raise NotFound("Package not found or inactive", package_id=package_id)
        lines.append(BookingPackage(
            package=package,
            price=package_line_charge(package.base_price, package.price_per_day, days)))
    package_total = sum(line.price for line in lines)

    booking = Booking(
        user=customer,
        vehicle=vehicle,
        start_date=start,
        end_date=end,
        status=BookingStatus.PENDING,
        pickup_location=pickup_location or TO_BE_CONFIRMED,
        dropoff_location=dropoff_location or TO_BE_CONFIRMED,
        packages=lines,
        total_price=estimate_booking_total(vehicle.price_per_day, days, package_total),
    )

    db.session.add(booking)
    db.session.flush()
    audit.record(actor, 'booking.create', 'Booking', booking.id,
                 {'vehicle_id': vehicle.id, 'days': days, 'total_price': booking.total_price},
                 request=request)
    db.session.commit()
    logger.info("booking %s requested for vehicle %s by user %s", booking.id, vehicle.id, customer.id)

    notifications.send(customer.id, notifications.Templates.booking_created(
        booking.id, vehicle.display_name))
    notifications.announce_change('Booking', booking.id, 'create')
    return booking


def create_package_booking(actor, customer: User, package_id: int, vehicle_id: int, start, end,
                           pickup_location: str = None, dropoff_location: str = None,
                           custom_cost_ids=None, notes: str = None, request=None) -> Booking:
    """Book a vehicle under a package.

    The vehicle is priced at the package's custom price for it when one is
    set.  Required custom costs are always included; optional ones only when
    selected.
    """
    actor.require('bookings:create')
    if customer.id != actor.user_id:
        actor.require('bookings:manage')
    _check_period(start, end)
    package = db.session.get(Package, package_id) if package_id is not None else None
    if package is None or not package.is_active:
        raise NotFound("Package not found or inactive")
    vehicle = _load_vehicle(vehicle_id)
    link = VehiclePackage.query.filter_by(vehicle_id=vehicle.id, package_id=package.id).first()
    if not package.is_global and link is None:
        raise ValidationError("Vehicle is not available for this package")

    days = rental_days(start, end)
    if package.min_duration and days < package.min_duration:
        raise ValidationError(f"Minimum duration for this package is {package.min_duration} days")
    if package.max_duration and days > package.max_duration:
        raise ValidationError(f"Maximum duration for this package is {package.max_duration} days")
    _check_free(vehicle, start, end)

    selected = set(custom_cost_ids or [])
    costs = [c for c in package.custom_costs
             if c.is_active and (not c.is_optional or c.id in selected)]
    custom_total = round(sum(c.price for c in costs), 2)
    base_price = package.base_price or 0.0
    vehicle_price = link.custom_price if link and link.custom_price else vehicle.price_per_day

    booking = Booking(
        user=customer,
        vehicle=vehicle,
        start_date=start,
        end_date=end,
        status=BookingStatus.PENDING,
        pickup_location=pickup_location or TO_BE_CONFIRMED,
        dropoff_location=dropoff_location or TO_BE_CONFIRMED,
        confirmation_notes=notes,
        is_package_booking=True,
        primary_package=package,
        package_base_price=base_price,
        vehicle_package_price=vehicle_price,
        custom_costs_total=custom_total,
        total_price=estimate_booking_total(vehicle_price, days, base_price + custom_total),
    )
    booking.packages.append(BookingPackage(package=package, price=base_price))
    for cost in costs:
        booking.custom_costs.append(BookingCustomCost(package_custom_cost_id=cost.id,
                                                      name=cost.name, price=cost.price))
    db.session.add(booking)
    db.session.flush()
    audit.record(actor, 'booking.create', 'Booking', booking.id,
                 {'package_id': package.id, 'vehicle_id': vehicle.id, 'days': days,
                  'total_price': booking.total_price},
                 request=request)
    db.session.commit()
    logger.info("package booking %s requested (package %s, vehicle %s)",
                booking.id, package.id, vehicle.id)

    notifications.send(customer.id, notifications.Templates.booking_created(
        booking.id, vehicle.display_name))
    notifications.notify_admins(('BOOKING_CREATED', 'New Package Booking',
                                 f"New {package.name} booking for {vehicle.display_name} "
                                 f"starting {start:%d/%m/%Y}.",
                                 {'booking_id': booking.id}))
    notifications.announce_change('Booking', booking.id, 'create')
    return booking


def upcoming_for_user(user_id: int):
    return (Booking.query.filter_by(user_id=user_id)
            .order_by(Booking.start_date.desc()).all())


def overdue_returns(now=None) -> List[Booking]:
    """Collected bookings whose end date has passed."""
    now = now or utcnow()
    return (Booking.query.filter(Booking.status == BookingStatus.COLLECTED,
                                 Booking.end_date < now)
            .order_by(Booking.end_date.asc()).all())
