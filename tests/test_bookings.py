from datetime import timedelta

import pytest

from conftest import END, START, actor_for
from rentdesk import bookings
from rentdesk.errors import Conflict, NotFound, PermissionDenied, ValidationError
from rentdesk.models import Package, VehiclePackage, db
from rentdesk.workflow import BookingWorkflow


def _book(users, vehicle, start=START, end=END, who='customer', **kwargs):
    customer = users[who]
    return bookings.create_booking(actor_for(customer), customer, vehicle.id, start, end, **kwargs)


def test_overlapping_booking_is_refused(users, vehicle):
    _book(users, vehicle)
    with pytest.raises(Conflict):
        _book(users, vehicle, START + timedelta(days=1), END + timedelta(days=1), who='other')


def test_back_to_back_bookings_are_allowed(users, vehicle):
    _book(users, vehicle)
    follow_on = _book(users, vehicle, END, END + timedelta(days=2), who='other')
    assert follow_on.id is not None


def test_cancelled_booking_releases_dates(users, vehicle):
    first = _book(users, vehicle)
    BookingWorkflow(actor_for(users['customer'])).cancel(first)
    assert _book(users, vehicle, who='other').id != first.id


def test_end_must_follow_start(users, vehicle):
    with pytest.raises(ValidationError):
        _book(users, vehicle, START, START)


def test_unavailable_vehicle_is_refused(users, vehicle):
    vehicle.available = False
    db.session.commit()
    with pytest.raises(ValidationError):
        _book(users, vehicle)


def test_customer_cannot_book_for_someone_else(users, vehicle):
    with pytest.raises(PermissionDenied):
        bookings.create_booking(actor_for(users['customer']), users['other'], vehicle.id,
                                START, END)


def test_add_on_packages_are_priced_into_the_estimate(users, vehicle):
    driver = Package(name='Driver', price_per_day=2000)
    db.session.add(driver)
    db.session.commit()
    booking = _book(users, vehicle, package_ids=[driver.id, driver.id])
    assert [bp.price for bp in booking.packages] == [6000]
    assert booking.total_price == 15000 + 6000


def test_unknown_add_on_package(users, vehicle):
    with pytest.raises(NotFound):
        _book(users, vehicle, package_ids=[999])


def test_available_vehicles_excludes_booked_ones(users, vehicle, second_vehicle):
    _book(users, vehicle)
    free = bookings.available_vehicles(START, END)
    assert [v.id for v in free] == [second_vehicle.id]
    later = bookings.available_vehicles(END + timedelta(days=1), END + timedelta(days=2))
    assert {v.id for v in later} == {vehicle.id, second_vehicle.id}


def test_package_booking_includes_required_and_selected_costs(users, vehicle, airport_package):
    customer = users['customer']
    seat = next(c for c in airport_package.custom_costs if c.is_optional)
    booking = bookings.create_package_booking(actor_for(customer), customer,
                                              airport_package.id, vehicle.id, START, END,
                                              custom_cost_ids=[seat.id])
    assert booking.is_package_booking
    assert booking.package_base_price == 3000
    assert booking.custom_costs_total == 1500
    assert sorted(c.name for c in booking.custom_costs) == ['Child seat', 'Meet and greet']
    assert booking.vehicle_package_price == 5000
    assert booking.total_price == 15000 + 3000 + 1500


def test_package_custom_vehicle_price(users, vehicle, airport_package):
    airport_package.is_global = False
    db.session.add(VehiclePackage(vehicle_id=vehicle.id, package_id=airport_package.id,
                                  custom_price=4000))
    db.session.commit()
    customer = users['customer']
    booking = bookings.create_package_booking(actor_for(customer), customer,
                                              airport_package.id, vehicle.id, START, END)
    assert booking.vehicle_package_price == 4000
    assert booking.custom_costs_total == 1000


def test_non_global_package_needs_assignment(users, vehicle, airport_package):
    airport_package.is_global = False
    db.session.commit()
    customer = users['customer']
    with pytest.raises(ValidationError):
        bookings.create_package_booking(actor_for(customer), customer,
                                        airport_package.id, vehicle.id, START, END)


def test_package_duration_limits(users, vehicle, airport_package):
    airport_package.min_duration = 5
    db.session.commit()
    customer = users['customer']
    with pytest.raises(ValidationError):
        bookings.create_package_booking(actor_for(customer), customer,
                                        airport_package.id, vehicle.id, START, END)


def test_overdue_returns(users, vehicle):
    booking = _book(users, vehicle)
    flow = BookingWorkflow(actor_for(users['manager']))
    flow.confirm(booking, {})
    flow.collect(booking, {'collection_odometer': 100})
    assert bookings.overdue_returns(now=END + timedelta(hours=1)) == [booking]
    assert bookings.overdue_returns(now=END - timedelta(hours=1)) == []
