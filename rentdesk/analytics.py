"""Dashboard figures for the admin home screen."""

from datetime import timedelta

from sqlalchemy import func

from .models import Booking, BookingStatus, Invoice, InvoiceStatus, Payment, Vehicle, db, utcnow


def bookings_by_status() -> dict:
    counts = dict(db.session.query(Booking.status, func.count(Booking.id))
                  .group_by(Booking.status).all())
    return {status: counts.get(status, 0) for status in (
        BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.COLLECTED,
        BookingStatus.COMPLETED, BookingStatus.INVOICED, BookingStatus.PARTIALLY_PAID,
        BookingStatus.PAID, BookingStatus.CANCELLED)}


def fleet_summary(now=None) -> dict:
    """Vehicles out on rent, booked for today, and free."""
    now = now or utcnow()
    vehicles = Vehicle.query.all()
    out = {b.vehicle_id for b in Booking.query.filter_by(status=BookingStatus.COLLECTED)}
    booked_today = {b.vehicle_id for b in Booking.query.filter(
        Booking.status.in_((BookingStatus.PENDING, BookingStatus.CONFIRMED)),
        Booking.start_date <= now, Booking.end_date > now)}
    booked_today -= out
    return {
        'total': len(vehicles),
        'rented': len(out),
        'booked': len(booked_today),
        'available': len(vehicles) - len(out) - len(booked_today),
    }


def revenue(start=None, end=None) -> float:
    """Payments received in the period (all time when no bounds are given)."""
    query = db.session.query(func.coalesce(func.sum(Payment.amount), 0.0))
    if start is not None:
        query = query.filter(Payment.paid_at >= start)
    if end is not None:
        query = query.filter(Payment.paid_at < end)
    return round(float(query.scalar() or 0), 2)


def outstanding_invoices():
    """Invoices still carrying a balance, oldest due date first."""
    return (Invoice.query
            .filter(Invoice.status.in_((InvoiceStatus.DRAFT, InvoiceStatus.ISSUED,
                                        InvoiceStatus.PARTIALLY_PAID)),
                    Invoice.balance_due > 0)
            .order_by(Invoice.due_date.asc())
            .all())


def top_vehicles(limit: int = 5) -> list:
    """Vehicles ranked by payments collected on their bookings."""
    rows = (db.session.query(Vehicle, func.coalesce(func.sum(Payment.amount), 0.0))
            .join(Booking, Booking.vehicle_id == Vehicle.id)
            .join(Invoice, Invoice.booking_id == Booking.id)
            .join(Payment, Payment.invoice_id == Invoice.id)
            .group_by(Vehicle.id)
            .order_by(func.sum(Payment.amount).desc())
            .limit(limit)
            .all())
    return [{'vehicle_id': v.id, 'vehicle': v.display_name,
             'bookings': v.booking_count or 0, 'revenue': round(float(total), 2)}
            for v, total in rows]


def dashboard(now=None) -> dict:
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    next_month = (month_start.replace(day=28) + timedelta(days=10)).replace(day=1)
    outstanding = outstanding_invoices()
    overdue = [i for i in outstanding if i.due_date and i.due_date < now]
    return {
        'bookings': bookings_by_status(),
        'fleet': fleet_summary(now),
        'revenue': {
            'total': revenue(),
            'this_month': revenue(month_start, next_month),
        },
        'outstanding': {
            'count': len(outstanding),
            'balance': round(sum(i.balance_due for i in outstanding), 2),
            'overdue_count': len(overdue),
            'overdue_balance': round(sum(i.balance_due for i in overdue), 2),
        },
        'top_vehicles': top_vehicles(),
    }
