"""In-app notifications for customers and admins.

Sending a notification is never allowed to undo the action that triggered
it: ``send`` and ``notify_admins`` log and swallow their own failures.

``admin_data_changed`` is a signal emitted after each booking transition so
that open admin screens (or anything else listening) can refetch.
"""

import json
import logging

from blinker import Namespace

from .models import Notification, User, UserStatus, db

logger = logging.getLogger(__name__)

_signals = Namespace()
admin_data_changed = _signals.signal('admin-data-changed')


class Templates:
    """Title/message builders for the notifications the workflow sends."""

    @staticmethod
    def booking_created(booking_id, vehicle_name):
        return ('BOOKING_CREATED', 'Booking Created',
                f"Your booking for {vehicle_name} has been created and is pending confirmation.",
                {'booking_id': booking_id})

    @staticmethod
    def booking_confirmed(booking_id, vehicle_name, start_date):
        return ('BOOKING_CONFIRMED', 'Booking Confirmed',
                f"Your booking for {vehicle_name} has been confirmed! Pickup date: {start_date}",
                {'booking_id': booking_id})

    @staticmethod
    def booking_cancelled(booking_id, vehicle_name):
        return ('BOOKING_CANCELLED', 'Booking Cancelled',
                f"Your booking for {vehicle_name} has been cancelled.",
                {'booking_id': booking_id})

    @staticmethod
    def rental_completed(booking_id, vehicle_name):
        return ('SYSTEM', 'Rental Completed',
                f"Your rental of {vehicle_name} has been completed. Thank you for choosing us!",
                {'booking_id': booking_id})

    @staticmethod
    def invoice_generated(invoice_id, invoice_number, total):
        return ('SYSTEM', 'Invoice Generated',
                f"Invoice {invoice_number} for {total} has been generated for your rental.",
                {'invoice_id': invoice_id, 'invoice_number': invoice_number})

    @staticmethod
    def invoice_sent(invoice_id, invoice_number, vehicle_name):
        return ('SYSTEM', 'Invoice Received',
                f"Your invoice {invoice_number} for {vehicle_name} rental has been sent to your email.",
                {'invoice_id': invoice_id})

    @staticmethod
    def payment_received(invoice_id, invoice_number, amount, balance, settled):
        if settled:
            message = (f"Payment of {amount} received. Invoice {invoice_number} "
                       f"is now fully paid. Thank you!")
        else:
            message = (f"Payment of {amount} received for invoice {invoice_number}. "
                       f"Remaining balance: {balance}")
        return ('PAYMENT_SUCCESS', 'Payment Received', message,
                {'invoice_id': invoice_id, 'invoice_number': invoice_number})


def send(user_id: int, template) -> None:
    """Store a notification for ``user_id`` in its own commit."""
    kind, title, message, data = template
    try:
        db.session.add(Notification(user_id=user_id, type=kind, title=title,
                                    message=message, data=json.dumps(data) if data else None))
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.warning("failed to send %s notification to user %s", kind, user_id, exc_info=True)


def notify_admins(template) -> None:
    try:
        admin_ids = [u.id for u in User.query.filter(
            User.role.in_(('MANAGER', 'ADMIN', 'SUPER_ADMIN')),
            User.status == UserStatus.ACTIVE)]
    except Exception:
        logger.warning("failed to look up admins for notification", exc_info=True)
        return
    for user_id in admin_ids:
        send(user_id, template)


def announce_change(resource: str, resource_id, action: str) -> None:
    try:
        admin_data_changed.send(resource, resource_id=resource_id, action=action)
    except Exception:
        logger.warning("admin change listener failed for %s %s", resource, resource_id,
                       exc_info=True)


def mark_read(user_id: int, ids=None) -> int:
    query = Notification.query.filter_by(user_id=user_id, read=False)
    if ids:
        query = query.filter(Notification.id.in_(ids))
    count = 0
    for note in query:
        note.read = True
        count += 1
    db.session.commit()
    return count
