"""Booking lifecycle.

A booking moves forward through::

    PENDING -> CONFIRMED -> COLLECTED -> COMPLETED -> INVOICED
            -> PARTIALLY_PAID -> PAID

and may be cancelled from any status before PAID.  Each admin action is one
method on :class:`BookingWorkflow`.  A method checks the actor's permission
and the booking's status, applies its changes, writes the audit row and
commits once; notifications go out only after that commit.
"""

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from . import audit, invoices, notifications
from .config import format_currency
from .errors import Conflict, IllegalTransition, NotFound, PermissionDenied, ValidationError
from .models import (Booking, BookingDocument, BookingStatus, InvoiceStatus, Payment, db,
                     utcnow)
from .parsing import (get_bool, get_choice, get_float, get_int, get_moment, get_text)
from .pricing import PackageLine, PricingInput, calculate, free_mileage_for, rental_days

logger = logging.getLogger(__name__)

S = BookingStatus

# action -> statuses it may be taken from
TRANSITIONS = {
    'confirm': (S.PENDING,),
    'collect': (S.CONFIRMED,),
    'complete': (S.COLLECTED,),
    'preview': (S.COLLECTED,),
    'generate-invoice': (S.COMPLETED,),
    'record-payment': (S.INVOICED, S.PARTIALLY_PAID),
    'issue-invoice': (S.INVOICED, S.PARTIALLY_PAID, S.PAID),
    'cancel': (S.PENDING, S.CONFIRMED, S.COLLECTED, S.COMPLETED, S.INVOICED, S.PARTIALLY_PAID),
}

ORDER = [S.PENDING, S.CONFIRMED, S.COLLECTED, S.COMPLETED, S.INVOICED, S.PARTIALLY_PAID, S.PAID]

_FORWARD = {
    S.PENDING: {S.CONFIRMED},
    S.CONFIRMED: {S.COLLECTED},
    S.COLLECTED: {S.COMPLETED},
    S.COMPLETED: {S.INVOICED},
    S.INVOICED: {S.PARTIALLY_PAID, S.PAID},
    S.PARTIALLY_PAID: {S.PARTIALLY_PAID, S.PAID},
}


def can_transition(current: str, target: str) -> bool:
    """Whether a booking in ``current`` may move to ``target``."""
    if target == S.CANCELLED:
        return current not in S.TERMINAL
    return target in _FORWARD.get(current, ())


class BookingWorkflow:
    """Admin actions on a single booking, run on behalf of ``actor``."""

    def __init__(self, actor, config=None, request=None, now=None):
        self.actor = actor
        self.config = config if config is not None else current_app.config
        self.request = request
        self.now = now

    def _clock(self):
        return self.now or utcnow()

    def load(self, booking_id) -> Booking:
        booking = db.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found", booking_id=booking_id)
        return booking

    def _guard(self, action: str, booking: Booking) -> None:
        if booking.status not in TRANSITIONS[action]:
            raise IllegalTransition(action, booking.status)

    def _move(self, booking: Booking, target: str) -> None:
        if not can_transition(booking.status, target):
            raise IllegalTransition(target.lower(), booking.status)
        booking.status = target

    def _audit(self, action: str, resource: str, resource_id, details=None) -> None:
        audit.record(self.actor, action, resource, resource_id, details, request=self.request)

    def _finish(self, booking: Booking, action: str) -> None:
        logger.info("booking %s: %s by user %s -> %s",
                    booking.id, action, self.actor.user_id, booking.status)
        notifications.announce_change('Booking', booking.id, action)

    def _money(self, amount) -> str:
        return format_currency(amount, self.config)

    # -- stages ------------------------------------------------------------

    def confirm(self, booking: Booking, data: dict) -> Booking:
        """Accept the request and record the advance and mileage terms."""
        self.actor.require('bookings:update')
        self._guard('confirm', booking)

        advance = get_float(data, 'advance_amount', 0.0, minimum=0)
        advance_paid = get_bool(data, 'advance_paid')
        method = get_choice(data, 'advance_payment_method', self.config['PAYMENT_METHODS'])
        if advance_paid and advance > 0 and method is None:
            raise ValidationError("Payment method is required for a paid advance",
                                  field='advance_payment_method')
        booked_days = rental_days(booking.start_date, booking.end_date)
        free = get_float(data, 'free_mileage', minimum=0)
        if free is None:
            free = free_mileage_for(booked_days, self.config['FREE_MILEAGE_PER_DAY'])
        rate = get_float(data, 'extra_mileage_rate', self.config['EXTRA_MILEAGE_RATE'], minimum=0)

        now = self._clock()
        booking.advance_amount = advance
        booking.advance_paid = advance_paid
        booking.advance_paid_at = now if advance_paid else None
        booking.advance_payment_method = method
        booking.free_mileage = free
        booking.extra_mileage_rate = rate
        booking.confirmation_notes = get_text(data, 'notes', booking.confirmation_notes)
        booking.pickup_location = get_text(data, 'pickup_location', booking.pickup_location)
        booking.dropoff_location = get_text(data, 'dropoff_location', booking.dropoff_location)
        booking.confirmed_at = now
        booking.confirmed_by = self.actor.user_id
        self._move(booking, S.CONFIRMED)
        self._audit('booking.confirm', 'Booking', booking.id,
                    {'advance_amount': advance, 'advance_paid': advance_paid,
                     'free_mileage': free, 'extra_mileage_rate': rate})
        db.session.commit()
        self._finish(booking, 'confirm')

        notifications.send(booking.user_id, notifications.Templates.booking_confirmed(
            booking.id, booking.vehicle.display_name, f"{booking.start_date:%d/%m/%Y}"))
        return booking

    def collect(self, booking: Booking, data: dict, documents=None) -> Booking:
        """Hand the vehicle over: odometer, fuel and identity documents."""
        self.actor.require('bookings:update')
        self._guard('collect', booking)

        odometer = get_int(data, 'collection_odometer', minimum=0)
        if odometer is None:
            raise ValidationError("Collection odometer reading is required",
                                  field='collection_odometer')
        fuel = get_choice(data, 'collection_fuel_level', self.config['FUEL_LEVELS'], 'FULL')
        documents = documents if documents is not None else data.get('documents') or []

        now = self._clock()
        for doc in documents:
            booking.documents.append(self._document(doc))
        booking.collection_odometer = odometer
        booking.collection_fuel_level = fuel
        booking.collection_notes = get_text(data, 'collection_notes')
        booking.collected_at = now
        booking.collected_by = self.actor.user_id
        booking.vehicle.available = False
        self._move(booking, S.COLLECTED)
        self._audit('booking.collect', 'Booking', booking.id,
                    {'odometer': odometer, 'fuel_level': fuel, 'documents': len(documents)})
        db.session.commit()
        self._finish(booking, 'collect')
        return booking

    def _document(self, doc: dict) -> BookingDocument:
        kind = get_choice(doc, 'type', self.config['DOCUMENT_TYPES'], 'OTHER')
        url = get_text(doc, 'file_url')
        if not url:
            raise ValidationError("Document file_url is required", field='documents')
        return BookingDocument(type=kind, file_url=url,
                               title=get_text(doc, 'title'),
                               description=get_text(doc, 'description'),
                               file_name=get_text(doc, 'file_name'),
                               uploaded_by=self.actor.user_id)

    def _actual_period(self, booking: Booking, data: dict):
        start = get_moment(data, 'actual_start') or booking.collected_at or booking.start_date
        end = get_moment(data, 'actual_end') or self._clock()
        if end < start:
            raise ValidationError("Actual end cannot be before actual start", field='actual_end')
        return start, end

    def pricing_input(self, booking: Booking, data: dict, days: int) -> PricingInput:
        """Resolve the calculator's inputs from the booking and the form."""
        if booking.is_package_booking:
            daily_rate = booking.vehicle_package_price or booking.vehicle.price_per_day
            packages = []
        else:
            daily_rate = booking.vehicle.price_per_day
            packages = [PackageLine(name=bp.package.name, base_price=bp.package.base_price,
                                    price_per_day=bp.package.price_per_day,
                                    quantity=bp.quantity)
                        for bp in booking.packages]
        rate = booking.extra_mileage_rate
        if rate is None:
            rate = self.config['EXTRA_MILEAGE_RATE']
        return PricingInput(
            daily_rate=daily_rate,
            days=days,
            is_package_booking=booking.is_package_booking,
            use_flat_rate=get_bool(data, 'use_flat_rate'),
            package_base_price=booking.package_base_price or 0.0,
            custom_costs_total=booking.custom_costs_total or 0.0,
            packages=packages,
            collection_odometer=booking.collection_odometer,
            return_odometer=get_int(data, 'return_odometer', minimum=0),
            free_mileage_per_day=self.config['FREE_MILEAGE_PER_DAY'],
            extra_mileage_rate=get_float(data, 'extra_mileage_rate', rate, minimum=0),
            fuel_charge=get_float(data, 'fuel_charge', 0.0, minimum=0),
            damage_charge=get_float(data, 'damage_charge', 0.0, minimum=0),
            late_return_charge=get_float(data, 'late_return_charge', 0.0, minimum=0),
            other_charges=get_float(data, 'other_charges', 0.0, minimum=0),
            discount_amount=get_float(data, 'discount_amount', 0.0, minimum=0),
            advance_amount=booking.advance_amount or 0.0,
            advance_paid=booking.advance_paid,
        )

    def preview(self, booking: Booking, data: dict) -> dict:
        """Price a return without saving anything."""
        self.actor.require('bookings:update')
        self._guard('preview', booking)
        start, end = self._actual_period(booking, data)
        breakdown = calculate(self.pricing_input(booking, data, rental_days(start, end)))
        result = breakdown.as_dict()
        result['actual_start'] = start.isoformat()
        result['actual_end'] = end.isoformat()
        return result

    def complete(self, booking: Booking, data: dict) -> Booking:
        """Take the vehicle back and work out the final charges."""
        self.actor.require('bookings:update')
        self._guard('complete', booking)
        if get_int(data, 'return_odometer') is None:
            raise ValidationError("Return odometer reading is required", field='return_odometer')
        start, end = self._actual_period(booking, data)
        days = rental_days(start, end)
        pricing = self.pricing_input(booking, data, days)
        breakdown = calculate(pricing)

        booking.start_date = start
        booking.end_date = end
        booking.return_odometer = pricing.return_odometer
        booking.return_fuel_level = get_choice(data, 'return_fuel_level',
                                               self.config['FUEL_LEVELS'])
        booking.return_notes = get_text(data, 'return_notes')
        booking.use_flat_rate = breakdown.flat_rate
        booking.rental_days = days
        booking.daily_rate = breakdown.daily_rate
        booking.base_rental = breakdown.base_rental
        booking.package_charges = breakdown.package_charges
        booking.total_mileage = breakdown.total_mileage
        booking.free_mileage = breakdown.free_mileage
        booking.extra_mileage = breakdown.extra_mileage
        booking.extra_mileage_rate = breakdown.extra_mileage_rate
        booking.extra_mileage_cost = breakdown.extra_mileage_cost
        booking.fuel_charge = breakdown.fuel_charge
        booking.damage_charge = breakdown.damage_charge
        booking.late_return_charge = breakdown.late_return_charge
        booking.other_charges = breakdown.other_charges
        booking.other_charges_note = get_text(data, 'other_charges_note')
        booking.discount_amount = breakdown.discount_amount
        booking.discount_reason = get_text(data, 'discount_reason')
        booking.final_amount = breakdown.final_amount
        booking.balance_due = breakdown.balance_due
        booking.refund_due = breakdown.refund_due
        booking.returned_at = self._clock()
        booking.returned_by = self.actor.user_id
        booking.vehicle.available = True
        booking.vehicle.booking_count = (booking.vehicle.booking_count or 0) + 1
        self._move(booking, S.COMPLETED)
        self._audit('booking.complete', 'Booking', booking.id,
                    {'rental_days': days, 'final_amount': breakdown.final_amount,
                     'balance_due': breakdown.balance_due})
        db.session.commit()
        self._finish(booking, 'complete')

        notifications.send(booking.user_id, notifications.Templates.rental_completed(
            booking.id, booking.vehicle.display_name))
        return booking

    # -- invoicing and payment ---------------------------------------------

    def generate_invoice(self, booking: Booking, data: dict = None):
        self.actor.require('bookings:update')
        self._guard('generate-invoice', booking)
        if booking.invoice is not None:
            raise Conflict("Invoice already exists for this booking",
                           invoice_id=booking.invoice.id)
        data = data or {}
        now = self._clock()
        invoice = invoices.compose_invoice(booking, self.config, created_by=self.actor.user_id,
                                           tax_rate=get_float(data, 'tax_rate', minimum=0),
                                           notes=get_text(data, 'notes'), now=now)
        db.session.add(invoice)
        if invoice.amount_paid > 0:
            invoice.payments.append(Payment(
                amount=invoice.amount_paid,
                method=booking.advance_payment_method or 'CASH',
                notes='Advance payment collected at booking confirmation',
                received_by=booking.confirmed_by,
                paid_at=booking.advance_paid_at or now,
            ))
        booking.balance_due = invoice.balance_due
        self._move(booking, S.INVOICED)
        if invoice.status == InvoiceStatus.PAID:
            self._move(booking, S.PAID)
        db.session.flush()
        self._audit('invoice.generate', 'Invoice', invoice.id,
                    {'booking_id': booking.id, 'invoice_number': invoice.invoice_number,
                     'total_amount': invoice.total_amount, 'balance_due': invoice.balance_due})
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict("Invoice number already taken, please retry") from None
        self._finish(booking, 'generate-invoice')

        notifications.send(booking.user_id, notifications.Templates.invoice_generated(
            invoice.id, invoice.invoice_number, self._money(invoice.total_amount)))
        return invoice

    def _open_invoice(self, booking: Booking):
        invoice = booking.invoice
        if invoice is None:
            raise NotFound("No invoice found for this booking", booking_id=booking.id)
        if invoice.status == InvoiceStatus.CANCELLED:
            raise ValidationError("Invoice has been cancelled")
        return invoice

    def record_payment(self, booking: Booking, data: dict) -> Payment:
        """Apply a payment against the booking's invoice balance."""
        self.actor.require('payments:update')
        self._guard('record-payment', booking)
        invoice = self._open_invoice(booking)
        if invoice.balance_due <= 0:
            raise ValidationError("Invoice has no outstanding balance")

        amount = get_float(data, 'amount')
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be greater than zero", field='amount')
        amount = round(amount, 2)
        method = get_choice(data, 'method', self.config['PAYMENT_METHODS'])
        if method is None:
            raise ValidationError("Payment method is required", field='method')
        if amount > invoice.balance_due:
            raise ValidationError("Payment exceeds the outstanding balance",
                                  field='amount', balance_due=invoice.balance_due)

        now = self._clock()
        payment = Payment(amount=amount, method=method,
                          reference=get_text(data, 'reference'),
                          notes=get_text(data, 'notes'),
                          received_by=self.actor.user_id, paid_at=now)
        invoice.payments.append(payment)
        invoice.amount_paid = round((invoice.amount_paid or 0) + amount, 2)
        invoice.balance_due = round(max(0.0, invoice.total_amount - invoice.amount_paid), 2)
        settled = invoice.balance_due == 0
        if settled:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = now
            self._move(booking, S.PAID)
        else:
            invoice.status = InvoiceStatus.PARTIALLY_PAID
            self._move(booking, S.PARTIALLY_PAID)
        booking.balance_due = invoice.balance_due
        db.session.flush()
        self._audit('payment.record', 'Payment', payment.id,
                    {'invoice_id': invoice.id, 'amount': amount, 'method': method,
                     'balance_due': invoice.balance_due})
        db.session.commit()
        self._finish(booking, 'record-payment')

        notifications.send(booking.user_id, notifications.Templates.payment_received(
            invoice.id, invoice.invoice_number, self._money(amount),
            self._money(invoice.balance_due), settled))
        return payment

    def issue_invoice(self, booking: Booking, data: dict = None):
        self.actor.require('bookings:update')
        self._guard('issue-invoice', booking)
        invoice = self._open_invoice(booking)
        invoices.mark_issued(invoice, self._clock())
        self._audit('invoice.issue', 'Invoice', invoice.id,
                    {'invoice_number': invoice.invoice_number, 'status': invoice.status})
        db.session.commit()
        self._finish(booking, 'issue-invoice')
        return invoice

    # -- cancellation --------------------------------------------------------

    def cancel(self, booking: Booking, data: dict = None) -> Booking:
        """Cancel from any status before PAID.

        Customers without booking rights may only cancel their own request
        while it is still PENDING or CONFIRMED.
        """
        self._guard('cancel', booking)
        if not self.actor.can('bookings:update'):
            if booking.user_id != self.actor.user_id:
                raise PermissionDenied("You can only cancel your own bookings")
            if booking.status not in (S.PENDING, S.CONFIRMED):
                raise PermissionDenied("This booking can no longer be cancelled online")
        data = data or {}

        previous = booking.status
        if previous == S.COLLECTED:
            booking.vehicle.available = True
        elif ORDER.index(previous) >= ORDER.index(S.COMPLETED) and booking.vehicle.booking_count:
            # a voided rental no longer counts towards the vehicle's history
            booking.vehicle.booking_count -= 1
        if booking.invoice is not None and booking.invoice.status != InvoiceStatus.CANCELLED:
            booking.invoice.status = InvoiceStatus.CANCELLED
        booking.cancelled_at = self._clock()
        booking.cancellation_reason = get_text(data, 'reason')
        self._move(booking, S.CANCELLED)
        self._audit('booking.cancel', 'Booking', booking.id,
                    {'previous_status': previous, 'reason': booking.cancellation_reason})
        db.session.commit()
        self._finish(booking, 'cancel')

        notifications.send(booking.user_id, notifications.Templates.booking_cancelled(
            booking.id, booking.vehicle.display_name))
        return booking

    # -- dispatch ------------------------------------------------------------

    def run(self, action: str, booking: Booking, data: dict):
        """Run the named action; returns the affected record (or a preview dict)."""
        handlers = {
            'confirm': self.confirm,
            'collect': self.collect,
            'complete': self.complete,
            'preview': self.preview,
            'generate-invoice': self.generate_invoice,
            'record-payment': self.record_payment,
            'issue-invoice': self.issue_invoice,
            'cancel': self.cancel,
        }
        handler = handlers.get(action)
        if handler is None:
            raise ValidationError("Invalid action", action=action)
        return handler(booking, data or {})
