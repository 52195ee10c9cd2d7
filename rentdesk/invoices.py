"""Invoice numbering, composition and delivery.

An invoice is a snapshot of a completed booking's charges.  It is built
from the values the pricing calculator stored on the booking when the
rental was completed, so the invoice always agrees with what the manager
previewed.  Numbers look like ``INV-2026-000042``: prefix, year and a
six-digit counter that restarts every year.
"""

import re
from datetime import timedelta
from urllib.parse import quote

from . import notifications
from .config import format_currency
from .errors import ValidationError
from .models import Invoice, InvoiceStatus, utcnow
from .pricing import tax_for

_COUNTER = re.compile(r'-(\d+)$')


def next_invoice_number(prefix: str, year: int) -> str:
    """Next number in ``prefix``'s sequence for ``year``."""
    stem = f"{prefix}-{year}-"
    numbers = [n for (n,) in Invoice.query.with_entities(Invoice.invoice_number)
               .filter(Invoice.invoice_number.startswith(stem))]
    last = 0
    for number in numbers:
        match = _COUNTER.search(number)
        if match:
            last = max(last, int(match.group(1)))
    return f"{stem}{last + 1:06d}"


def _positive_or_none(value):
    return value if value and value > 0 else None


def compose_invoice(booking, config, created_by: int = None, tax_rate=None,
                    notes: str = None, now=None) -> Invoice:
    """Build (but do not add or commit) the invoice for a completed booking."""
    now = now or utcnow()
    tax_rate = config['TAX_RATE'] if tax_rate is None else float(tax_rate)
    if tax_rate < 0:
        raise ValidationError("Tax rate cannot be negative", field='tax_rate')

    subtotal = round(sum(v or 0 for v in (
        booking.base_rental,
        booking.package_charges,
        booking.extra_mileage_cost,
        booking.fuel_charge,
        booking.damage_charge,
        booking.late_return_charge,
        booking.other_charges,
    )), 2)
    discount = booking.discount_amount or 0
    tax_amount = tax_for(subtotal - discount, tax_rate)
    total = round(subtotal - discount + tax_amount, 2)
    advance = round(booking.advance_amount or 0, 2) if booking.advance_paid else 0.0
    balance = round(max(0.0, total - advance), 2)

    if advance <= 0:
        status = InvoiceStatus.DRAFT
    elif balance > 0:
        status = InvoiceStatus.PARTIALLY_PAID
    else:
        status = InvoiceStatus.PAID

    return Invoice(
        booking=booking,
        invoice_number=next_invoice_number(config['INVOICE_PREFIX'], now.year),
        status=status,
        rental_start_date=booking.start_date,
        rental_end_date=booking.end_date,
        rental_days=booking.rental_days,
        daily_rate=booking.daily_rate,
        rental_amount=booking.base_rental,
        flat_rate=booking.use_flat_rate and booking.is_package_booking,
        collection_odometer=booking.collection_odometer,
        return_odometer=booking.return_odometer,
        total_mileage=booking.total_mileage,
        free_mileage=booking.free_mileage,
        extra_mileage=booking.extra_mileage,
        extra_mileage_rate=booking.extra_mileage_rate,
        extra_mileage_cost=booking.extra_mileage_cost,
        package_charges=_positive_or_none(booking.package_charges),
        fuel_charge=booking.fuel_charge,
        damage_charge=booking.damage_charge,
        late_return_charge=booking.late_return_charge,
        other_charges=booking.other_charges,
        other_charges_desc=booking.other_charges_note,
        subtotal=subtotal,
        discount_amount=_positive_or_none(discount),
        discount_reason=booking.discount_reason,
        tax_name=config['TAX_NAME'] if tax_amount else None,
        tax_rate=_positive_or_none(tax_rate),
        tax_amount=_positive_or_none(tax_amount),
        total_amount=total,
        advance_paid=_positive_or_none(advance),
        amount_paid=min(advance, total),
        balance_due=balance,
        due_date=now + timedelta(days=config['PAYMENT_TERMS_DAYS']),
        paid_at=now if status == InvoiceStatus.PAID else None,
        terms=config['DEFAULT_INVOICE_TERMS'],
        notes=notes,
        created_by=created_by,
    )


# Fixed presentation order of invoice lines.  Optional lines are skipped when
# zero; total and balance always appear.
LINE_ORDER = ('rental', 'packages', 'extra_mileage', 'fuel', 'damage', 'late_return',
              'other', 'discount', 'tax', 'total', 'advance', 'balance')
_ALWAYS = {'rental', 'total', 'balance'}


def line_items(invoice: Invoice, config=None) -> list:
    """Invoice lines in presentation order; credits carry negative amounts."""
    if invoice.flat_rate:
        rental_label = 'Vehicle Rental (Flat Rate)'
    else:
        rental_label = f"Vehicle Rental ({invoice.rental_days} days x {invoice.daily_rate:g})"
    mileage_label = 'Extra Mileage'
    if invoice.extra_mileage:
        mileage_label = f"Extra Mileage ({invoice.extra_mileage:g} km x {invoice.extra_mileage_rate:g})"
    tax_label = invoice.tax_name or 'Tax'
    if invoice.tax_rate:
        tax_label = f"{tax_label} ({invoice.tax_rate:g}%)"

    values = {
        'rental': (rental_label, invoice.rental_amount),
        'packages': ('Packages & Add-ons', invoice.package_charges),
        'extra_mileage': (mileage_label, invoice.extra_mileage_cost),
        'fuel': ('Fuel Charge', invoice.fuel_charge),
        'damage': ('Damage Charge', invoice.damage_charge),
        'late_return': ('Late Return Charge', invoice.late_return_charge),
        'other': (invoice.other_charges_desc or 'Other Charges', invoice.other_charges),
        'discount': ('Discount', -(invoice.discount_amount or 0)),
        'tax': (tax_label, invoice.tax_amount),
        'total': ('Total', invoice.total_amount),
        'advance': ('Advance Paid', -(invoice.advance_paid or 0)),
        'balance': ('Balance Due', invoice.balance_due),
    }
    lines = []
    for key in LINE_ORDER:
        label, amount = values[key]
        amount = amount or 0
        if key not in _ALWAYS and not amount:
            continue
        line = {'key': key, 'label': label, 'amount': round(amount, 2)}
        if config is not None:
            line['formatted'] = format_currency(amount, config)
        lines.append(line)
    return lines


# ---------------------------------------------------------------------------
# Delivery

def whatsapp_link(invoice: Invoice, config) -> str:
    """Build a wa.me link carrying the invoice summary for the customer."""
    customer = invoice.booking.user
    phone = re.sub(r'\D', '', customer.phone or '')
    if not phone:
        raise ValidationError("Customer phone number not available")
    vehicle = invoice.booking.vehicle
    message = (
        f"Hello {customer.name or customer.email},\n\n"
        f"Your invoice {invoice.invoice_number} is ready.\n\n"
        f"Vehicle: {vehicle.display_name}\n"
        f"Total Amount: {format_currency(invoice.total_amount, config)}\n"
        f"Balance Due: {format_currency(invoice.balance_due, config)}\n\n"
        f"Thank you for your business!"
    )
    return f"https://wa.me/{phone}?text={quote(message)}"


def mark_emailed(invoice: Invoice, now=None) -> None:
    invoice.sent_via_email = True
    invoice.email_sent_at = now or utcnow()


def mark_whatsapped(invoice: Invoice, now=None) -> None:
    invoice.sent_via_whatsapp = True
    invoice.whatsapp_sent_at = now or utcnow()


def mark_issued(invoice: Invoice, now=None) -> None:
    """DRAFT invoices become ISSUED; paid or partly paid ones keep their
    payment status but still get an issue date."""
    if invoice.status == InvoiceStatus.CANCELLED:
        raise ValidationError("Cannot issue a cancelled invoice")
    if invoice.status == InvoiceStatus.DRAFT:
        invoice.status = InvoiceStatus.ISSUED
    if invoice.issued_at is None:
        invoice.issued_at = now or utcnow()


def send_invoice_email(invoice: Invoice, now=None) -> None:
    """Mark the invoice as e-mailed.

    Nothing is actually mailed from here; delivery happens outside this
    service.  Call :func:`notify_invoice_sent` once the change is committed.
    """
    mark_emailed(invoice, now)


def notify_invoice_sent(invoice: Invoice) -> None:
    booking = invoice.booking
    notifications.send(booking.user_id, notifications.Templates.invoice_sent(
        invoice.id, invoice.invoice_number, booking.vehicle.display_name))


def mark_sent(invoice: Invoice, channel: str, now=None) -> None:
    if channel == 'email':
        mark_emailed(invoice, now)
    elif channel == 'whatsapp':
        mark_whatsapped(invoice, now)
    else:
        raise ValidationError("Channel must be email or whatsapp", field='channel')
