"""Database models for the rental desk.

Vehicles, packages and policies describe what can be rented.  A Booking
carries a customer's reservation through its whole lifecycle, accumulating
confirmation, collection and return details as it goes.  Once the rental is
complete an Invoice snapshots the charges and Payments are recorded against
it.  Users, permission overrides and the audit trail support the admin side.

Each model exposes ``to_dict()`` which is what the JSON layer returns.
"""

import json
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow() -> datetime:
    """Return a timezone-naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value is not None else None


def _num(value):
    return float(value) if value is not None else None


class BookingStatus:
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    COLLECTED = 'COLLECTED'
    COMPLETED = 'COMPLETED'
    INVOICED = 'INVOICED'
    PARTIALLY_PAID = 'PARTIALLY_PAID'
    PAID = 'PAID'
    CANCELLED = 'CANCELLED'

    # Statuses that hold the vehicle for the booked dates.
    ACTIVE = (PENDING, CONFIRMED, COLLECTED)
    TERMINAL = (PAID, CANCELLED)


class InvoiceStatus:
    DRAFT = 'DRAFT'
    ISSUED = 'ISSUED'
    PARTIALLY_PAID = 'PARTIALLY_PAID'
    PAID = 'PAID'
    CANCELLED = 'CANCELLED'


class UserStatus:
    ACTIVE = 'ACTIVE'
    SUSPENDED = 'SUSPENDED'
    BANNED = 'BANNED'

    ALL = (ACTIVE, SUSPENDED, BANNED)


class PackageType:
    ALL = ('DAILY', 'WEEKLY', 'MONTHLY', 'AIRPORT_PICKUP', 'AIRPORT_DROP',
           'AIRPORT_ROUND', 'HOURLY', 'CUSTOM')


class TimestampMixin:
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Users and permissions

class User(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120))
    email = db.Column(db.String(200), unique=True, nullable=False)
    phone = db.Column(db.String(50))
    role = db.Column(db.String(20), nullable=False, default='USER')
    status = db.Column(db.String(20), nullable=False, default=UserStatus.ACTIVE)
    last_login_at = db.Column(db.DateTime)

    bookings = db.relationship('Booking', back_populates='user',
                               foreign_keys='Booking.user_id')
    permission_overrides = db.relationship('UserPermission', back_populates='user',
                                           cascade='all, delete-orphan')

    def __repr__(self) -> str:
        return f"<User {self.email} {self.role}>"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
            'status': self.status,
            'last_login_at': _iso(self.last_login_at),
            'created_at': _iso(self.created_at),
        }


class Permission(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    resource = db.Column(db.String(50), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(200))

    def to_dict(self) -> dict:
        return {'id': self.id, 'name': self.name, 'resource': self.resource,
                'action': self.action, 'description': self.description}


class UserPermission(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'permission_id'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    permission_id = db.Column(db.Integer, db.ForeignKey('permission.id'), nullable=False)
    granted = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', back_populates='permission_overrides')
    permission = db.relationship('Permission')


# ---------------------------------------------------------------------------
# Fleet, packages and policies

vehicle_policy = db.Table(
    'vehicle_policy',
    db.Column('vehicle_id', db.Integer, db.ForeignKey('vehicle.id'), primary_key=True),
    db.Column('policy_id', db.Integer, db.ForeignKey('policy.id'), primary_key=True),
)

package_policy = db.Table(
    'package_policy',
    db.Column('package_id', db.Integer, db.ForeignKey('package.id'), primary_key=True),
    db.Column('policy_id', db.Integer, db.ForeignKey('policy.id'), primary_key=True),
)


class Vehicle(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    brand = db.Column(db.String(80))
    model = db.Column(db.String(80))
    year = db.Column(db.Integer)
    category = db.Column(db.String(50))
    transmission = db.Column(db.String(30))
    fuel_type = db.Column(db.String(30))
    seats = db.Column(db.Integer)
    location = db.Column(db.String(120))
    description = db.Column(db.Text)
    price_per_day = db.Column(db.Float, nullable=False)
    available = db.Column(db.Boolean, default=True, nullable=False)
    featured = db.Column(db.Boolean, default=False, nullable=False)
    rating = db.Column(db.Float, default=0.0)
    review_count = db.Column(db.Integer, default=0)
    booking_count = db.Column(db.Integer, default=0)

    bookings = db.relationship('Booking', back_populates='vehicle')
    package_links = db.relationship('VehiclePackage', back_populates='vehicle',
                                    cascade='all, delete-orphan')
    policies = db.relationship('Policy', secondary=vehicle_policy, back_populates='vehicles')

    def __repr__(self) -> str:
        return f"<Vehicle {self.name}>"

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.brand, self.model) if p]
        return ' '.join(parts) or self.name

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'brand': self.brand,
            'model': self.model,
            'year': self.year,
            'category': self.category,
            'transmission': self.transmission,
            'fuel_type': self.fuel_type,
            'seats': self.seats,
            'location': self.location,
            'description': self.description,
            'price_per_day': self.price_per_day,
            'available': self.available,
            'featured': self.featured,
            'rating': self.rating,
            'review_count': self.review_count,
            'booking_count': self.booking_count,
        }


class Package(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    type = db.Column(db.String(30), nullable=False, default='CUSTOM')
    base_price = db.Column(db.Float)
    price_per_day = db.Column(db.Float)
    min_duration = db.Column(db.Integer)
    max_duration = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_global = db.Column(db.Boolean, default=True, nullable=False)
    sort_order = db.Column(db.Integer, default=0)

    custom_costs = db.relationship('PackageCustomCost', back_populates='package',
                                   cascade='all, delete-orphan')
    vehicle_links = db.relationship('VehiclePackage', back_populates='package',
                                    cascade='all, delete-orphan')
    policies = db.relationship('Policy', secondary=package_policy, back_populates='packages')

    def __repr__(self) -> str:
        return f"<Package {self.name}>"

    def to_dict(self, include_costs: bool = True) -> dict:
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'type': self.type,
            'base_price': self.base_price,
            'price_per_day': self.price_per_day,
            'min_duration': self.min_duration,
            'max_duration': self.max_duration,
            'is_active': self.is_active,
            'is_global': self.is_global,
            'sort_order': self.sort_order,
            'vehicle_ids': [link.vehicle_id for link in self.vehicle_links],
            'policy_ids': [p.id for p in self.policies],
        }
        if include_costs:
            data['custom_costs'] = [c.to_dict() for c in self.custom_costs]
        return data


class PackageCustomCost(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey('package.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    price = db.Column(db.Float, nullable=False, default=0.0)
    is_optional = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    package = db.relationship('Package', back_populates='custom_costs')

    def to_dict(self) -> dict:
        return {'id': self.id, 'name': self.name, 'price': self.price,
                'is_optional': self.is_optional, 'is_active': self.is_active}


class VehiclePackage(db.Model):
    __table_args__ = (db.UniqueConstraint('vehicle_id', 'package_id'),)

    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicle.id'), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey('package.id'), nullable=False)
    custom_price = db.Column(db.Float)

    vehicle = db.relationship('Vehicle', back_populates='package_links')
    package = db.relationship('Package', back_populates='vehicle_links')


class Policy(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    summary = db.Column(db.Text)
    category = db.Column(db.String(50), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_required = db.Column(db.Boolean, default=False, nullable=False)
    sort_order = db.Column(db.Integer, default=0)

    vehicles = db.relationship('Vehicle', secondary=vehicle_policy, back_populates='policies')
    packages = db.relationship('Package', secondary=package_policy, back_populates='policies')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'title': self.title,
            'content': self.content,
            'summary': self.summary,
            'category': self.category,
            'is_active': self.is_active,
            'is_required': self.is_required,
            'sort_order': self.sort_order,
            'vehicle_ids': [v.id for v in self.vehicles],
            'package_ids': [p.id for p in self.packages],
        }


# ---------------------------------------------------------------------------
# Bookings
#
# Charge columns stay NULL until the booking is completed; confirmation and
# collection columns stay NULL until their stage has run.

class Booking(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicle.id'), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=BookingStatus.PENDING, index=True)
    pickup_location = db.Column(db.String(200))
    dropoff_location = db.Column(db.String(200))
    total_price = db.Column(db.Float)

    # Package bookings price the vehicle from the package assignment and
    # carry the package base price and selected custom costs.
    is_package_booking = db.Column(db.Boolean, default=False, nullable=False)
    primary_package_id = db.Column(db.Integer, db.ForeignKey('package.id'))
    package_base_price = db.Column(db.Float)
    vehicle_package_price = db.Column(db.Float)
    custom_costs_total = db.Column(db.Float)

    # confirm
    confirmed_at = db.Column(db.DateTime)
    confirmed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    advance_amount = db.Column(db.Float)
    advance_paid = db.Column(db.Boolean, default=False, nullable=False)
    advance_paid_at = db.Column(db.DateTime)
    advance_payment_method = db.Column(db.String(30))
    confirmation_notes = db.Column(db.Text)
    free_mileage = db.Column(db.Float)
    extra_mileage_rate = db.Column(db.Float)

    # collect
    collected_at = db.Column(db.DateTime)
    collected_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    collection_odometer = db.Column(db.Integer)
    collection_fuel_level = db.Column(db.String(20))
    collection_notes = db.Column(db.Text)

    # complete
    returned_at = db.Column(db.DateTime)
    returned_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    return_odometer = db.Column(db.Integer)
    return_fuel_level = db.Column(db.String(20))
    return_notes = db.Column(db.Text)
    use_flat_rate = db.Column(db.Boolean, default=False, nullable=False)
    rental_days = db.Column(db.Integer)
    daily_rate = db.Column(db.Float)
    base_rental = db.Column(db.Float)
    package_charges = db.Column(db.Float)
    total_mileage = db.Column(db.Float)
    extra_mileage = db.Column(db.Float)
    extra_mileage_cost = db.Column(db.Float)
    fuel_charge = db.Column(db.Float)
    damage_charge = db.Column(db.Float)
    late_return_charge = db.Column(db.Float)
    other_charges = db.Column(db.Float)
    other_charges_note = db.Column(db.Text)
    discount_amount = db.Column(db.Float)
    discount_reason = db.Column(db.Text)
    final_amount = db.Column(db.Float)
    balance_due = db.Column(db.Float)
    refund_due = db.Column(db.Float)

    # cancel
    cancelled_at = db.Column(db.DateTime)
    cancellation_reason = db.Column(db.Text)

    user = db.relationship('User', back_populates='bookings', foreign_keys=[user_id])
    vehicle = db.relationship('Vehicle', back_populates='bookings')
    primary_package = db.relationship('Package')
    packages = db.relationship('BookingPackage', back_populates='booking',
                               cascade='all, delete-orphan')
    custom_costs = db.relationship('BookingCustomCost', back_populates='booking',
                                   cascade='all, delete-orphan')
    documents = db.relationship('BookingDocument', back_populates='booking',
                                cascade='all, delete-orphan')
    invoice = db.relationship('Invoice', back_populates='booking', uselist=False)

    def __repr__(self) -> str:
        return f"<Booking {self.id} {self.status}>"

    def to_dict(self, detail: bool = False) -> dict:
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'vehicle_id': self.vehicle_id,
            'vehicle': self.vehicle.display_name if self.vehicle else None,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'status': self.status,
            'pickup_location': self.pickup_location,
            'dropoff_location': self.dropoff_location,
            'total_price': self.total_price,
            'is_package_booking': self.is_package_booking,
            'final_amount': self.final_amount,
            'balance_due': self.balance_due,
            'invoice_id': self.invoice.id if self.invoice else None,
            'created_at': _iso(self.created_at),
        }
        if not detail:
            return data
        data.update({
            'primary_package_id': self.primary_package_id,
            'package_base_price': self.package_base_price,
            'vehicle_package_price': self.vehicle_package_price,
            'custom_costs_total': self.custom_costs_total,
            'confirmed_at': _iso(self.confirmed_at),
            'confirmed_by': self.confirmed_by,
            'advance_amount': self.advance_amount,
            'advance_paid': self.advance_paid,
            'advance_paid_at': _iso(self.advance_paid_at),
            'advance_payment_method': self.advance_payment_method,
            'confirmation_notes': self.confirmation_notes,
            'free_mileage': self.free_mileage,
            'extra_mileage_rate': self.extra_mileage_rate,
            'collected_at': _iso(self.collected_at),
            'collected_by': self.collected_by,
            'collection_odometer': self.collection_odometer,
            'collection_fuel_level': self.collection_fuel_level,
            'collection_notes': self.collection_notes,
            'returned_at': _iso(self.returned_at),
            'returned_by': self.returned_by,
            'return_odometer': self.return_odometer,
            'return_fuel_level': self.return_fuel_level,
            'return_notes': self.return_notes,
            'use_flat_rate': self.use_flat_rate,
            'rental_days': self.rental_days,
            'daily_rate': self.daily_rate,
            'base_rental': self.base_rental,
            'package_charges': self.package_charges,
            'total_mileage': self.total_mileage,
            'extra_mileage': self.extra_mileage,
            'extra_mileage_cost': self.extra_mileage_cost,
            'fuel_charge': self.fuel_charge,
            'damage_charge': self.damage_charge,
            'late_return_charge': self.late_return_charge,
            'other_charges': self.other_charges,
            'other_charges_note': self.other_charges_note,
            'discount_amount': self.discount_amount,
            'discount_reason': self.discount_reason,
            'refund_due': self.refund_due,
            'cancelled_at': _iso(self.cancelled_at),
            'cancellation_reason': self.cancellation_reason,
            'packages': [p.to_dict() for p in self.packages],
            'custom_costs': [c.to_dict() for c in self.custom_costs],
            'documents': [d.to_dict() for d in self.documents],
        })
        return data


class BookingPackage(db.Model):
    __table_args__ = (db.UniqueConstraint('booking_id', 'package_id'),)

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('booking.id'), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey('package.id'), nullable=False)
    quantity = db.Column(db.Integer, default=1, nullable=False)
    # Price snapshot taken when the booking was made.
    price = db.Column(db.Float, nullable=False, default=0.0)

    booking = db.relationship('Booking', back_populates='packages')
    package = db.relationship('Package')

    def to_dict(self) -> dict:
        return {'package_id': self.package_id,
                'name': self.package.name if self.package else None,
                'quantity': self.quantity, 'price': self.price}


class BookingCustomCost(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('booking.id'), nullable=False)
    package_custom_cost_id = db.Column(db.Integer, db.ForeignKey('package_custom_cost.id'))
    name = db.Column(db.String(120), nullable=False)
    price = db.Column(db.Float, nullable=False)

    booking = db.relationship('Booking', back_populates='custom_costs')

    def to_dict(self) -> dict:
        return {'name': self.name, 'price': self.price}


class BookingDocument(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('booking.id'), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(200))
    description = db.Column(db.Text)
    file_url = db.Column(db.String(500), nullable=False)
    file_name = db.Column(db.String(200))
    uploaded_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    booking = db.relationship('Booking', back_populates='documents')

    def to_dict(self) -> dict:
        return {'id': self.id, 'booking_id': self.booking_id,
                'type': self.type, 'title': self.title,
                'description': self.description, 'file_url': self.file_url,
                'file_name': self.file_name, 'created_at': _iso(self.created_at)}


# ---------------------------------------------------------------------------
# Invoices and payments

class Invoice(TimestampMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey('booking.id'), unique=True, nullable=False)
    invoice_number = db.Column(db.String(40), unique=True, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=InvoiceStatus.DRAFT)

    rental_start_date = db.Column(db.DateTime, nullable=False)
    rental_end_date = db.Column(db.DateTime, nullable=False)
    rental_days = db.Column(db.Integer, nullable=False)
    daily_rate = db.Column(db.Float, nullable=False)
    rental_amount = db.Column(db.Float, nullable=False)
    flat_rate = db.Column(db.Boolean, default=False, nullable=False)

    collection_odometer = db.Column(db.Integer)
    return_odometer = db.Column(db.Integer)
    total_mileage = db.Column(db.Float)
    free_mileage = db.Column(db.Float)
    extra_mileage = db.Column(db.Float)
    extra_mileage_rate = db.Column(db.Float)
    extra_mileage_cost = db.Column(db.Float)

    package_charges = db.Column(db.Float)
    fuel_charge = db.Column(db.Float)
    damage_charge = db.Column(db.Float)
    late_return_charge = db.Column(db.Float)
    other_charges = db.Column(db.Float)
    other_charges_desc = db.Column(db.Text)

    subtotal = db.Column(db.Float, nullable=False)
    discount_amount = db.Column(db.Float)
    discount_reason = db.Column(db.Text)
    tax_name = db.Column(db.String(30))
    tax_rate = db.Column(db.Float)
    tax_amount = db.Column(db.Float)
    total_amount = db.Column(db.Float, nullable=False)
    advance_paid = db.Column(db.Float)
    amount_paid = db.Column(db.Float, nullable=False, default=0.0)
    balance_due = db.Column(db.Float, nullable=False)

    due_date = db.Column(db.DateTime)
    issued_at = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    sent_via_email = db.Column(db.Boolean, default=False, nullable=False)
    email_sent_at = db.Column(db.DateTime)
    sent_via_whatsapp = db.Column(db.Boolean, default=False, nullable=False)
    whatsapp_sent_at = db.Column(db.DateTime)
    terms = db.Column(db.Text)
    notes = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'))

    booking = db.relationship('Booking', back_populates='invoice')
    payments = db.relationship('Payment', back_populates='invoice',
                               order_by='Payment.paid_at',
                               cascade='all, delete-orphan')

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} {self.status}>"

    def to_dict(self, detail: bool = False) -> dict:
        data = {
            'id': self.id,
            'booking_id': self.booking_id,
            'invoice_number': self.invoice_number,
            'status': self.status,
            'total_amount': self.total_amount,
            'amount_paid': self.amount_paid,
            'balance_due': self.balance_due,
            'due_date': _iso(self.due_date),
            'issued_at': _iso(self.issued_at),
            'paid_at': _iso(self.paid_at),
            'created_at': _iso(self.created_at),
        }
        if not detail:
            return data
        data.update({
            'rental_start_date': _iso(self.rental_start_date),
            'rental_end_date': _iso(self.rental_end_date),
            'rental_days': self.rental_days,
            'daily_rate': self.daily_rate,
            'rental_amount': self.rental_amount,
            'flat_rate': self.flat_rate,
            'collection_odometer': self.collection_odometer,
            'return_odometer': self.return_odometer,
            'total_mileage': _num(self.total_mileage),
            'free_mileage': _num(self.free_mileage),
            'extra_mileage': _num(self.extra_mileage),
            'extra_mileage_rate': _num(self.extra_mileage_rate),
            'extra_mileage_cost': _num(self.extra_mileage_cost),
            'package_charges': self.package_charges,
            'fuel_charge': self.fuel_charge,
            'damage_charge': self.damage_charge,
            'late_return_charge': self.late_return_charge,
            'other_charges': self.other_charges,
            'other_charges_desc': self.other_charges_desc,
            'subtotal': self.subtotal,
            'discount_amount': self.discount_amount,
            'discount_reason': self.discount_reason,
            'tax_name': self.tax_name,
            'tax_rate': self.tax_rate,
            'tax_amount': self.tax_amount,
            'advance_paid': self.advance_paid,
            'sent_via_email': self.sent_via_email,
            'sent_via_whatsapp': self.sent_via_whatsapp,
            'terms': self.terms,
            'notes': self.notes,
            'payments': [p.to_dict() for p in self.payments],
        })
        return data


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoice.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(30), nullable=False)
    reference = db.Column(db.String(120))
    notes = db.Column(db.Text)
    received_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    paid_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    invoice = db.relationship('Invoice', back_populates='payments')

    def __repr__(self) -> str:
        return f"<Payment {self.amount} on {self.paid_at}>"

    def to_dict(self) -> dict:
        return {'id': self.id, 'invoice_id': self.invoice_id, 'amount': self.amount,
                'method': self.method, 'reference': self.reference, 'notes': self.notes,
                'received_by': self.received_by, 'paid_at': _iso(self.paid_at)}


# ---------------------------------------------------------------------------
# Audit trail and in-app notifications

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    action = db.Column(db.String(60), nullable=False)
    resource = db.Column(db.String(40), nullable=False)
    resource_id = db.Column(db.String(40))
    details = db.Column(db.Text)
    ip_address = db.Column(db.String(60))
    user_agent = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    user = db.relationship('User')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user': self.user.email if self.user else None,
            'action': self.action,
            'resource': self.resource,
            'resource_id': self.resource_id,
            'details': json.loads(self.details) if self.details else None,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'created_at': _iso(self.created_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.Text)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {'id': self.id, 'type': self.type, 'title': self.title,
                'message': self.message,
                'data': json.loads(self.data) if self.data else None,
                'read': self.read, 'created_at': _iso(self.created_at)}
