"""Customer-facing JSON endpoints, mounted under ``/api``."""

from flask import Blueprint, current_app, jsonify, request, send_from_directory

from . import bookings as booking_service
from . import notifications
from .auth import current_actor, current_user
from .errors import NotFound, ValidationError
from .invoices import line_items
from .models import Booking, BookingDocument, Invoice, Notification, Package, Vehicle, db
from .parsing import get_bool, get_datetime, get_float, get_id_list, get_int, get_text
from .workflow import BookingWorkflow

bp = Blueprint('api', __name__, url_prefix='/api')

_VEHICLE_SORTS = {
    'price_asc': Vehicle.price_per_day.asc(),
    'price_desc': Vehicle.price_per_day.desc(),
    'rating': Vehicle.rating.desc(),
    'popular': Vehicle.booking_count.desc(),
    'newest': Vehicle.created_at.desc(),
}


def _json() -> dict:
    return request.get_json(silent=True) or {}


def _own_booking(booking_id: int) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None or booking.user_id != current_user().id:
        raise NotFound("Booking not found")
    return booking


# ---------------------------------------------------------------------------
# Catalogue

@bp.route('/vehicles')
def list_vehicles():
    args = request.args
    query = Vehicle.query
    if 'available' in args:
        query = query.filter(Vehicle.available.is_(get_bool(args, 'available')))
    if get_bool(args, 'featured'):
        query = query.filter(Vehicle.featured.is_(True))
    category = get_text(args, 'category')
    if category:
        query = query.filter(Vehicle.category == category)
    min_price = get_float(args, 'min_price')
    if min_price is not None:
        query = query.filter(Vehicle.price_per_day >= min_price)
    max_price = get_float(args, 'max_price')
    if max_price is not None:
        query = query.filter(Vehicle.price_per_day <= max_price)
    order = _VEHICLE_SORTS.get(args.get('sort'), Vehicle.featured.desc())
    vehicles = query.order_by(order, Vehicle.id.asc()).all()
    return jsonify({'vehicles': [v.to_dict() for v in vehicles]})


@bp.route('/vehicles/available')
def list_available_vehicles():
    start = get_datetime(request.args, 'start')
    end = get_datetime(request.args, 'end')
    vehicles = booking_service.available_vehicles(start, end)
    return jsonify({'vehicles': [v.to_dict() for v in vehicles]})


@bp.route('/vehicles/<int:vehicle_id>')
def get_vehicle(vehicle_id: int):
    vehicle = db.session.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")
    data = vehicle.to_dict()
    data['policies'] = [p.to_dict() for p in vehicle.policies if p.is_active]
    data['packages'] = [dict(link.package.to_dict(include_costs=False),
                             custom_price=link.custom_price)
                        for link in vehicle.package_links if link.package.is_active]
    return jsonify(data)


@bp.route('/packages')
def list_packages():
    packages = (Package.query.filter_by(is_active=True)
                .order_by(Package.sort_order.asc(), Package.name.asc()).all())
    return jsonify({'packages': [p.to_dict() for p in packages]})


@bp.route('/packages/<int:package_id>')
def get_package(package_id: int):
    package = db.session.get(Package, package_id)
    if package is None or not package.is_active:
        raise NotFound("Package not found")
    data = package.to_dict()
    data['policies'] = [p.to_dict() for p in package.policies if p.is_active]
    return jsonify(data)


# ---------------------------------------------------------------------------
# Bookings

@bp.route('/bookings')
def list_bookings():
    user = current_user()
    rows = booking_service.upcoming_for_user(user.id)
    return jsonify({'bookings': [b.to_dict() for b in rows]})


@bp.route('/bookings', methods=['POST'])
def create_booking():
    data = _json()
    booking = booking_service.create_booking(
        current_actor(), current_user(),
        vehicle_id=data.get('vehicle_id'),
        start=get_datetime(data, 'start_date'),
        end=get_datetime(data, 'end_date'),
        pickup_location=get_text(data, 'pickup_location'),
        dropoff_location=get_text(data, 'dropoff_location'),
        package_ids=get_id_list(data, 'package_ids'),
        request=request,
    )
    return jsonify(booking.to_dict(detail=True)), 201


@bp.route('/bookings/package', methods=['POST'])
def create_package_booking():
    data = _json()
    booking = booking_service.create_package_booking(
        current_actor(), current_user(),
        package_id=data.get('package_id'),
        vehicle_id=data.get('vehicle_id'),
        start=get_datetime(data, 'start_date'),
        end=get_datetime(data, 'end_date'),
        pickup_location=get_text(data, 'pickup_location'),
        dropoff_location=get_text(data, 'dropoff_location'),
        custom_cost_ids=get_id_list(data, 'custom_cost_ids'),
        notes=get_text(data, 'notes'),
        request=request,
    )
    return jsonify(booking.to_dict(detail=True)), 201


@bp.route('/bookings/<int:booking_id>')
def get_booking(booking_id: int):
    return jsonify(_own_booking(booking_id).to_dict(detail=True))


@bp.route('/bookings/<int:booking_id>', methods=['PATCH'])
def update_booking(booking_id: int):
    booking = _own_booking(booking_id)
    data = _json()
    if data.get('action') != 'cancel':
        raise ValidationError("Invalid action", action=data.get('action'))
    BookingWorkflow(current_actor(), request=request).cancel(booking, data)
    return jsonify(booking.to_dict(detail=True))


# ---------------------------------------------------------------------------
# Invoices and notifications

@bp.route('/invoices')
def list_invoices():
    user = current_user()
    rows = (Invoice.query.join(Booking).filter(Booking.user_id == user.id)
            .order_by(Invoice.created_at.desc()).all())
    return jsonify({'invoices': [i.to_dict() for i in rows]})


@bp.route('/invoices/<int:invoice_id>')
def get_invoice(invoice_id: int):
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None or invoice.booking.user_id != current_user().id:
        raise NotFound("Invoice not found")
    data = invoice.to_dict(detail=True)
    data['lines'] = line_items(invoice, current_app.config)
    return jsonify(data)


@bp.route('/notifications')
def list_notifications():
    user = current_user()
    query = Notification.query.filter_by(user_id=user.id)
    if get_bool(request.args, 'unread'):
        query = query.filter_by(read=False)
    rows = query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()
    return jsonify({'notifications': [n.to_dict() for n in rows]})


@bp.route('/notifications/read', methods=['POST'])
def read_notifications():
    user = current_user()
    count = notifications.mark_read(user.id, get_id_list(_json(), 'ids'))
    return jsonify({'updated': count})


@bp.route('/documents')
def list_documents():
    """Documents captured on the caller's own bookings, newest first."""
    user = current_user()
    query = BookingDocument.query.join(Booking).filter(Booking.user_id == user.id)
    booking_id = get_int(request.args, 'booking_id')
    if booking_id is not None:
        query = query.filter(BookingDocument.booking_id == booking_id)
    kind = get_text(request.args, 'type')
    if kind:
        query = query.filter(BookingDocument.type == kind)
    rows = query.order_by(BookingDocument.created_at.desc(), BookingDocument.id.desc()).all()
    documents = []
    for document in rows:
        data = document.to_dict()
        data['booking'] = {'id': document.booking.id,
                           'start_date': document.booking.start_date.isoformat(),
                           'end_date': document.booking.end_date.isoformat(),
                           'vehicle': document.booking.vehicle.display_name}
        documents.append(data)
    return jsonify({'documents': documents})


@bp.route('/uploads/<path:filename>')
def uploaded_file(filename: str):
    actor = current_actor()
    if not actor.is_staff:
        document = BookingDocument.query.filter_by(file_url=f"/api/uploads/{filename}").first()
        if document is None or document.booking.user_id != actor.user_id:
            raise NotFound("File not found")
    return send_from_directory(current_app.config['UPLOAD_FOLDER'], filename, as_attachment=False)
