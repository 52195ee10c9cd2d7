"""Back-office JSON endpoints, mounted under ``/api/admin``.

Every route here needs a staff account (MANAGER or above); individual routes
then check the specific permission they exercise.
"""

from flask import Blueprint, current_app, jsonify, request

from . import analytics, audit, invoices, notifications
from . import bookings as booking_service
from .auth import current_actor, requires
from .errors import Conflict, NotFound, PermissionDenied, ValidationError
from .models import (Booking, BookingDocument, BookingStatus, Invoice, Package,
                     PackageCustomCost, PackageType, Policy, User, UserStatus, Vehicle,
                     VehiclePackage, db)
from .parsing import (get_bool, get_choice, get_datetime, get_float, get_id_list, get_int,
                      get_text)
from .permissions import (ALL_PERMISSIONS, ROLE_DESCRIPTIONS, Role, assignable_roles,
                          can_assign_role, effective_permissions, permissions_for_role,
                          revoke_user_permission, set_user_permission)
from .uploads import save_upload
from .workflow import BookingWorkflow

bp = Blueprint('admin', __name__, url_prefix='/api/admin')


@bp.before_request
def require_staff():
    if not current_actor().is_staff:
        raise PermissionDenied("Admin access required")


def _json() -> dict:
    return request.get_json(silent=True) or {}


def _get(model, object_id, label):
    obj = db.session.get(model, object_id)
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def _commit_change(action, resource, resource_id, details=None):
    audit.record(current_actor(), action, resource, resource_id, details, request=request)
    db.session.commit()
    notifications.announce_change(resource, resource_id, action.split('.', 1)[1])


# ---------------------------------------------------------------------------
# Bookings.  The workflow endpoint drives a booking through its stages; see
# ``rentdesk.workflow`` for what each action records.

@bp.route('/bookings')
@requires('bookings:read')
def list_bookings():
    args = request.args
    query = Booking.query
    status = get_choice(args, 'status', list(BookingStatus.ACTIVE) + [
        BookingStatus.COMPLETED, BookingStatus.INVOICED, BookingStatus.PARTIALLY_PAID,
        BookingStatus.PAID, BookingStatus.CANCELLED])
    if status:
        query = query.filter(Booking.status == status)
    for key, column in (('user_id', Booking.user_id), ('vehicle_id', Booking.vehicle_id)):
        value = get_int(args, key)
        if value is not None:
            query = query.filter(column == value)
    start = get_datetime(args, 'from')
    if start:
        query = query.filter(Booking.end_date >= start)
    end = get_datetime(args, 'to')
    if end:
        query = query.filter(Booking.start_date <= end)
    rows = query.order_by(Booking.created_at.desc(), Booking.id.desc()).all()
    return jsonify({'bookings': [b.to_dict() for b in rows]})


@bp.route('/bookings/overdue')
@requires('bookings:read')
def list_overdue():
    return jsonify({'bookings': [b.to_dict() for b in booking_service.overdue_returns()]})


@bp.route('/bookings/<int:booking_id>')
@requires('bookings:read')
def get_booking(booking_id: int):
    booking = _get(Booking, booking_id, 'Booking')
    data = booking.to_dict(detail=True)
    data['customer'] = booking.user.to_dict()
    data['invoice'] = booking.invoice.to_dict(detail=True) if booking.invoice else None
    logs, _ = audit.query_logs(resource='Booking', resource_id=booking.id, limit=100)
    data['history'] = [log.to_dict() for log in logs]
    return jsonify(data)


@bp.route('/bookings', methods=['POST'])
@requires('bookings:create')
def create_booking():
    data = _json()
    actor = current_actor()
    customer = _get(User, get_int(data, 'user_id', actor.user_id), 'User')
    common = dict(
        vehicle_id=data.get('vehicle_id'),
        start=get_datetime(data, 'start_date'),
        end=get_datetime(data, 'end_date'),
        pickup_location=get_text(data, 'pickup_location'),
        dropoff_location=get_text(data, 'dropoff_location'),
        request=request,
    )
    if data.get('package_id') is not None:
        booking = booking_service.create_package_booking(
            actor, customer, package_id=get_int(data, 'package_id'),
            custom_cost_ids=get_id_list(data, 'custom_cost_ids'),
            notes=get_text(data, 'notes'), **common)
    else:
        booking = booking_service.create_booking(
            actor, customer, package_ids=get_id_list(data, 'package_ids'), **common)
    return jsonify(booking.to_dict(detail=True)), 201


@bp.route('/bookings/<int:booking_id>/workflow', methods=['POST'])
def run_workflow(booking_id: int):
    data = _json()
    workflow = BookingWorkflow(current_actor(), request=request)
    booking = workflow.load(booking_id)
    action = data.get('action')
    result = workflow.run(action, booking, data)
    if action == 'preview':
        return jsonify({'preview': result})
    body = {'booking': booking.to_dict(detail=True)}
    if booking.invoice is not None:
        body['invoice'] = booking.invoice.to_dict(detail=True)
    return jsonify(body)


@bp.route('/bookings/<int:booking_id>/documents', methods=['POST'])
@requires('bookings:update')
def upload_document(booking_id: int):
    booking = _get(Booking, booking_id, 'Booking')
    config = current_app.config
    kind = get_choice(request.form, 'type', config['DOCUMENT_TYPES'], 'OTHER')
    fields = save_upload(request.files.get('file'), kind, config)
    document = BookingDocument(booking=booking, title=get_text(request.form, 'title'),
                               description=get_text(request.form, 'description'),
                               uploaded_by=current_actor().user_id, **fields)
    db.session.add(document)
    db.session.flush()
    _commit_change('booking.document', 'Booking', booking.id,
                   {'document_id': document.id, 'type': kind})
    return jsonify(document.to_dict()), 201


# ---------------------------------------------------------------------------
# Invoices

@bp.route('/invoices')
@requires('payments:read')
def list_invoices():
    query = Invoice.query
    status = get_text(request.args, 'status')
    if status:
        query = query.filter(Invoice.status == status)
    rows = query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()
    return jsonify({'invoices': [i.to_dict() for i in rows]})


@bp.route('/invoices/<int:invoice_id>')
@requires('payments:read')
def get_invoice(invoice_id: int):
    invoice = _get(Invoice, invoice_id, 'Invoice')
    data = invoice.to_dict(detail=True)
    data['lines'] = invoices.line_items(invoice, current_app.config)
    data['customer'] = invoice.booking.user.to_dict()
    data['vehicle'] = invoice.booking.vehicle.to_dict()
    return jsonify(data)


@bp.route('/invoices/<int:invoice_id>', methods=['POST'])
@requires('payments:update')
def invoice_action(invoice_id: int):
    invoice = _get(Invoice, invoice_id, 'Invoice')
    data = _json()
    action = data.get('action')
    config = current_app.config
    body = {}
    if action == 'send-email':
        invoices.send_invoice_email(invoice)
        details = {'channel': 'email'}
    elif action == 'send-whatsapp':
        body['whatsapp_url'] = invoices.whatsapp_link(invoice, config)
        invoices.mark_whatsapped(invoice)
        details = {'channel': 'whatsapp'}
    elif action == 'mark-sent':
        channel = get_text(data, 'channel', 'email')
        invoices.mark_sent(invoice, channel)
        details = {'channel': channel, 'manual': True}
    else:
        raise ValidationError("Invalid action", action=action)
    _commit_change('invoice.send', 'Invoice', invoice.id, details)
    if action == 'send-email':
        invoices.notify_invoice_sent(invoice)
    body['invoice'] = invoice.to_dict(detail=True)
    return jsonify(body)


# ---------------------------------------------------------------------------
# Vehicles

_VEHICLE_FIELDS = {
    'name': get_text, 'brand': get_text, 'model': get_text, 'year': get_int,
    'category': get_text, 'transmission': get_text, 'fuel_type': get_text,
    'seats': get_int, 'location': get_text, 'description': get_text,
    'price_per_day': get_float, 'available': get_bool, 'featured': get_bool,
}


def _assign(obj, data: dict, fields: dict) -> dict:
    """Copy the given fields present in ``data`` onto ``obj``."""
    changed = {}
    for name, parse in fields.items():
        if name in data:
            value = parse(data, name)
            setattr(obj, name, value)
            changed[name] = value
    return changed


def _check_vehicle(vehicle: Vehicle) -> None:
    if not vehicle.name:
        raise ValidationError("Vehicle name is required", field='name')
    if vehicle.price_per_day is None or vehicle.price_per_day < 0:
        raise ValidationError("A non-negative price_per_day is required", field='price_per_day')


@bp.route('/vehicles')
@requires('vehicles:read')
def list_vehicles():
    rows = Vehicle.query.order_by(Vehicle.name.asc()).all()
    return jsonify({'vehicles': [v.to_dict() for v in rows]})


@bp.route('/vehicles', methods=['POST'])
@requires('vehicles:create')
def create_vehicle():
    vehicle = Vehicle()
    changed = _assign(vehicle, _json(), _VEHICLE_FIELDS)
    _check_vehicle(vehicle)
    db.session.add(vehicle)
    db.session.flush()
    _commit_change('vehicle.create', 'Vehicle', vehicle.id, changed)
    return jsonify(vehicle.to_dict()), 201


@bp.route('/vehicles/<int:vehicle_id>', methods=['PUT', 'PATCH'])
@requires('vehicles:update')
def update_vehicle(vehicle_id: int):
    vehicle = _get(Vehicle, vehicle_id, 'Vehicle')
    changed = _assign(vehicle, _json(), _VEHICLE_FIELDS)
    _check_vehicle(vehicle)
    _commit_change('vehicle.update', 'Vehicle', vehicle.id, changed)
    return jsonify(vehicle.to_dict())


@bp.route('/vehicles/<int:vehicle_id>', methods=['DELETE'])
@requires('vehicles:delete')
def delete_vehicle(vehicle_id: int):
    vehicle = _get(Vehicle, vehicle_id, 'Vehicle')
    if vehicle.bookings:
        raise Conflict("Vehicle has bookings; mark it unavailable instead")
    name = vehicle.name
    db.session.delete(vehicle)
    _commit_change('vehicle.delete', 'Vehicle', vehicle_id, {'name': name})
    return jsonify({'deleted': vehicle_id})


# ---------------------------------------------------------------------------
# Packages, their custom costs and vehicle assignments

_PACKAGE_FIELDS = {
    'name': get_text, 'description': get_text, 'base_price': get_float,
    'price_per_day': get_float, 'min_duration': get_int, 'max_duration': get_int,
    'is_active': get_bool, 'is_global': get_bool, 'sort_order': get_int,
}


def _check_package(package: Package) -> None:
    if not package.name:
        raise ValidationError("Package name is required", field='name')
    if package.type not in PackageType.ALL:
        raise ValidationError(f"type must be one of {', '.join(PackageType.ALL)}", field='type')
    for name in ('base_price', 'price_per_day'):
        if (getattr(package, name) or 0) < 0:
            raise ValidationError(f"{name} cannot be negative", field=name)
    if (package.min_duration and package.max_duration
            and package.min_duration > package.max_duration):
        raise ValidationError("min_duration cannot exceed max_duration", field='min_duration')


@bp.route('/packages')
@requires('packages:read')
def list_packages():
    rows = Package.query.order_by(Package.sort_order.asc(), Package.name.asc()).all()
    return jsonify({'packages': [p.to_dict() for p in rows]})


@bp.route('/packages', methods=['POST'])
@requires('packages:create')
def create_package():
    data = _json()
    package = Package(type=get_text(data, 'type', 'CUSTOM'))
    changed = _assign(package, data, _PACKAGE_FIELDS)
    _check_package(package)
    for cost in data.get('custom_costs') or []:
        package.custom_costs.append(_custom_cost(cost))
    db.session.add(package)
    db.session.flush()
    _commit_change('package.create', 'Package', package.id, changed)
    return jsonify(package.to_dict()), 201


@bp.route('/packages/<int:package_id>', methods=['PUT', 'PATCH'])
@requires('packages:update')
def update_package(package_id: int):
    package = _get(Package, package_id, 'Package')
    data = _json()
    changed = _assign(package, data, _PACKAGE_FIELDS)
    if 'type' in data:
        package.type = changed['type'] = get_text(data, 'type')
    _check_package(package)
    _commit_change('package.update', 'Package', package.id, changed)
    return jsonify(package.to_dict())


@bp.route('/packages/<int:package_id>', methods=['DELETE'])
@requires('packages:delete')
def delete_package(package_id: int):
    package = _get(Package, package_id, 'Package')
    in_use = Booking.query.filter(Booking.primary_package_id == package.id,
                                  Booking.status.in_(BookingStatus.ACTIVE)).count()
    if in_use:
        raise Conflict("Package is used by active bookings; deactivate it instead")
    package.is_active = False
    _commit_change('package.delete', 'Package', package.id, {'name': package.name})
    return jsonify({'deleted': package.id})


def _custom_cost(data: dict) -> PackageCustomCost:
    name = get_text(data, 'name')
    if not name:
        raise ValidationError("Custom cost name is required", field='name')
    return PackageCustomCost(name=name, price=get_float(data, 'price', 0.0, minimum=0),
                             is_optional=get_bool(data, 'is_optional'),
                             is_active=get_bool(data, 'is_active', True))


@bp.route('/packages/<int:package_id>/custom-costs', methods=['POST'])
@requires('packages:update')
def add_custom_cost(package_id: int):
    package = _get(Package, package_id, 'Package')
    cost = _custom_cost(_json())
    package.custom_costs.append(cost)
    db.session.flush()
    _commit_change('package.update', 'Package', package.id, {'custom_cost_added': cost.name})
    return jsonify(cost.to_dict()), 201


@bp.route('/packages/<int:package_id>/vehicles', methods=['PUT'])
@requires('packages:update')
def assign_vehicles(package_id: int):
    """Replace the package's vehicle assignments.

    Body: ``{"vehicles": [{"vehicle_id": 1, "custom_price": 4500}, ...]}``.
    """
    package = _get(Package, package_id, 'Package')
    wanted = {}
    for item in _json().get('vehicles') or []:
        vehicle = _get(Vehicle, get_int(item, 'vehicle_id'), 'Vehicle')
        wanted[vehicle.id] = get_float(item, 'custom_price', minimum=0)
    package.vehicle_links = [link for link in package.vehicle_links if link.vehicle_id in wanted]
    existing = {link.vehicle_id: link for link in package.vehicle_links}
    for vehicle_id, price in wanted.items():
        link = existing.get(vehicle_id)
        if link is None:
            package.vehicle_links.append(VehiclePackage(vehicle_id=vehicle_id, custom_price=price))
        else:
            link.custom_price = price
    _commit_change('package.update', 'Package', package.id, {'vehicles': wanted})
    return jsonify(package.to_dict())


# ---------------------------------------------------------------------------
# Policies

_POLICY_FIELDS = {
    'name': get_text, 'title': get_text, 'content': get_text, 'summary': get_text,
    'category': get_text, 'is_active': get_bool, 'is_required': get_bool,
    'sort_order': get_int,
}


def _check_policy(policy: Policy) -> None:
    for name in ('name', 'title', 'content', 'category'):
        if not getattr(policy, name):
            raise ValidationError(f"{name} is required", field=name)


@bp.route('/policies')
@requires('policies:read')
def list_policies():
    rows = Policy.query.order_by(Policy.sort_order.asc(), Policy.name.asc()).all()
    return jsonify({'policies': [p.to_dict() for p in rows]})


@bp.route('/policies', methods=['POST'])
@requires('policies:create')
def create_policy():
    policy = Policy()
    changed = _assign(policy, _json(), _POLICY_FIELDS)
    _check_policy(policy)
    db.session.add(policy)
    db.session.flush()
    _commit_change('policy.create', 'Policy', policy.id, changed)
    return jsonify(policy.to_dict()), 201


@bp.route('/policies/<int:policy_id>', methods=['PUT', 'PATCH'])
@requires('policies:update')
def update_policy(policy_id: int):
    policy = _get(Policy, policy_id, 'Policy')
    changed = _assign(policy, _json(), _POLICY_FIELDS)
    _check_policy(policy)
    _commit_change('policy.update', 'Policy', policy.id, changed)
    return jsonify(policy.to_dict())


@bp.route('/policies/<int:policy_id>', methods=['DELETE'])
@requires('policies:delete')
def delete_policy(policy_id: int):
    policy = _get(Policy, policy_id, 'Policy')
    name = policy.name
    db.session.delete(policy)
    _commit_change('policy.delete', 'Policy', policy_id, {'name': name})
    return jsonify({'deleted': policy_id})


@bp.route('/policies/<int:policy_id>/attach', methods=['POST'])
@requires('policies:update')
def attach_policy(policy_id: int):
    """Set which vehicles and packages the policy applies to."""
    policy = _get(Policy, policy_id, 'Policy')
    data = _json()
    if 'vehicle_ids' in data:
        policy.vehicles = [_get(Vehicle, i, 'Vehicle') for i in get_id_list(data, 'vehicle_ids')]
    if 'package_ids' in data:
        policy.packages = [_get(Package, i, 'Package') for i in get_id_list(data, 'package_ids')]
    _commit_change('policy.attach', 'Policy', policy.id,
                   {'vehicle_ids': [v.id for v in policy.vehicles],
                    'package_ids': [p.id for p in policy.packages]})
    return jsonify(policy.to_dict())


# ---------------------------------------------------------------------------
# Users, roles and permission overrides

_STATUS_ACTIONS = {
    UserStatus.ACTIVE: 'user.activate',
    UserStatus.SUSPENDED: 'user.suspend',
    UserStatus.BANNED: 'user.ban',
}


@bp.route('/users')
@requires('users:read')
def list_users():
    query = User.query
    role = get_text(request.args, 'role')
    if role:
        query = query.filter(User.role == Role.parse(role).name)
    status = get_choice(request.args, 'status', UserStatus.ALL)
    if status:
        query = query.filter(User.status == status)
    rows = query.order_by(User.created_at.desc(), User.id.desc()).all()
    return jsonify({'users': [u.to_dict() for u in rows]})


@bp.route('/users/<int:user_id>', methods=['PUT', 'PATCH'])
def update_user(user_id: int):
    actor = current_actor()
    user = _get(User, user_id, 'User')
    if user.id == actor.user_id:
        raise PermissionDenied("Use your profile settings to change your own account")
    actor.require('users:update', target_role=user.role)
    data = _json()

    if 'role' in data:
        role = Role.parse(data['role'])
        if role.name != user.role:
            if not can_assign_role(actor.role, role):
                raise PermissionDenied(f"Cannot assign role {role.name}")
            previous = user.role
            user.role = role.name
            audit.record(actor, 'user.role_change', 'User', user.id,
                         {'from': previous, 'to': role.name}, request=request)
    if 'status' in data:
        status = get_choice(data, 'status', UserStatus.ALL)
        if status is None:
            raise ValidationError("status is required", field='status')
        if status != user.status:
            user.status = status
            audit.record(actor, _STATUS_ACTIONS[status], 'User', user.id,
                         {'status': status}, request=request)
    changed = _assign(user, data, {'name': get_text, 'phone': get_text})
    _commit_change('user.update', 'User', user.id, changed or None)
    return jsonify(user.to_dict())


@bp.route('/permissions')
@requires('permissions:read')
def permission_catalogue():
    return jsonify({
        'permissions': ALL_PERMISSIONS,
        'roles': [{'role': role.name, 'display_name': role.display_name,
                   'description': ROLE_DESCRIPTIONS[role],
                   'permissions': permissions_for_role(role)} for role in Role],
        'assignable_roles': [r.name for r in assignable_roles(current_actor().role)],
    })


@bp.route('/users/<int:user_id>/permissions')
@requires('permissions:read')
def user_permissions(user_id: int):
    user = _get(User, user_id, 'User')
    return jsonify({
        'user_id': user.id,
        'role': user.role,
        'effective': effective_permissions(user),
        'overrides': [{'permission': up.permission.name, 'granted': up.granted}
                      for up in user.permission_overrides],
    })


@bp.route('/users/<int:user_id>/permissions', methods=['POST'])
@requires('permissions:manage')
def set_permission(user_id: int):
    actor = current_actor()
    user = _get(User, user_id, 'User')
    actor.require('users:update', target_role=user.role)
    data = _json()
    name = get_choice(data, 'permission', ALL_PERMISSIONS)
    if name is None:
        raise ValidationError("permission is required", field='permission')
    granted = get_bool(data, 'granted', True)
    set_user_permission(user, name, granted)
    _commit_change('permission.grant' if granted else 'permission.deny', 'User', user.id,
                   {'permission': name})
    return jsonify({'effective': effective_permissions(user)})


@bp.route('/users/<int:user_id>/permissions/<name>', methods=['DELETE'])
@requires('permissions:manage')
def revoke_permission(user_id: int, name: str):
    actor = current_actor()
    user = _get(User, user_id, 'User')
    actor.require('users:update', target_role=user.role)
    if not revoke_user_permission(user, name):
        raise NotFound("No such permission override for this user")
    _commit_change('permission.revoke', 'User', user.id, {'permission': name})
    return jsonify({'effective': effective_permissions(user)})


# ---------------------------------------------------------------------------
# Audit trail and dashboard

@bp.route('/audit-logs')
@requires('audit_logs:read')
def list_audit_logs():
    args = request.args
    logs, total = audit.query_logs(
        user_id=get_int(args, 'user_id'),
        action=get_text(args, 'action'),
        resource=get_text(args, 'resource'),
        resource_id=get_text(args, 'resource_id'),
        start=get_datetime(args, 'from'),
        end=get_datetime(args, 'to'),
        limit=min(get_int(args, 'limit', 50, minimum=1), 200),
        offset=get_int(args, 'offset', 0, minimum=0),
    )
    rows = []
    for log in logs:
        row = log.to_dict()
        row['description'] = audit.describe_action(log.action)
        rows.append(row)
    return jsonify({'logs': rows, 'total': total})


@bp.route('/analytics')
@requires('payments:read')
def dashboard():
    return jsonify(analytics.dashboard())
