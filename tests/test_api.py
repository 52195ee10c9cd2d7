import io

from flask import abort

from conftest import END, START, as_user
from rentdesk.models import AuditLog, BookingStatus, Vehicle, db


def _request_booking(client, user, vehicle, start=START, end=END):
    return client.post('/api/bookings', headers=as_user(user), json={
        'vehicle_id': vehicle.id,
        'start_date': start.isoformat(),
        'end_date': end.isoformat(),
        'pickup_location': 'Colombo Fort',
    })


def _workflow(client, user, booking_id, action, **data):
    data['action'] = action
    return client.post(f'/api/admin/bookings/{booking_id}/workflow',
                       headers=as_user(user), json=data)


def test_requests_need_a_known_user(client, users):
    assert client.get('/api/bookings').status_code == 401
    response = client.get('/api/bookings', headers={'X-User-Id': '9999'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'Unknown user'


def test_vehicle_catalogue_is_public(client, vehicle, second_vehicle):
    response = client.get('/api/vehicles?sort=price_asc')
    assert response.status_code == 200
    assert [v['id'] for v in response.get_json()['vehicles']] == [second_vehicle.id, vehicle.id]
    response = client.get('/api/vehicles?max_price=4000')
    assert [v['id'] for v in response.get_json()['vehicles']] == [second_vehicle.id]


def test_customer_books_and_sees_own_bookings(client, users, vehicle):
    response = _request_booking(client, users['customer'], vehicle)
    assert response.status_code == 201
    body = response.get_json()
    assert body['status'] == 'PENDING'
    assert body['total_price'] == 15000

    mine = client.get('/api/bookings', headers=as_user(users['customer'])).get_json()
    assert [b['id'] for b in mine['bookings']] == [body['id']]
    theirs = client.get('/api/bookings', headers=as_user(users['other'])).get_json()
    assert theirs['bookings'] == []
    hidden = client.get(f"/api/bookings/{body['id']}", headers=as_user(users['other']))
    assert hidden.status_code == 404


def test_double_booking_returns_conflict(client, users, vehicle):
    assert _request_booking(client, users['customer'], vehicle).status_code == 201
    response = _request_booking(client, users['other'], vehicle)
    assert response.status_code == 409
    assert 'already booked' in response.get_json()['error']


def test_bad_dates_are_a_validation_error(client, users, vehicle):
    response = client.post('/api/bookings', headers=as_user(users['customer']), json={
        'vehicle_id': vehicle.id, 'start_date': 'next tuesday', 'end_date': END.isoformat()})
    assert response.status_code == 400
    assert response.get_json()['field'] == 'start_date'


def test_customer_cancels_through_patch(client, users, vehicle):
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    response = client.patch(f'/api/bookings/{booking_id}', headers=as_user(users['customer']),
                            json={'action': 'cancel', 'reason': 'Plans changed'})
    assert response.status_code == 200
    assert response.get_json()['status'] == BookingStatus.CANCELLED


def test_customers_are_kept_out_of_admin(client, users):
    response = client.get('/api/admin/bookings', headers=as_user(users['customer']))
    assert response.status_code == 403


def test_admin_runs_booking_to_paid(client, users, vehicle):
    manager = users['manager']
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']

    response = _workflow(client, manager, booking_id, 'confirm', advance_amount=5000,
                         advance_paid=True, advance_payment_method='CASH')
    assert response.get_json()['booking']['status'] == 'CONFIRMED'

    response = _workflow(client, manager, booking_id, 'collect', collection_odometer=10000)
    assert response.get_json()['booking']['status'] == 'COLLECTED'

    complete = {'return_odometer': 10450, 'actual_start_date': '2026-03-01',
                'actual_start_time': '09:00', 'actual_end': END.isoformat()}
    preview = _workflow(client, manager, booking_id, 'preview', **complete).get_json()['preview']
    assert preview['final_amount'] == 22500
    assert preview['balance_due'] == 17500

    response = _workflow(client, manager, booking_id, 'complete', **complete)
    assert response.get_json()['booking']['final_amount'] == 22500

    response = _workflow(client, manager, booking_id, 'generate-invoice')
    invoice = response.get_json()['invoice']
    assert invoice['balance_due'] == 17500
    assert invoice['status'] == 'PARTIALLY_PAID'

    response = _workflow(client, manager, booking_id, 'record-payment', amount=17500,
                         method='CARD')
    assert response.get_json()['booking']['status'] == 'PAID'
    assert response.get_json()['invoice']['balance_due'] == 0

    detail = client.get(f"/api/admin/invoices/{invoice['id']}", headers=as_user(manager))
    lines = detail.get_json()['lines']
    assert [l['key'] for l in lines] == ['rental', 'extra_mileage', 'total', 'advance', 'balance']

    own = client.get(f"/api/invoices/{invoice['id']}", headers=as_user(users['customer']))
    assert own.status_code == 200
    assert own.get_json()['invoice_number'] == invoice['invoice_number']


def test_illegal_transition_over_http(client, users, vehicle):
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    response = _workflow(client, users['manager'], booking_id, 'complete', return_odometer=10)
    assert response.status_code == 409
    body = response.get_json()
    assert body['current'] == 'PENDING'
    assert body['action'] == 'complete'


def test_unknown_workflow_action(client, users, vehicle):
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    response = _workflow(client, users['manager'], booking_id, 'teleport')
    assert response.status_code == 400


def test_unknown_booking_is_not_found(client, users):
    response = _workflow(client, users['manager'], 12345, 'confirm')
    assert response.status_code == 404


def test_document_upload(client, users, vehicle):
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    response = client.post(f'/api/admin/bookings/{booking_id}/documents',
                           headers=as_user(users['manager']),
                           data={'type': 'PASSPORT', 'title': 'Passport',
                                 'file': (io.BytesIO(b'%PDF-1.4'), 'passport.pdf')},
                           content_type='multipart/form-data')
    assert response.status_code == 201
    document = response.get_json()
    assert document['type'] == 'PASSPORT'
    fetched = client.get(document['file_url'], headers=as_user(users['manager']))
    assert fetched.status_code == 200
    assert fetched.data == b'%PDF-1.4'


def test_document_upload_rejects_other_file_types(client, users, vehicle):
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    response = client.post(f'/api/admin/bookings/{booking_id}/documents',
                           headers=as_user(users['manager']),
                           data={'file': (io.BytesIO(b'MZ'), 'tool.exe')},
                           content_type='multipart/form-data')
    assert response.status_code == 400


def test_vehicle_management_is_audited(client, users):
    admin = users['admin']
    response = client.post('/api/admin/vehicles', headers=as_user(admin),
                           json={'name': 'Honda Fit', 'brand': 'Honda', 'model': 'Fit',
                                 'price_per_day': 4200})
    assert response.status_code == 201
    vehicle_id = response.get_json()['id']

    response = client.patch(f'/api/admin/vehicles/{vehicle_id}', headers=as_user(admin),
                            json={'price_per_day': 4500})
    assert response.get_json()['price_per_day'] == 4500

    assert client.delete(f'/api/admin/vehicles/{vehicle_id}',
                         headers=as_user(admin)).status_code == 200
    assert db.session.get(Vehicle, vehicle_id) is None
    actions = [row.action for row in AuditLog.query.order_by(AuditLog.id)]
    assert actions == ['vehicle.create', 'vehicle.update', 'vehicle.delete']

    logs = client.get('/api/admin/audit-logs?resource=Vehicle', headers=as_user(admin))
    body = logs.get_json()
    assert body['total'] == 3
    assert body['logs'][0]['description'] == 'Deleted vehicle'


def test_manager_cannot_create_vehicles(client, users):
    response = client.post('/api/admin/vehicles', headers=as_user(users['manager']),
                           json={'name': 'Nope', 'price_per_day': 1})
    assert response.status_code == 403


def test_role_changes_respect_hierarchy(client, users):
    admin = users['admin']
    response = client.patch(f"/api/admin/users/{users['customer'].id}", headers=as_user(admin),
                            json={'role': 'MANAGER'})
    assert response.status_code == 200
    assert response.get_json()['role'] == 'MANAGER'

    response = client.patch(f"/api/admin/users/{users['other'].id}", headers=as_user(admin),
                            json={'role': 'ADMIN'})
    assert response.status_code == 403

    response = client.patch(f"/api/admin/users/{users['root'].id}", headers=as_user(admin),
                            json={'status': 'SUSPENDED'})
    assert response.status_code == 403


def test_super_admin_grants_a_permission(client, users):
    manager = users['manager']
    root = users['root']
    response = client.post(f'/api/admin/users/{manager.id}/permissions', headers=as_user(root),
                           json={'permission': 'vehicles:create'})
    assert response.status_code == 200
    assert 'vehicles:create' in response.get_json()['effective']

    created = client.post('/api/admin/vehicles', headers=as_user(manager),
                          json={'name': 'Granted', 'price_per_day': 100})
    assert created.status_code == 201

    response = client.delete(f'/api/admin/users/{manager.id}/permissions/vehicles:create',
                             headers=as_user(root))
    assert 'vehicles:create' not in response.get_json()['effective']


def test_admin_cannot_manage_permissions(client, users):
    response = client.post(f"/api/admin/users/{users['manager'].id}/permissions",
                           headers=as_user(users['admin']),
                           json={'permission': 'vehicles:create'})
    assert response.status_code == 403


def test_dashboard_counts(client, users, vehicle, second_vehicle):
    _request_booking(client, users['customer'], vehicle)
    response = client.get('/api/admin/analytics', headers=as_user(users['manager']))
    body = response.get_json()
    assert body['bookings']['PENDING'] == 1
    assert body['fleet']['total'] == 2
    assert body['revenue']['total'] == 0
    assert body['outstanding']['count'] == 0


def test_notifications_can_be_marked_read(client, users, vehicle):
    customer = users['customer']
    _request_booking(client, customer, vehicle)
    notes = client.get('/api/notifications?unread=1', headers=as_user(customer)).get_json()
    assert [n['type'] for n in notes['notifications']] == ['BOOKING_CREATED']
    response = client.post('/api/notifications/read', headers=as_user(customer), json={})
    assert response.get_json()['updated'] == 1
    notes = client.get('/api/notifications?unread=1', headers=as_user(customer)).get_json()
    assert notes['notifications'] == []


def _invoiced_booking(client, users, vehicle):
    manager = users['manager']
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    _workflow(client, manager, booking_id, 'confirm', advance_amount=5000,
              advance_paid=True, advance_payment_method='CASH')
    _workflow(client, manager, booking_id, 'collect', collection_odometer=10000)
    _workflow(client, manager, booking_id, 'complete', return_odometer=10450,
              actual_start=START.isoformat(), actual_end=END.isoformat())
    return _workflow(client, manager, booking_id, 'generate-invoice').get_json()['invoice']


def test_invoice_email_notifies_customer(client, users, vehicle):
    invoice = _invoiced_booking(client, users, vehicle)
    response = client.post(f"/api/admin/invoices/{invoice['id']}", headers=as_user(users['manager']),
                           json={'action': 'send-email'})
    assert response.status_code == 200
    assert response.get_json()['invoice']['sent_via_email'] is True

    notes = client.get('/api/notifications', headers=as_user(users['customer'])).get_json()
    assert 'Invoice Received' in [n['title'] for n in notes['notifications']]
    assert AuditLog.query.filter_by(action='invoice.send').count() == 1


def test_invoice_whatsapp_returns_link(client, users, vehicle):
    invoice = _invoiced_booking(client, users, vehicle)
    response = client.post(f"/api/admin/invoices/{invoice['id']}", headers=as_user(users['manager']),
                           json={'action': 'send-whatsapp'})
    body = response.get_json()
    assert body['whatsapp_url'].startswith('https://wa.me/94775550101')
    assert body['invoice']['sent_via_whatsapp'] is True


def test_analytics_counts_collected_revenue(client, users, vehicle):
    _invoiced_booking(client, users, vehicle)
    body = client.get('/api/admin/analytics', headers=as_user(users['manager'])).get_json()
    assert body['revenue']['total'] == 5000
    assert body['outstanding']['count'] == 1
    assert body['outstanding']['balance'] == 17500
    assert body['top_vehicles'][0]['vehicle_id'] == vehicle.id


def _upload_passport(client, users, vehicle):
    booking_id = _request_booking(client, users['customer'], vehicle).get_json()['id']
    response = client.post(f'/api/admin/bookings/{booking_id}/documents',
                           headers=as_user(users['manager']),
                           data={'type': 'PASSPORT',
                                 'file': (io.BytesIO(b'%PDF passport'), 'passport.pdf')},
                           content_type='multipart/form-data')
    return booking_id, response.get_json()


def test_uploaded_documents_are_private_to_the_booking_owner(client, users, vehicle):
    _, document = _upload_passport(client, users, vehicle)
    url = document['file_url']

    owner = client.get(url, headers=as_user(users['customer']))
    assert owner.status_code == 200
    assert owner.data == b'%PDF passport'

    stranger = client.get(url, headers=as_user(users['other']))
    assert stranger.status_code == 404

    unknown = client.get('/api/uploads/passport_0_missing.pdf', headers=as_user(users['other']))
    assert unknown.status_code == 404


def test_customer_lists_own_documents(client, users, vehicle):
    booking_id, document = _upload_passport(client, users, vehicle)
    mine = client.get('/api/documents', headers=as_user(users['customer'])).get_json()
    assert [d['id'] for d in mine['documents']] == [document['id']]
    assert mine['documents'][0]['booking']['id'] == booking_id

    filtered = client.get('/api/documents?type=DRIVING_LICENSE',
                          headers=as_user(users['customer'])).get_json()
    assert filtered['documents'] == []

    theirs = client.get('/api/documents', headers=as_user(users['other'])).get_json()
    assert theirs['documents'] == []


def test_http_errors_discard_pending_changes(app, client):
    @app.route('/api/half-done')
    def half_done():
        db.session.add(Vehicle(name='Half saved', price_per_day=1))
        abort(404)

    assert client.get('/api/half-done').status_code == 404
    assert Vehicle.query.filter_by(name='Half saved').count() == 0
