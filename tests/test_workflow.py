from datetime import datetime

import pytest

from conftest import END, START, actor_for
from rentdesk import bookings, notifications
from rentdesk.errors import IllegalTransition, PermissionDenied, ValidationError
from rentdesk.models import AuditLog, BookingStatus, InvoiceStatus, Notification, db
from rentdesk.workflow import ORDER, TRANSITIONS, BookingWorkflow, can_transition

NOW = datetime(2026, 3, 4, 10, 0)


@pytest.fixture
def booking(users, vehicle):
    customer = users['customer']
    return bookings.create_booking(actor_for(customer), customer, vehicle.id, START, END)


@pytest.fixture
def workflow(users):
    return BookingWorkflow(actor_for(users['manager']), now=NOW)


def _returned(workflow, booking, **extra):
    workflow.confirm(booking, {'advance_amount': 5000, 'advance_paid': True,
                               'advance_payment_method': 'CASH'})
    workflow.collect(booking, {'collection_odometer': 10000})
    data = {'return_odometer': 10450, 'actual_start': START.isoformat(),
            'actual_end': END.isoformat()}
    data.update(extra)
    workflow.complete(booking, data)
    return booking


def test_full_lifecycle_from_request_to_paid(workflow, booking, vehicle):
    assert booking.status == BookingStatus.PENDING
    assert booking.total_price == 15000

    workflow.confirm(booking, {'advance_amount': 5000, 'advance_paid': True,
                               'advance_payment_method': 'CASH'})
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.free_mileage == 300
    assert booking.extra_mileage_rate == 50

    workflow.collect(booking, {'collection_odometer': 10000, 'collection_fuel_level': 'HALF'})
    assert booking.status == BookingStatus.COLLECTED
    assert booking.collection_fuel_level == 'HALF'
    assert vehicle.available is False

    workflow.complete(booking, {'return_odometer': 10450, 'actual_start': START.isoformat(),
                                'actual_end': END.isoformat()})
    assert booking.status == BookingStatus.COMPLETED
    assert booking.rental_days == 3
    assert booking.extra_mileage == 150
    assert booking.extra_mileage_cost == 7500
    assert booking.final_amount == 22500
    assert booking.balance_due == 17500
    assert vehicle.available is True
    assert vehicle.booking_count == 1

    invoice = workflow.generate_invoice(booking)
    assert booking.status == BookingStatus.INVOICED
    assert invoice.invoice_number == 'INV-2026-000001'
    assert invoice.total_amount == 22500
    assert invoice.balance_due == 17500
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID
    assert [p.amount for p in invoice.payments] == [5000]

    workflow.record_payment(booking, {'amount': 10000, 'method': 'CARD'})
    assert invoice.balance_due == 7500
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID
    assert booking.status == BookingStatus.PARTIALLY_PAID

    workflow.record_payment(booking, {'amount': 7500, 'method': 'CASH'})
    assert invoice.balance_due == 0
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at == NOW
    assert booking.status == BookingStatus.PAID
    assert invoice.amount_paid == 22500


def test_each_transition_writes_an_audit_row(workflow, booking):
    _returned(workflow, booking)
    workflow.generate_invoice(booking)
    actions = [row.action for row in AuditLog.query.order_by(AuditLog.id)]
    assert actions == ['booking.create', 'booking.confirm', 'booking.collect',
                       'booking.complete', 'invoice.generate']


def test_cancelled_booking_cannot_be_collected(workflow, booking):
    workflow.cancel(booking, {'reason': 'Customer changed plans'})
    assert booking.status == BookingStatus.CANCELLED
    assert booking.invoice is None
    assert booking.cancellation_reason == 'Customer changed plans'

    with pytest.raises(IllegalTransition) as excinfo:
        workflow.collect(booking, {'collection_odometer': 10000})
    assert excinfo.value.current == BookingStatus.CANCELLED
    assert booking.status == BookingStatus.CANCELLED


def test_actions_out_of_order_are_illegal(workflow, booking):
    with pytest.raises(IllegalTransition):
        workflow.complete(booking, {'return_odometer': 100})
    with pytest.raises(IllegalTransition):
        workflow.generate_invoice(booking)
    with pytest.raises(IllegalTransition):
        workflow.record_payment(booking, {'amount': 100, 'method': 'CASH'})
    assert booking.status == BookingStatus.PENDING


def test_collect_requires_odometer(workflow, booking):
    workflow.confirm(booking, {})
    with pytest.raises(ValidationError):
        workflow.collect(booking, {'collection_fuel_level': 'FULL'})
    assert booking.status == BookingStatus.CONFIRMED


def test_collect_defaults_fuel_and_records_documents(workflow, booking):
    workflow.confirm(booking, {})
    workflow.collect(booking, {'collection_odometer': 5000, 'documents': [
        {'type': 'DRIVING_LICENSE', 'file_url': '/api/uploads/licence.jpg'}]})
    assert booking.collection_fuel_level == 'FULL'
    assert [d.type for d in booking.documents] == ['DRIVING_LICENSE']


def test_complete_requires_return_odometer(workflow, booking):
    workflow.confirm(booking, {})
    workflow.collect(booking, {'collection_odometer': 10000})
    with pytest.raises(ValidationError):
        workflow.complete(booking, {})
    assert booking.status == BookingStatus.COLLECTED
    assert booking.final_amount is None


def test_preview_matches_completed_amounts(workflow, booking):
    workflow.confirm(booking, {'advance_amount': 5000, 'advance_paid': True,
                               'advance_payment_method': 'CASH'})
    workflow.collect(booking, {'collection_odometer': 10000})
    data = {'return_odometer': 10600, 'fuel_charge': 1500, 'discount_amount': 1000,
            'actual_start': START.isoformat(), 'actual_end': END.isoformat()}
    preview = workflow.preview(booking, data)
    assert booking.status == BookingStatus.COLLECTED
    assert booking.final_amount is None

    workflow.complete(booking, data)
    assert preview['final_amount'] == booking.final_amount
    assert preview['balance_due'] == booking.balance_due


def test_unpaid_advance_is_not_credited_on_invoice(workflow, booking):
    workflow.confirm(booking, {'advance_amount': 5000, 'advance_paid': False})
    workflow.collect(booking, {'collection_odometer': 10000})
    workflow.complete(booking, {'return_odometer': 10450, 'actual_start': START.isoformat(),
                                'actual_end': END.isoformat()})
    assert booking.balance_due == 22500
    invoice = workflow.generate_invoice(booking)
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.balance_due == 22500
    assert invoice.payments == []


def test_advance_covering_total_settles_invoice(workflow, booking):
    workflow.confirm(booking, {'advance_amount': 30000, 'advance_paid': True,
                               'advance_payment_method': 'BANK_TRANSFER'})
    workflow.collect(booking, {'collection_odometer': 10000})
    workflow.complete(booking, {'return_odometer': 10100, 'actual_start': START.isoformat(),
                                'actual_end': END.isoformat()})
    assert booking.refund_due == 15000
    invoice = workflow.generate_invoice(booking)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.balance_due == 0
    assert booking.status == BookingStatus.PAID


def test_invoice_tax_applies_after_discount(workflow, booking):
    _returned(workflow, booking, discount_amount=2500)
    invoice = workflow.generate_invoice(booking, {'tax_rate': 10})
    assert invoice.subtotal == 22500
    assert invoice.tax_amount == 2000
    assert invoice.total_amount == 22000
    assert invoice.balance_due == 17000


def test_overpayment_is_rejected(workflow, booking):
    _returned(workflow, booking)
    invoice = workflow.generate_invoice(booking)
    with pytest.raises(ValidationError):
        workflow.record_payment(booking, {'amount': 20000, 'method': 'CASH'})
    assert invoice.balance_due == 17500


@pytest.mark.parametrize('data', [
    {'amount': 0, 'method': 'CASH'},
    {'amount': -5, 'method': 'CASH'},
    {'amount': 100},
    {'amount': 100, 'method': 'CHEQUE'},
])
def test_invalid_payments_are_rejected(workflow, booking, data):
    _returned(workflow, booking)
    workflow.generate_invoice(booking)
    with pytest.raises(ValidationError):
        workflow.record_payment(booking, data)


def test_issue_invoice_marks_draft_as_issued(workflow, booking):
    workflow.confirm(booking, {})
    workflow.collect(booking, {'collection_odometer': 10000})
    workflow.complete(booking, {'return_odometer': 10000, 'actual_start': START.isoformat(),
                                'actual_end': END.isoformat()})
    invoice = workflow.generate_invoice(booking)
    assert invoice.status == InvoiceStatus.DRAFT
    workflow.issue_invoice(booking)
    assert invoice.status == InvoiceStatus.ISSUED
    assert invoice.issued_at == NOW


def test_cancel_after_invoicing_voids_invoice(workflow, booking):
    _returned(workflow, booking)
    invoice = workflow.generate_invoice(booking)
    workflow.cancel(booking, {'reason': 'Dispute'})
    assert booking.status == BookingStatus.CANCELLED
    assert invoice.status == InvoiceStatus.CANCELLED


def test_cancel_after_return_takes_back_the_rental_count(workflow, booking, vehicle):
    _returned(workflow, booking)
    assert vehicle.booking_count == 1
    workflow.cancel(booking)
    assert vehicle.booking_count == 0
    assert vehicle.available is True


def test_cancel_collected_booking_returns_vehicle(workflow, booking, vehicle):
    workflow.confirm(booking, {})
    workflow.collect(booking, {'collection_odometer': 10000})
    assert vehicle.available is False
    workflow.cancel(booking)
    assert vehicle.available is True


def test_paid_booking_cannot_be_cancelled(workflow, booking):
    _returned(workflow, booking)
    workflow.generate_invoice(booking)
    workflow.record_payment(booking, {'amount': 17500, 'method': 'CASH'})
    with pytest.raises(IllegalTransition):
        workflow.cancel(booking)


def test_customer_can_cancel_own_pending_booking(users, booking):
    BookingWorkflow(actor_for(users['customer'])).cancel(booking)
    assert booking.status == BookingStatus.CANCELLED


def test_customer_cannot_cancel_someone_elses_booking(users, booking):
    with pytest.raises(PermissionDenied):
        BookingWorkflow(actor_for(users['other'])).cancel(booking)
    assert booking.status == BookingStatus.PENDING


def test_customer_cannot_cancel_collected_booking(users, workflow, booking):
    workflow.confirm(booking, {})
    workflow.collect(booking, {'collection_odometer': 10000})
    with pytest.raises(PermissionDenied):
        BookingWorkflow(actor_for(users['customer'])).cancel(booking)


def test_customer_cannot_run_admin_actions(users, booking):
    customer_flow = BookingWorkflow(actor_for(users['customer']))
    with pytest.raises(PermissionDenied):
        customer_flow.confirm(booking, {})


def test_suspended_manager_is_refused(users, booking):
    manager = users['manager']
    manager.status = 'SUSPENDED'
    db.session.commit()
    with pytest.raises(PermissionDenied):
        BookingWorkflow(actor_for(manager)).confirm(booking, {})


def test_notifications_follow_transitions(users, workflow, booking):
    workflow.confirm(booking, {})
    kinds = [n.type for n in Notification.query.filter_by(user_id=users['customer'].id)
             .order_by(Notification.id)]
    assert kinds == ['BOOKING_CREATED', 'BOOKING_CONFIRMED']


def test_notification_failure_does_not_undo_transition(monkeypatch, workflow, booking):
    def broken(**kwargs):
        raise RuntimeError('notification store down')

    monkeypatch.setattr(notifications, 'Notification', broken)
    workflow.confirm(booking, {})
    db.session.expire_all()
    assert booking.status == BookingStatus.CONFIRMED


def test_unknown_action_is_rejected(workflow, booking):
    with pytest.raises(ValidationError):
        workflow.run('teleport', booking, {})


def test_run_dispatches_to_action(workflow, booking):
    workflow.run('confirm', booking, {'advance_amount': 1000})
    assert booking.status == BookingStatus.CONFIRMED


def test_transition_table_only_moves_forward():
    for i, current in enumerate(ORDER):
        for target in ORDER[:i]:
            assert not can_transition(current, target)
    assert can_transition(BookingStatus.PENDING, BookingStatus.CONFIRMED)
    assert can_transition(BookingStatus.INVOICED, BookingStatus.PAID)
    assert not can_transition(BookingStatus.PENDING, BookingStatus.COLLECTED)
    assert not can_transition(BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


def test_cancel_is_reachable_from_every_non_terminal_status():
    for status in ORDER:
        expected = status != BookingStatus.PAID
        assert can_transition(status, BookingStatus.CANCELLED) is expected
        assert (status in TRANSITIONS['cancel']) is expected
    assert not can_transition(BookingStatus.CANCELLED, BookingStatus.CANCELLED)
