import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from io import StringIO
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from listings.models import Listing
from payments.gateway import ChargeResult, RefundResult
from payments.models import PaymentRecord
from .exceptions import (
    BookingNotFound,
    InvalidBookingDates,
    InvalidTransition,
    ListingNotFound,
    ListingUnavailable,
    NotAuthorized,
    PaymentGatewayError,
    InvalidBookingRequest,
)
from .jobs import run_due_jobs, schedule_deposit_release
from .models import Booking, ScheduledJob
from .notifications import STATUS_NOTIFICATIONS, EmailSender, NotificationDispatcher
from .pricing import Pricing, calculate, rental_days
from .services import BookingLifecycleService, BookingRequest
from .transitions import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, can_transition


class FakeGateway:
    def __init__(self):
        self.charges = []
        self.refunds = []
        self.failing_refunds = set()

    def charge(self, amount, currency, metadata, description=None):
        payment_id = f'pi_test_{len(self.charges) + 1}'
        self.charges.append({'id': payment_id, 'amount': amount, 'currency': currency, 'metadata': metadata})
        return ChargeResult(
            id=payment_id,
            status='requires_payment_method',
            client_secret=f'{payment_id}_secret',
            amount=amount,
            currency=currency.lower(),
        )

    def refund(self, payment_id, amount=None, reason=None):
        if payment_id in self.failing_refunds:
            raise PaymentGatewayError('Failed to process refund')
        self.refunds.append(payment_id)
        return RefundResult(
            id=f're_test_{len(self.refunds)}',
            status='succeeded',
            amount=amount or 0,
            payment_id=payment_id,
            reason=reason,
        )


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def dispatch(self, booking_id, template_key):
        self.sent.append((str(booking_id), template_key))

    def keys(self):
        return [key for _, key in self.sent]


class LifecycleTestCase(TestCase):
    def setUp(self):
        User = get_user_model()
        self.owner = User.objects.create_user('owner', 'owner@example.com', 'secret-pass')
        self.renter = User.objects.create_user('renter', 'renter@example.com', 'secret-pass')
        self.stranger = User.objects.create_user('stranger', 'stranger@example.com', 'secret-pass')
        self.listing = Listing.objects.create(
            title='Ultralight Tent',
            owner_id=str(self.owner.pk),
            owner_email='owner@example.com',
            daily_price_pence=5000,
            security_deposit_pence=10000,
        )
        self.gateway = FakeGateway()
        self.notifier = RecordingNotifier()
        self.service = BookingLifecycleService(
            self.gateway,
            self.notifier,
            service_fee_rate='0.15',
            deposit_release_delay=timedelta(hours=48),
            currency='USD',
        )

    def create_booking(self, days=3, **overrides):
        start = date(2026, 11, 1)
        params = {
            'listing_id': str(self.listing.id),
            'renter_id': str(self.renter.pk),
            'start_date': start,
            'end_date': start + timedelta(days=days),
            'delivery_method': 'pickup',
            'insurance_tier': 'standard',
        }
        params.update(overrides)
        return self.service.create_booking(BookingRequest(**params))

    def pay(self, booking_id, payment_type):
        charge = self.service.start_payment(booking_id, payment_type, self.renter.pk)
        metadata = self.gateway.charges[-1]['metadata']
        self.service.process_successful_payment(charge.id, metadata)
        return charge.id

    def confirmed_booking(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        self.service.approve_booking(booking_id, self.owner.pk)
        return booking_id

    def reload(self, booking_id):
        return Booking.objects.get(id=booking_id)


class PricingTest(TestCase):
    def test_total_is_base_plus_fee(self):
        for daily_price, days in [(5000, 3), (1999, 7), (333, 1), (12345, 10), (1, 1)]:
            pricing = calculate(daily_price, days)
            expected_fee = int((Decimal(daily_price * days) * Decimal('0.15')).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
            self.assertEqual(pricing.base_price, daily_price * days)
            self.assertEqual(pricing.service_fee, expected_fee)
            self.assertEqual(pricing.total_price, pricing.base_price + pricing.service_fee)

    def test_three_days_at_fifty(self):
        self.assertEqual(calculate(5000, 3), Pricing(base_price=15000, service_fee=2250, total_price=17250, days=3))

    def test_service_fee_rounds_half_up(self):
        self.assertEqual(calculate(10, 1).service_fee, 2)
        self.assertEqual(calculate(30, 1).service_fee, 5)

    def test_custom_rate(self):
        pricing = calculate(10000, 2, service_fee_rate='0.10')
        self.assertEqual(pricing.service_fee, 2000)
        self.assertEqual(pricing.total_price, 22000)

    def test_rejects_non_positive_inputs(self):
        with self.assertRaises(ValueError):
            calculate(0, 3)
        with self.assertRaises(ValueError):
            calculate(5000, 0)

    def test_rental_days_rounds_part_days_up(self):
        self.assertEqual(rental_days(date(2026, 1, 1), date(2026, 1, 4)), 3)
        self.assertEqual(rental_days(datetime(2026, 1, 1, 9), datetime(2026, 1, 2, 10)), 2)


class TransitionTableTest(TestCase):
    def test_terminal_statuses(self):
        self.assertEqual(TERMINAL_STATUSES, {Booking.Status.COMPLETED, Booking.Status.CANCELLED})

    def test_cancelled_reachable_from_open_statuses(self):
        for status in ['pending_payment', 'pending_owner_approval', 'confirmed', 'active']:
            self.assertTrue(can_transition(status, 'cancelled'), status)

    def test_disputed_reachable_from_confirmed_and_active(self):
        self.assertTrue(can_transition('confirmed', 'disputed'))
        self.assertTrue(can_transition('active', 'disputed'))
        self.assertFalse(can_transition('pending_payment', 'disputed'))

    def test_every_status_has_an_entry(self):
        self.assertEqual(set(ALLOWED_TRANSITIONS), set(Booking.Status.values))

    def test_every_status_has_a_notification_decision(self):
        self.assertEqual(set(STATUS_NOTIFICATIONS), set(Booking.Status.values))


class CreateBookingTest(LifecycleTestCase):
    def test_creates_pending_booking_with_frozen_pricing(self):
        booking = self.reload(self.create_booking())

        self.assertEqual(booking.status, 'pending_payment')
        self.assertEqual(booking.payment_status(), {'upfront': 'pending', 'rental': 'pending', 'securityDeposit': 'pending'})
        self.assertEqual(booking.days, 3)
        self.assertEqual(booking.base_price_pence, 15000)
        self.assertEqual(booking.service_fee_pence, 2250)
        self.assertEqual(booking.total_price_pence, 17250)
        self.assertEqual(booking.security_deposit_pence, 10000)
        self.assertEqual(booking.owner_id, str(self.owner.pk))
        self.assertEqual(len(booking.timeline), 1)
        self.assertEqual(booking.timeline[0]['event'], 'booking_created')
        self.assertEqual(booking.timeline[0]['actor'], 'renter')

    def test_price_change_does_not_reprice_existing_booking(self):
        booking_id = self.create_booking()
        self.listing.daily_price_pence = 9900
        self.listing.save()

        self.pay(booking_id, 'upfront')
        self.assertEqual(self.reload(booking_id).base_price_pence, 15000)

    def test_end_date_must_follow_start_date(self):
        with self.assertRaises(InvalidBookingDates):
            self.create_booking(days=0)
        with self.assertRaises(InvalidBookingDates):
            self.create_booking(days=-2)
        self.assertEqual(Booking.objects.count(), 0)

    def test_missing_listing(self):
        with self.assertRaises(ListingNotFound):
            self.create_booking(listing_id=str(uuid.uuid4()))
        self.assertEqual(Booking.objects.count(), 0)

    def test_inactive_listing(self):
        self.listing.status = 'inactive'
        self.listing.save()
        with self.assertRaises(ListingUnavailable):
            self.create_booking()
        self.assertEqual(Booking.objects.count(), 0)

    def test_owner_cannot_book_own_listing(self):
        with self.assertRaises(InvalidBookingRequest):
            self.create_booking(renter_id=str(self.owner.pk))

    def test_unknown_delivery_method(self):
        with self.assertRaises(InvalidBookingRequest):
            self.create_booking(delivery_method='drone')


class PaymentCallbackTest(LifecycleTestCase):
    def test_upfront_payment_moves_to_owner_approval(self):
        booking_id = self.create_booking()
        payment_id = self.pay(booking_id, 'upfront')

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'pending_owner_approval')
        self.assertEqual(booking.upfront_payment_status, 'paid')
        self.assertEqual(booking.upfront_payment_id, payment_id)
        self.assertEqual(self.notifier.keys(), ['new_booking'])

    def test_upfront_charge_is_the_service_fee(self):
        booking_id = self.create_booking()
        self.service.start_payment(booking_id, 'upfront', self.renter.pk)

        charge = self.gateway.charges[0]
        self.assertEqual(charge['amount'], 2250)
        self.assertEqual(charge['metadata']['bookingId'], booking_id)
        self.assertEqual(charge['metadata']['paymentType'], 'upfront')
        self.assertEqual(charge['metadata']['ownerId'], str(self.owner.pk))

    def test_rental_payment_confirms(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        self.pay(booking_id, 'rental')

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.rental_payment_status, 'paid')
        self.assertEqual(self.notifier.keys(), ['new_booking', 'booking_confirmed'])

    def test_security_deposit_is_held_without_status_change(self):
        booking_id = self.confirmed_booking()
        self.pay(booking_id, 'security_deposit')

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.security_deposit_status, 'held')

    def test_duplicate_success_callback_is_ignored(self):
        booking_id = self.create_booking()
        charge = self.service.start_payment(booking_id, 'upfront', self.renter.pk)
        metadata = self.gateway.charges[-1]['metadata']

        self.service.process_successful_payment(charge.id, metadata)
        timeline_length = len(self.reload(booking_id).timeline)
        self.service.process_successful_payment(charge.id, metadata)

        booking = self.reload(booking_id)
        self.assertEqual(len(booking.timeline), timeline_length)
        self.assertEqual(self.notifier.keys(), ['new_booking'])

    def test_failed_payment_marks_leg_and_never_refunds(self):
        booking_id = self.create_booking()
        charge = self.service.start_payment(booking_id, 'upfront', self.renter.pk)
        self.service.process_failed_payment(charge.id, self.gateway.charges[-1]['metadata'])

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'payment_failed')
        self.assertEqual(booking.upfront_payment_status, 'failed')
        self.assertEqual(self.gateway.refunds, [])

    def test_retry_after_failed_payment(self):
        booking_id = self.create_booking()
        charge = self.service.start_payment(booking_id, 'upfront', self.renter.pk)
        self.service.process_failed_payment(charge.id, self.gateway.charges[-1]['metadata'])
        self.pay(booking_id, 'upfront')

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'pending_owner_approval')
        self.assertEqual(booking.upfront_payment_status, 'paid')

    def test_failed_deposit_on_confirmed_booking_keeps_status(self):
        booking_id = self.confirmed_booking()
        charge = self.service.start_payment(booking_id, 'security_deposit', self.renter.pk)
        self.service.process_failed_payment(charge.id, self.gateway.charges[-1]['metadata'])

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.security_deposit_status, 'failed')
        self.assertEqual(booking.timeline[-1]['event'], 'security_deposit_payment_failed')

    def test_failure_delivered_after_success_keeps_paid_leg(self):
        booking_id = self.create_booking()
        charge = self.service.start_payment(booking_id, 'upfront', self.renter.pk)
        metadata = self.gateway.charges[-1]['metadata']
        self.service.process_successful_payment(charge.id, metadata)

        self.service.process_failed_payment(charge.id, metadata)

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'pending_owner_approval')
        self.assertEqual(booking.upfront_payment_status, 'paid')
        self.assertEqual(booking.timeline[-1]['event'], 'upfront_payment_failed')
        self.service.approve_booking(booking_id, self.owner.pk)
        self.assertEqual(self.reload(booking_id).status, 'confirmed')

    def test_success_delivered_after_cancellation_is_refunded(self):
        booking_id = self.create_booking()
        charge = self.service.start_payment(booking_id, 'upfront', self.renter.pk)
        metadata = self.gateway.charges[-1]['metadata']
        self.service.cancel_booking(booking_id, self.renter.pk, 'Changed my mind', 'renter')

        self.service.process_successful_payment(charge.id, metadata)

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'cancelled')
        self.assertEqual(booking.upfront_payment_status, 'refunded')
        self.assertEqual(self.gateway.refunds, [charge.id])
        self.assertEqual(PaymentRecord.objects.get(stripe_payment_intent_id=charge.id).status, 'refunded')

        self.service.process_successful_payment(charge.id, metadata)
        self.assertEqual(self.gateway.refunds, [charge.id])

    def test_late_deposit_after_cancellation_is_released(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        charge = self.service.start_payment(booking_id, 'security_deposit', self.renter.pk)
        metadata = self.gateway.charges[-1]['metadata']
        self.service.cancel_booking(booking_id, self.renter.pk, 'Weather', 'renter')

        self.service.process_successful_payment(charge.id, metadata)

        booking = self.reload(booking_id)
        self.assertEqual(booking.security_deposit_status, 'released')
        self.assertIn(charge.id, self.gateway.refunds)

    def test_failed_deposit_does_not_block_approval(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        charge = self.service.start_payment(booking_id, 'security_deposit', self.renter.pk)
        self.service.process_failed_payment(charge.id, self.gateway.charges[-1]['metadata'])

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'pending_owner_approval')
        self.assertEqual(booking.security_deposit_status, 'failed')

        self.pay(booking_id, 'security_deposit')
        self.service.approve_booking(booking_id, self.owner.pk)

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.security_deposit_status, 'held')

    def test_rental_retry_recovers_from_payment_failed(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        charge = self.service.start_payment(booking_id, 'rental', self.renter.pk)
        self.service.process_failed_payment(charge.id, self.gateway.charges[-1]['metadata'])
        self.assertEqual(self.reload(booking_id).status, 'payment_failed')

        self.pay(booking_id, 'rental')

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.rental_payment_status, 'paid')

    def test_callback_without_booking_id(self):
        with self.assertRaises(InvalidBookingRequest):
            self.service.process_successful_payment('pi_orphan', {'paymentType': 'upfront'})

    def test_only_renter_can_pay(self):
        booking_id = self.create_booking()
        with self.assertRaises(NotAuthorized):
            self.service.start_payment(booking_id, 'upfront', self.stranger.pk)
        self.assertEqual(self.gateway.charges, [])

    def test_paid_leg_cannot_be_charged_again(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        with self.assertRaises(InvalidTransition):
            self.service.start_payment(booking_id, 'upfront', self.renter.pk)


class ApproveBookingTest(LifecycleTestCase):
    def test_non_owner_cannot_approve(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')

        with self.assertRaises(NotAuthorized):
            self.service.approve_booking(booking_id, self.stranger.pk)
        self.assertEqual(self.reload(booking_id).status, 'pending_owner_approval')

    def test_owner_approval_sends_one_email(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        self.service.approve_booking(booking_id, self.owner.pk)

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.timeline[-1]['actor'], 'owner')
        self.assertEqual(booking.timeline[-1]['description'], 'Booking approved by owner')
        self.assertEqual(self.notifier.keys(), ['new_booking', 'booking_approved'])

    def test_cannot_approve_before_upfront_payment(self):
        booking_id = self.create_booking()
        with self.assertRaises(InvalidTransition):
            self.service.approve_booking(booking_id, self.owner.pk)
        self.assertEqual(self.reload(booking_id).status, 'pending_payment')


class CancelBookingTest(LifecycleTestCase):
    def test_refunds_paid_upfront_leg_once(self):
        booking_id = self.create_booking()
        payment_id = self.pay(booking_id, 'upfront')

        self.service.cancel_booking(booking_id, self.renter.pk, 'Change of plans', 'renter')

        booking = self.reload(booking_id)
        self.assertEqual(self.gateway.refunds, [payment_id])
        self.assertEqual(booking.status, 'cancelled')
        self.assertEqual(booking.upfront_payment_status, 'refunded')
        self.assertEqual(booking.timeline[-1]['description'], 'Cancelled: Change of plans')

    def test_unpaid_booking_cancels_without_refunds(self):
        booking_id = self.create_booking()
        self.service.cancel_booking(booking_id, self.renter.pk, 'Changed my mind', 'renter')

        self.assertEqual(self.gateway.refunds, [])
        self.assertEqual(self.reload(booking_id).status, 'cancelled')
        self.assertEqual(self.notifier.keys(), ['booking_cancelled'])

    def test_cancel_confirmed_booking_with_both_legs_paid(self):
        booking_id = self.confirmed_booking()
        upfront_id = self.reload(booking_id).upfront_payment_id
        rental_id = self.pay(booking_id, 'rental')

        self.service.cancel_booking(booking_id, self.owner.pk, 'Gear damaged', 'owner')

        booking = self.reload(booking_id)
        self.assertEqual(self.gateway.refunds, [upfront_id, rental_id])
        self.assertEqual(booking.status, 'cancelled')
        self.assertGreaterEqual(len(booking.timeline), 4)
        self.assertEqual(booking.timeline[0]['event'], 'booking_created')
        self.assertEqual(booking.timeline[-1]['event'], 'status_changed_to_cancelled')

    def test_held_deposit_is_released(self):
        booking_id = self.confirmed_booking()
        deposit_id = self.pay(booking_id, 'security_deposit')

        self.service.cancel_booking(booking_id, self.renter.pk, 'Weather', 'renter')

        booking = self.reload(booking_id)
        self.assertIn(deposit_id, self.gateway.refunds)
        self.assertEqual(booking.security_deposit_status, 'released')

    def test_failed_refund_does_not_block_other_legs(self):
        booking_id = self.confirmed_booking()
        upfront_id = self.reload(booking_id).upfront_payment_id
        rental_id = self.pay(booking_id, 'rental')
        self.gateway.failing_refunds.add(upfront_id)

        with self.assertRaises(PaymentGatewayError):
            self.service.cancel_booking(booking_id, self.renter.pk, 'Weather', 'renter')

        booking = self.reload(booking_id)
        self.assertEqual(self.gateway.refunds, [rental_id])
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.rental_payment_status, 'refunded')
        self.assertEqual(booking.upfront_payment_status, 'paid')
        self.assertEqual(booking.timeline[-1]['event'], 'refund_incomplete')
        self.assertIn('upfront', booking.timeline[-1]['description'])

        self.gateway.failing_refunds.clear()
        self.service.cancel_booking(booking_id, self.renter.pk, 'Weather', 'renter')

        self.assertEqual(self.gateway.refunds, [rental_id, upfront_id])
        self.assertEqual(self.reload(booking_id).status, 'cancelled')

    def test_wrong_renter_is_rejected(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')

        with self.assertRaises(NotAuthorized):
            self.service.cancel_booking(booking_id, self.stranger.pk, 'No', 'renter')
        with self.assertRaises(NotAuthorized):
            self.service.cancel_booking(booking_id, self.renter.pk, 'No', 'owner')
        self.assertEqual(self.gateway.refunds, [])
        self.assertEqual(self.reload(booking_id).status, 'pending_owner_approval')

    def test_admin_can_cancel_any_booking(self):
        booking_id = self.create_booking()
        self.service.cancel_booking(booking_id, self.stranger.pk, 'Policy violation', 'admin')
        self.assertEqual(self.reload(booking_id).status, 'cancelled')

    def test_completed_booking_cannot_be_cancelled(self):
        booking_id = self.confirmed_booking()
        self.service.complete_booking(booking_id, self.renter.pk)

        with self.assertRaises(InvalidTransition):
            self.service.cancel_booking(booking_id, self.renter.pk, 'Too late', 'renter')
        self.assertEqual(self.gateway.refunds, [])


class CompleteBookingTest(LifecycleTestCase):
    def test_end_to_end(self):
        booking_id = self.create_booking(days=3)
        booking = self.reload(booking_id)
        self.assertEqual((booking.base_price_pence, booking.service_fee_pence, booking.total_price_pence), (15000, 2250, 17250))

        self.pay(booking_id, 'upfront')
        self.assertEqual(self.reload(booking_id).status, 'pending_owner_approval')

        self.service.approve_booking(booking_id, self.owner.pk)
        self.assertEqual(self.reload(booking_id).status, 'confirmed')

        self.pay(booking_id, 'rental')
        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertEqual(booking.rental_payment_status, 'paid')

        before = timezone.now()
        job = self.service.complete_booking(booking_id, self.renter.pk)

        self.assertEqual(self.reload(booking_id).status, 'completed')
        self.assertEqual(job.job_type, ScheduledJob.RELEASE_SECURITY_DEPOSIT)
        self.assertEqual(job.status, 'pending')
        self.assertGreaterEqual(job.due_at, before + timedelta(hours=48))
        self.assertEqual(self.notifier.keys()[-1], 'booking_completed')

    def test_stranger_cannot_complete(self):
        booking_id = self.confirmed_booking()
        with self.assertRaises(NotAuthorized):
            self.service.complete_booking(booking_id, self.stranger.pk)
        self.assertFalse(ScheduledJob.objects.exists())

    def test_owner_can_complete(self):
        booking_id = self.confirmed_booking()
        self.service.complete_booking(booking_id, self.owner.pk, 'owner')
        self.assertEqual(self.reload(booking_id).status, 'completed')


class UpdateBookingStatusTest(LifecycleTestCase):
    def test_illegal_transition_is_rejected(self):
        booking_id = self.create_booking()
        with self.assertRaises(InvalidTransition):
            self.service.update_booking_status(booking_id, 'completed', self.renter.pk, 'renter')
        self.assertEqual(self.reload(booking_id).status, 'pending_payment')

    def test_unknown_status_is_rejected(self):
        booking_id = self.create_booking()
        with self.assertRaises(InvalidTransition):
            self.service.update_booking_status(booking_id, 'lost', self.stranger.pk, 'admin', force=True)

    def test_admin_override(self):
        booking_id = self.create_booking()
        self.service.update_booking_status(booking_id, 'active', self.stranger.pk, 'admin', 'Manual fix', force=True)

        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'active')
        self.assertIn('admin override', booking.timeline[-1]['description'])
        self.assertEqual(booking.timeline[-1]['actorId'], str(self.stranger.pk))

    def test_override_requires_admin(self):
        booking_id = self.create_booking()
        with self.assertRaises(NotAuthorized):
            self.service.update_booking_status(booking_id, 'active', self.renter.pk, 'renter', force=True)

    def test_appends_one_timeline_event_and_bumps_revision(self):
        booking_id = self.confirmed_booking()
        before = self.reload(booking_id)

        self.service.update_booking_status(booking_id, 'active', self.owner.pk, 'owner')

        after = self.reload(booking_id)
        self.assertEqual(len(after.timeline), len(before.timeline) + 1)
        self.assertEqual(after.timeline[:-1], before.timeline)
        self.assertEqual(after.timeline[-1]['event'], 'status_changed_to_active')
        self.assertGreater(after.revision, before.revision)
        self.assertGreater(after.updated_at, before.updated_at)
        self.assertEqual(self.notifier.keys()[-1], 'booking_started')

    def test_status_without_email(self):
        booking_id = self.create_booking()
        self.service.update_booking_status(booking_id, 'payment_failed', self.stranger.pk, 'admin')
        self.assertEqual(self.notifier.sent, [])

    def test_confirmed_requires_paid_upfront_leg(self):
        booking_id = self.create_booking()
        charge = self.service.start_payment(booking_id, 'upfront', self.renter.pk)
        self.service.process_failed_payment(charge.id, self.gateway.charges[-1]['metadata'])

        with self.assertRaises(InvalidTransition):
            self.service.update_booking_status(booking_id, 'confirmed', self.stranger.pk, 'admin')
        with self.assertRaises(InvalidTransition):
            self.service.update_booking_status(booking_id, 'pending_owner_approval', self.stranger.pk, 'admin')
        self.assertEqual(self.reload(booking_id).status, 'payment_failed')

        self.service.update_booking_status(booking_id, 'confirmed', self.stranger.pk, 'admin', force=True)
        booking = self.reload(booking_id)
        self.assertEqual(booking.status, 'confirmed')
        self.assertIn('admin override', booking.timeline[-1]['description'])

    def test_missing_booking(self):
        with self.assertRaises(BookingNotFound):
            self.service.update_booking_status(str(uuid.uuid4()), 'cancelled', self.renter.pk, 'renter')
        with self.assertRaises(BookingNotFound):
            self.service.get_booking_status('not-a-booking-id')

    def test_notifier_failure_does_not_fail_operation(self):
        self.notifier.dispatch = MagicMock(side_effect=RuntimeError('smtp down'))
        booking_id = self.create_booking()
        self.service.cancel_booking(booking_id, self.renter.pk, 'Changed my mind', 'renter')
        self.assertEqual(self.reload(booking_id).status, 'cancelled')

    def test_dispute_and_start(self):
        booking_id = self.confirmed_booking()
        self.service.mark_active(booking_id, self.owner.pk)
        self.service.open_dispute(booking_id, self.renter.pk, 'renter', 'Tent was torn')

        status = self.service.get_booking_status(booking_id)
        self.assertEqual(status['status'], 'disputed')
        self.assertEqual(status['timeline'][-1]['description'], 'Dispute opened: Tent was torn')
        self.assertEqual(self.notifier.keys()[-2:], ['booking_started', 'booking_disputed'])


class GetBookingStatusTest(LifecycleTestCase):
    def test_projection(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')

        status = self.service.get_booking_status(booking_id)
        self.assertEqual(status['id'], booking_id)
        self.assertEqual(status['status'], 'pending_owner_approval')
        self.assertEqual(status['paymentStatus'], {'upfront': 'paid', 'rental': 'pending', 'securityDeposit': 'pending'})
        self.assertEqual([entry['event'] for entry in status['timeline']], [
            'booking_created',
            'status_changed_to_pending_owner_approval',
        ])


class SecurityDepositReleaseTest(LifecycleTestCase):
    def test_release_is_idempotent(self):
        booking_id = self.confirmed_booking()
        deposit_id = self.pay(booking_id, 'security_deposit')

        self.assertTrue(self.service.release_security_deposit(booking_id))
        self.assertFalse(self.service.release_security_deposit(booking_id))

        self.assertEqual(self.gateway.refunds, [deposit_id])
        self.assertEqual(self.reload(booking_id).security_deposit_status, 'released')
        self.assertEqual(self.notifier.keys().count('deposit_released'), 1)

    def test_nothing_to_release(self):
        booking_id = self.confirmed_booking()
        self.assertFalse(self.service.release_security_deposit(booking_id))
        self.assertEqual(self.gateway.refunds, [])


class ScheduledJobTest(LifecycleTestCase):
    def completed_booking_with_deposit(self):
        booking_id = self.confirmed_booking()
        deposit_id = self.pay(booking_id, 'security_deposit')
        job = self.service.complete_booking(booking_id, self.renter.pk)
        return booking_id, deposit_id, job

    def test_job_waits_until_due(self):
        self.completed_booking_with_deposit()
        self.assertEqual(run_due_jobs(self.service), [])
        self.assertEqual(self.gateway.refunds, [])

    def test_due_job_runs_once(self):
        booking_id, deposit_id, job = self.completed_booking_with_deposit()
        later = job.due_at + timedelta(minutes=1)

        processed = run_due_jobs(self.service, now=later)
        self.assertEqual([j.id for j in processed], [job.id])
        self.assertEqual(run_due_jobs(self.service, now=later), [])

        job.refresh_from_db()
        self.assertEqual(job.status, 'done')
        self.assertEqual(job.attempts, 1)
        self.assertEqual(self.gateway.refunds, [deposit_id])
        self.assertEqual(self.reload(booking_id).security_deposit_status, 'released')

    def test_scheduling_twice_reuses_job(self):
        booking_id, _, job = self.completed_booking_with_deposit()
        again = schedule_deposit_release(self.reload(booking_id), timedelta(hours=1))
        self.assertEqual(again.id, job.id)
        self.assertEqual(ScheduledJob.objects.count(), 1)

    def test_failed_job_is_recorded_and_not_retried(self):
        booking_id, deposit_id, job = self.completed_booking_with_deposit()
        self.gateway.failing_refunds.add(deposit_id)
        later = job.due_at + timedelta(minutes=1)

        run_due_jobs(self.service, now=later)
        run_due_jobs(self.service, now=later)

        job.refresh_from_db()
        self.assertEqual(job.status, 'failed')
        self.assertEqual(job.attempts, 1)
        self.assertIn('refund', job.last_error)
        self.assertEqual(self.reload(booking_id).security_deposit_status, 'held')

    @patch('bookings.management.commands.process_scheduled_jobs.get_lifecycle_service')
    def test_management_command_runs_due_jobs(self, mock_service):
        mock_service.return_value = self.service
        booking_id, deposit_id, job = self.completed_booking_with_deposit()
        ScheduledJob.objects.filter(id=job.id).update(due_at=timezone.now() - timedelta(minutes=1))

        out = StringIO()
        call_command('process_scheduled_jobs', stdout=out)

        self.assertIn('Processed 1 job(s), 0 failed.', out.getvalue())
        self.assertEqual(self.gateway.refunds, [deposit_id])
        self.assertEqual(self.reload(booking_id).security_deposit_status, 'released')

    @patch('bookings.management.commands.process_scheduled_jobs.get_lifecycle_service')
    def test_management_command_with_nothing_due(self, mock_service):
        mock_service.return_value = self.service

        out = StringIO()
        call_command('process_scheduled_jobs', stdout=out)

        self.assertIn('No due jobs.', out.getvalue())


class NotificationDispatcherTest(LifecycleTestCase):
    def test_sends_to_renter_and_owner(self):
        booking_id = self.create_booking()
        results = NotificationDispatcher(EmailSender(api_key='')).dispatch(booking_id, 'booking_confirmed')

        self.assertEqual(len(results), 2)
        self.assertTrue(all(result.success for result in results))
        self.assertEqual(sorted(message.to[0] for message in mail.outbox), ['owner@example.com', 'renter@example.com'])
        message = mail.outbox[0]
        self.assertIn('Ultralight Tent', message.subject)
        self.assertIn('USD 172.50', message.body)
        self.assertEqual(message.alternatives[0][1], 'text/html')

    def test_deposit_release_goes_to_renter_only(self):
        booking_id = self.create_booking()
        NotificationDispatcher(EmailSender(api_key='')).dispatch(booking_id, 'deposit_released')

        self.assertEqual([message.to for message in mail.outbox], [['renter@example.com']])

    def test_missing_booking_is_swallowed(self):
        results = NotificationDispatcher(EmailSender(api_key='')).dispatch(str(uuid.uuid4()), 'booking_confirmed')
        self.assertEqual(results, [])
        self.assertEqual(mail.outbox, [])

    def test_unknown_template(self):
        booking_id = self.create_booking()
        self.assertEqual(NotificationDispatcher().dispatch(booking_id, 'booking_exploded'), [])

    @patch('bookings.notifications.resend.Emails.send')
    def test_resend_api(self, mock_send):
        mock_send.return_value = {'id': 'email_123'}

        result = EmailSender(api_key='re_test').send('renter@example.com', 'Hi', '<p>Hi</p>', 'Hi')

        self.assertTrue(result.success)
        self.assertEqual(result.message_id, 'email_123')
        params = mock_send.call_args.args[0]
        self.assertEqual(params['to'], ['renter@example.com'])
        self.assertEqual(params['from'], 'GearGrab <noreply@geargrab.co>')

    @patch('bookings.notifications.resend.Emails.send')
    def test_resend_failure_is_reported_not_raised(self, mock_send):
        mock_send.side_effect = ConnectionError('no route to host')

        result = EmailSender(api_key='re_test').send('renter@example.com', 'Hi', '<p>Hi</p>', 'Hi')

        self.assertFalse(result.success)
        self.assertIn('no route to host', result.error)


class BookingApiTest(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_requires_authentication(self):
        response = self.client.post('/api/bookings/', {}, format='json')
        self.assertEqual(response.status_code, 401)

    def test_create_booking(self):
        self.client.force_authenticate(self.renter)
        response = self.client.post('/api/bookings/', {
            'listing_id': str(self.listing.id),
            'start_date': '2026-11-01',
            'end_date': '2026-11-04',
            'delivery_method': 'delivery',
            'insurance_tier': 'premium',
        }, format='json')

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data['status'], 'pending_payment')
        booking = Booking.objects.get(id=data['id'])
        self.assertEqual(booking.renter_id, str(self.renter.pk))
        self.assertEqual(booking.total_price_pence, 17250)

    def test_create_booking_with_bad_dates(self):
        self.client.force_authenticate(self.renter)
        response = self.client.post('/api/bookings/', {
            'listing_id': str(self.listing.id),
            'start_date': '2026-11-04',
            'end_date': '2026-11-04',
        }, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Booking.objects.count(), 0)

    def test_create_booking_for_missing_listing(self):
        self.client.force_authenticate(self.renter)
        response = self.client.post('/api/bookings/', {
            'listing_id': str(uuid.uuid4()),
            'start_date': '2026-11-01',
            'end_date': '2026-11-04',
        }, format='json')

        self.assertEqual(response.status_code, 404)

    def test_get_booking(self):
        booking_id = self.create_booking()
        self.client.force_authenticate(self.owner)
        response = self.client.get(f'/api/bookings/{booking_id}/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['pricing']['serviceFee'], 2250)

    def test_stranger_cannot_view_booking(self):
        booking_id = self.create_booking()
        self.client.force_authenticate(self.stranger)
        response = self.client.get(f'/api/bookings/{booking_id}/')
        self.assertEqual(response.status_code, 403)

    def test_non_owner_cannot_approve(self):
        booking_id = self.create_booking()
        self.pay(booking_id, 'upfront')
        self.client.force_authenticate(self.renter)

        response = self.client.post(f'/api/bookings/{booking_id}/approve/', {}, format='json')

        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.reload(booking_id).status, 'pending_owner_approval')

    def test_renter_cancels(self):
        booking_id = self.create_booking()
        self.client.force_authenticate(self.renter)

        response = self.client.post(f'/api/bookings/{booking_id}/cancel/', {'reason': 'Trip cancelled'}, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'cancelled')

    def test_admin_user_type_requires_staff(self):
        booking_id = self.create_booking()
        self.client.force_authenticate(self.stranger)

        response = self.client.post(f'/api/bookings/{booking_id}/cancel/', {'reason': 'x', 'user_type': 'admin'}, format='json')

        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.reload(booking_id).status, 'pending_payment')

    def test_status_endpoint_is_staff_only(self):
        booking_id = self.create_booking()
        self.client.force_authenticate(self.renter)
        response = self.client.post(f'/api/bookings/{booking_id}/status/', {'status': 'cancelled'}, format='json')
        self.assertEqual(response.status_code, 403)

    def test_staff_illegal_transition_is_400(self):
        booking_id = self.create_booking()
        self.stranger.is_staff = True
        self.stranger.save()
        self.client.force_authenticate(self.stranger)

        response = self.client.post(f'/api/bookings/{booking_id}/status/', {'status': 'completed'}, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertIn('pending_payment -> completed', response.json()['error'])
