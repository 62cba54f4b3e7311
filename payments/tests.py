import json
import uuid
from datetime import date
from unittest.mock import MagicMock, patch

import stripe
from django.contrib.auth import get_user_model
from django.test import Client, TestCase, override_settings
from rest_framework.test import APIClient

from bookings.exceptions import PaymentGatewayError
from bookings.models import Booking
from listings.models import Listing
from .gateway import StripeGateway
from .models import PaymentRecord, Refund


def make_booking(listing, renter, **overrides):
    fields = {
        'listing_id': str(listing.id),
        'listing_title': listing.title,
        'owner_id': listing.owner_id,
        'renter_id': str(renter.pk),
        'start_date': date(2026, 11, 1),
        'end_date': date(2026, 11, 4),
        'days': 3,
        'daily_price_pence': 5000,
        'base_price_pence': 15000,
        'service_fee_pence': 2250,
        'total_price_pence': 17250,
        'security_deposit_pence': 10000,
        'currency': 'USD',
        'delivery_method': 'pickup',
        'insurance_tier': 'standard',
    }
    fields.update(overrides)
    return Booking.objects.create(**fields)


def payment_metadata(booking, payment_type):
    return {
        'bookingId': str(booking.id),
        'listingId': booking.listing_id,
        'renterId': booking.renter_id,
        'ownerId': booking.owner_id,
        'paymentType': payment_type,
    }


class PaymentsTestCase(TestCase):
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
        )
        self.booking = make_booking(self.listing, self.renter)


class StripeGatewayChargeTest(TestCase):
    def setUp(self):
        self.gateway = StripeGateway(api_key='sk_test_123', webhook_secret='whsec_123')
        self.metadata = {
            'bookingId': 'b-1',
            'listingId': 'l-1',
            'renterId': '2',
            'ownerId': '1',
            'paymentType': 'upfront',
        }

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_charge_creates_payment_intent(self, mock_create):
        mock_create.return_value = MagicMock(
            id='pi_123',
            status='requires_payment_method',
            client_secret='pi_123_secret',
            amount=2250,
            currency='usd',
        )

        result = self.gateway.charge(2250, 'USD', self.metadata)

        self.assertEqual(result.id, 'pi_123')
        self.assertEqual(result.client_secret, 'pi_123_secret')
        self.assertEqual(result.amount, 2250)
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['amount'], 2250)
        self.assertEqual(kwargs['currency'], 'usd')
        self.assertEqual(kwargs['metadata']['bookingId'], 'b-1')
        self.assertEqual(kwargs['api_key'], 'sk_test_123')

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_missing_metadata_rejected_before_calling_stripe(self, mock_create):
        del self.metadata['ownerId']

        with self.assertRaises(ValueError) as ctx:
            self.gateway.charge(2250, 'USD', self.metadata)

        self.assertIn('ownerId', str(ctx.exception))
        mock_create.assert_not_called()

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_non_positive_amount_rejected(self, mock_create):
        with self.assertRaises(ValueError):
            self.gateway.charge(0, 'USD', self.metadata)
        mock_create.assert_not_called()

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_unknown_payment_type_rejected(self, mock_create):
        self.metadata['paymentType'] = 'tip'
        with self.assertRaises(ValueError):
            self.gateway.charge(2250, 'USD', self.metadata)
        mock_create.assert_not_called()

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_stripe_error_becomes_gateway_error(self, mock_create):
        mock_create.side_effect = stripe.StripeError('card declined')

        with self.assertRaises(PaymentGatewayError):
            self.gateway.charge(2250, 'USD', self.metadata)

    def test_missing_secret_key_rejected(self):
        gateway = StripeGateway(api_key='', webhook_secret='whsec_123')
        with self.assertRaises(PaymentGatewayError):
            gateway.charge(2250, 'USD', self.metadata)

    def test_publishable_key_rejected(self):
        gateway = StripeGateway(api_key='pk_test_123', webhook_secret='whsec_123')
        with self.assertRaises(PaymentGatewayError):
            gateway.charge(2250, 'USD', self.metadata)


class StripeGatewayRefundTest(TestCase):
    def setUp(self):
        self.gateway = StripeGateway(api_key='sk_test_123', webhook_secret='whsec_123')

    @patch('payments.gateway.stripe.Refund.create')
    def test_full_refund_uses_idempotency_key(self, mock_create):
        mock_create.return_value = MagicMock(id='re_123', status='succeeded', amount=2250)

        result = self.gateway.refund('pi_123', reason='requested_by_customer')

        self.assertEqual(result.id, 're_123')
        self.assertEqual(result.payment_id, 'pi_123')
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['payment_intent'], 'pi_123')
        self.assertEqual(kwargs['idempotency_key'], 'refund-pi_123-full')
        self.assertNotIn('amount', kwargs)

    @patch('payments.gateway.stripe.Refund.create')
    def test_partial_refund_passes_amount(self, mock_create):
        mock_create.return_value = MagicMock(id='re_124', status='pending', amount=500)

        self.gateway.refund('pi_123', amount=500)

        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['amount'], 500)
        self.assertEqual(kwargs['idempotency_key'], 'refund-pi_123-500')

    @patch('payments.gateway.stripe.Refund.create')
    def test_free_text_reason_goes_to_metadata(self, mock_create):
        mock_create.return_value = MagicMock(id='re_125', status='succeeded', amount=2250)

        self.gateway.refund('pi_123', reason='Owner cancelled the trip')

        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs['reason'], 'requested_by_customer')
        self.assertEqual(kwargs['metadata'], {'reason': 'Owner cancelled the trip'})

    @patch('payments.gateway.stripe.Refund.create')
    def test_stripe_error_becomes_gateway_error(self, mock_create):
        mock_create.side_effect = stripe.StripeError('charge already refunded')

        with self.assertRaises(PaymentGatewayError):
            self.gateway.refund('pi_123')


class PaymentRecordEventTest(PaymentsTestCase):
    def test_event_idempotency(self):
        record = PaymentRecord.objects.create(
            booking=self.booking,
            payment_type='upfront',
            amount_pence=2250,
            currency='USD',
            stripe_payment_intent_id='pi_evt',
        )

        self.assertTrue(record.mark_event_processed('evt_test123'))
        self.assertIn('evt_test123', record.processed_events)
        self.assertFalse(record.mark_event_processed('evt_test123'))


class WebhookSignatureTest(TestCase):
    def setUp(self):
        self.client = Client()

    def test_webhook_rejects_missing_signature(self):
        payload = json.dumps({'type': 'payment_intent.succeeded'})
        response = self.client.post(
            '/api/payments/webhook/stripe/',
            data=payload,
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 400)

    @patch('payments.gateway.stripe.Webhook.construct_event')
    def test_webhook_rejects_invalid_signature(self, mock_construct_event):
        mock_construct_event.side_effect = stripe.SignatureVerificationError(
            'Invalid signature', 'sig_header'
        )

        payload = json.dumps({'type': 'payment_intent.succeeded'})
        response = self.client.post(
            '/api/payments/webhook/stripe/',
            data=payload,
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE='invalid_signature'
        )
        self.assertEqual(response.status_code, 400)

    @override_settings(STRIPE_WEBHOOK_SECRET='')
    def test_webhook_without_secret_configured(self):
        response = self.client.post(
            '/api/payments/webhook/stripe/',
            data='{}',
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE='t=1,v1=abc'
        )
        self.assertEqual(response.status_code, 500)

    def test_webhook_rejects_get(self):
        response = self.client.get('/api/payments/webhook/stripe/')
        self.assertEqual(response.status_code, 405)


@patch('payments.gateway.stripe.Webhook.construct_event')
class WebhookEventTest(PaymentsTestCase):
    def setUp(self):
        super().setUp()
        self.client = Client()

    def post_event(self, event):
        return self.client.post(
            '/api/payments/webhook/stripe/',
            data=json.dumps(event),
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE='t=1,v1=valid'
        )

    def intent_event(self, event_id, event_type, payment_id, metadata):
        return {
            'id': event_id,
            'type': event_type,
            'data': {'object': {'id': payment_id, 'object': 'payment_intent', 'metadata': metadata}},
        }

    def record(self, payment_id, payment_type='upfront', amount=2250):
        return PaymentRecord.objects.create(
            booking=self.booking,
            payment_type=payment_type,
            amount_pence=amount,
            currency='USD',
            stripe_payment_intent_id=payment_id,
            metadata=payment_metadata(self.booking, payment_type),
        )

    def test_upfront_success_moves_booking_to_owner_approval(self, mock_construct_event):
        record = self.record('pi_up')
        event = self.intent_event(
            'evt_1', 'payment_intent.succeeded', 'pi_up', payment_metadata(self.booking, 'upfront'),
        )

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.PENDING_OWNER_APPROVAL)
        self.assertEqual(self.booking.upfront_payment_status, Booking.LegStatus.PAID)
        self.assertEqual(self.booking.upfront_payment_id, 'pi_up')
        self.assertEqual(record.status, 'succeeded')
        self.assertEqual(record.processed_events, ['evt_1'])

    def test_duplicate_event_is_ignored(self, mock_construct_event):
        self.record('pi_up')
        event = self.intent_event(
            'evt_1', 'payment_intent.succeeded', 'pi_up', payment_metadata(self.booking, 'upfront'),
        )

        self.post_event(event)
        self.booking.refresh_from_db()
        timeline_length = len(self.booking.timeline)
        revision = self.booking.revision

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        self.assertEqual(len(self.booking.timeline), timeline_length)
        self.assertEqual(self.booking.revision, revision)

    def test_redelivered_payment_under_new_event_id_is_ignored(self, mock_construct_event):
        self.record('pi_up')
        metadata = payment_metadata(self.booking, 'upfront')

        self.post_event(self.intent_event('evt_1', 'payment_intent.succeeded', 'pi_up', metadata))
        self.booking.refresh_from_db()
        timeline_length = len(self.booking.timeline)

        self.post_event(self.intent_event('evt_2', 'payment_intent.succeeded', 'pi_up', metadata))

        self.booking.refresh_from_db()
        self.assertEqual(len(self.booking.timeline), timeline_length)
        self.assertEqual(self.booking.processed_payments, ['pi_up:succeeded'])

    def test_failure_after_success_keeps_booking_payable(self, mock_construct_event):
        record = self.record('pi_up')
        metadata = payment_metadata(self.booking, 'upfront')

        self.post_event(self.intent_event('evt_1', 'payment_intent.succeeded', 'pi_up', metadata))
        response = self.post_event(self.intent_event('evt_2', 'payment_intent.payment_failed', 'pi_up', metadata))

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.PENDING_OWNER_APPROVAL)
        self.assertEqual(self.booking.upfront_payment_status, Booking.LegStatus.PAID)
        self.assertEqual(record.status, 'succeeded')
        self.assertEqual(record.processed_events, ['evt_1', 'evt_2'])

    @patch('payments.gateway.stripe.Refund.create')
    def test_success_after_cancellation_is_refunded(self, mock_refund, mock_construct_event):
        mock_refund.return_value = MagicMock(id='re_late', status='succeeded', amount=2250)
        self.booking.status = Booking.Status.CANCELLED
        self.booking.save()
        record = self.record('pi_late')
        event = self.intent_event(
            'evt_10', 'payment_intent.succeeded', 'pi_late', payment_metadata(self.booking, 'upfront'),
        )

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CANCELLED)
        self.assertEqual(self.booking.upfront_payment_status, Booking.LegStatus.REFUNDED)
        self.assertEqual(mock_refund.call_args.kwargs['payment_intent'], 'pi_late')
        self.assertEqual(record.status, 'refunded')
        self.assertTrue(Refund.objects.filter(provider_refund_id='re_late', payment=record).exists())

    def test_security_deposit_success_is_held(self, mock_construct_event):
        self.booking.status = Booking.Status.CONFIRMED
        self.booking.save()
        self.record('pi_dep', 'security_deposit', 10000)
        event = self.intent_event(
            'evt_3', 'payment_intent.succeeded', 'pi_dep', payment_metadata(self.booking, 'security_deposit'),
        )

        self.post_event(event)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(self.booking.security_deposit_status, Booking.LegStatus.HELD)
        self.assertEqual(self.booking.timeline[-1]['event'], 'security_deposit_payment_received')

    def test_payment_failure_marks_booking(self, mock_construct_event):
        record = self.record('pi_fail')
        event = self.intent_event(
            'evt_4', 'payment_intent.payment_failed', 'pi_fail', payment_metadata(self.booking, 'upfront'),
        )

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.PAYMENT_FAILED)
        self.assertEqual(self.booking.upfront_payment_status, Booking.LegStatus.FAILED)
        self.assertEqual(record.status, 'failed')

    def test_unknown_booking_is_acknowledged(self, mock_construct_event):
        metadata = payment_metadata(self.booking, 'upfront')
        metadata['bookingId'] = str(uuid.uuid4())
        event = self.intent_event('evt_5', 'payment_intent.succeeded', 'pi_orphan', metadata)

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.PENDING_PAYMENT)

    def test_missing_booking_metadata_is_acknowledged(self, mock_construct_event):
        event = self.intent_event('evt_6', 'payment_intent.succeeded', 'pi_bare', {})

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)

    def test_unhandled_event_type(self, mock_construct_event):
        response = self.post_event({'id': 'evt_7', 'type': 'customer.created', 'data': {'object': {}}})
        self.assertEqual(response.status_code, 200)

    def test_dispute_moves_confirmed_booking_to_disputed(self, mock_construct_event):
        self.booking.status = Booking.Status.CONFIRMED
        self.booking.save()
        record = self.record('pi_disputed')
        event = {
            'id': 'evt_8',
            'type': 'charge.dispute.created',
            'data': {'object': {'id': 'dp_1', 'payment_intent': 'pi_disputed', 'reason': 'fraudulent'}},
        }

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.DISPUTED)
        self.assertEqual(self.booking.timeline[-1]['actor'], 'system')
        self.assertIn('fraudulent', self.booking.timeline[-1]['description'])
        self.assertIn('evt_8', record.processed_events)

    def test_dispute_on_completed_booking_keeps_status(self, mock_construct_event):
        self.booking.status = Booking.Status.COMPLETED
        self.booking.save()
        record = self.record('pi_late')
        event = {
            'id': 'evt_9',
            'type': 'charge.dispute.created',
            'data': {'object': {'id': 'dp_2', 'payment_intent': 'pi_late'}},
        }

        response = self.post_event(event)

        self.assertEqual(response.status_code, 200)
        self.booking.refresh_from_db()
        record.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.COMPLETED)
        self.assertIn('evt_9', record.processed_events)


class CheckoutSessionTest(PaymentsTestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_renter_starts_upfront_payment(self, mock_create):
        mock_create.return_value = MagicMock(
            id='pi_checkout',
            status='requires_payment_method',
            client_secret='pi_checkout_secret',
            amount=2250,
            currency='usd',
        )
        self.client.force_authenticate(user=self.renter)

        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(self.booking.id), 'payment_type': 'upfront'},
            format='json',
        )

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data['payment_id'], 'pi_checkout')
        self.assertEqual(data['client_secret'], 'pi_checkout_secret')
        self.assertEqual(mock_create.call_args.kwargs['amount'], 2250)

        record = PaymentRecord.objects.get(stripe_payment_intent_id='pi_checkout')
        self.assertEqual(record.booking, self.booking)
        self.assertEqual(record.payment_type, 'upfront')
        self.assertEqual(record.status, 'pending')

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_stranger_cannot_pay_for_booking(self, mock_create):
        self.client.force_authenticate(user=self.stranger)

        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(self.booking.id), 'payment_type': 'upfront'},
            format='json',
        )

        self.assertEqual(response.status_code, 403)
        mock_create.assert_not_called()

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_paid_leg_cannot_be_charged_again(self, mock_create):
        self.booking.upfront_payment_status = Booking.LegStatus.PAID
        self.booking.save()
        self.client.force_authenticate(user=self.renter)

        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(self.booking.id), 'payment_type': 'upfront'},
            format='json',
        )

        self.assertEqual(response.status_code, 400)
        mock_create.assert_not_called()

    @patch('payments.gateway.stripe.PaymentIntent.create')
    def test_gateway_failure_returns_502(self, mock_create):
        mock_create.side_effect = stripe.StripeError('Stripe is down')
        self.client.force_authenticate(user=self.renter)

        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(self.booking.id), 'payment_type': 'rental'},
            format='json',
        )

        self.assertEqual(response.status_code, 502)
        self.assertFalse(PaymentRecord.objects.exists())

    def test_missing_required_fields(self):
        self.client.force_authenticate(user=self.renter)

        response = self.client.post('/api/payments/checkout/', {'payment_type': 'upfront'}, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertIn('Missing required fields', response.json()['error'])

    def test_unknown_booking_returns_404(self):
        self.client.force_authenticate(user=self.renter)

        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(uuid.uuid4()), 'payment_type': 'upfront'},
            format='json',
        )

        self.assertEqual(response.status_code, 404)

    @override_settings(PAYMENTS_ENABLED=False)
    def test_payments_disabled(self):
        self.client.force_authenticate(user=self.renter)

        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(self.booking.id), 'payment_type': 'upfront'},
            format='json',
        )

        self.assertEqual(response.status_code, 400)

    def test_anonymous_request_rejected(self):
        response = self.client.post(
            '/api/payments/checkout/',
            {'booking_id': str(self.booking.id), 'payment_type': 'upfront'},
            format='json',
        )
        self.assertEqual(response.status_code, 401)


class PaymentStatusViewTest(PaymentsTestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.record = PaymentRecord.objects.create(
            booking=self.booking,
            payment_type='rental',
            amount_pence=15000,
            currency='USD',
            stripe_payment_intent_id='pi_status',
        )
        Refund.objects.create(payment=self.record, provider_refund_id='re_status', amount_pence=15000)

    def test_participant_sees_payment(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.get('/api/payments/pi_status/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['payment_type'], 'rental')
        self.assertEqual(response.json()['booking_id'], str(self.booking.id))

    def test_stranger_gets_not_found(self):
        self.client.force_authenticate(user=self.stranger)

        response = self.client.get('/api/payments/pi_status/')

        self.assertEqual(response.status_code, 404)

    def test_unknown_payment(self):
        self.client.force_authenticate(user=self.renter)

        response = self.client.get('/api/payments/pi_missing/')

        self.assertEqual(response.status_code, 404)
