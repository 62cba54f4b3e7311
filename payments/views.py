import logging

import stripe
from django.conf import settings
from django.db import transaction
from django.http import JsonResponse, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from bookings.exceptions import BookingNotFound, InvalidBookingRequest, InvalidTransition
from bookings.services import get_lifecycle_service
from bookings.views import handles_booking_errors
from .models import PaymentRecord

logger = logging.getLogger(__name__)


@api_view(['POST'])
@handles_booking_errors
def create_checkout_session(request):
    if not settings.PAYMENTS_ENABLED:
        return Response({
            'error': 'Payments are not enabled for this instance'
        }, status=status.HTTP_400_BAD_REQUEST)

    booking_id = request.data.get('booking_id')
    payment_type = request.data.get('payment_type')
    if not booking_id or not payment_type:
        return Response({
            'error': 'Missing required fields: booking_id, payment_type'
        }, status=status.HTTP_400_BAD_REQUEST)

    service = get_lifecycle_service()
    charge = service.start_payment(booking_id, payment_type, request.user.pk)
    return Response({
        'payment_id': charge.id,
        'client_secret': charge.client_secret,
        'status': charge.status,
        'amount_pence': charge.amount,
        'currency': charge.currency,
    }, status=status.HTTP_201_CREATED)


@api_view(['GET'])
def get_payment_status(request, payment_id):
    try:
        record = PaymentRecord.objects.select_related('booking').get(stripe_payment_intent_id=payment_id)
    except PaymentRecord.DoesNotExist:
        return Response({'error': 'Payment not found'}, status=status.HTTP_404_NOT_FOUND)

    if not request.user.is_staff and not record.booking.is_participant(request.user.pk):
        return Response({'error': 'Payment not found'}, status=status.HTTP_404_NOT_FOUND)

    return Response({
        'payment_id': record.stripe_payment_intent_id,
        'booking_id': str(record.booking_id),
        'payment_type': record.payment_type,
        'status': record.status,
        'amount_pence': record.amount_pence,
        'currency': record.currency,
    })


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    payload = request.body
    sig_header = request.META.get('HTTP_STRIPE_SIGNATURE')

    if not settings.STRIPE_WEBHOOK_SECRET:
        return JsonResponse({'error': 'Webhook secret not configured'}, status=500)
    if not sig_header:
        return JsonResponse({'error': 'Missing Stripe signature'}, status=400)

    service = get_lifecycle_service()
    try:
        event = service.gateway.construct_event(payload, sig_header)
    except ValueError:
        return JsonResponse({'error': 'Invalid payload'}, status=400)
    except stripe.SignatureVerificationError:
        logger.warning('Webhook signature verification failed')
        return JsonResponse({'error': 'Invalid signature'}, status=400)

    event_id = event['id']
    event_type = event['type']
    logger.info('Received Stripe webhook event: %s %s', event_type, event_id)

    try:
        if event_type == 'payment_intent.succeeded':
            handle_payment_intent_succeeded(service, event['data']['object'], event_id)

        elif event_type == 'payment_intent.payment_failed':
            handle_payment_failed(service, event['data']['object'], event_id)

        elif event_type == 'charge.dispute.created':
            handle_dispute_created(service, event['data']['object'], event_id)

        else:
            logger.info('Unhandled event type: %s', event_type)

    except (BookingNotFound, InvalidBookingRequest) as e:
        # Redelivery cannot fix these, so acknowledge the event.
        logger.error('Webhook %s (%s) ignored: %s', event_id, event_type, e)

    return HttpResponse(status=200)


def handle_payment_intent_succeeded(service, payment_intent, event_id):
    with transaction.atomic():
        if not _mark_event_processed(payment_intent['id'], event_id):
            return
        service.process_successful_payment(payment_intent['id'], payment_intent.get('metadata') or {})


def handle_payment_failed(service, payment_intent, event_id):
    with transaction.atomic():
        if not _mark_event_processed(payment_intent['id'], event_id):
            return
        service.process_failed_payment(payment_intent['id'], payment_intent.get('metadata') or {})


def handle_dispute_created(service, dispute, event_id):
    payment_intent_id = dispute.get('payment_intent')
    if not payment_intent_id:
        logger.error('Dispute %s has no payment intent', dispute.get('id'))
        return

    with transaction.atomic():
        record = PaymentRecord.objects.select_for_update().filter(
            stripe_payment_intent_id=payment_intent_id
        ).first()
        if record is None:
            logger.error('Dispute %s for unknown payment %s', dispute.get('id'), payment_intent_id)
            return
        if not record.mark_event_processed(event_id):
            return

        reason = dispute.get('reason') or 'chargeback'
        try:
            service.open_dispute(record.booking_id, None, 'system', f'Chargeback ({reason})')
        except InvalidTransition as e:
            logger.warning('Dispute on booking %s not recorded as status change: %s', record.booking_id, e)


def _mark_event_processed(payment_intent_id, event_id):
    record = PaymentRecord.objects.select_for_update().filter(
        stripe_payment_intent_id=payment_intent_id
    ).first()
    if record is None:
        return True
    return record.mark_event_processed(event_id)
