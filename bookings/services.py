"""Booking lifecycle.

``BookingLifecycleService`` is the only writer of booking rows. Each
status-changing operation locks the row (``select_for_update``) inside a
transaction, so concurrent callers apply their timeline entries one after
the other instead of overwriting each other. Notifications go out after the
transaction has been left and never fail the operation.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction

from listings.store import get_bookable_listing
from payments.gateway import StripeGateway
from payments.models import PaymentRecord, Refund
from . import jobs
from .exceptions import (
    BookingNotFound,
    InvalidBookingDates,
    InvalidBookingRequest,
    InvalidTransition,
    NotAuthorized,
    PaymentGatewayError,
)
from .models import Booking
from .notifications import (
    BOOKING_APPROVED,
    DEPOSIT_RELEASED,
    NEW_BOOKING,
    STATUS_NOTIFICATIONS,
    NotificationDispatcher,
)
from .pricing import calculate, rental_days
from .transitions import TERMINAL_STATUSES, can_transition, validate_transition

logger = logging.getLogger(__name__)

Status = Booking.Status
LegStatus = Booking.LegStatus

ACTOR_TYPES = ('renter', 'owner', 'admin', 'system')
PRIVILEGED_ACTORS = ('admin', 'system')

# Statuses a booking may only hold once its upfront payment has been taken.
UPFRONT_PAID_STATUSES = (Status.PENDING_OWNER_APPROVAL, Status.CONFIRMED)

# Only these legs move the booking status when their payment fails.
STATUS_DRIVING_LEGS = ('upfront', 'rental')

# payment type -> (leg status field, gateway payment id field)
PAYMENT_LEGS = {
    'upfront': ('upfront_payment_status', 'upfront_payment_id'),
    'rental': ('rental_payment_status', 'rental_payment_id'),
    'security_deposit': ('security_deposit_status', 'security_deposit_payment_id'),
}

LEG_LABELS = {
    'upfront': 'Upfront payment',
    'rental': 'Rental payment',
    'security_deposit': 'Security deposit',
}


@dataclass
class BookingRequest:
    listing_id: str
    renter_id: str
    start_date: date
    end_date: date
    delivery_method: str = 'pickup'
    insurance_tier: str = 'standard'
    special_requests: Optional[str] = None


class BookingLifecycleService:
    def __init__(self, gateway, notifier, service_fee_rate=None, deposit_release_delay=None, currency=None):
        self.gateway = gateway
        self.notifier = notifier
        self.service_fee_rate = Decimal(str(service_fee_rate if service_fee_rate is not None else settings.SERVICE_FEE_RATE))
        if deposit_release_delay is None:
            deposit_release_delay = timedelta(hours=settings.DEPOSIT_RELEASE_DELAY_HOURS)
        self.deposit_release_delay = deposit_release_delay
        self.currency = currency or settings.DEFAULT_CURRENCY

    # Creation

    def create_booking(self, request: BookingRequest) -> str:
        if request.end_date <= request.start_date:
            raise InvalidBookingDates()
        if request.delivery_method not in dict(Booking.DELIVERY_CHOICES):
            raise InvalidBookingRequest(f'Unknown delivery method: {request.delivery_method}')
        if request.insurance_tier not in dict(Booking.INSURANCE_CHOICES):
            raise InvalidBookingRequest(f'Unknown insurance tier: {request.insurance_tier}')

        listing = get_bookable_listing(request.listing_id)
        if listing.owner_id == str(request.renter_id):
            raise InvalidBookingRequest('You cannot book your own listing')

        days = rental_days(request.start_date, request.end_date)
        pricing = calculate(listing.daily_price_pence, days, self.service_fee_rate)

        booking = Booking(
            listing_id=str(listing.id),
            listing_title=listing.title,
            owner_id=listing.owner_id,
            renter_id=str(request.renter_id),
            start_date=request.start_date,
            end_date=request.end_date,
            days=pricing.days,
            daily_price_pence=listing.daily_price_pence,
            base_price_pence=pricing.base_price,
            service_fee_pence=pricing.service_fee,
            total_price_pence=pricing.total_price,
            security_deposit_pence=listing.security_deposit_pence,
            currency=self.currency,
            delivery_method=request.delivery_method,
            insurance_tier=request.insurance_tier,
            special_requests=request.special_requests or '',
        )
        booking.append_timeline('booking_created', 'Booking request created', 'renter', request.renter_id)
        booking.save()

        logger.info('Booking created: %s for listing %s', booking.id, listing.id)
        return str(booking.id)

    # Status changes

    def update_booking_status(self, booking_id, new_status, actor_id, actor_type='renter', notes=None, force=False):
        """Move a booking to ``new_status`` and send the matching notification.

        Transitions outside the table in ``bookings.transitions`` are
        rejected unless an admin passes ``force=True``; forced moves are
        marked as overrides in the timeline.
        """
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            self._apply_status(booking, new_status, actor_id, actor_type, notes, force=force)
        self._notify(booking.id, STATUS_NOTIFICATIONS.get(booking.status))
        return booking

    def approve_booking(self, booking_id, owner_id):
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            if booking.owner_id != str(owner_id):
                raise NotAuthorized('Unauthorized - not the listing owner')
            if booking.status != Status.PENDING_OWNER_APPROVAL:
                raise InvalidTransition(current=booking.status, target=Status.CONFIRMED)
            self._apply_status(booking, Status.CONFIRMED, owner_id, 'owner', 'Booking approved by owner')
        self._notify(booking.id, BOOKING_APPROVED)
        return booking

    def cancel_booking(self, booking_id, user_id, reason, user_type):
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            self._authorize(booking, user_id, user_type)
            validate_transition(booking.status, Status.CANCELLED)

            failed_legs = self._refund_paid_legs(booking, reason, user_id, user_type)
            if failed_legs:
                booking.append_timeline(
                    'refund_incomplete',
                    f"Cancellation halted, refunds failed for: {', '.join(failed_legs)}",
                    user_type,
                    user_id,
                )
                booking.revision += 1
                booking.save()
            else:
                self._apply_status(booking, Status.CANCELLED, user_id, user_type, f'Cancelled: {reason}')

        if failed_legs:
            logger.error('Booking %s not cancelled, refunds failed for: %s', booking.id, ', '.join(failed_legs))
            raise PaymentGatewayError('Could not refund all payments; the booking was not cancelled')

        self._notify(booking.id, STATUS_NOTIFICATIONS[Status.CANCELLED])
        return booking

    def complete_booking(self, booking_id, user_id, user_type='renter'):
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            self._authorize(booking, user_id, user_type)
            self._apply_status(booking, Status.COMPLETED, user_id, user_type, 'Booking completed')
            job = jobs.schedule_deposit_release(booking, self.deposit_release_delay)
        self._notify(booking.id, STATUS_NOTIFICATIONS[Status.COMPLETED])
        return job

    def mark_active(self, booking_id, user_id, user_type='owner'):
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            self._authorize(booking, user_id, user_type)
            self._apply_status(booking, Status.ACTIVE, user_id, user_type, 'Rental started')
        self._notify(booking.id, STATUS_NOTIFICATIONS[Status.ACTIVE])
        return booking

    def open_dispute(self, booking_id, user_id, user_type, reason):
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            self._authorize(booking, user_id, user_type)
            self._apply_status(booking, Status.DISPUTED, user_id, user_type, f'Dispute opened: {reason}')
        self._notify(booking.id, STATUS_NOTIFICATIONS[Status.DISPUTED])
        return booking

    def get_booking_status(self, booking_id):
        booking = self.get_booking(booking_id)
        return {
            'id': str(booking.id),
            'status': booking.status,
            'paymentStatus': booking.payment_status(),
            'timeline': list(booking.timeline),
        }

    # Payments

    def start_payment(self, booking_id, payment_type, actor_id):
        if payment_type not in PAYMENT_LEGS:
            raise InvalidBookingRequest(f'Unknown payment type: {payment_type}')

        booking = self.get_booking(booking_id)
        if booking.renter_id != str(actor_id):
            raise NotAuthorized('Unauthorized - not your booking')
        if booking.status in TERMINAL_STATUSES:
            raise InvalidTransition(message=f'Booking is {booking.status}')

        status_field, _ = PAYMENT_LEGS[payment_type]
        leg_status = getattr(booking, status_field)
        if leg_status not in (LegStatus.PENDING, LegStatus.FAILED):
            raise InvalidTransition(message=f'{LEG_LABELS[payment_type]} is already {leg_status}')

        amount = self._leg_amount(booking, payment_type)
        metadata = {
            'bookingId': str(booking.id),
            'listingId': booking.listing_id,
            'renterId': booking.renter_id,
            'ownerId': booking.owner_id,
            'paymentType': payment_type,
        }
        try:
            charge = self.gateway.charge(
                amount,
                booking.currency,
                metadata,
                description=f'{LEG_LABELS[payment_type]} for {booking.listing_title}',
            )
        except ValueError as e:
            raise InvalidBookingRequest(str(e))

        PaymentRecord.objects.create(
            booking=booking,
            payment_type=payment_type,
            amount_pence=amount,
            currency=booking.currency,
            stripe_payment_intent_id=charge.id,
            client_secret=charge.client_secret or '',
            metadata=metadata,
        )
        logger.info('Payment %s created for booking %s (%s)', charge.id, booking.id, payment_type)
        return charge

    def process_successful_payment(self, payment_id, metadata):
        """Apply a succeeded payment; repeated deliveries of the same payment are ignored."""
        booking_id, payment_type = self._payment_target(metadata)
        notification = None

        with transaction.atomic():
            booking = self._get_locked(booking_id)
            if not booking.mark_payment_processed(f'{payment_id}:succeeded'):
                logger.info('Payment %s already applied to booking %s', payment_id, booking.id)
                return booking

            status_field, id_field = PAYMENT_LEGS[payment_type]
            setattr(booking, id_field, payment_id)
            if payment_type == 'security_deposit':
                setattr(booking, status_field, LegStatus.HELD)
            else:
                setattr(booking, status_field, LegStatus.PAID)

            if booking.status == Status.CANCELLED:
                # Money arrived for a booking that no longer exists; hand it back.
                booking.append_timeline(
                    f'{payment_type}_payment_received',
                    f'{LEG_LABELS[payment_type]} received after cancellation',
                    'system',
                )
                PaymentRecord.objects.filter(stripe_payment_intent_id=payment_id).update(status='succeeded')
                self._refund_leg(booking, payment_type, 'requested_by_customer', 'system', None)
                booking.revision += 1
                booking.save()
                logger.warning('Payment %s arrived after booking %s was cancelled; refunded', payment_id, booking.id)
                return booking

            description = f'{LEG_LABELS[payment_type]} received'
            target = self._status_after_payment(booking, payment_type)
            if target is not None:
                self._apply_status(booking, target, None, 'system', description)
                notification = NEW_BOOKING if payment_type == 'upfront' else STATUS_NOTIFICATIONS[target]
            else:
                booking.append_timeline(f'{payment_type}_payment_received', description, 'system')
                booking.revision += 1
                booking.save()

            PaymentRecord.objects.filter(stripe_payment_intent_id=payment_id).update(status='succeeded')

        logger.info('Payment processed successfully: %s for booking %s', payment_id, booking.id)
        self._notify(booking.id, notification)
        return booking

    def process_failed_payment(self, payment_id, metadata):
        """Record a failed payment. Nothing was charged, so nothing is refunded."""
        booking_id, payment_type = self._payment_target(metadata)

        with transaction.atomic():
            booking = self._get_locked(booking_id)
            if not booking.mark_payment_processed(f'{payment_id}:failed'):
                logger.info('Payment failure %s already applied to booking %s', payment_id, booking.id)
                return booking

            status_field, _ = PAYMENT_LEGS[payment_type]
            leg_open = getattr(booking, status_field) in (LegStatus.PENDING, LegStatus.FAILED)
            description = f'{LEG_LABELS[payment_type]} failed'

            if not leg_open:
                # A later attempt already succeeded or was settled; the leg stands.
                booking.append_timeline(
                    f'{payment_type}_payment_failed',
                    f'{description} (ignored, leg is {getattr(booking, status_field)})',
                    'system',
                )
                booking.revision += 1
                booking.save()
                logger.warning('Late failure %s for booking %s ignored', payment_id, booking.id)
                return booking

            setattr(booking, status_field, LegStatus.FAILED)
            if payment_type in STATUS_DRIVING_LEGS and can_transition(booking.status, Status.PAYMENT_FAILED):
                self._apply_status(booking, Status.PAYMENT_FAILED, None, 'system', description)
            else:
                booking.append_timeline(f'{payment_type}_payment_failed', description, 'system')
                booking.revision += 1
                booking.save()

            PaymentRecord.objects.filter(stripe_payment_intent_id=payment_id, status='pending').update(status='failed')

        logger.warning('Payment failed: %s for booking %s', payment_id, booking.id)
        return booking

    def release_security_deposit(self, booking_id):
        """Refund a held deposit. Returns False when there is nothing to release."""
        with transaction.atomic():
            booking = self._get_locked(booking_id)
            if booking.security_deposit_status != LegStatus.HELD:
                logger.info('No held security deposit for booking %s (%s)', booking.id, booking.security_deposit_status)
                return False
            if not booking.security_deposit_payment_id:
                logger.warning('Booking %s has a held deposit but no payment id', booking.id)
                return False

            self._refund_leg(booking, 'security_deposit', 'requested_by_customer', 'system', None)
            booking.revision += 1
            booking.save()

        logger.info('Security deposit released for booking %s', booking.id)
        self._notify(booking.id, DEPOSIT_RELEASED)
        return True

    # Internals

    def get_booking(self, booking_id):
        try:
            return Booking.objects.get(id=booking_id)
        except (Booking.DoesNotExist, ValidationError, ValueError):
            raise BookingNotFound(f'Booking {booking_id} not found')

    def _get_locked(self, booking_id):
        try:
            return Booking.objects.select_for_update().get(id=booking_id)
        except (Booking.DoesNotExist, ValidationError, ValueError):
            raise BookingNotFound(f'Booking {booking_id} not found')

    def _apply_status(self, booking, new_status, actor_id, actor_type, notes=None, force=False):
        if new_status not in Status.values:
            raise InvalidTransition(message=f'Unknown booking status: {new_status}')
        if actor_type not in ACTOR_TYPES:
            raise InvalidBookingRequest(f'Unknown actor type: {actor_type}')

        description = notes or f'Status changed to {new_status}'
        problem = None
        if not can_transition(booking.status, new_status):
            problem = f'Invalid booking status transition: {booking.status} -> {new_status}'
        elif new_status in UPFRONT_PAID_STATUSES and booking.upfront_payment_status != LegStatus.PAID:
            problem = f'Booking cannot be {new_status} while the upfront payment is {booking.upfront_payment_status}'

        if problem:
            if not force:
                raise InvalidTransition(current=booking.status, target=new_status, message=problem)
            if actor_type != 'admin':
                raise NotAuthorized('Only admins can override booking status transitions')
            description = f'{description} (admin override from {booking.status})'

        booking.append_timeline(f'status_changed_to_{new_status}', description, actor_type, actor_id)
        booking.status = new_status
        booking.revision += 1
        booking.save()
        logger.info('Booking %s status updated to %s', booking.id, new_status)

    def _authorize(self, booking, user_id, user_type):
        if user_type in PRIVILEGED_ACTORS:
            return
        if user_type == 'renter' and booking.renter_id == str(user_id):
            return
        if user_type == 'owner' and booking.owner_id == str(user_id):
            return
        if user_type == 'owner':
            raise NotAuthorized('Unauthorized - not your listing')
        raise NotAuthorized('Unauthorized - not your booking')

    def _refund_paid_legs(self, booking, reason, actor_id, actor_type):
        failed = []
        for payment_type, refundable in (
            ('upfront', LegStatus.PAID),
            ('rental', LegStatus.PAID),
            ('security_deposit', LegStatus.HELD),
        ):
            status_field, id_field = PAYMENT_LEGS[payment_type]
            if getattr(booking, status_field) != refundable:
                continue
            if not getattr(booking, id_field):
                logger.warning('Booking %s %s is %s but has no payment id', booking.id, payment_type, refundable)
                continue
            try:
                self._refund_leg(booking, payment_type, reason, actor_type, actor_id)
            except PaymentGatewayError:
                logger.exception('Refund of %s failed for booking %s', payment_type, booking.id)
                failed.append(payment_type)
        return failed

    def _refund_leg(self, booking, payment_type, reason, actor_type, actor_id):
        status_field, id_field = PAYMENT_LEGS[payment_type]
        payment_id = getattr(booking, id_field)
        result = self.gateway.refund(payment_id, reason=reason)

        if payment_type == 'security_deposit':
            setattr(booking, status_field, LegStatus.RELEASED)
            booking.append_timeline('security_deposit_released', 'Security deposit released', actor_type, actor_id)
        else:
            setattr(booking, status_field, LegStatus.REFUNDED)
            booking.append_timeline(
                f'{payment_type}_payment_refunded', f'{LEG_LABELS[payment_type]} refunded', actor_type, actor_id,
            )

        record = PaymentRecord.objects.filter(stripe_payment_intent_id=payment_id).first()
        if record is not None:
            Refund.objects.get_or_create(
                provider_refund_id=result.id,
                defaults={
                    'payment': record,
                    'amount_pence': result.amount or record.amount_pence,
                    'status': 'succeeded' if result.status == 'succeeded' else 'pending',
                    'reason': reason or '',
                },
            )
            record.status = 'refunded'
            record.save(update_fields=['status', 'updated_at'])
        return result

    def _status_after_payment(self, booking, payment_type):
        if booking.status == Status.PAYMENT_FAILED:
            return self._recovered_status(booking)
        if payment_type == 'upfront' and booking.status == Status.PENDING_PAYMENT:
            return Status.PENDING_OWNER_APPROVAL
        if payment_type == 'rental' and booking.status == Status.PENDING_OWNER_APPROVAL:
            return Status.CONFIRMED
        return None

    @staticmethod
    def _recovered_status(booking):
        """Status a ``payment_failed`` booking returns to, judged from its legs."""
        if booking.upfront_payment_status != LegStatus.PAID:
            return None
        if booking.rental_payment_status == LegStatus.FAILED:
            return None
        if booking.rental_payment_status == LegStatus.PAID:
            return Status.CONFIRMED
        return Status.PENDING_OWNER_APPROVAL

    def _payment_target(self, metadata):
        booking_id = (metadata or {}).get('bookingId')
        payment_type = (metadata or {}).get('paymentType')
        if not booking_id:
            raise InvalidBookingRequest('No booking ID in payment metadata')
        if payment_type not in PAYMENT_LEGS:
            raise InvalidBookingRequest(f'Unknown payment type: {payment_type}')
        return booking_id, payment_type

    @staticmethod
    def _leg_amount(booking, payment_type):
        if payment_type == 'upfront':
            return booking.service_fee_pence
        if payment_type == 'rental':
            return booking.base_price_pence
        return booking.security_deposit_pence

    def _notify(self, booking_id, template_key):
        if not template_key:
            return
        try:
            self.notifier.dispatch(booking_id, template_key)
        except Exception:
            logger.exception('Error sending %s notification for booking %s', template_key, booking_id)


def get_lifecycle_service():
    return BookingLifecycleService(gateway=StripeGateway(), notifier=NotificationDispatcher())
