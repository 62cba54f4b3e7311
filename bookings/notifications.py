"""Booking emails.

Dispatch is fire-and-forget: nothing in this module raises into the
lifecycle operation that triggered it.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import resend
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import EmailMultiAlternatives, make_msgid
from django.template.loader import render_to_string

from listings.models import Listing
from .models import Booking

logger = logging.getLogger(__name__)

RENTER = 'renter'
OWNER = 'owner'

NEW_BOOKING = 'new_booking'
BOOKING_APPROVED = 'booking_approved'
BOOKING_CONFIRMED = 'booking_confirmed'
BOOKING_STARTED = 'booking_started'
BOOKING_COMPLETED = 'booking_completed'
BOOKING_CANCELLED = 'booking_cancelled'
BOOKING_DISPUTED = 'booking_disputed'
DEPOSIT_RELEASED = 'deposit_released'

# Every status must be listed; None means the status change sends no email.
STATUS_NOTIFICATIONS = {
    Booking.Status.PENDING_PAYMENT: None,
    Booking.Status.PENDING_OWNER_APPROVAL: None,
    Booking.Status.PAYMENT_FAILED: None,
    Booking.Status.CONFIRMED: BOOKING_CONFIRMED,
    Booking.Status.ACTIVE: BOOKING_STARTED,
    Booking.Status.COMPLETED: BOOKING_COMPLETED,
    Booking.Status.CANCELLED: BOOKING_CANCELLED,
    Booking.Status.DISPUTED: BOOKING_DISPUTED,
}

TEMPLATES = {
    NEW_BOOKING: {
        OWNER: ('New booking request - {title}', 'New booking request!',
                'Someone wants to rent your {title}. Review the request and approve it from your dashboard.'),
        RENTER: ('Booking request submitted - {title}', 'Booking request submitted!',
                 'We have sent your request to the owner of {title} for approval.'),
    },
    BOOKING_APPROVED: {
        RENTER: ('Booking approved - {title}', 'Your booking was approved!',
                 'The owner approved your booking of {title}. Complete the rental payment to lock it in.'),
        OWNER: ('You approved a booking - {title}', 'Booking approved',
                'You approved the booking of {title}. We will let you know when the rental is paid.'),
    },
    BOOKING_CONFIRMED: {
        RENTER: ('Booking confirmed - {title}', 'Your booking is confirmed!',
                 'Your rental of {title} is confirmed. Get ready for your adventure.'),
        OWNER: ('Booking confirmed - {title}', 'Booking confirmed',
                'The booking of your {title} is confirmed and paid.'),
    },
    BOOKING_STARTED: {
        RENTER: ('Your rental has started - {title}', 'Enjoy your gear!',
                 'Your rental of {title} is now active.'),
        OWNER: ('Rental started - {title}', 'Rental started',
                'The rental of your {title} is now active.'),
    },
    BOOKING_COMPLETED: {
        RENTER: ('Rental completed - {title}', 'Thanks for renting with us!',
                 'Your rental of {title} is complete. Your security deposit will be released within 48 hours.'),
        OWNER: ('Rental completed - {title}', 'Rental completed',
                'The rental of your {title} is complete.'),
    },
    BOOKING_CANCELLED: {
        RENTER: ('Booking cancelled - {title}', 'Booking cancelled',
                 'Your booking of {title} was cancelled. Any payments made have been refunded.'),
        OWNER: ('Booking cancelled - {title}', 'Booking cancelled',
                'The booking of your {title} was cancelled.'),
    },
    BOOKING_DISPUTED: {
        RENTER: ('Dispute opened - {title}', 'A dispute was opened',
                 'A dispute was opened on your booking of {title}. Our team will be in touch.'),
        OWNER: ('Dispute opened - {title}', 'A dispute was opened',
                'A dispute was opened on the booking of your {title}. Our team will be in touch.'),
    },
    DEPOSIT_RELEASED: {
        RENTER: ('Security deposit released - {title}', 'Deposit released',
                 'The security deposit for {title} has been released back to you.'),
    },
}


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailSender:
    """Sends one email and reports the outcome; never raises."""

    def __init__(self, api_key=None, from_email=None, from_name=None):
        self.api_key = settings.RESEND_API_KEY if api_key is None else api_key
        self.from_email = from_email or settings.EMAIL_FROM
        self.from_name = from_name or settings.EMAIL_FROM_NAME

    @property
    def sender(self):
        return f'{self.from_name} <{self.from_email}>'

    def send(self, to, subject, html, text):
        if not self.api_key:
            return self._send_with_backend(to, subject, html, text)

        resend.api_key = self.api_key
        try:
            response = resend.Emails.send({
                'from': self.sender,
                'to': [to],
                'subject': subject,
                'html': html,
                'text': text,
            })
        except Exception as e:
            logger.error('Email sending failed to %s: %s', to, e)
            return SendResult(success=False, error=str(e))

        message_id = response.get('id')
        logger.info('Email sent to %s: %s (%s)', to, subject, message_id)
        return SendResult(success=True, message_id=message_id)

    def _send_with_backend(self, to, subject, html, text):
        message_id = make_msgid()
        message = EmailMultiAlternatives(subject, text, self.sender, [to], headers={'Message-ID': message_id})
        message.attach_alternative(html, 'text/html')
        try:
            message.send()
        except Exception as e:
            logger.error('Email sending error to %s: %s', to, e)
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, message_id=message_id)


class NotificationDispatcher:
    def __init__(self, sender=None):
        self.sender = sender or EmailSender()

    def dispatch(self, booking_id, template_key):
        """Email the parties of a booking; returns the send results."""
        try:
            return self._dispatch(booking_id, template_key)
        except Exception:
            logger.exception('Error sending %s notification for booking %s', template_key, booking_id)
            return []

    def _dispatch(self, booking_id, template_key):
        templates = TEMPLATES.get(template_key)
        if templates is None:
            logger.warning('No email template for %s', template_key)
            return []

        booking = Booking.objects.get(id=booking_id)
        recipients = self._recipients(booking)
        results = []
        for role, (subject, headline, message) in templates.items():
            email, name = recipients.get(role, (None, None))
            if not email:
                logger.warning('No %s email address for booking %s, skipping %s', role, booking.id, template_key)
                continue
            context = {
                'booking': booking,
                'name': name,
                'headline': headline,
                'message': message.format(title=booking.listing_title),
                'dashboard_url': f'{settings.SITE_URL}/dashboard',
                'total_price': f'{booking.total_price_pence / 100:.2f}',
                'security_deposit': f'{booking.security_deposit_pence / 100:.2f}',
            }
            html = render_to_string('bookings/email/booking_notification.html', context)
            text = render_to_string('bookings/email/booking_notification.txt', context)
            result = self.sender.send(email, subject.format(title=booking.listing_title), html, text)
            if not result.success:
                logger.error('Failed to send %s email for booking %s: %s', template_key, booking.id, result.error)
            results.append(result)
        return results

    def _recipients(self, booking):
        User = get_user_model()
        users = {str(user.pk): user for user in User.objects.filter(pk__in=self._user_pks(booking))}
        renter = users.get(booking.renter_id)
        owner = users.get(booking.owner_id)

        owner_email = owner.email if owner and owner.email else None
        if owner_email is None:
            owner_email = Listing.objects.filter(id=booking.listing_id).values_list('owner_email', flat=True).first()

        return {
            RENTER: (renter.email if renter else None, self._display_name(renter)),
            OWNER: (owner_email, self._display_name(owner)),
        }

    @staticmethod
    def _user_pks(booking):
        pks = []
        for value in (booking.renter_id, booking.owner_id):
            if value.isdigit():
                pks.append(int(value))
        return pks

    @staticmethod
    def _display_name(user):
        if user is None:
            return 'there'
        return user.get_full_name() or user.get_username()
