class BookingError(Exception):
    status_code = 400
    default_message = 'Booking request failed'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BookingNotFound(BookingError):
    status_code = 404
    default_message = 'Booking not found'


class ListingNotFound(BookingError):
    status_code = 404
    default_message = 'Listing not found'


class ListingUnavailable(BookingError):
    default_message = 'Listing is not available for booking'


class NotAuthorized(BookingError):
    status_code = 403
    default_message = 'Unauthorized'


class InvalidBookingDates(BookingError):
    default_message = 'End date must be after start date'


class InvalidBookingRequest(BookingError):
    default_message = 'Invalid booking request'


class InvalidTransition(BookingError):
    default_message = 'Invalid booking status transition'

    def __init__(self, current=None, target=None, message=None):
        self.current = current
        self.target = target
        if message is None and current is not None:
            message = f'Invalid booking status transition: {current} -> {target}'
        super().__init__(message)


class PaymentGatewayError(BookingError):
    """Raised when the payment processor rejects or fails a charge or refund.

    The message is safe to show to clients; the underlying processor error is
    logged where it is caught.
    """
    status_code = 502
    default_message = 'Payment processing failed'
