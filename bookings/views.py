import functools

from django.utils.dateparse import parse_date
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .exceptions import BookingError, InvalidBookingRequest, NotAuthorized
from .services import BookingRequest, get_lifecycle_service


def handles_booking_errors(view):
    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except BookingError as e:
            return Response({'error': e.message}, status=e.status_code)
    return wrapper


def actor_type_for(request, requested):
    if requested == 'admin' and not request.user.is_staff:
        raise NotAuthorized('Admin access required')
    if requested not in ('renter', 'owner', 'admin'):
        raise InvalidBookingRequest('user_type must be one of renter, owner, admin')
    return requested


@api_view(['POST'])
@handles_booking_errors
def create_booking(request):
    data = request.data
    listing_id = data.get('listing_id')
    start_date = parse_date(data.get('start_date') or '')
    end_date = parse_date(data.get('end_date') or '')

    if not listing_id or start_date is None or end_date is None:
        return Response({
            'error': 'Missing required fields: listing_id, start_date, end_date (YYYY-MM-DD)'
        }, status=status.HTTP_400_BAD_REQUEST)

    service = get_lifecycle_service()
    booking_id = service.create_booking(BookingRequest(
        listing_id=listing_id,
        renter_id=str(request.user.pk),
        start_date=start_date,
        end_date=end_date,
        delivery_method=data.get('delivery_method', 'pickup'),
        insurance_tier=data.get('insurance_tier', 'standard'),
        special_requests=data.get('special_requests', ''),
    ))
    booking_status = service.get_booking_status(booking_id)
    return Response(booking_status, status=status.HTTP_201_CREATED)


@api_view(['GET'])
@handles_booking_errors
def get_booking(request, booking_id):
    service = get_lifecycle_service()
    booking = service.get_booking(booking_id)
    if not request.user.is_staff and not booking.is_participant(request.user.pk):
        raise NotAuthorized('Unauthorized - not your booking')

    booking_status = service.get_booking_status(booking_id)
    booking_status['pricing'] = {
        'dailyPrice': booking.daily_price_pence,
        'basePrice': booking.base_price_pence,
        'serviceFee': booking.service_fee_pence,
        'totalPrice': booking.total_price_pence,
        'securityDeposit': booking.security_deposit_pence,
        'currency': booking.currency,
        'days': booking.days,
    }
    return Response(booking_status)


@api_view(['POST'])
@handles_booking_errors
def approve_booking(request, booking_id):
    service = get_lifecycle_service()
    service.approve_booking(booking_id, request.user.pk)
    return Response(service.get_booking_status(booking_id))


@api_view(['POST'])
@handles_booking_errors
def cancel_booking(request, booking_id):
    reason = request.data.get('reason') or 'No reason given'
    user_type = actor_type_for(request, request.data.get('user_type', 'renter'))

    service = get_lifecycle_service()
    service.cancel_booking(booking_id, request.user.pk, reason, user_type)
    return Response(service.get_booking_status(booking_id))


@api_view(['POST'])
@handles_booking_errors
def complete_booking(request, booking_id):
    user_type = actor_type_for(request, request.data.get('user_type', 'renter'))

    service = get_lifecycle_service()
    job = service.complete_booking(booking_id, request.user.pk, user_type)
    booking_status = service.get_booking_status(booking_id)
    booking_status['depositReleaseAt'] = job.due_at.isoformat()
    return Response(booking_status)


@api_view(['POST'])
@handles_booking_errors
def start_booking(request, booking_id):
    user_type = actor_type_for(request, request.data.get('user_type', 'owner'))

    service = get_lifecycle_service()
    service.mark_active(booking_id, request.user.pk, user_type)
    return Response(service.get_booking_status(booking_id))


@api_view(['POST'])
@handles_booking_errors
def dispute_booking(request, booking_id):
    reason = request.data.get('reason')
    if not reason:
        return Response({'error': 'reason is required'}, status=status.HTTP_400_BAD_REQUEST)
    user_type = actor_type_for(request, request.data.get('user_type', 'renter'))

    service = get_lifecycle_service()
    service.open_dispute(booking_id, request.user.pk, user_type, reason)
    return Response(service.get_booking_status(booking_id))


@api_view(['POST'])
@handles_booking_errors
def update_booking_status(request, booking_id):
    if not request.user.is_staff:
        raise NotAuthorized('Admin access required')

    new_status = request.data.get('status')
    if not new_status:
        return Response({'error': 'status is required'}, status=status.HTTP_400_BAD_REQUEST)

    service = get_lifecycle_service()
    service.update_booking_status(
        booking_id,
        new_status,
        request.user.pk,
        'admin',
        notes=request.data.get('notes'),
        force=bool(request.data.get('force', False)),
    )
    return Response(service.get_booking_status(booking_id))
