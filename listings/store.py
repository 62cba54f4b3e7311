"""Read-only access to listings for the booking core."""
from django.core.exceptions import ValidationError

from bookings.exceptions import ListingNotFound, ListingUnavailable
from .models import Listing


def get_listing(listing_id):
    try:
        return Listing.objects.get(id=listing_id)
    except (Listing.DoesNotExist, ValidationError, ValueError):
        raise ListingNotFound(f'Listing {listing_id} not found')


def get_bookable_listing(listing_id):
    listing = get_listing(listing_id)
    if not listing.is_active:
        raise ListingUnavailable(f'Listing {listing_id} is not available for booking')
    return listing
