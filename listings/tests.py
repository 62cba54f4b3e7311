import uuid

from django.test import TestCase

from bookings.exceptions import ListingNotFound, ListingUnavailable
from .models import Listing
from .store import get_bookable_listing, get_listing


class ListingStoreTest(TestCase):
    def setUp(self):
        self.listing = Listing.objects.create(
            title='Carbon Trekking Poles',
            owner_id='owner-1',
            owner_email='owner@example.com',
            daily_price_pence=1200,
        )

    def test_get_listing(self):
        self.assertEqual(get_listing(str(self.listing.id)), self.listing)

    def test_default_security_deposit(self):
        self.assertEqual(self.listing.security_deposit_pence, 10000)

    def test_unknown_listing(self):
        with self.assertRaises(ListingNotFound):
            get_listing(str(uuid.uuid4()))

    def test_malformed_listing_id(self):
        with self.assertRaises(ListingNotFound):
            get_listing('not-a-uuid')

    def test_inactive_listing_is_not_bookable(self):
        self.listing.status = 'inactive'
        self.listing.save()

        self.assertFalse(self.listing.is_active)
        with self.assertRaises(ListingUnavailable):
            get_bookable_listing(str(self.listing.id))
