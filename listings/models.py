import uuid

from django.db import models


class Listing(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=255)
    owner_id = models.CharField(max_length=128, db_index=True)
    owner_email = models.EmailField()
    daily_price_pence = models.PositiveIntegerField()
    security_deposit_pence = models.PositiveIntegerField(default=10000)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active', db_index=True)
    availability_dates = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'listings_listing'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.title} ({self.status})"

    @property
    def is_active(self):
        return self.status == 'active'
