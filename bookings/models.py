import uuid

from django.db import models
from django.utils import timezone


class Booking(models.Model):
    class Status(models.TextChoices):
        PENDING_PAYMENT = 'pending_payment', 'Pending Payment'
        PENDING_OWNER_APPROVAL = 'pending_owner_approval', 'Pending Owner Approval'
        PAYMENT_FAILED = 'payment_failed', 'Payment Failed'
        CONFIRMED = 'confirmed', 'Confirmed'
        ACTIVE = 'active', 'Active'
        COMPLETED = 'completed', 'Completed'
        CANCELLED = 'cancelled', 'Cancelled'
        DISPUTED = 'disputed', 'Disputed'

    class LegStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PAID = 'paid', 'Paid'
        HELD = 'held', 'Held'
        REFUNDED = 'refunded', 'Refunded'
        FAILED = 'failed', 'Failed'
        RELEASED = 'released', 'Released'

    DELIVERY_CHOICES = [
        ('pickup', 'Pickup'),
        ('delivery', 'Delivery'),
    ]

    INSURANCE_CHOICES = [
        ('standard', 'Standard'),
        ('premium', 'Premium'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    listing_id = models.CharField(max_length=64, db_index=True)
    listing_title = models.CharField(max_length=255)
    owner_id = models.CharField(max_length=128, db_index=True)
    renter_id = models.CharField(max_length=128, db_index=True)

    start_date = models.DateField()
    end_date = models.DateField()
    days = models.PositiveIntegerField()

    daily_price_pence = models.PositiveIntegerField()
    base_price_pence = models.PositiveIntegerField()
    service_fee_pence = models.PositiveIntegerField()
    total_price_pence = models.PositiveIntegerField()
    security_deposit_pence = models.PositiveIntegerField()
    currency = models.CharField(max_length=3)

    delivery_method = models.CharField(max_length=20, choices=DELIVERY_CHOICES)
    insurance_tier = models.CharField(max_length=20, choices=INSURANCE_CHOICES)
    special_requests = models.TextField(blank=True)

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING_PAYMENT, db_index=True)

    upfront_payment_status = models.CharField(max_length=16, choices=LegStatus.choices, default=LegStatus.PENDING)
    rental_payment_status = models.CharField(max_length=16, choices=LegStatus.choices, default=LegStatus.PENDING)
    security_deposit_status = models.CharField(max_length=16, choices=LegStatus.choices, default=LegStatus.PENDING)
    upfront_payment_id = models.CharField(max_length=255, blank=True)
    rental_payment_id = models.CharField(max_length=255, blank=True)
    security_deposit_payment_id = models.CharField(max_length=255, blank=True)

    timeline = models.JSONField(default=list, blank=True)
    processed_payments = models.JSONField(default=list, blank=True)
    revision = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'bookings_booking'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.listing_title} - {self.renter_id} - {self.status}"

    def append_timeline(self, event, description, actor, actor_id=None):
        entry = {
            'timestamp': timezone.now().isoformat(),
            'event': event,
            'description': description,
            'actor': actor,
        }
        if actor_id is not None:
            entry['actorId'] = str(actor_id)
        self.timeline = list(self.timeline or []) + [entry]
        return entry

    def mark_payment_processed(self, payment_id):
        if payment_id in self.processed_payments:
            return False
        self.processed_payments = list(self.processed_payments or []) + [payment_id]
        return True

    def payment_status(self):
        return {
            'upfront': self.upfront_payment_status,
            'rental': self.rental_payment_status,
            'securityDeposit': self.security_deposit_status,
        }

    def is_participant(self, user_id):
        return str(user_id) in (self.renter_id, self.owner_id)


class ScheduledJob(models.Model):
    RELEASE_SECURITY_DEPOSIT = 'release_security_deposit'

    JOB_TYPE_CHOICES = [
        (RELEASE_SECURITY_DEPOSIT, 'Release security deposit'),
    ]

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('done', 'Done'),
        ('failed', 'Failed'),
    ]

    job_type = models.CharField(max_length=64, choices=JOB_TYPE_CHOICES)
    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name='scheduled_jobs')
    due_at = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default='pending', db_index=True)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'bookings_scheduled_job'
        ordering = ['due_at']
        constraints = [
            models.UniqueConstraint(fields=['job_type', 'booking'], name='unique_job_per_booking'),
        ]

    def __str__(self):
        return f"{self.job_type} for {self.booking_id} due {self.due_at:%Y-%m-%d %H:%M} ({self.status})"
