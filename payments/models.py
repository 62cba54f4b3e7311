from django.db import models


class PaymentRecord(models.Model):
    PAYMENT_TYPE_CHOICES = [
        ('upfront', 'Upfront'),
        ('rental', 'Rental'),
        ('security_deposit', 'Security deposit'),
    ]

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('succeeded', 'Succeeded'),
        ('failed', 'Failed'),
        ('refunded', 'Refunded'),
    ]

    booking = models.ForeignKey('bookings.Booking', on_delete=models.CASCADE, related_name='payments')
    payment_type = models.CharField(max_length=32, choices=PAYMENT_TYPE_CHOICES)
    amount_pence = models.PositiveIntegerField()
    currency = models.CharField(max_length=3)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)
    provider = models.CharField(max_length=20, default='stripe')
    stripe_payment_intent_id = models.CharField(max_length=255, unique=True)
    client_secret = models.CharField(max_length=255, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    processed_events = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'payments_payment_record'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.payment_type} {self.stripe_payment_intent_id} ({self.status})"

    def mark_event_processed(self, event_id):
        if event_id in self.processed_events:
            return False
        self.processed_events = list(self.processed_events) + [event_id]
        self.save(update_fields=['processed_events', 'updated_at'])
        return True


class Refund(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('succeeded', 'Succeeded'),
        ('failed', 'Failed'),
    ]

    payment = models.ForeignKey(PaymentRecord, on_delete=models.CASCADE, related_name='refunds')
    provider_refund_id = models.CharField(max_length=255, unique=True)
    amount_pence = models.PositiveIntegerField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'payments_refund'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.provider_refund_id} ({self.status})"
