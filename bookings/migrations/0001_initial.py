import uuid

import django.db.models.deletion
from django.db import migrations, models


LEG_STATUS_CHOICES = [
    ('pending', 'Pending'),
    ('paid', 'Paid'),
    ('held', 'Held'),
    ('refunded', 'Refunded'),
    ('failed', 'Failed'),
    ('released', 'Released'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('listing_id', models.CharField(db_index=True, max_length=64)),
                ('listing_title', models.CharField(max_length=255)),
                ('owner_id', models.CharField(db_index=True, max_length=128)),
                ('renter_id', models.CharField(db_index=True, max_length=128)),
                ('start_date', models.DateField()),
                ('end_date', models.DateField()),
                ('days', models.PositiveIntegerField()),
                ('daily_price_pence', models.PositiveIntegerField()),
                ('base_price_pence', models.PositiveIntegerField()),
                ('service_fee_pence', models.PositiveIntegerField()),
                ('total_price_pence', models.PositiveIntegerField()),
                ('security_deposit_pence', models.PositiveIntegerField()),
                ('currency', models.CharField(max_length=3)),
                ('delivery_method', models.CharField(choices=[('pickup', 'Pickup'), ('delivery', 'Delivery')], max_length=20)),
                ('insurance_tier', models.CharField(choices=[('standard', 'Standard'), ('premium', 'Premium')], max_length=20)),
                ('special_requests', models.TextField(blank=True)),
                ('status', models.CharField(choices=[('pending_payment', 'Pending Payment'), ('pending_owner_approval', 'Pending Owner Approval'), ('payment_failed', 'Payment Failed'), ('confirmed', 'Confirmed'), ('active', 'Active'), ('completed', 'Completed'), ('cancelled', 'Cancelled'), ('disputed', 'Disputed')], db_index=True, default='pending_payment', max_length=32)),
                ('upfront_payment_status', models.CharField(choices=LEG_STATUS_CHOICES, default='pending', max_length=16)),
                ('rental_payment_status', models.CharField(choices=LEG_STATUS_CHOICES, default='pending', max_length=16)),
                ('security_deposit_status', models.CharField(choices=LEG_STATUS_CHOICES, default='pending', max_length=16)),
                ('upfront_payment_id', models.CharField(blank=True, max_length=255)),
                ('rental_payment_id', models.CharField(blank=True, max_length=255)),
                ('security_deposit_payment_id', models.CharField(blank=True, max_length=255)),
                ('timeline', models.JSONField(blank=True, default=list)),
                ('processed_payments', models.JSONField(blank=True, default=list)),
                ('revision', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'bookings_booking',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ScheduledJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('job_type', models.CharField(choices=[('release_security_deposit', 'Release security deposit')], max_length=64)),
                ('due_at', models.DateTimeField(db_index=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('done', 'Done'), ('failed', 'Failed')], db_index=True, default='pending', max_length=16)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('booking', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='scheduled_jobs', to='bookings.booking')),
            ],
            options={
                'db_table': 'bookings_scheduled_job',
                'ordering': ['due_at'],
            },
        ),
        migrations.AddConstraint(
            model_name='scheduledjob',
            constraint=models.UniqueConstraint(fields=('job_type', 'booking'), name='unique_job_per_booking'),
        ),
    ]
