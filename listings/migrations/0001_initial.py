import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Listing',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('title', models.CharField(max_length=255)),
                ('owner_id', models.CharField(db_index=True, max_length=128)),
                ('owner_email', models.EmailField(max_length=254)),
                ('daily_price_pence', models.PositiveIntegerField()),
                ('security_deposit_pence', models.PositiveIntegerField(default=10000)),
                ('status', models.CharField(choices=[('active', 'Active'), ('inactive', 'Inactive')], db_index=True, default='active', max_length=20)),
                ('availability_dates', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'listings_listing',
                'ordering': ['-created_at'],
            },
        ),
    ]
