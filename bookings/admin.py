from django.contrib import admin
from .models import Booking, ScheduledJob


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ['id', 'listing_title', 'renter_id', 'owner_id', 'start_date', 'end_date', 'status', 'total_display', 'created_at']
    list_filter = ['status', 'upfront_payment_status', 'rental_payment_status', 'security_deposit_status', 'created_at']
    search_fields = ['id', 'listing_id', 'listing_title', 'renter_id', 'owner_id']
    readonly_fields = [field.name for field in Booking._meta.fields]

    fieldsets = (
        ('Listing', {
            'fields': ('id', 'listing_id', 'listing_title', 'owner_id', 'renter_id')
        }),
        ('Dates', {
            'fields': ('start_date', 'end_date', 'days')
        }),
        ('Pricing', {
            'fields': ('daily_price_pence', 'base_price_pence', 'service_fee_pence', 'total_price_pence', 'security_deposit_pence', 'currency')
        }),
        ('Details', {
            'fields': ('delivery_method', 'insurance_tier', 'special_requests')
        }),
        ('Status', {
            'fields': ('status', 'upfront_payment_status', 'upfront_payment_id', 'rental_payment_status', 'rental_payment_id', 'security_deposit_status', 'security_deposit_payment_id')
        }),
        ('Audit', {
            'fields': ('timeline', 'processed_payments', 'revision', 'created_at', 'updated_at')
        }),
    )

    def total_display(self, obj):
        return f"{obj.currency} {obj.total_price_pence/100:.2f}"
    total_display.short_description = 'Total'

    def has_add_permission(self, request):
        return False


@admin.register(ScheduledJob)
class ScheduledJobAdmin(admin.ModelAdmin):
    list_display = ['id', 'job_type', 'booking', 'due_at', 'status', 'attempts', 'completed_at']
    list_filter = ['job_type', 'status', 'due_at']
    search_fields = ['booking__id', 'last_error']
    readonly_fields = ['created_at', 'completed_at', 'attempts', 'last_error']
    raw_id_fields = ['booking']
