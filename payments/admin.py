from django.contrib import admin
from .models import PaymentRecord, Refund


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = ['id', 'booking', 'payment_type', 'amount_display', 'status', 'created_at']
    list_filter = ['status', 'payment_type', 'provider', 'currency', 'created_at']
    search_fields = ['stripe_payment_intent_id', 'booking__id']
    readonly_fields = ['created_at', 'updated_at', 'stripe_payment_intent_id', 'client_secret', 'processed_events']
    raw_id_fields = ['booking']

    fieldsets = (
        ('Booking', {
            'fields': ('booking', 'payment_type')
        }),
        ('Payment Details', {
            'fields': ('amount_pence', 'currency', 'status', 'provider')
        }),
        ('Stripe Information', {
            'fields': ('stripe_payment_intent_id', 'client_secret')
        }),
        ('Metadata', {
            'fields': ('metadata', 'processed_events')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )

    def amount_display(self, obj):
        return f"{obj.currency} {obj.amount_pence/100:.2f}"
    amount_display.short_description = 'Amount'


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ['id', 'payment', 'amount_display', 'status', 'reason_short', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['provider_refund_id', 'reason']
    readonly_fields = ['created_at']
    raw_id_fields = ['payment']

    def amount_display(self, obj):
        return f"{obj.payment.currency} {obj.amount_pence/100:.2f}"
    amount_display.short_description = 'Amount'

    def reason_short(self, obj):
        if obj.reason:
            return obj.reason[:50] + '...' if len(obj.reason) > 50 else obj.reason
        return '-'
    reason_short.short_description = 'Reason'
