from django.contrib import admin
from .models import Listing


@admin.register(Listing)
class ListingAdmin(admin.ModelAdmin):
    list_display = ['id', 'title', 'owner_id', 'daily_price_display', 'deposit_display', 'status', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['title', 'owner_id', 'owner_email']
    readonly_fields = ['created_at', 'updated_at']

    def daily_price_display(self, obj):
        return f"${obj.daily_price_pence/100:.2f}"
    daily_price_display.short_description = 'Daily price'

    def deposit_display(self, obj):
        return f"${obj.security_deposit_pence/100:.2f}"
    deposit_display.short_description = 'Deposit'
