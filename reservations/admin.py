from django.contrib import admin

from .models import AuditLog, Hotel, Payment, Reservation, ReservationIntent, Room, UserProfile


@admin.register(Room)
class RoomAdmin(admin.ModelAdmin):
    list_display = ('number', 'hotel', 'type', 'price', 'status', 'capacity')
    list_filter = ('hotel', 'type', 'status')


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('transaction_reference', 'status', 'amount', 'currency', 'reservation', 'intent', 'paid_at')
    list_filter = ('status', 'method')
    search_fields = ('transaction_reference',)
    readonly_fields = ('meta',)


admin.site.register([Hotel, UserProfile, Reservation, ReservationIntent, AuditLog])
