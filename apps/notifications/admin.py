# ==========================================
# apps/notifications/admin.py
# ==========================================

from django.contrib import admin
from .models import OutboundNotification, DeliveryStatus


@admin.register(OutboundNotification)
class OutboundNotificationAdmin(admin.ModelAdmin):
    list_display = ['subject', 'topic', 'status', 'attempts', 'recipient_count', 'created_at', 'sent_at']
    list_filter = ['status', 'topic', 'org_id']
    search_fields = ['subject', 'body']
    readonly_fields = ['id', 'created_at', 'sent_at', 'attempts', 'last_error']
    actions = ['requeue']

    def recipient_count(self, obj):
        return len(obj.recipients or [])
    recipient_count.short_description = 'Recipients'

    @admin.action(description='Requeue selected notifications')
    def requeue(self, request, queryset):
        updated = queryset.exclude(status=DeliveryStatus.SENT).update(
            status=DeliveryStatus.PENDING,
            attempts=0,
        )
        self.message_user(request, f'{updated} notification(s) requeued.')
