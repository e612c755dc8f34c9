"""
Outbound notification queue.

Mutations enqueue messages in the caller's transaction; a separate delivery
pass (``manage.py deliver_notifications``) sends them through the
Notifications building block. Delivery failures are recorded on the row and
never reach the code that produced the message.
"""

from typing import Dict, List, Optional

import structlog
from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.integrations import IntegrationError, NotificationsClient

from .models import DeliveryStatus, OutboundNotification

log = structlog.get_logger()


def enqueue_notification(
    *,
    recipients: List[Dict],
    topic: Optional[str],
    subject: str,
    body: str,
    data: Optional[Dict[str, str]] = None,
    org_id: str,
    app_id: str = '',
) -> Optional[OutboundNotification]:
    """
    Queue one message.

    Runs in a savepoint so a failed insert never rolls back the surrounding
    membership change. Returns None when there is nothing to send or the
    insert failed.
    """
    if not recipients:
        return None

    try:
        with transaction.atomic():
            notification = OutboundNotification.objects.create(
                org_id=org_id,
                app_id=app_id,
                recipients=recipients,
                topic=topic or '',
                subject=subject,
                body=body,
                data=data or {},
            )
    except DatabaseError as e:
        log.error('notifications.enqueue_failed', subject=subject, error=str(e))
        return None

    log.info('notifications.enqueued', notification_id=str(notification.id), recipients=len(recipients))
    return notification


def deliver_notification(notification: OutboundNotification, *, client: NotificationsClient, max_attempts: int) -> bool:
    """Send one queued message and record the outcome. Returns True when sent."""
    notification.attempts += 1
    try:
        client.send(
            recipients=notification.recipients,
            topic=notification.topic or None,
            subject=notification.subject,
            body=notification.body,
            data=notification.data,
            org_id=notification.org_id,
            app_id=notification.app_id,
        )
    except IntegrationError as e:
        notification.last_error = str(e)
        if notification.attempts >= max_attempts:
            notification.status = DeliveryStatus.FAILED
        notification.save(update_fields=['attempts', 'last_error', 'status'])
        log.warning(
            'notifications.delivery_failed',
            notification_id=str(notification.id),
            attempts=notification.attempts,
            status=notification.status,
            error=str(e),
        )
        return False

    notification.status = DeliveryStatus.SENT
    notification.sent_at = timezone.now()
    notification.last_error = ''
    notification.save(update_fields=['attempts', 'last_error', 'status', 'sent_at'])
    return True


def deliver_pending(*, client: NotificationsClient, max_attempts: int = 5, batch_size: int = 100) -> Dict[str, int]:
    """
    Deliver queued messages, oldest first.

    Each row is locked while it is sent so two workers never deliver the same
    message. Returns counts of sent and failed deliveries.
    """
    counts = {'sent': 0, 'failed': 0}

    pending_ids = list(
        OutboundNotification.objects
        .filter(status=DeliveryStatus.PENDING)
        .values_list('id', flat=True)[:batch_size]
    )
    for notification_id in pending_ids:
        with transaction.atomic():
            notification = (
                OutboundNotification.objects
                .select_for_update()
                .filter(id=notification_id, status=DeliveryStatus.PENDING)
                .first()
            )
            if notification is None:
                continue
            sent = deliver_notification(notification, client=client, max_attempts=max_attempts)

        counts['sent' if sent else 'failed'] += 1

    log.info('notifications.delivery_pass_finished', **counts)
    return counts
