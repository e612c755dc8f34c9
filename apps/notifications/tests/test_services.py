import pytest
from io import StringIO
from unittest.mock import Mock, patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError

from apps.integrations import IntegrationError
from apps.notifications.models import DeliveryStatus, OutboundNotification
from apps.notifications.services import deliver_notification, deliver_pending, enqueue_notification

RECIPIENTS = [{'user_id': 'u-1', 'name': 'Jane', 'mute': False}]


def enqueue(**overrides):
    fields = {
        'recipients': RECIPIENTS,
        'topic': 'group.invitations',
        'subject': 'Group - Chess Club',
        'body': "New membership request for 'Chess Club' group has been submitted",
        'data': {'type': 'group', 'operation': 'pending_member'},
        'org_id': 'org-1',
        'app_id': 'app-1',
    }
    fields.update(overrides)
    return enqueue_notification(**fields)


@pytest.mark.django_db
class TestEnqueue:

    def test_enqueue_creates_pending_row(self):
        notification = enqueue()

        assert notification.status == DeliveryStatus.PENDING
        assert notification.attempts == 0
        assert notification.recipients == RECIPIENTS

    def test_no_recipients_nothing_queued(self):
        assert enqueue(recipients=[]) is None
        assert OutboundNotification.objects.count() == 0

    def test_insert_failure_is_swallowed(self):
        with patch.object(OutboundNotification.objects, 'create', side_effect=DatabaseError('locked')):
            assert enqueue() is None


@pytest.mark.django_db
class TestDelivery:

    def test_successful_delivery(self):
        notification = enqueue()
        client = Mock()

        assert deliver_notification(notification, client=client, max_attempts=3) is True

        notification.refresh_from_db()
        assert notification.status == DeliveryStatus.SENT
        assert notification.sent_at is not None
        client.send.assert_called_once_with(
            recipients=RECIPIENTS,
            topic='group.invitations',
            subject='Group - Chess Club',
            body="New membership request for 'Chess Club' group has been submitted",
            data={'type': 'group', 'operation': 'pending_member'},
            org_id='org-1',
            app_id='app-1',
        )

    def test_failure_stays_pending_until_max_attempts(self):
        notification = enqueue()
        client = Mock()
        client.send.side_effect = IntegrationError('503', service='notifications', status_code=503)

        assert deliver_notification(notification, client=client, max_attempts=2) is False
        notification.refresh_from_db()
        assert notification.status == DeliveryStatus.PENDING
        assert notification.last_error == '503'

        deliver_notification(notification, client=client, max_attempts=2)
        notification.refresh_from_db()
        assert notification.status == DeliveryStatus.FAILED
        assert notification.attempts == 2

    def test_deliver_pending_counts(self):
        first = enqueue(subject='first')
        enqueue(subject='second')
        client = Mock()

        def send(**kwargs):
            if kwargs['subject'] == 'second':
                raise IntegrationError('down', service='notifications')

        client.send.side_effect = send

        counts = deliver_pending(client=client, max_attempts=5)

        assert counts == {'sent': 1, 'failed': 1}
        first.refresh_from_db()
        assert first.status == DeliveryStatus.SENT

    def test_sent_rows_are_not_resent(self):
        notification = enqueue()
        OutboundNotification.objects.filter(id=notification.id).update(status=DeliveryStatus.SENT)
        client = Mock()

        assert deliver_pending(client=client) == {'sent': 0, 'failed': 0}
        client.send.assert_not_called()


@pytest.mark.django_db
class TestDeliverCommand:

    def test_command_requires_configuration(self, settings):
        settings.GROUPS = {'NOTIFICATIONS_BASE_URL': ''}

        with pytest.raises(CommandError):
            call_command('deliver_notifications')

    def test_command_delivers(self, settings):
        settings.GROUPS = {'NOTIFICATIONS_BASE_URL': 'https://notifications.example.com'}
        enqueue()
        out = StringIO()

        with patch('apps.notifications.management.commands.deliver_notifications.NotificationsClient') as client_class:
            call_command('deliver_notifications', stdout=out)

        client_class.return_value.send.assert_called_once()
        assert 'Delivered 1 notification(s), 0 failed' in out.getvalue()
