"""
Management command to deliver queued notifications.

Usage:
    python manage.py deliver_notifications
    python manage.py deliver_notifications --batch-size 500
"""

from django.core.management.base import BaseCommand, CommandError

from apps.groups.conf import GroupsConfig
from apps.integrations import NotificationsClient
from apps.notifications.services import deliver_pending


class Command(BaseCommand):
    help = 'Send pending outbound notifications to the Notifications service'

    def add_arguments(self, parser):
        parser.add_argument(
            '--batch-size',
            type=int,
            default=100,
            help='Maximum number of notifications to deliver in this run',
        )

    def handle(self, *args, **options):
        config = GroupsConfig.from_settings()
        if not config.notifications_base_url:
            raise CommandError('NOTIFICATIONS_BASE_URL is not configured')

        client = NotificationsClient(
            config.notifications_base_url,
            config.notifications_api_key,
            timeout=config.http_timeout_seconds,
        )
        counts = deliver_pending(
            client=client,
            max_attempts=config.notifications_max_attempts,
            batch_size=options['batch_size'],
        )
        self.stdout.write(self.style.SUCCESS(
            f"Delivered {counts['sent']} notification(s), {counts['failed']} failed"
        ))
