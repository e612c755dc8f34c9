"""
Management command to reconcile managed groups with Authman.

Usage:
    python manage.py sync_managed_groups
    python manage.py sync_managed_groups --group <group id>
    python manage.py sync_managed_groups --stems
    python manage.py sync_managed_groups --force
"""

from django.core.management.base import BaseCommand, CommandError

from apps.groups.conf import GroupsConfig
from apps.groups.services import (
    AlreadySyncedError,
    GroupsServiceError,
    SyncInProgressError,
    build_reconciler,
)


class Command(BaseCommand):
    help = 'Synchronize Authman-managed group memberships with their rosters'

    def add_arguments(self, parser):
        parser.add_argument(
            '--group',
            help='Only reconcile the group with this ID',
        )
        parser.add_argument(
            '--stems',
            action='store_true',
            help='Create or refresh managed groups from the configured Authman stems first',
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help='Run even if the previous run started within AUTHMAN_SYNC_TIME_THRESHOLD_MINUTES',
        )

    def handle(self, *args, **options):
        config = GroupsConfig.from_settings()
        if not config.authman_base_url:
            raise CommandError('AUTHMAN_BASE_URL is not configured')

        reconciler = build_reconciler(config)
        check_threshold = not options['force']

        if options['stems']:
            try:
                stem_report = reconciler.sync_stem_groups(check_threshold=check_threshold)
            except (AlreadySyncedError, SyncInProgressError) as e:
                self.stdout.write(self.style.WARNING(f'Skipped stem groups: {e}'))
            except GroupsServiceError as e:
                raise CommandError(str(e))
            else:
                self.stdout.write(
                    f"Stem groups: {len(stem_report.created_groups)} created, "
                    f"{len(stem_report.updated_groups)} updated, {len(stem_report.failures)} failed"
                )

        if options['group']:
            try:
                reports = [reconciler.reconcile(options['group'])]
            except GroupsServiceError as e:
                raise CommandError(str(e))
        else:
            try:
                reports = reconciler.reconcile_all(check_threshold=check_threshold)
            except (AlreadySyncedError, SyncInProgressError) as e:
                self.stdout.write(self.style.WARNING(f'Skipped managed groups: {e}'))
                return

        for report in reports:
            style = self.style.WARNING if report.has_failures or report.timed_out else self.style.SUCCESS
            self.stdout.write(style(f"{report.group_id} (sync {report.sync_id}): {report.summary()}"))

        self.stdout.write(self.style.SUCCESS(f'\nReconciled {len(reports)} group(s).'))
