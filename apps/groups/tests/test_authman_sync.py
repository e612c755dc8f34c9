"""
Tests for the Authman reconciler.

Tests cover:
- Roster convergence (create, stamp, remove)
- Admin and unlinked record protection, linking synced records to accounts
- Abort on roster failure, per-record failure reporting
- Single-flight per group and per whole run, and the pass budget
- Stem group bootstrap
"""

import pytest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

from django.db import DatabaseError
from django.utils import timezone

from apps.accounts.services import AccountDirectory
from apps.groups.domain import GroupPrivacy, MembershipStatus
from apps.groups.models import Group, GroupMembership, SyncTimes
from apps.groups.services import (
    AlreadySyncedError,
    AuthmanReconciler,
    RosterFetchError,
    SyncInProgressError,
    SyncFailure,
    SyncNotEligibleError,
    SyncReport,
)
from apps.integrations import AuthmanStemGroup, AuthmanSubject, IntegrationError

from .conftest import make_membership


@pytest.fixture
def scenario_group(db):
    """Managed group with member e1 and admin e2."""
    group = Group.objects.create(
        org_id='org-1',
        title='Stem X',
        authman_enabled=True,
        authman_group='stem:x',
    )
    make_membership(group, external_id='e1', name='A')
    make_membership(group, external_id='e2', name='B', admin=True)
    return group


def external_ids(group):
    return set(group.memberships.values_list('external_id', flat=True))


@pytest.mark.django_db
class TestReconcile:

    def test_roster_convergence_keeps_admin(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e1', 'e3']

        report = reconciler.reconcile(scenario_group.id)

        assert external_ids(scenario_group) == {'e1', 'e2', 'e3'}
        assert report.created == ['e3']
        assert report.removed == []
        assert report.failures == []
        new = scenario_group.memberships.get(external_id='e3')
        assert new.status == MembershipStatus.MEMBER
        assert new.admin is False
        assert scenario_group.memberships.get(external_id='e2').is_admin
        roster_source.fetch_group_members.assert_called_once_with('stem:x')

    def test_matched_and_created_records_carry_sync_id(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e1', 'e3']

        report = reconciler.reconcile(scenario_group.id)

        scenario_group.refresh_from_db()
        assert report.sync_id == scenario_group.last_sync_id == 1
        assert scenario_group.memberships.get(external_id='e1').sync_id == 1
        assert scenario_group.memberships.get(external_id='e3').sync_id == 1
        assert scenario_group.sync_start_time is not None
        assert scenario_group.sync_end_time is not None

    def test_members_missing_from_roster_are_removed(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e3']

        report = reconciler.reconcile(scenario_group.id)

        assert report.removed == ['e1']
        assert external_ids(scenario_group) == {'e2', 'e3'}

    def test_pending_and_rejected_records_on_roster_become_members(self, reconciler, roster_source, scenario_group):
        make_membership(scenario_group, external_id='e4', status=MembershipStatus.PENDING)
        make_membership(scenario_group, external_id='e5', status=MembershipStatus.REJECTED, reject_reason='No')
        roster_source.fetch_group_members.return_value = ['e1', 'e4', 'e5']

        report = reconciler.reconcile(scenario_group.id)

        assert sorted(report.updated) == ['e4', 'e5']
        rejected = scenario_group.memberships.get(external_id='e5')
        assert rejected.status == MembershipStatus.MEMBER
        assert rejected.reject_reason == ''

    def test_second_pass_is_idempotent(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e1', 'e3']
        reconciler.reconcile(scenario_group.id)
        before = set(scenario_group.memberships.values_list('id', 'external_id', 'status', 'admin'))

        report = reconciler.reconcile(scenario_group.id)

        after = set(scenario_group.memberships.values_list('id', 'external_id', 'status', 'admin'))
        assert after == before
        assert report.created == report.updated == report.removed == []
        assert report.sync_id == 2

    def test_duplicate_roster_entries_create_one_record(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e1', 'e3', 'e3']

        report = reconciler.reconcile(scenario_group.id)

        assert report.created == ['e3']
        assert scenario_group.memberships.filter(external_id='e3').count() == 1

    def test_records_without_external_id_are_untouched(self, reconciler, roster_source, scenario_group, other_user):
        manual = make_membership(scenario_group, other_user, external_id='')
        roster_source.fetch_group_members.return_value = []

        reconciler.reconcile(scenario_group.id)

        assert GroupMembership.objects.filter(id=manual.id).exists()
        assert external_ids(scenario_group) == {'e2', ''}

    def test_new_records_take_identity_from_accounts_then_authman(
        self, groups_config, roster_source, scenario_group, other_user,
    ):
        other_user.external_id = 'e3'
        other_user.save()
        roster_source.fetch_group_members.return_value = ['e1', 'e3', 'e6']
        roster_source.fetch_subject_details.return_value = {
            'e6': AuthmanSubject(external_id='e6', name='Sam Subject', email='sam@example.com'),
        }
        reconciler = AuthmanReconciler(groups_config, roster_source, AccountDirectory(None))

        reconciler.reconcile(scenario_group.id)

        linked = scenario_group.memberships.get(external_id='e3')
        assert linked.user == other_user
        assert linked.email == other_user.email
        subject = scenario_group.memberships.get(external_id='e6')
        assert subject.user is None
        assert subject.name == 'Sam Subject'
        roster_source.fetch_subject_details.assert_called_once_with(['e6'])

    def test_unlinked_matched_record_is_linked_to_account(self, reconciler, roster_source, scenario_group, other_user):
        other_user.external_id = 'e1'
        other_user.save()
        roster_source.fetch_group_members.return_value = ['e1']

        report = reconciler.reconcile(scenario_group.id)

        linked = scenario_group.memberships.get(external_id='e1')
        assert linked.user == other_user
        assert linked.name == 'A'
        assert linked.email == other_user.email
        assert report.updated == ['e1']
        assert reconciler.reconcile(scenario_group.id).updated == []

    def test_identity_lookup_failure_still_creates_records(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e1', 'e7']
        roster_source.fetch_subject_details.side_effect = IntegrationError('down', service='authman')

        report = reconciler.reconcile(scenario_group.id)

        assert report.created == ['e7']
        assert scenario_group.memberships.get(external_id='e7').name == ''


@pytest.mark.django_db
class TestReconcileFailures:

    def test_roster_failure_aborts_without_changes(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.side_effect = IntegrationError('timeout', service='authman')
        before = set(scenario_group.memberships.values_list('id', 'status', 'admin', 'sync_id'))

        with pytest.raises(RosterFetchError):
            reconciler.reconcile(scenario_group.id)

        after = set(scenario_group.memberships.values_list('id', 'status', 'admin', 'sync_id'))
        assert after == before
        scenario_group.refresh_from_db()
        # The claim is released so the next pass can run
        assert scenario_group.sync_end_time is not None

    def test_record_failure_is_reported_and_pass_continues(self, reconciler, roster_source, scenario_group):
        roster_source.fetch_group_members.return_value = ['e3', 'e4']
        original = AuthmanReconciler._create_membership

        def flaky_create(self, group, external_id, *args, **kwargs):
            if external_id == 'e3':
                raise DatabaseError('disk full')
            return original(self, group, external_id, *args, **kwargs)

        with patch.object(AuthmanReconciler, '_create_membership', flaky_create):
            report = reconciler.reconcile(scenario_group.id)

        assert report.created == ['e4']
        assert report.removed == ['e1']
        assert len(report.failures) == 1
        assert report.failures[0].external_id == 'e3'
        assert report.failures[0].operation == 'create'
        assert report.has_failures
        assert 'with 1 failures' in report.summary()

    def test_group_without_authman_group_is_not_eligible(self, reconciler, group):
        with pytest.raises(SyncNotEligibleError):
            reconciler.reconcile(group.id)

    def test_concurrent_pass_is_refused(self, reconciler, roster_source, scenario_group):
        Group.objects.filter(id=scenario_group.id).update(sync_start_time=timezone.now(), sync_end_time=None)

        with pytest.raises(SyncInProgressError):
            reconciler.reconcile(scenario_group.id)

        roster_source.fetch_group_members.assert_not_called()

    def test_stale_claim_expires(self, reconciler, roster_source, scenario_group):
        Group.objects.filter(id=scenario_group.id).update(
            sync_start_time=timezone.now() - timedelta(minutes=61),
            sync_end_time=None,
        )
        roster_source.fetch_group_members.return_value = ['e1']

        report = reconciler.reconcile(scenario_group.id)

        assert report.timed_out is False

    def test_exhausted_budget_stops_writes(self, groups_config, roster_source, scenario_group):
        reconciler = AuthmanReconciler(
            replace(groups_config, group_sync_budget_seconds=0),
            roster_source,
            AccountDirectory(None),
        )
        roster_source.fetch_group_members.return_value = ['e3']

        report = reconciler.reconcile(scenario_group.id)

        assert report.timed_out is True
        assert report.created == []
        assert external_ids(scenario_group) == {'e1', 'e2'}
        assert report.summary().startswith('timed out')

    def test_timed_out_summary_keeps_failure_count(self):
        report = SyncReport(
            group_id='g-1',
            sync_id=1,
            failures=[SyncFailure(external_id='e3', operation='create', error='disk full')],
            timed_out=True,
        )

        assert report.summary() == 'timed out with 1 failures: 0 created, 0 updated, 0 removed'

    def test_reconcile_all_continues_past_failures(self, reconciler, roster_source, scenario_group):
        other = Group.objects.create(
            org_id='org-1', title='Stem Y', authman_enabled=True, authman_group='stem:y',
        )

        def fetch(name):
            if name == 'stem:y':
                raise IntegrationError('boom', service='authman')
            return ['e1']

        roster_source.fetch_group_members.side_effect = fetch

        reports = reconciler.reconcile_all()

        assert [report.group_id for report in reports] == [str(scenario_group.id)]
        other.refresh_from_db()
        assert other.sync_end_time is not None


@pytest.mark.django_db
class TestGlobalSync:

    def test_run_records_start_and_end(self, reconciler, scenario_group):
        reconciler.reconcile_all()

        times = SyncTimes.objects.get(org_id='org-1', key='authman')
        assert times.start_time is not None
        assert times.end_time is not None

    def test_overlapping_run_is_refused(self, reconciler, roster_source, scenario_group):
        SyncTimes.objects.create(org_id='org-1', key='authman', start_time=timezone.now())

        with pytest.raises(SyncInProgressError):
            reconciler.reconcile_all()

        roster_source.fetch_group_members.assert_not_called()

    def test_stale_run_is_taken_over(self, reconciler, roster_source, scenario_group):
        SyncTimes.objects.create(
            org_id='org-1', key='authman', start_time=timezone.now() - timedelta(minutes=61),
        )
        roster_source.fetch_group_members.return_value = ['e1']

        assert len(reconciler.reconcile_all()) == 1

    def test_scheduled_run_within_threshold_is_skipped(self, reconciler, roster_source, scenario_group):
        now = timezone.now()
        SyncTimes.objects.create(
            org_id='org-1', key='authman',
            start_time=now - timedelta(minutes=5), end_time=now - timedelta(minutes=4),
        )

        with pytest.raises(AlreadySyncedError):
            reconciler.reconcile_all(check_threshold=True)
        roster_source.fetch_group_members.assert_not_called()

        # On-demand runs ignore the threshold
        assert len(reconciler.reconcile_all()) == 1

    def test_scheduled_run_after_threshold_proceeds(self, reconciler, scenario_group):
        now = timezone.now()
        SyncTimes.objects.create(
            org_id='org-1', key='authman',
            start_time=now - timedelta(minutes=31), end_time=now - timedelta(minutes=30),
        )

        assert len(reconciler.reconcile_all(check_threshold=True)) == 1

    def test_stem_bootstrap_is_guarded_separately(self, reconciler, roster_source):
        SyncTimes.objects.create(org_id='org-1', key='authman_stems', start_time=timezone.now())

        with pytest.raises(SyncInProgressError):
            reconciler.sync_stem_groups(['stem'])
        roster_source.fetch_stem_groups.assert_not_called()

        reconciler.reconcile_all()

    def test_stem_failure_releases_the_run(self, reconciler, roster_source):
        roster_source.fetch_stem_groups.side_effect = IntegrationError('down', service='authman')

        with pytest.raises(RosterFetchError):
            reconciler.sync_stem_groups(['stem'])

        assert SyncTimes.objects.get(key='authman_stems').end_time is not None


@pytest.mark.django_db
class TestStemSync:

    def test_new_stem_group_is_created_private_hidden_auto_join(self, reconciler, roster_source):
        roster_source.fetch_stem_groups.return_value = [
            AuthmanStemGroup(name='stem:cs101', description='"CS 101" | 111 | 222'),
        ]

        report = reconciler.sync_stem_groups(['stem'], admin_external_ids=['333'])

        assert report.created_groups == ['stem:cs101']
        group = Group.objects.get(authman_group='stem:cs101')
        assert group.title == 'CS 101'
        assert group.org_id == 'org-1'
        assert group.privacy == GroupPrivacy.PRIVATE
        assert group.hidden_for_search is True
        assert group.can_join_automatically is True
        assert group.authman_enabled is True
        assert group.category == 'Academic'
        admins = set(group.memberships.filter(admin=True).values_list('external_id', flat=True))
        assert admins == {'111', '222', '333'}

    def test_existing_stem_group_is_refreshed(self, reconciler, roster_source):
        group = Group.objects.create(
            org_id='org-1', title='Old Title', authman_enabled=True, authman_group='stem:cs101',
        )
        make_membership(group, external_id='111')
        roster_source.fetch_stem_groups.return_value = [
            AuthmanStemGroup(name='stem:cs101', description='"CS 101" | 111'),
        ]

        report = reconciler.sync_stem_groups(['stem'])

        assert report.updated_groups == ['stem:cs101']
        group.refresh_from_db()
        assert group.title == 'CS 101'
        assert group.category == 'Academic'
        assert group.memberships.get(external_id='111').is_admin

    def test_unchanged_stem_group_is_not_reported(self, reconciler, roster_source):
        group = Group.objects.create(
            org_id='org-1', title='CS 101', category='Academic',
            authman_enabled=True, authman_group='stem:cs101',
        )
        make_membership(group, external_id='111', admin=True)
        roster_source.fetch_stem_groups.return_value = [
            AuthmanStemGroup(name='stem:cs101', description='"CS 101" | 111'),
        ]

        report = reconciler.sync_stem_groups(['stem'])

        assert report.created_groups == report.updated_groups == []

    def test_stem_listing_failure_raises(self, reconciler, roster_source):
        roster_source.fetch_stem_groups.side_effect = IntegrationError('down', service='authman')

        with pytest.raises(RosterFetchError):
            reconciler.sync_stem_groups(['stem'])


class TestStemGroupParsing:

    def test_title_and_admins_from_description(self):
        stem_group = AuthmanStemGroup(name='stem:a', description='"Intro" | 1 2 | 3 |')

        assert stem_group.title_and_admins() == ('Intro', ['12', '3'])

    def test_description_without_separator_is_title(self):
        assert AuthmanStemGroup(name='stem:a', description='Plain').title_and_admins() == ('Plain', [])

    def test_display_extension_fallback(self):
        stem_group = AuthmanStemGroup(name='stem:a', display_extension='cs101')

        assert stem_group.title_and_admins() == ('cs101', [])
