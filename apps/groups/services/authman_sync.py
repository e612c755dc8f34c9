"""
Authman reconciler.

Converges the local memberships of a managed group onto its Authman roster.
A pass reads the roster and the local memberships first, computes the diff,
and only then writes. Each write is its own transaction: a failed record is
reported and the pass moves on.

Passes over the same group are serialized through the group's
``sync_start_time``/``sync_end_time`` pair, claimed under a row lock. Whole
runs (every managed group, or the stem bootstrap) are serialized the same
way through a ``SyncTimes`` row per organization and job.
"""

from dataclasses import dataclass, field
from datetime import timedelta
import time
from typing import Dict, Iterable, List, Optional
from uuid import UUID

import structlog
from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.accounts.services.account_directory import AccountDirectory, AccountRecord
from apps.groups.conf import GroupsConfig
from apps.groups.domain import GroupPrivacy, MembershipStatus
from apps.groups.models import Group, GroupMembership, SyncTimes
from apps.integrations import AuthmanClient, CoreClient, IntegrationError

from .exceptions import (
    AlreadySyncedError,
    GroupNotFoundError,
    GroupsServiceError,
    RosterFetchError,
    SyncInProgressError,
    SyncNotEligibleError,
)

log = structlog.get_logger()

MANAGED_GROUP_CATEGORY = 'Academic'

# SyncTimes keys for the whole-run jobs
GROUP_SYNC_KEY = 'authman'
STEM_SYNC_KEY = 'authman_stems'

# Filled from the account when a synced record is linked
IDENTITY_FIELDS = ('user_id', 'net_id', 'email', 'name', 'photo_url')


@dataclass
class SyncFailure:
    external_id: str
    operation: str
    error: str


@dataclass
class SyncReport:
    """Outcome of one reconciliation pass over one group."""

    group_id: str
    sync_id: int
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)
    timed_out: bool = False

    @property
    def has_failures(self):
        return bool(self.failures)

    def summary(self):
        status = 'timed out' if self.timed_out else 'completed'
        if self.failures:
            status = f'{status} with {len(self.failures)} failures'
        return (
            f"{status}: {len(self.created)} created, {len(self.updated)} updated, "
            f"{len(self.removed)} removed"
        )


@dataclass
class StemSyncReport:
    created_groups: List[str] = field(default_factory=list)
    updated_groups: List[str] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)


@dataclass
class _SyncPlan:
    to_create: List[str]
    matched: List[GroupMembership]
    to_remove: List[GroupMembership]


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class AuthmanReconciler:
    def __init__(
        self,
        config: GroupsConfig,
        roster_source: AuthmanClient,
        account_directory: AccountDirectory,
    ):
        self.config = config
        self.roster_source = roster_source
        self.account_directory = account_directory

    # -- single flight --------------------------------------------------

    @transaction.atomic
    def begin_group_sync(self, group_id: UUID) -> Group:
        """
        Claim the group for a pass and allocate the pass's sync id.

        Raises:
            GroupNotFoundError: If the group does not exist
            SyncNotEligibleError: If the group is not Authman-managed
            SyncInProgressError: If a previous pass is still within its timeout
        """
        try:
            group = Group.objects.select_for_update().get(id=group_id)
        except Group.DoesNotExist:
            raise GroupNotFoundError(f"Group with ID {group_id} not found")

        if not group.is_authman_sync_eligible():
            raise SyncNotEligibleError(
                f"Authman synchronization failed for group '{group.title}' due to bad settings"
            )

        now = timezone.now()
        if group.sync_start_time is not None and group.sync_end_time is None:
            deadline = group.sync_start_time + timedelta(minutes=self.config.group_sync_timeout_minutes)
            if now <= deadline:
                raise SyncInProgressError(
                    f"Another Authman sync process is running for group ID {group.id}"
                )
            log.warning('authman.sync_lock_expired', group_id=str(group.id), started=group.sync_start_time.isoformat())

        group.sync_start_time = now
        group.sync_end_time = None
        group.last_sync_id += 1
        group.save(update_fields=['sync_start_time', 'sync_end_time', 'last_sync_id', 'date_updated'])
        return group

    def finish_group_sync(self, group: Group) -> None:
        group.sync_end_time = timezone.now()
        Group.objects.filter(id=group.id).update(sync_end_time=group.sync_end_time)

    @transaction.atomic
    def begin_global_sync(self, key: str, *, check_threshold: bool = False) -> SyncTimes:
        """
        Claim a whole run of the ``key`` job for the organization.

        Scheduled runs pass ``check_threshold`` and are skipped when the
        previous run started less than the configured threshold ago.

        Raises:
            SyncInProgressError: If the previous run is still within its timeout
            AlreadySyncedError: If checking the threshold and it has not passed
        """
        org_id = self.config.default_org_id
        times, _ = SyncTimes.objects.select_for_update().get_or_create(org_id=org_id, key=key)

        now = timezone.now()
        if times.start_time is not None:
            if times.in_progress:
                deadline = times.start_time + timedelta(minutes=self.config.authman_sync_timeout_minutes)
                if now <= deadline:
                    raise SyncInProgressError(f"Another Authman sync process is running for {org_id}")
                log.warning('authman.global_sync_lock_expired', key=key, org_id=org_id)

            threshold = times.start_time + timedelta(minutes=self.config.authman_sync_time_threshold_minutes)
            if check_threshold and now <= threshold:
                raise AlreadySyncedError(f"Authman has already been synced for {org_id}")

        times.start_time = now
        times.end_time = None
        times.save(update_fields=['start_time', 'end_time'])
        log.info('authman.global_sync_started', key=key, org_id=org_id)
        return times

    def finish_global_sync(self, times: SyncTimes) -> None:
        times.end_time = timezone.now()
        SyncTimes.objects.filter(id=times.id).update(end_time=times.end_time)
        log.info('authman.global_sync_finished', key=times.key, org_id=times.org_id)

    # -- reconciliation -------------------------------------------------

    def reconcile(self, group_id: UUID) -> SyncReport:
        """
        Run one pass for one group.

        Raises:
            RosterFetchError: If the roster cannot be fetched; nothing is written
            plus the errors of ``begin_group_sync``
        """
        group = self.begin_group_sync(group_id)
        sync_id = group.last_sync_id
        report = SyncReport(group_id=str(group.id), sync_id=sync_id)
        log.info('authman.sync_started', group_id=report.group_id, authman_group=group.authman_group, sync_id=sync_id)

        try:
            try:
                roster = self.roster_source.fetch_group_members(group.authman_group)
            except IntegrationError as e:
                log.error('authman.roster_fetch_failed', group_id=report.group_id, error=str(e))
                raise RosterFetchError(f"Error on requesting Authman for {group.authman_group}: {e}") from e

            local = list(group.memberships.all())
            plan = self.plan(roster, local)
            self.apply(group, plan, report)
        finally:
            self.finish_group_sync(group)

        log_event = log.warning if report.failures or report.timed_out else log.info
        log_event(
            'authman.sync_finished',
            group_id=report.group_id,
            sync_id=sync_id,
            created=len(report.created),
            updated=len(report.updated),
            removed=len(report.removed),
            failures=len(report.failures),
            timed_out=report.timed_out,
        )
        return report

    def plan(self, roster: Iterable[str], local: Iterable[GroupMembership]) -> _SyncPlan:
        """
        Diff the roster against the local memberships.

        Records without an external id are left out entirely, and admins are
        never scheduled for removal.
        """
        roster_ids = _unique(roster)
        roster_set = set(roster_ids)
        by_external_id = {m.external_id: m for m in local if m.external_id}

        return _SyncPlan(
            to_create=[external_id for external_id in roster_ids if external_id not in by_external_id],
            matched=[by_external_id[external_id] for external_id in roster_ids if external_id in by_external_id],
            to_remove=[
                membership
                for external_id, membership in by_external_id.items()
                if external_id not in roster_set and not membership.is_admin
            ],
        )

    def apply(self, group: Group, plan: _SyncPlan, report: SyncReport) -> None:
        deadline = time.monotonic() + self.config.group_sync_budget_seconds

        def out_of_time():
            if time.monotonic() >= deadline:
                report.timed_out = True
            return report.timed_out

        identities = self.resolve_identities(plan.to_create)
        # Matched records synced before their account existed
        accounts = self.account_directory.resolve_by_external_ids(
            [membership.external_id for membership in plan.matched if membership.user_id is None]
        )

        for external_id in plan.to_create:
            if out_of_time():
                return
            try:
                self._create_membership(group, external_id, identities.get(external_id), report.sync_id)
            except DatabaseError as e:
                self._record_failure(report, external_id, 'create', e)
            else:
                report.created.append(external_id)

        for membership in plan.matched:
            if out_of_time():
                return
            try:
                changed = self._stamp_membership(membership, report.sync_id, accounts.get(membership.external_id))
            except DatabaseError as e:
                self._record_failure(report, membership.external_id, 'update', e)
            else:
                if changed:
                    report.updated.append(membership.external_id)

        for membership in plan.to_remove:
            if out_of_time():
                return
            try:
                self._remove_membership(membership)
            except DatabaseError as e:
                self._record_failure(report, membership.external_id, 'remove', e)
            else:
                report.removed.append(membership.external_id)

    def resolve_identities(self, external_ids: List[str]) -> Dict[str, AccountRecord]:
        """
        Best-effort identity for new memberships.

        Accounts come first; Authman subject details fill in the rest. Both
        lookups are optional.
        """
        if not external_ids:
            return {}

        identities = self.account_directory.resolve_by_external_ids(external_ids)
        missing = [external_id for external_id in external_ids if external_id not in identities]
        if missing:
            try:
                subjects = self.roster_source.fetch_subject_details(missing)
            except IntegrationError as e:
                log.warning('authman.subject_lookup_failed', requested=len(missing), error=str(e))
            else:
                for external_id, subject in subjects.items():
                    identities[external_id] = AccountRecord(
                        external_id=external_id,
                        name=subject.name,
                        email=subject.email,
                    )
        return identities

    def _create_membership(self, group, external_id, identity, sync_id, *, admin=False):
        membership = GroupMembership(
            org_id=group.org_id,
            group=group,
            external_id=external_id,
            status=MembershipStatus.MEMBER,
            admin=admin,
            member_answers=group.empty_member_answers(),
            sync_id=sync_id,
        )
        if identity is not None:
            membership.apply_from_account_if_empty(identity)
        with transaction.atomic():
            membership.save()
        return membership

    def _stamp_membership(self, membership, sync_id, account=None) -> bool:
        """
        Stamp the pass id; the roster makes pending and rejected records members.

        An unlinked record is linked to ``account`` and its blank identity
        fields are filled in.
        """
        promoted = not membership.is_admin and membership.status != MembershipStatus.MEMBER
        membership.sync_id = sync_id
        if promoted:
            membership.status = MembershipStatus.MEMBER

        before = [getattr(membership, attr) for attr in IDENTITY_FIELDS]
        if account is not None:
            membership.apply_from_account_if_empty(account)
        identity_changed = before != [getattr(membership, attr) for attr in IDENTITY_FIELDS]

        update_fields = ['sync_id']
        if identity_changed:
            update_fields += list(IDENTITY_FIELDS)
        with transaction.atomic():
            membership.save(update_fields=update_fields)
        return promoted or identity_changed

    def _remove_membership(self, membership):
        with transaction.atomic():
            membership.delete()

    def _record_failure(self, report, external_id, operation, error):
        log.error(
            'authman.sync_record_failed',
            group_id=report.group_id, external_id=external_id, operation=operation, error=str(error),
        )
        report.failures.append(SyncFailure(external_id=external_id, operation=operation, error=str(error)))

    def reconcile_all(self, *, check_threshold: bool = False) -> List[SyncReport]:
        """
        Reconcile every managed group; one group's failure does not stop the rest.

        Raises:
            SyncInProgressError, AlreadySyncedError: See ``begin_global_sync``
        """
        times = self.begin_global_sync(GROUP_SYNC_KEY, check_threshold=check_threshold)
        reports = []
        try:
            groups = (
                Group.objects
                .filter(authman_enabled=True, authman_group__isnull=False)
                .exclude(authman_group='')
                .values_list('id', 'title')
            )
            for group_id, title in groups:
                try:
                    reports.append(self.reconcile(group_id))
                except GroupsServiceError as e:
                    log.error('authman.group_sync_failed', group_id=str(group_id), title=title, error=str(e))
        finally:
            self.finish_global_sync(times)
        return reports

    # -- managed group bootstrap ----------------------------------------

    def sync_stem_groups(
        self,
        stem_names: Optional[Iterable[str]] = None,
        admin_external_ids: Optional[Iterable[str]] = None,
        *,
        check_threshold: bool = False,
    ) -> StemSyncReport:
        """
        Create or refresh a managed group for every group under the stems.

        New groups are private, hidden and auto-join. Admin UINs come from
        the stem group's description plus the configured admin list.

        Raises:
            RosterFetchError: If a stem cannot be listed
            SyncInProgressError, AlreadySyncedError: See ``begin_global_sync``
        """
        times = self.begin_global_sync(STEM_SYNC_KEY, check_threshold=check_threshold)
        report = StemSyncReport()
        configured_admins = list(self.config.authman_admin_uins) + list(admin_external_ids or [])

        try:
            for stem_name in stem_names if stem_names is not None else self.config.authman_stems:
                self._sync_stem(stem_name, configured_admins, report)
        finally:
            self.finish_global_sync(times)

        log.info(
            'authman.stem_sync_finished',
            created=len(report.created_groups),
            updated=len(report.updated_groups),
            failures=len(report.failures),
        )
        return report

    def _sync_stem(self, stem_name, configured_admins, report):
        try:
            stem_groups = self.roster_source.fetch_stem_groups(stem_name)
        except IntegrationError as e:
            raise RosterFetchError(f"Error on requesting Authman for stem groups: {e}") from e

        for stem_group in stem_groups:
            title, stem_admins = stem_group.title_and_admins()
            group = Group.objects.filter(
                org_id=self.config.default_org_id,
                authman_group=stem_group.name,
            ).first()

            try:
                if group is None:
                    self._create_stem_group(stem_group.name, title, _unique(stem_admins + configured_admins))
                    report.created_groups.append(stem_group.name)
                elif self._refresh_stem_group(group, title, _unique(stem_admins)):
                    report.updated_groups.append(stem_group.name)
            except DatabaseError as e:
                log.error('authman.stem_group_failed', authman_group=stem_group.name, error=str(e))
                report.failures.append(SyncFailure(external_id=stem_group.name, operation='stem', error=str(e)))

    @transaction.atomic
    def _create_stem_group(self, authman_group, title, admin_external_ids):
        group = Group.objects.create(
            org_id=self.config.default_org_id,
            app_id=self.config.default_app_id,
            title=title,
            category=MANAGED_GROUP_CATEGORY,
            privacy=GroupPrivacy.PRIVATE,
            hidden_for_search=True,
            can_join_automatically=True,
            authman_enabled=True,
            authman_group=authman_group,
        )
        identities = self.resolve_identities(admin_external_ids)
        for external_id in admin_external_ids:
            self._create_membership(group, external_id, identities.get(external_id), None, admin=True)

        log.info('authman.stem_group_created', group_id=str(group.id), title=title, admins=len(admin_external_ids))
        return group

    @transaction.atomic
    def _refresh_stem_group(self, group, title, admin_external_ids) -> bool:
        updated = False
        existing = {
            m.external_id: m
            for m in group.memberships.filter(external_id__in=admin_external_ids)
        }

        missing = []
        for external_id in admin_external_ids:
            membership = existing.get(external_id)
            if membership is None:
                missing.append(external_id)
            elif not membership.admin:
                membership.admin = True
                membership.save(update_fields=['admin'])
                updated = True

        if missing:
            identities = self.resolve_identities(missing)
            for external_id in missing:
                self._create_membership(group, external_id, identities.get(external_id), None, admin=True)
            updated = True

        fields = []
        if group.title != title:
            group.title = title
            fields.append('title')
        if not group.category:
            group.category = MANAGED_GROUP_CATEGORY
            fields.append('category')
        if fields:
            group.save(update_fields=fields + ['date_updated'])
            updated = True

        return updated


def build_authman_client(config: GroupsConfig) -> AuthmanClient:
    return AuthmanClient(
        config.authman_base_url,
        config.authman_username,
        config.authman_password,
        subject_source_id=config.authman_subject_source_id,
        timeout=config.http_timeout_seconds,
    )


def build_account_directory(config: GroupsConfig) -> AccountDirectory:
    core_client = None
    if config.core_base_url:
        core_client = CoreClient(config.core_base_url, config.core_api_key, timeout=config.http_timeout_seconds)
    return AccountDirectory(core_client)


def build_reconciler(config: Optional[GroupsConfig] = None) -> AuthmanReconciler:
    """Wire a reconciler to the configured Authman and Core services."""
    config = config or GroupsConfig.from_settings()
    return AuthmanReconciler(config, build_authman_client(config), build_account_directory(config))
