"""
Membership management service.

Handles the membership lifecycle (join, leave, admin add, approval,
rejection, removal, attendance) with the group row locked for the duration
of each change. Admin notifications go through the outbound queue and
Authman updates run after commit; neither can undo the change.
"""

from typing import Dict, List, Optional
from uuid import UUID

import structlog
from django.db import transaction, IntegrityError
from django.db.models import Q
from django.utils import timezone

from apps.accounts.models import User
from apps.accounts.services.account_directory import AccountDirectory, AccountRecord
from apps.groups.conf import GroupsConfig
from apps.groups.domain import EffectiveRole, MembershipStatus, NotificationsPreferences
from apps.groups.models import Group, GroupMembership
from apps.integrations import AuthmanClient, IntegrationError

from .authman_sync import build_account_directory, build_authman_client
from .authorization import AuthorizationGate
from .exceptions import (
    AlreadyMemberError,
    GroupNotFoundError,
    InsufficientPermissionsError,
    InvalidMembershipTransitionError,
    LastAdminError,
    MembershipNotFoundError,
    NotMemberError,
)
from .group_management import default_gate, lock_group
from .notification_policy import notify_admins_of_membership_event, notify_member_of_decision
from .redaction import MemberView, redact_many

log = structlog.get_logger()


# -- helpers ------------------------------------------------------------

def get_membership_for_update(group: Group, membership_id: UUID) -> GroupMembership:
    try:
        return (
            GroupMembership.objects
            .select_for_update()
            .get(id=membership_id, group=group)
        )
    except GroupMembership.DoesNotExist:
        raise MembershipNotFoundError(f"Membership with ID {membership_id} not found")


def caller_membership_for_update(group: Group, user: User) -> Optional[GroupMembership]:
    """The caller's membership, including a roster-synced record not yet linked to them."""
    match = Q(user=user)
    if user.external_id:
        match |= Q(user__isnull=True, external_id=user.external_id)
    return (
        GroupMembership.objects
        .select_for_update()
        .filter(match, group=group)
        .first()
    )


def ensure_other_admin(group: Group, membership: GroupMembership) -> None:
    """Raise LastAdminError if ``membership`` is the group's only admin."""
    if not membership.is_admin:
        return
    if not group.memberships.filter(admin=True).exclude(id=membership.id).exists():
        raise LastAdminError(f"{group.title} must keep at least one admin")


def _push_to_authman(group: Group, external_id: str, *, add: bool, client: Optional[AuthmanClient]) -> None:
    """Mirror a join or leave into the group's Authman roster once committed."""
    if not external_id or not group.is_authman_sync_eligible():
        return

    def push():
        authman = client or build_authman_client(GroupsConfig.from_settings())
        try:
            if add:
                authman.add_member(group.authman_group, external_id)
            else:
                authman.remove_member(group.authman_group, external_id)
        except IntegrationError as e:
            log.warning(
                'authman.roster_update_failed',
                group_id=str(group.id), external_id=external_id, add=add, error=str(e),
            )

    transaction.on_commit(push)


def _clean_answers(group: Group, member_answers: Optional[List[Dict]]) -> List[Dict]:
    if not member_answers:
        return group.empty_member_answers()
    return [
        {'question': str(item.get('question', '')), 'answer': str(item.get('answer', ''))}
        for item in member_answers
    ]


# -- caller operations --------------------------------------------------

@transaction.atomic
def request_membership(
    *,
    group_id: UUID,
    user: User,
    member_answers: Optional[List[Dict]] = None,
    notifications_preferences: Optional[Dict] = None,
    gate: Optional[AuthorizationGate] = None,
    authman: Optional[AuthmanClient] = None,
) -> GroupMembership:
    """
    Ask to join a group.

    Auto-join groups make the caller a member straight away; every other
    group records a pending request for the admins to decide. A rejected
    caller may ask again.

    Raises:
        GroupNotFoundError: If the group doesn't exist or is hidden from the caller
        AlreadyMemberError: If the caller already has a pending or active membership
        MembershipRequestsBlockedError: If the group accepts no new requests
    """
    gate = gate or default_gate()
    group = lock_group(group_id)

    existing = caller_membership_for_update(group, user)
    if not gate.can_request_membership(group, existing, is_authenticated=True):
        raise GroupNotFoundError(f"Group with ID {group_id} not found")

    status = gate.join_status(group, existing)

    membership = existing or GroupMembership(org_id=group.org_id, group=group, user=user)
    membership.status = status
    membership.admin = False
    membership.member_answers = _clean_answers(group, member_answers)
    if notifications_preferences is not None:
        membership.notifications_preferences = NotificationsPreferences.from_dict(notifications_preferences).to_dict()
    membership.apply_from_account_if_empty(AccountRecord.from_user(user))

    try:
        with transaction.atomic():
            membership.save()
    except IntegrityError:
        # Database constraint caught a duplicate, e.g. a synced record for the same external id
        raise AlreadyMemberError(f"User already has a membership in {group.title}")

    log.info(
        'groups.membership_requested',
        group_id=str(group.id), user_id=str(user.id), status=membership.status,
    )

    notify_admins_of_membership_event(group=group, membership=membership, acting_user_id=user.id)
    if group.can_join_automatically:
        _push_to_authman(group, membership.external_id, add=True, client=authman)

    return membership


@transaction.atomic
def leave_group(*, group_id: UUID, user: User, authman: Optional[AuthmanClient] = None) -> None:
    """
    Leave a group, or withdraw a pending request.

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError: If user has no membership
        LastAdminError: If user is the only admin
    """
    group = lock_group(group_id)

    membership = caller_membership_for_update(group, user)
    if membership is None:
        raise NotMemberError(f"User is not a member of {group.title}")

    ensure_other_admin(group, membership)

    external_id = membership.external_id or user.external_id
    membership.delete()
    log.info('groups.membership_left', group_id=str(group.id), user_id=str(user.id))

    if group.can_join_automatically:
        _push_to_authman(group, external_id, add=False, client=authman)


@transaction.atomic
def update_notifications_preferences(
    *,
    group_id: UUID,
    user: User,
    preferences: Dict,
) -> GroupMembership:
    """
    Replace the caller's per-group notification overrides.

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError: If user has no membership
    """
    group = lock_group(group_id)
    membership = caller_membership_for_update(group, user)
    if membership is None:
        raise NotMemberError(f"User is not a member of {group.title}")

    membership.notifications_preferences = NotificationsPreferences.from_dict(preferences).to_dict()
    membership.save(update_fields=['notifications_preferences'])
    return membership


# -- admin operations ---------------------------------------------------

@transaction.atomic
def add_member(
    *,
    group_id: UUID,
    added_by: User,
    user_id: Optional[UUID] = None,
    external_id: str = '',
    status: str = MembershipStatus.MEMBER,
    admin: bool = False,
    gate: Optional[AuthorizationGate] = None,
    directory: Optional[AccountDirectory] = None,
    authman: Optional[AuthmanClient] = None,
) -> GroupMembership:
    """
    Add a member directly (admin only), by account id or by external id.

    External ids without a local account are resolved through the account
    directory where possible; unresolved ids still get a bare membership.

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If added_by is not admin
        MembershipNotFoundError: If user_id names no active account
        AlreadyMemberError: If the account or external id already has a membership
        ValueError: If neither user_id nor external_id is given
    """
    if not user_id and not external_id:
        raise ValueError("Either user_id or external_id is required")

    gate = gate or default_gate()
    group = lock_group(group_id)
    gate.ensure_can_modify(group, group.get_membership(added_by), 'add members')

    if user_id:
        try:
            account = AccountRecord.from_user(User.objects.get(id=user_id, is_active=True))
        except User.DoesNotExist:
            raise MembershipNotFoundError(f"User with ID {user_id} not found")
    else:
        directory = directory or build_account_directory(gate.config)
        account = directory.resolve_by_external_id(external_id) or AccountRecord(external_id=external_id)

    duplicate = GroupMembership.objects.filter(group=group)
    if account.user is not None and duplicate.filter(user=account.user).exists():
        raise AlreadyMemberError(f"User already has a membership in {group.title}")
    if account.external_id and duplicate.filter(external_id=account.external_id).exists():
        raise AlreadyMemberError(f"{account.external_id} already has a membership in {group.title}")

    membership = GroupMembership(
        org_id=group.org_id,
        group=group,
        status=MembershipStatus(status),
        admin=admin,
        member_answers=group.empty_member_answers(),
    )
    membership.apply_from_account_if_empty(account)
    try:
        with transaction.atomic():
            membership.save()
    except IntegrityError:
        raise AlreadyMemberError(f"Membership already exists in {group.title}")

    log.info(
        'groups.member_added',
        group_id=str(group.id), membership_id=str(membership.id), added_by=str(added_by.id),
    )

    notify_admins_of_membership_event(group=group, membership=membership, acting_user_id=added_by.id)
    if membership.is_admin_or_member:
        _push_to_authman(group, membership.external_id, add=True, client=authman)

    return membership


@transaction.atomic
def approve_membership(
    *,
    group_id: UUID,
    membership_id: UUID,
    approved_by: User,
    gate: Optional[AuthorizationGate] = None,
    authman: Optional[AuthmanClient] = None,
) -> GroupMembership:
    """
    Approve a pending request (admin only).

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If approved_by is not admin
        MembershipNotFoundError: If the membership doesn't exist in this group
        InvalidMembershipTransitionError: If the membership is not pending
    """
    gate = gate or default_gate()
    group = lock_group(group_id)
    gate.ensure_can_modify(group, group.get_membership(approved_by), 'approve members')

    membership = get_membership_for_update(group, membership_id)
    if membership.role != EffectiveRole.PENDING:
        raise InvalidMembershipTransitionError(f"Cannot approve a membership that is {membership.role}")

    membership.status = MembershipStatus.MEMBER
    membership.save(update_fields=['status'])
    log.info('groups.membership_approved', group_id=str(group.id), membership_id=str(membership.id))

    notify_member_of_decision(group=group, membership=membership, approved=True)
    if group.can_join_automatically:
        _push_to_authman(group, membership.external_id, add=True, client=authman)

    return membership


@transaction.atomic
def reject_membership(
    *,
    group_id: UUID,
    membership_id: UUID,
    rejected_by: User,
    reason: str = '',
    gate: Optional[AuthorizationGate] = None,
) -> GroupMembership:
    """
    Reject a pending request or revoke a member (admin only).

    Admins must be demoted before they can be rejected.

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If rejected_by is not admin
        MembershipNotFoundError: If the membership doesn't exist in this group
        InvalidMembershipTransitionError: If the membership is an admin or already rejected
    """
    gate = gate or default_gate()
    group = lock_group(group_id)
    gate.ensure_can_modify(group, group.get_membership(rejected_by), 'reject members')

    membership = get_membership_for_update(group, membership_id)
    if membership.role not in (EffectiveRole.PENDING, EffectiveRole.MEMBER):
        raise InvalidMembershipTransitionError(f"Cannot reject a membership that is {membership.role}")

    membership.status = MembershipStatus.REJECTED
    membership.reject_reason = reason
    membership.save(update_fields=['status', 'reject_reason'])
    log.info('groups.membership_rejected', group_id=str(group.id), membership_id=str(membership.id))

    notify_member_of_decision(group=group, membership=membership, approved=False)
    return membership


@transaction.atomic
def remove_member(
    *,
    group_id: UUID,
    membership_id: UUID,
    removed_by: User,
    gate: Optional[AuthorizationGate] = None,
    authman: Optional[AuthmanClient] = None,
) -> None:
    """
    Remove a membership from a group (admin only).

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If removed_by is not admin
        MembershipNotFoundError: If the membership doesn't exist in this group
        LastAdminError: If it is the group's only admin
    """
    gate = gate or default_gate()
    group = lock_group(group_id)
    gate.ensure_can_modify(group, group.get_membership(removed_by), 'remove members')

    membership = get_membership_for_update(group, membership_id)
    ensure_other_admin(group, membership)

    external_id = membership.external_id
    membership.delete()
    log.info('groups.member_removed', group_id=str(group.id), membership_id=str(membership_id))

    if group.can_join_automatically:
        _push_to_authman(group, external_id, add=False, client=authman)


@transaction.atomic
def mark_attended(
    *,
    group_id: UUID,
    membership_id: UUID,
    marked_by: User,
    date_attended=None,
    gate: Optional[AuthorizationGate] = None,
) -> GroupMembership:
    """
    Record when a member attended (admin only).

    Only the first attendance is kept; the status is not changed.

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If marked_by is not admin
        MembershipNotFoundError: If the membership doesn't exist in this group
    """
    gate = gate or default_gate()
    group = lock_group(group_id)
    gate.ensure_can_modify(group, group.get_membership(marked_by), 'mark attendance')

    membership = get_membership_for_update(group, membership_id)
    if membership.date_attended is None:
        membership.date_attended = date_attended or timezone.now()
        membership.save(update_fields=['date_attended'])
    return membership


def get_group_members(
    *,
    group_id: UUID,
    user: Optional[User],
    statuses: Optional[List[str]] = None,
    gate: Optional[AuthorizationGate] = None,
) -> List[MemberView]:
    """
    Members of a group as the caller may see them.

    Admins see every membership unredacted. Other viewers see only members
    and admins, redacted by the group's member info preferences.

    Raises:
        GroupNotFoundError: If group doesn't exist or the caller cannot view it
        InsufficientPermissionsError: If the group hides its member list
    """
    gate = gate or default_gate()
    try:
        group = Group.objects.get(id=group_id)
    except Group.DoesNotExist:
        raise GroupNotFoundError(f"Group with ID {group_id} not found")

    caller = group.get_membership(user)
    gate.ensure_can_view(group, caller)

    viewer_is_admin = gate.can_modify(group, caller)
    settings = group.group_settings
    if not viewer_is_admin and not settings.member_info_preferences.allow_member_info:
        raise InsufficientPermissionsError("Only group admins can view the member list")

    memberships = group.memberships.select_related('user').order_by('-admin', 'date_created')
    if not viewer_is_admin:
        memberships = memberships.filter(status=MembershipStatus.MEMBER)
    if statuses:
        memberships = [m for m in memberships if m.role in statuses]

    return redact_many(memberships, settings, viewer_is_admin)
