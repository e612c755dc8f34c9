"""
Group management service.

Handles group CRUD operations with proper transaction safety.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from django.db import transaction, IntegrityError
from django.db.models import Q, QuerySet

from apps.accounts.models import User
from apps.accounts.services.account_directory import AccountRecord
from apps.groups.conf import GroupsConfig
from apps.groups.domain import GroupPrivacy, GroupSettings, MembershipStatus
from apps.groups.models import Group, GroupMembership

from .authorization import AuthorizationGate, SpecialOperation
from .exceptions import (
    DuplicateGroupTitleError,
    GroupNotFoundError,
)

log = structlog.get_logger()

# Fields a group admin may set on create or update.
EDITABLE_FIELDS = (
    'title',
    'description',
    'category',
    'privacy',
    'hidden_for_search',
    'can_join_automatically',
    'block_new_membership_requests',
    'authman_enabled',
    'authman_group',
    'settings',
    'only_admins_can_create_polls',
    'research_group',
    'research_open',
    'attendance_group',
    'membership_questions',
)


@dataclass(frozen=True)
class GroupAccess:
    """A group together with how much of it the caller may see."""

    group: Group
    membership: Optional[GroupMembership]
    full_view: bool


def default_gate() -> AuthorizationGate:
    return AuthorizationGate(GroupsConfig.from_settings())


def lock_group(group_id: UUID) -> Group:
    """Fetch a group with a row lock. Must run inside a transaction."""
    try:
        return Group.objects.select_for_update().get(id=group_id)
    except Group.DoesNotExist:
        raise GroupNotFoundError(f"Group with ID {group_id} not found")


def _clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown group fields: {sorted(unknown)}")

    cleaned = dict(fields)
    if cleaned.get('settings') is not None:
        # Normalize through the typed settings so unknown keys are dropped.
        cleaned['settings'] = GroupSettings.from_dict(cleaned['settings']).to_dict()
    if 'authman_group' in cleaned and not cleaned['authman_group']:
        cleaned['authman_group'] = None
    return cleaned


def _ensure_unique_title(org_id: str, title: str, exclude_id: Optional[UUID] = None) -> None:
    duplicates = Group.objects.filter(org_id=org_id, title__iexact=title)
    if exclude_id is not None:
        duplicates = duplicates.exclude(id=exclude_id)
    if duplicates.exists():
        raise DuplicateGroupTitleError(f"A group titled '{title}' already exists")


@transaction.atomic
def create_group(
    *,
    creator: User,
    title: str,
    org_id: Optional[str] = None,
    app_id: Optional[str] = None,
    gate: Optional[AuthorizationGate] = None,
    **fields,
) -> Group:
    """
    Create a group and make the creator its first admin.

    Managed (Authman) and research groups need the matching account grant.

    Raises:
        MissingGrantError: If the creator lacks a required grant
        DuplicateGroupTitleError: If the title is taken in the organization
        ValueError: If an unknown field is passed
    """
    gate = gate or default_gate()
    fields = _clean_fields(fields)
    org_id = org_id or gate.config.default_org_id
    app_id = app_id or gate.config.default_app_id

    if fields.get('authman_enabled'):
        gate.check_special_permission(SpecialOperation.CREATE_MANAGED_GROUP, creator)
    if fields.get('research_group'):
        gate.check_special_permission(SpecialOperation.CREATE_RESEARCH_GROUP, creator)

    _ensure_unique_title(org_id, title)

    try:
        with transaction.atomic():
            group = Group.objects.create(org_id=org_id, app_id=app_id, title=title, **fields)
    except IntegrityError:
        # Lost a race with a concurrent create of the same title
        raise DuplicateGroupTitleError(f"A group titled '{title}' already exists")

    membership = GroupMembership(
        org_id=org_id,
        group=group,
        user=creator,
        status=MembershipStatus.MEMBER,
        admin=True,
    )
    membership.apply_from_account_if_empty(AccountRecord.from_user(creator))
    membership.save()

    log.info('groups.group_created', group_id=str(group.id), creator_id=str(creator.id))
    return group


def get_group_by_id(*, group_id: UUID) -> Group:
    """
    Get a group by ID, without any visibility check.

    Raises:
        GroupNotFoundError: If group doesn't exist
    """
    try:
        return Group.objects.get(id=group_id)
    except Group.DoesNotExist:
        raise GroupNotFoundError(f"Group with ID {group_id} not found")


def get_visible_group(
    *,
    group_id: UUID,
    user: Optional[User],
    gate: Optional[AuthorizationGate] = None,
) -> GroupAccess:
    """
    Get a group as the caller is allowed to see it.

    Callers who may neither view nor join the group get GroupNotFoundError,
    the same as for a missing group.
    """
    gate = gate or default_gate()
    group = get_group_by_id(group_id=group_id)
    membership = group.get_membership(user)

    if gate.can_view(group, membership):
        return GroupAccess(group=group, membership=membership, full_view=True)

    is_authenticated = bool(user is not None and user.is_authenticated)
    if gate.can_view_partial(group, membership, is_authenticated=is_authenticated):
        return GroupAccess(group=group, membership=membership, full_view=False)

    raise GroupNotFoundError(f"Group with ID {group_id} not found")


def list_groups(
    *,
    user: Optional[User],
    org_id: str,
    title: Optional[str] = None,
    category: Optional[str] = None,
) -> QuerySet[Group]:
    """
    Groups the caller can see: every public, searchable group plus the
    groups the caller is a member or admin of.
    """
    visible = Q(privacy=GroupPrivacy.PUBLIC, hidden_for_search=False)
    if user is not None and user.is_authenticated:
        own = Q(user=user)
        if user.external_id:
            # Roster-synced records may not be linked to the account yet
            own |= Q(user__isnull=True, external_id=user.external_id)
        member_group_ids = (
            GroupMembership.objects
            .filter(own)
            .filter(Q(admin=True) | Q(status=MembershipStatus.MEMBER))
            .values('group_id')
        )
        visible |= Q(id__in=member_group_ids)

    groups = Group.objects.filter(org_id=org_id).filter(visible)
    if title:
        groups = groups.filter(title__icontains=title)
    if category:
        groups = groups.filter(category=category)
    return groups.order_by('title')


@transaction.atomic
def update_group(
    *,
    group_id: UUID,
    user: User,
    gate: Optional[AuthorizationGate] = None,
    **fields,
) -> Group:
    """
    Update group details (admin only).

    Touching a managed or research group, or turning a group into one,
    also needs the matching account grant.

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If user is not admin
        MissingGrantError: If a required grant is missing
        DuplicateGroupTitleError: If the new title is taken
    """
    gate = gate or default_gate()
    fields = _clean_fields(fields)
    group = lock_group(group_id)

    gate.ensure_can_modify(group, group.get_membership(user), 'update the group')
    for operation in gate.special_operations_for_update(
        group,
        authman_enabled=fields.get('authman_enabled'),
        research_group=fields.get('research_group'),
    ):
        gate.check_special_permission(operation, user)

    if 'title' in fields and fields['title'].lower() != group.title.lower():
        _ensure_unique_title(group.org_id, fields['title'], exclude_id=group.id)

    for name, value in fields.items():
        setattr(group, name, value)
    group.save(update_fields=list(fields) + ['date_updated'])

    log.info('groups.group_updated', group_id=str(group.id), fields=sorted(fields))
    return group


@transaction.atomic
def delete_group(*, group_id: UUID, user: User, gate: Optional[AuthorizationGate] = None) -> None:
    """
    Delete a group (admin only). Memberships are deleted with it.

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If user is not admin
        MissingGrantError: If the group is managed and user lacks the grant
    """
    gate = gate or default_gate()
    group = lock_group(group_id)

    gate.ensure_can_modify(group, group.get_membership(user), 'delete the group')
    if group.authman_enabled:
        gate.check_special_permission(SpecialOperation.DELETE_MANAGED_GROUP, user)

    log.info('groups.group_deleted', group_id=str(group.id), user_id=str(user.id))
    group.delete()
