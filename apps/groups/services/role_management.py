"""
Role management service.

Handles promotion and demotion of members with concurrency protection.
"""

from typing import Optional
from uuid import UUID

import structlog
from django.db import transaction

from apps.accounts.models import User
from apps.groups.domain import EffectiveRole
from apps.groups.models import GroupMembership

from .authorization import AuthorizationGate
from .exceptions import InvalidMembershipTransitionError
from .group_management import default_gate, lock_group
from .membership_management import ensure_other_admin, get_membership_for_update

log = structlog.get_logger()

ASSIGNABLE_ROLES = (EffectiveRole.ADMIN, EffectiveRole.MEMBER)


@transaction.atomic
def update_member_role(
    *,
    group_id: UUID,
    membership_id: UUID,
    new_role: str,
    updated_by: User,
    gate: Optional[AuthorizationGate] = None,
) -> GroupMembership:
    """
    Promote a member to admin or demote an admin to member (admin only).

    Pending and rejected memberships must be approved first.

    Raises:
        GroupNotFoundError: If group doesn't exist
        InsufficientPermissionsError: If updated_by is not admin
        MembershipNotFoundError: If the membership doesn't exist in this group
        InvalidMembershipTransitionError: If the membership is pending or rejected
        LastAdminError: If demoting the group's only admin
        ValueError: If new_role is invalid
    """
    if new_role not in ASSIGNABLE_ROLES:
        raise ValueError(f"Invalid role. Must be one of: {[role.value for role in ASSIGNABLE_ROLES]}")

    gate = gate or default_gate()
    group = lock_group(group_id)
    gate.ensure_can_modify(group, group.get_membership(updated_by), 'update member roles')

    membership = get_membership_for_update(group, membership_id)
    if not membership.is_admin_or_member:
        raise InvalidMembershipTransitionError(
            f"Cannot change the role of a membership that is {membership.role}"
        )

    if new_role == EffectiveRole.MEMBER:
        ensure_other_admin(group, membership)

    membership.admin = new_role == EffectiveRole.ADMIN
    membership.save(update_fields=['admin'])

    log.info(
        'groups.member_role_updated',
        group_id=str(group.id), membership_id=str(membership.id), role=membership.role,
    )
    return membership
