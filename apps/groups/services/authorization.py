"""
Authorization gate for group operations.

Combines group privacy, the caller's effective role and per-group settings
into allow/deny decisions. The ``can_*`` methods are pure predicates; the
``ensure_*`` methods raise the domain exception the views translate.

A caller is described by their membership in the group (``None`` for
non-members and anonymous callers).
"""

from typing import Optional

from django.db import models

from apps.accounts.models import AccountPermission
from apps.groups.conf import GroupsConfig
from apps.groups.domain import EffectiveRole, MembershipStatus
from apps.groups.models import Group, GroupMembership

from .exceptions import (
    AlreadyMemberError,
    GroupNotFoundError,
    InsufficientPermissionsError,
    MembershipRequestsBlockedError,
    MissingGrantError,
)


class SpecialOperation(models.TextChoices):
    CREATE_MANAGED_GROUP = 'create_managed_group'
    UPDATE_MANAGED_GROUP = 'update_managed_group'
    DELETE_MANAGED_GROUP = 'delete_managed_group'
    SYNC_MANAGED_GROUP = 'sync_managed_group'
    CREATE_RESEARCH_GROUP = 'create_research_group'
    UPDATE_RESEARCH_GROUP = 'update_research_group'


REQUIRED_GRANTS = {
    SpecialOperation.CREATE_MANAGED_GROUP: AccountPermission.MANAGED_GROUP_ADMIN,
    SpecialOperation.UPDATE_MANAGED_GROUP: AccountPermission.MANAGED_GROUP_ADMIN,
    SpecialOperation.DELETE_MANAGED_GROUP: AccountPermission.MANAGED_GROUP_ADMIN,
    SpecialOperation.SYNC_MANAGED_GROUP: AccountPermission.MANAGED_GROUP_ADMIN,
    SpecialOperation.CREATE_RESEARCH_GROUP: AccountPermission.RESEARCH_GROUP_ADMIN,
    SpecialOperation.UPDATE_RESEARCH_GROUP: AccountPermission.RESEARCH_GROUP_ADMIN,
}


class PostAudience(models.TextChoices):
    ALL = 'all'
    ADMINS = 'admins'
    SPECIFIC_MEMBERS = 'specific_members'


def _role(membership: Optional[GroupMembership]) -> Optional[EffectiveRole]:
    return membership.role if membership is not None else None


class AuthorizationGate:
    def __init__(self, config: Optional[GroupsConfig] = None):
        self.config = config or GroupsConfig()

    # -- visibility -----------------------------------------------------

    def is_openly_visible(self, group: Group) -> bool:
        return not group.is_private and not group.hidden_for_search

    def can_view(self, group: Group, membership: Optional[GroupMembership]) -> bool:
        """Full view of the group and its member-only content."""
        if self.is_openly_visible(group):
            return True
        return _role(membership) in (EffectiveRole.MEMBER, EffectiveRole.ADMIN)

    def can_view_partial(
        self,
        group: Group,
        membership: Optional[GroupMembership],
        *,
        is_authenticated: bool,
    ) -> bool:
        """
        Enough of the group to request membership.

        Auto-join groups expose their summary to any signed-in caller even
        when private or hidden. Anonymous callers never see gated groups.
        """
        if self.can_view(group, membership):
            return True
        return is_authenticated and group.can_join_automatically

    def ensure_can_view(self, group: Group, membership: Optional[GroupMembership]) -> None:
        # Same error as a missing group, so existence is not leaked.
        if not self.can_view(group, membership):
            raise GroupNotFoundError(f"Group with ID {group.id} not found")

    # -- administration -------------------------------------------------

    def can_modify(self, group: Group, membership: Optional[GroupMembership]) -> bool:
        return _role(membership) == EffectiveRole.ADMIN

    def ensure_can_modify(self, group: Group, membership: Optional[GroupMembership], action='modify the group'):
        """
        Raise unless the caller administers the group.

        Callers who cannot view the group get GroupNotFoundError, the same
        as for a missing group; visible groups get InsufficientPermissionsError.
        """
        self.ensure_can_view(group, membership)
        if not self.can_modify(group, membership):
            raise InsufficientPermissionsError(f"Only group admins can {action}")

    # -- joining --------------------------------------------------------

    def can_request_membership(
        self,
        group: Group,
        membership: Optional[GroupMembership],
        *,
        is_authenticated: bool,
    ) -> bool:
        """Signed-in callers may ask to join any group that is not hidden from them."""
        if not is_authenticated:
            return False
        return not group.hidden_for_search or self.can_view_partial(group, membership, is_authenticated=True)

    def join_status(self, group: Group, existing: Optional[GroupMembership]) -> MembershipStatus:
        """
        Status a new join request starts in.

        Rejected callers may request again; any other existing membership is
        a conflict.
        """
        if existing is not None and existing.role != EffectiveRole.REJECTED:
            raise AlreadyMemberError(f"User already has a membership in {group.title}")
        if group.block_new_membership_requests:
            raise MembershipRequestsBlockedError(f"{group.title} does not accept new membership requests")
        if group.can_join_automatically:
            return MembershipStatus.MEMBER
        return MembershipStatus.PENDING

    # -- account-level grants -------------------------------------------

    def required_grant(self, operation) -> Optional[str]:
        return REQUIRED_GRANTS.get(SpecialOperation(operation))

    def has_special_permission(self, operation, user) -> bool:
        grant = self.required_grant(operation)
        if grant is None:
            return True
        return user is not None and getattr(user, 'is_authenticated', False) and user.has_grant(grant)

    def check_special_permission(self, operation, user) -> None:
        """Raise MissingGrantError if ``user`` lacks the grant for ``operation``."""
        if not self.has_special_permission(operation, user):
            raise MissingGrantError(self.required_grant(operation))

    def special_operations_for_update(self, group: Group, *, authman_enabled=None, research_group=None):
        """Special operations implied by updating ``group`` with the given flags."""
        operations = []
        if group.authman_enabled or authman_enabled:
            operations.append(SpecialOperation.UPDATE_MANAGED_GROUP)
        if group.research_group or research_group:
            operations.append(SpecialOperation.UPDATE_RESEARCH_GROUP)
        return operations

    # -- content --------------------------------------------------------

    def can_create_post(self, group: Group, membership: Optional[GroupMembership]) -> bool:
        role = _role(membership)
        if role == EffectiveRole.ADMIN:
            return True
        return role == EffectiveRole.MEMBER and group.group_settings.post_preferences.allow_send_post

    def can_reply(self, group: Group, membership: Optional[GroupMembership]) -> bool:
        role = _role(membership)
        if role == EffectiveRole.ADMIN:
            return True
        return role == EffectiveRole.MEMBER and group.group_settings.post_preferences.can_send_post_replies

    def can_react(self, group: Group, membership: Optional[GroupMembership]) -> bool:
        role = _role(membership)
        if role == EffectiveRole.ADMIN:
            return True
        return role == EffectiveRole.MEMBER and group.group_settings.post_preferences.can_send_post_reactions

    def can_target(self, group: Group, membership: Optional[GroupMembership], audience) -> bool:
        if not self.can_create_post(group, membership):
            return False
        if _role(membership) == EffectiveRole.ADMIN:
            return True

        preferences = group.group_settings.post_preferences
        return {
            PostAudience.ALL: preferences.can_send_post_to_all,
            PostAudience.ADMINS: preferences.can_send_post_to_admins,
            PostAudience.SPECIFIC_MEMBERS: preferences.can_send_post_to_specific_members,
        }[PostAudience(audience)]

    def can_create_poll(self, group: Group, membership: Optional[GroupMembership]) -> bool:
        role = _role(membership)
        if role == EffectiveRole.ADMIN:
            return True
        return role == EffectiveRole.MEMBER and not group.only_admins_can_create_polls
