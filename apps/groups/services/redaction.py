"""
Group settings evaluator.

Produces the member-facing projection of a membership. The projection is a
separate frozen value, so redaction never touches the stored record.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, List, Optional

from apps.groups.domain import EffectiveRole, GroupSettings
from apps.groups.models import GroupMembership


@dataclass(frozen=True)
class MemberView:
    id: str
    group_id: str
    user_id: Optional[str]
    external_id: str
    net_id: str
    email: str
    name: str
    photo_url: str
    role: EffectiveRole
    reject_reason: str
    member_answers: list
    date_created: Optional[datetime]
    date_updated: Optional[datetime]
    date_attended: Optional[datetime]

    @classmethod
    def from_membership(cls, membership: GroupMembership) -> 'MemberView':
        return cls(
            id=str(membership.id),
            group_id=str(membership.group_id),
            user_id=str(membership.user_id) if membership.user_id else None,
            external_id=membership.external_id,
            net_id=membership.net_id,
            email=membership.email,
            name=membership.name,
            photo_url=membership.photo_url,
            role=membership.role,
            reject_reason=membership.reject_reason,
            member_answers=list(membership.member_answers or []),
            date_created=membership.date_created,
            date_updated=membership.date_updated,
            date_attended=membership.date_attended,
        )


def redact(
    membership: GroupMembership,
    settings: Optional[GroupSettings],
    viewer_is_admin: bool,
) -> MemberView:
    """
    Project ``membership`` for a viewer.

    Admins see the record unmodified. Everyone else gets name, net id and
    email gated by the group's member info preferences, and never sees the
    external id.
    """
    view = MemberView.from_membership(membership)
    if viewer_is_admin:
        return view

    preferences = (settings or GroupSettings.default()).member_info_preferences
    return replace(
        view,
        external_id='',
        name=view.name if preferences.can_view_member_name else '',
        net_id=view.net_id if preferences.can_view_member_net_id else '',
        email=view.email if preferences.can_view_member_email else '',
    )


def redact_many(
    memberships: Iterable[GroupMembership],
    settings: Optional[GroupSettings],
    viewer_is_admin: bool,
) -> List[MemberView]:
    return [redact(membership, settings, viewer_is_admin) for membership in memberships]
