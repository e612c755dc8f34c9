"""
Notification dispatch policy for membership events.

Decides who hears about a membership change and whether each recipient has
muted that kind of notification. Muted recipients are annotated, never
dropped: suppressing delivery is the Notifications service's call.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from django.db import models

from apps.groups.domain import EffectiveRole, NotificationCategory
from apps.groups.models import Group, GroupMembership
from apps.notifications.services import enqueue_notification

INVITATIONS_TOPIC = 'group.invitations'


class MembershipEvent(models.TextChoices):
    PENDING_MEMBER = 'pending_member'
    MEMBER_JOINED = 'member_joined'
    MEMBERSHIP_APPROVED = 'membership_approve'
    MEMBERSHIP_REJECTED = 'membership_reject'


@dataclass(frozen=True)
class Recipient:
    user_id: str
    name: str
    muted: bool

    def to_payload(self):
        return {'user_id': self.user_id, 'name': self.name, 'mute': self.muted}


def recipient_for(membership: GroupMembership, category) -> Optional[Recipient]:
    # Roster-only members without a local account have nobody to notify.
    if membership.user_id is None:
        return None
    return Recipient(
        user_id=str(membership.user_id),
        name=membership.display_name(),
        muted=membership.preferences.is_muted(category),
    )


def recipients(
    memberships: Iterable[GroupMembership],
    category,
    exclude_user_id=None,
) -> List[Recipient]:
    """
    Admins of the group who should hear about a membership change.

    ``exclude_user_id`` (the acting user) never notifies themselves.
    """
    exclude = str(exclude_user_id) if exclude_user_id else None
    result = []
    for membership in memberships:
        if membership.role != EffectiveRole.ADMIN:
            continue
        recipient = recipient_for(membership, category)
        if recipient is None or recipient.user_id == exclude:
            continue
        result.append(recipient)
    return result


def notification_subject(group: Group) -> str:
    return f"{group.kind_label} - {group.title}"


def membership_event_message(group: Group, member_name: str, event, reject_reason: str = '') -> str:
    kind = group.kind_label.lower()
    event = MembershipEvent(event)
    if event == MembershipEvent.MEMBER_JOINED:
        return f"{member_name} joined '{group.title}' {kind}"
    if event == MembershipEvent.MEMBERSHIP_APPROVED:
        return f"Your membership in '{group.title}' {kind} has been approved"
    if event == MembershipEvent.MEMBERSHIP_REJECTED:
        return f"Your membership in '{group.title}' {kind} has been denied with a reason: {reject_reason}"
    return f"New membership request for '{group.title}' {kind} has been submitted"


def notification_data(group: Group, event) -> dict:
    return {
        'type': 'group',
        'operation': MembershipEvent(event).value,
        'entity_type': 'group',
        'entity_id': str(group.id),
        'entity_name': group.title,
    }


def notify_admins_of_membership_event(
    *,
    group: Group,
    membership: GroupMembership,
    acting_user_id=None,
):
    """
    Queue the "request submitted" or "joined" message for the group's admins.

    Auto-join groups announce a join; approval-gated groups announce a
    pending request.
    """
    event = (
        MembershipEvent.MEMBER_JOINED
        if group.can_join_automatically
        else MembershipEvent.PENDING_MEMBER
    )
    admins = group.memberships.filter(admin=True).select_related('user')
    targets = recipients(admins, NotificationCategory.INVITATIONS, acting_user_id)

    return enqueue_notification(
        recipients=[recipient.to_payload() for recipient in targets],
        topic=INVITATIONS_TOPIC,
        subject=notification_subject(group),
        body=membership_event_message(group, membership.display_name(), event),
        # The data payload keeps the original operation name for clients.
        data=notification_data(group, MembershipEvent.PENDING_MEMBER),
        org_id=group.org_id,
        app_id=group.app_id,
    )


def notify_member_of_decision(*, group: Group, membership: GroupMembership, approved: bool):
    """Queue the approval or rejection message for the member themselves."""
    recipient = recipient_for(membership, NotificationCategory.INVITATIONS)
    if recipient is None:
        return None

    event = MembershipEvent.MEMBERSHIP_APPROVED if approved else MembershipEvent.MEMBERSHIP_REJECTED
    return enqueue_notification(
        recipients=[recipient.to_payload()],
        topic=INVITATIONS_TOPIC,
        subject=notification_subject(group),
        body=membership_event_message(
            group, membership.display_name(), event, reject_reason=membership.reject_reason,
        ),
        data=notification_data(group, event),
        org_id=group.org_id,
        app_id=group.app_id,
    )
