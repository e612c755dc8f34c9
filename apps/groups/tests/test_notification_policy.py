"""
Tests for the membership notification policy and its use of the outbound queue.
"""

import pytest

from apps.accounts.models import User
from apps.groups.domain import NotificationCategory, MembershipStatus
from apps.groups.models import Group, GroupMembership
from apps.groups.services import (
    MembershipEvent,
    Recipient,
    recipients,
    membership_event_message,
    notify_admins_of_membership_event,
    notify_member_of_decision,
)
from apps.groups.services.notification_policy import INVITATIONS_TOPIC, notification_subject
from apps.notifications.models import OutboundNotification

from .conftest import make_membership

MUTED_INVITATIONS = {'override_preferences': True, 'invitations_mute': True}


@pytest.mark.django_db
class TestRecipients:

    def test_only_admins_are_recipients(self, group_with_members, admin_user):
        result = recipients(group_with_members.memberships.all(), NotificationCategory.INVITATIONS)

        assert result == [Recipient(user_id=str(admin_user.id), name='Group Admin', muted=False)]

    def test_acting_user_is_excluded(self, group, admin_user):
        result = recipients(group.memberships.all(), NotificationCategory.INVITATIONS, admin_user.id)

        assert result == []

    def test_muted_admin_is_annotated_not_dropped(self, group, admin_user):
        membership = group.memberships.get(user=admin_user)
        membership.notifications_preferences = MUTED_INVITATIONS
        membership.save()

        result = recipients(group.memberships.all(), NotificationCategory.INVITATIONS)

        assert len(result) == 1
        assert result[0].muted is True
        assert result[0].to_payload() == {'user_id': str(admin_user.id), 'name': 'Group Admin', 'mute': True}

    def test_mute_without_override_is_ignored(self, group, admin_user):
        membership = group.memberships.get(user=admin_user)
        membership.notifications_preferences = {'override_preferences': False, 'all_mute': True}
        membership.save()

        result = recipients(group.memberships.all(), NotificationCategory.INVITATIONS)

        assert result[0].muted is False

    def test_mute_other_category_does_not_apply(self, group, admin_user):
        membership = group.memberships.get(user=admin_user)
        membership.notifications_preferences = {'override_preferences': True, 'posts_mute': True}
        membership.save()

        assert recipients(group.memberships.all(), NotificationCategory.INVITATIONS)[0].muted is False
        assert recipients(group.memberships.all(), NotificationCategory.POSTS)[0].muted is True

    def test_roster_only_admin_has_no_recipient(self, group):
        make_membership(group, admin=True, external_id='650000999', name='Synced Admin')

        result = recipients(group.memberships.all(), NotificationCategory.INVITATIONS)

        assert len(result) == 1


class TestMessages:

    def test_group_messages(self):
        group = Group(title='Chess Club')

        assert notification_subject(group) == 'Group - Chess Club'
        assert membership_event_message(group, 'Jane', MembershipEvent.PENDING_MEMBER) == (
            "New membership request for 'Chess Club' group has been submitted"
        )
        assert membership_event_message(group, 'Jane', MembershipEvent.MEMBER_JOINED) == (
            "Jane joined 'Chess Club' group"
        )

    def test_research_project_messages(self):
        group = Group(title='Sleep Study', research_group=True)

        assert notification_subject(group) == 'Research Project - Sleep Study'
        assert membership_event_message(group, 'Jane', MembershipEvent.MEMBERSHIP_APPROVED) == (
            "Your membership in 'Sleep Study' research project has been approved"
        )
        assert membership_event_message(group, 'Jane', MembershipEvent.MEMBERSHIP_REJECTED, 'Full') == (
            "Your membership in 'Sleep Study' research project has been denied with a reason: Full"
        )


@pytest.mark.django_db
class TestNotifyAdmins:

    def test_pending_request_is_queued_for_admins(self, group, admin_user, other_user):
        membership = make_membership(group, other_user, status=MembershipStatus.PENDING)

        notification = notify_admins_of_membership_event(
            group=group, membership=membership, acting_user_id=other_user.id,
        )

        assert notification.topic == INVITATIONS_TOPIC
        assert notification.subject == 'Group - Chess Club'
        assert notification.body == "New membership request for 'Chess Club' group has been submitted"
        assert notification.recipients == [{'user_id': str(admin_user.id), 'name': 'Group Admin', 'mute': False}]
        assert notification.data == {
            'type': 'group',
            'operation': 'pending_member',
            'entity_type': 'group',
            'entity_id': str(group.id),
            'entity_name': 'Chess Club',
        }
        assert notification.org_id == 'org-1'

    def test_auto_join_announces_join(self, managed_group, other_user):
        membership = make_membership(managed_group, other_user)

        notification = notify_admins_of_membership_event(
            group=managed_group, membership=membership, acting_user_id=other_user.id,
        )

        assert notification.body == "Other User joined 'CS 101 Fall' group"
        assert notification.data['operation'] == 'pending_member'

    def test_nothing_queued_when_only_admin_acts(self, group, admin_user):
        membership = group.memberships.get(user=admin_user)

        result = notify_admins_of_membership_event(group=group, membership=membership, acting_user_id=admin_user.id)

        assert result is None
        assert OutboundNotification.objects.count() == 0


@pytest.mark.django_db
class TestNotifyMember:

    def test_rejection_reaches_member_with_reason(self, group, other_user):
        membership = make_membership(group, other_user, status=MembershipStatus.REJECTED, reject_reason='Full')

        notification = notify_member_of_decision(group=group, membership=membership, approved=False)

        assert notification.recipients == [{'user_id': str(other_user.id), 'name': 'Other User', 'mute': False}]
        assert notification.body == "Your membership in 'Chess Club' group has been denied with a reason: Full"
        assert notification.data['operation'] == 'membership_reject'

    def test_decision_for_unlinked_record_is_skipped(self, group):
        membership = make_membership(group, external_id='650000999')

        assert notify_member_of_decision(group=group, membership=membership, approved=True) is None

    def test_muted_member_still_queued(self, group, other_user):
        membership = make_membership(group, other_user, notifications_preferences=MUTED_INVITATIONS)

        notification = notify_member_of_decision(group=group, membership=membership, approved=True)

        assert notification.recipients[0]['mute'] is True
