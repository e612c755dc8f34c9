"""
Typed values shared by the groups models and services.

Group settings and notification preferences are stored as JSON on the
models and parsed into these dataclasses at the data-access boundary.
"""

from dataclasses import asdict, dataclass, field, fields

from django.db import models


class GroupPrivacy(models.TextChoices):
    PUBLIC = 'public', 'Public'
    PRIVATE = 'private', 'Private'


class MembershipStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    MEMBER = 'member', 'Member'
    REJECTED = 'rejected', 'Rejected'


class EffectiveRole(models.TextChoices):
    """Single resolved role of a membership."""
    PENDING = 'pending', 'Pending'
    MEMBER = 'member', 'Member'
    ADMIN = 'admin', 'Admin'
    REJECTED = 'rejected', 'Rejected'


class NotificationCategory(models.TextChoices):
    INVITATIONS = 'invitations', 'Invitations'
    POSTS = 'posts', 'Posts'
    EVENTS = 'events', 'Events'
    POLLS = 'polls', 'Polls'


def _from_dict(cls, data):
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{key: bool(value) for key, value in data.items() if key in known})


@dataclass(frozen=True)
class NotificationsPreferences:
    """Per-membership override of the account's notification settings."""

    override_preferences: bool = False
    all_mute: bool = False
    invitations_mute: bool = False
    posts_mute: bool = False
    events_mute: bool = False
    polls_mute: bool = False

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)

    def to_dict(self):
        return asdict(self)

    def is_muted(self, category) -> bool:
        if not self.override_preferences:
            return False
        category_mute = getattr(self, f'{NotificationCategory(category).value}_mute')
        return self.all_mute or category_mute


@dataclass(frozen=True)
class MemberInfoPreferences:
    allow_member_info: bool = True
    can_view_member_name: bool = True
    can_view_member_net_id: bool = True
    can_view_member_email: bool = True
    can_view_member_phone: bool = True

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)


@dataclass(frozen=True)
class PostPreferences:
    allow_send_post: bool = True
    can_send_post_to_specific_members: bool = True
    can_send_post_to_admins: bool = True
    can_send_post_to_all: bool = True
    can_send_post_replies: bool = True
    can_send_post_reactions: bool = True

    @classmethod
    def from_dict(cls, data):
        return _from_dict(cls, data)


@dataclass(frozen=True)
class GroupSettings:
    member_info_preferences: MemberInfoPreferences = field(default_factory=MemberInfoPreferences)
    post_preferences: PostPreferences = field(default_factory=PostPreferences)

    @classmethod
    def default(cls):
        return cls()

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls.default()
        return cls(
            member_info_preferences=MemberInfoPreferences.from_dict(
                data.get('member_info_preferences')
            ),
            post_preferences=PostPreferences.from_dict(data.get('post_preferences')),
        )

    def to_dict(self):
        return asdict(self)
