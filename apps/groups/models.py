# ==========================================
# apps/groups/models.py
# ==========================================

from django.db import models
from django.db.models import Q
from django.db.models.functions import Lower
import uuid

from apps.groups.domain import (
    EffectiveRole,
    GroupPrivacy,
    GroupSettings,
    MembershipStatus,
    NotificationsPreferences,
)


class Group(models.Model):
    """A group with optional Authman-managed membership."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    org_id = models.CharField(max_length=64, db_index=True)
    app_id = models.CharField(max_length=64, blank=True)
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=100, blank=True)

    # Visibility
    privacy = models.CharField(max_length=10, choices=GroupPrivacy.choices, default=GroupPrivacy.PUBLIC)
    hidden_for_search = models.BooleanField(default=False)
    can_join_automatically = models.BooleanField(default=False)
    block_new_membership_requests = models.BooleanField(default=False)

    # Managed sync
    authman_enabled = models.BooleanField(default=False)
    authman_group = models.CharField(max_length=500, blank=True, null=True)
    last_sync_id = models.PositiveIntegerField(default=0)
    sync_start_time = models.DateTimeField(null=True, blank=True)
    sync_end_time = models.DateTimeField(null=True, blank=True)

    # Policy
    settings = models.JSONField(null=True, blank=True)
    only_admins_can_create_polls = models.BooleanField(default=False)
    research_group = models.BooleanField(default=False)
    research_open = models.BooleanField(default=False)
    attendance_group = models.BooleanField(default=False)
    membership_questions = models.JSONField(default=list, blank=True)

    date_created = models.DateTimeField(auto_now_add=True)
    date_updated = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'groups'
        constraints = [
            models.UniqueConstraint(
                Lower('title'), 'org_id',
                name='unique_group_title_per_org',
            ),
        ]
        indexes = [
            models.Index(fields=['org_id', 'authman_enabled']),
            models.Index(fields=['org_id', 'privacy', 'hidden_for_search']),
        ]
        ordering = ['-date_created']

    def __str__(self):
        return self.title

    @property
    def is_private(self):
        return self.privacy == GroupPrivacy.PRIVATE

    @property
    def group_settings(self) -> GroupSettings:
        return GroupSettings.from_dict(self.settings)

    @property
    def kind_label(self):
        return 'Research Project' if self.research_group else 'Group'

    def is_authman_sync_eligible(self):
        return self.authman_enabled and bool(self.authman_group)

    def empty_member_answers(self):
        return [{'question': question, 'answer': ''} for question in self.membership_questions or []]

    def get_membership(self, user):
        """Return the user's membership or None (anonymous users have none)."""
        if user is None or not getattr(user, 'is_authenticated', False):
            return None
        match = Q(user=user)
        if user.external_id:
            # Roster-synced records may not be linked to the account yet
            match |= Q(user__isnull=True, external_id=user.external_id)
        return self.memberships.filter(match).first()


class GroupMembership(models.Model):
    """A user's (or an external identity's) membership in a group."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    org_id = models.CharField(max_length=64, db_index=True)
    group = models.ForeignKey(Group, on_delete=models.CASCADE, related_name='memberships')
    user = models.ForeignKey(
        'accounts.User',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='group_memberships',
    )

    # Identity snapshot, refreshed only where blank
    external_id = models.CharField(max_length=64, blank=True, db_index=True)
    net_id = models.CharField(max_length=64, blank=True)
    email = models.EmailField(blank=True)
    name = models.CharField(max_length=200, blank=True)
    photo_url = models.URLField(blank=True)

    status = models.CharField(max_length=10, choices=MembershipStatus.choices, default=MembershipStatus.PENDING)
    admin = models.BooleanField(default=False)
    reject_reason = models.TextField(blank=True)
    member_answers = models.JSONField(default=list, blank=True)
    sync_id = models.PositiveIntegerField(null=True, blank=True)
    notifications_preferences = models.JSONField(default=dict, blank=True)

    date_created = models.DateTimeField(auto_now_add=True)
    date_updated = models.DateTimeField(auto_now=True)
    date_attended = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'group_memberships'
        constraints = [
            models.UniqueConstraint(
                fields=['group', 'user'],
                condition=Q(user__isnull=False),
                name='unique_membership_per_user',
            ),
            models.UniqueConstraint(
                fields=['group', 'external_id'],
                condition=~Q(external_id=''),
                name='unique_membership_per_external_id',
            ),
        ]
        indexes = [
            models.Index(fields=['group', 'status', 'admin']),
            models.Index(fields=['group', 'sync_id']),
        ]
        ordering = ['date_created']

    def __str__(self):
        return f"{self.display_name()} in {self.group.title} ({self.role})"

    def save(self, *args, **kwargs):
        # An admin is always a full member; a reason only exists for rejections.
        if self.admin:
            self.status = MembershipStatus.MEMBER
        if self.status != MembershipStatus.REJECTED:
            self.reject_reason = ''
        update_fields = kwargs.get('update_fields')
        if update_fields is not None:
            kwargs['update_fields'] = set(update_fields) | {'status', 'reject_reason', 'date_updated'}
        super().save(*args, **kwargs)

    @property
    def role(self) -> EffectiveRole:
        if self.admin:
            return EffectiveRole.ADMIN
        return EffectiveRole(self.status)

    @property
    def is_admin(self):
        return self.role == EffectiveRole.ADMIN

    @property
    def is_admin_or_member(self):
        return self.role in (EffectiveRole.ADMIN, EffectiveRole.MEMBER)

    @property
    def preferences(self) -> NotificationsPreferences:
        return NotificationsPreferences.from_dict(self.notifications_preferences)

    def display_name(self):
        return self.name or self.email or self.external_id

    def apply_from_account_if_empty(self, account):
        """
        Copy identity fields from an account record, only where ours are blank.

        Populated fields are never overwritten.
        """
        if self.user_id is None and account.user is not None:
            self.user = account.user

        for attr in ('external_id', 'net_id', 'email', 'name', 'photo_url'):
            value = getattr(account, attr) or ''
            if not getattr(self, attr) and value:
                setattr(self, attr, value)


class SyncTimes(models.Model):
    """Start and end of the latest whole run of a sync job, per organization."""

    org_id = models.CharField(max_length=64)
    key = models.CharField(max_length=64)
    start_time = models.DateTimeField(null=True, blank=True)
    end_time = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'group_sync_times'
        verbose_name_plural = 'sync times'
        constraints = [
            models.UniqueConstraint(fields=['org_id', 'key'], name='unique_sync_times_per_org_key'),
        ]

    def __str__(self):
        return f"{self.key} ({self.org_id})"

    @property
    def in_progress(self):
        return self.start_time is not None and self.end_time is None
