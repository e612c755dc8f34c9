from rest_framework import serializers
from .domain import EffectiveRole, GroupPrivacy, GroupSettings, MembershipStatus, NotificationsPreferences
from .models import Group


class GroupSerializer(serializers.ModelSerializer):
    """Full view of a group for callers who may see its content."""

    settings = serializers.SerializerMethodField()
    member_count = serializers.SerializerMethodField()
    current_member_role = serializers.SerializerMethodField()

    class Meta:
        model = Group
        fields = [
            'id',
            'org_id',
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
            'member_count',
            'current_member_role',
            'date_created',
            'date_updated',
        ]
        read_only_fields = fields

    def get_settings(self, obj):
        return obj.group_settings.to_dict()

    def get_member_count(self, obj):
        """Admins and members; pending and rejected records are not counted."""
        return obj.memberships.filter(status=MembershipStatus.MEMBER).count()

    def get_current_member_role(self, obj):
        request = self.context.get('request')
        membership = obj.get_membership(request.user) if request else None
        return membership.role if membership else None


class GroupPartialSerializer(serializers.ModelSerializer):
    """What a non-member sees of a group they could join."""

    class Meta:
        model = Group
        fields = [
            'id',
            'title',
            'description',
            'category',
            'privacy',
            'can_join_automatically',
            'research_group',
            'membership_questions',
        ]
        read_only_fields = fields


class GroupListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for list views."""

    class Meta:
        model = Group
        fields = [
            'id',
            'title',
            'category',
            'privacy',
            'can_join_automatically',
            'authman_enabled',
            'research_group',
            'date_created',
        ]
        read_only_fields = fields


class GroupWriteSerializer(serializers.Serializer):
    """Input for creating and updating groups."""

    title = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True)
    category = serializers.CharField(required=False, allow_blank=True, max_length=100)
    privacy = serializers.ChoiceField(choices=GroupPrivacy.choices, required=False)
    hidden_for_search = serializers.BooleanField(required=False)
    can_join_automatically = serializers.BooleanField(required=False)
    block_new_membership_requests = serializers.BooleanField(required=False)
    authman_enabled = serializers.BooleanField(required=False)
    authman_group = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=500)
    settings = serializers.JSONField(required=False, allow_null=True)
    only_admins_can_create_polls = serializers.BooleanField(required=False)
    research_group = serializers.BooleanField(required=False)
    research_open = serializers.BooleanField(required=False)
    attendance_group = serializers.BooleanField(required=False)
    membership_questions = serializers.ListField(
        child=serializers.CharField(max_length=500),
        required=False,
    )

    def validate_settings(self, value):
        if value is not None and not isinstance(value, dict):
            raise serializers.ValidationError('Settings must be an object')
        return GroupSettings.from_dict(value).to_dict() if value is not None else None

    def validate(self, attrs):
        authman_enabled = attrs.get('authman_enabled')
        if authman_enabled and not attrs.get('authman_group'):
            if not (self.instance and self.instance.authman_group):
                raise serializers.ValidationError({'authman_group': 'Required for Authman-managed groups'})
        return attrs


class MemberViewSerializer(serializers.Serializer):
    """Serializes the (possibly redacted) member projection."""

    id = serializers.CharField()
    user_id = serializers.CharField(allow_null=True)
    external_id = serializers.CharField()
    net_id = serializers.CharField()
    email = serializers.CharField()
    name = serializers.CharField()
    photo_url = serializers.CharField()
    role = serializers.CharField()
    reject_reason = serializers.CharField()
    member_answers = serializers.ListField()
    date_created = serializers.DateTimeField(allow_null=True)
    date_updated = serializers.DateTimeField(allow_null=True)
    date_attended = serializers.DateTimeField(allow_null=True)


class MemberAnswerSerializer(serializers.Serializer):
    question = serializers.CharField(allow_blank=True)
    answer = serializers.CharField(allow_blank=True)


class JoinGroupSerializer(serializers.Serializer):
    member_answers = MemberAnswerSerializer(many=True, required=False)
    notifications_preferences = serializers.DictField(child=serializers.BooleanField(), required=False)


class AddMemberSerializer(serializers.Serializer):
    user_id = serializers.UUIDField(required=False)
    external_id = serializers.CharField(required=False, allow_blank=True, max_length=64)
    status = serializers.ChoiceField(choices=MembershipStatus.choices, default=MembershipStatus.MEMBER)
    admin = serializers.BooleanField(default=False)

    def validate(self, attrs):
        if not attrs.get('user_id') and not attrs.get('external_id'):
            raise serializers.ValidationError('Either user_id or external_id is required')
        return attrs


class MembershipActionSerializer(serializers.Serializer):
    membership_id = serializers.UUIDField()


class RejectMembershipSerializer(MembershipActionSerializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class UpdateMemberRoleSerializer(MembershipActionSerializer):
    role = serializers.ChoiceField(choices=[EffectiveRole.ADMIN, EffectiveRole.MEMBER])


class MarkAttendedSerializer(MembershipActionSerializer):
    date_attended = serializers.DateTimeField(required=False)


class NotificationsPreferencesSerializer(serializers.Serializer):
    override_preferences = serializers.BooleanField(default=False)
    all_mute = serializers.BooleanField(default=False)
    invitations_mute = serializers.BooleanField(default=False)
    posts_mute = serializers.BooleanField(default=False)
    events_mute = serializers.BooleanField(default=False)
    polls_mute = serializers.BooleanField(default=False)

    def to_representation(self, instance):
        if isinstance(instance, NotificationsPreferences):
            instance = instance.to_dict()
        return super().to_representation(instance)


class SyncFailureSerializer(serializers.Serializer):
    external_id = serializers.CharField()
    operation = serializers.CharField()
    error = serializers.CharField()


class SyncReportSerializer(serializers.Serializer):
    group_id = serializers.CharField()
    sync_id = serializers.IntegerField()
    created = serializers.ListField(child=serializers.CharField())
    updated = serializers.ListField(child=serializers.CharField())
    removed = serializers.ListField(child=serializers.CharField())
    failures = SyncFailureSerializer(many=True)
    timed_out = serializers.BooleanField()
    summary = serializers.SerializerMethodField()

    def get_summary(self, obj):
        return obj.summary()
