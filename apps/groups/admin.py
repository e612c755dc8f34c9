# ==========================================
# apps/groups/admin.py
# ==========================================

from django.contrib import admin
from apps.groups.models import Group, GroupMembership, SyncTimes
from apps.groups.services import GroupsServiceError, build_reconciler


class GroupMembershipInline(admin.TabularInline):
    """Inline admin for group memberships."""
    model = GroupMembership
    extra = 0
    fields = ['user', 'external_id', 'name', 'status', 'admin', 'sync_id', 'date_created']
    readonly_fields = ['sync_id', 'date_created']
    raw_id_fields = ['user']


@admin.register(Group)
class GroupAdmin(admin.ModelAdmin):
    """Admin interface for Groups."""

    list_display = [
        'title',
        'org_id',
        'category',
        'privacy',
        'member_count',
        'authman_enabled',
        'last_sync_id',
        'date_created',
    ]
    list_filter = ['privacy', 'authman_enabled', 'research_group', 'hidden_for_search', 'org_id']
    search_fields = ['title', 'description', 'authman_group']
    readonly_fields = ['last_sync_id', 'sync_start_time', 'sync_end_time', 'date_created', 'date_updated']
    inlines = [GroupMembershipInline]
    date_hierarchy = 'date_created'
    ordering = ['-date_created']

    fieldsets = (
        ('Basic Information', {
            'fields': ('org_id', 'app_id', 'title', 'description', 'category')
        }),
        ('Visibility', {
            'fields': ('privacy', 'hidden_for_search', 'can_join_automatically', 'block_new_membership_requests')
        }),
        ('Policy', {
            'fields': (
                'settings',
                'only_admins_can_create_polls',
                'research_group',
                'research_open',
                'attendance_group',
                'membership_questions',
            )
        }),
        ('Authman', {
            'fields': ('authman_enabled', 'authman_group', 'last_sync_id', 'sync_start_time', 'sync_end_time')
        }),
        ('Metadata', {
            'fields': ('date_created', 'date_updated'),
            'classes': ('collapse',)
        }),
    )

    def member_count(self, obj):
        """Show number of memberships."""
        return obj.memberships.count()
    member_count.short_description = 'Members'

    actions = ['sync_with_authman']

    def sync_with_authman(self, request, queryset):
        """Reconcile selected managed groups with their Authman rosters."""
        reconciler = build_reconciler()
        for group in queryset.filter(authman_enabled=True):
            try:
                report = reconciler.reconcile(group.id)
            except GroupsServiceError as e:
                self.message_user(request, f"{group.title}: {e}", level='error')
            else:
                self.message_user(request, f"{group.title}: {report.summary()}")
    sync_with_authman.short_description = "Sync with Authman"


@admin.register(GroupMembership)
class GroupMembershipAdmin(admin.ModelAdmin):
    """Admin interface for Group Memberships."""

    list_display = ['display_name', 'group', 'status', 'admin', 'external_id', 'sync_id', 'date_created']
    list_filter = ['status', 'admin', 'date_created']
    search_fields = ['user__email', 'name', 'email', 'external_id', 'group__title']
    readonly_fields = ['sync_id', 'date_created', 'date_updated']
    raw_id_fields = ['user', 'group']
    date_hierarchy = 'date_created'
    ordering = ['-date_created']

    def get_queryset(self, request):
        """Optimize query."""
        qs = super().get_queryset(request)
        return qs.select_related('user', 'group')


@admin.register(SyncTimes)
class SyncTimesAdmin(admin.ModelAdmin):
    """Admin interface for whole-run sync times."""

    list_display = ['key', 'org_id', 'start_time', 'end_time', 'in_progress']
    list_filter = ['key']
    ordering = ['key', 'org_id']
