# ==========================================
# apps/accounts/admin.py
# ==========================================

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.html import format_html
from .models import User, AccountPermission


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Admin for accounts.

    Grants (``managed_group_admin``, ``research_group_admin``) are edited as a
    JSON list and can be toggled in bulk with the actions below.
    """

    list_display = [
        'email',
        'display_name',
        'external_id',
        'net_id',
        'grants_badge',
        'is_active',
        'created_at',
        'last_login',
    ]

    list_filter = [
        'is_active',
        'is_staff',
        'is_superuser',
        'created_at',
    ]

    search_fields = [
        'email',
        'display_name',
        'external_id',
        'net_id',
    ]

    ordering = ['-created_at']

    # Remove username field references from BaseUserAdmin
    fieldsets = (
        ('Basic Information', {
            'fields': ('email', 'display_name', 'password')
        }),
        ('Institutional Identity', {
            'fields': ('external_id', 'net_id', 'photo_url'),
        }),
        ('Permissions', {
            'fields': ('grants', 'is_active', 'is_staff', 'is_superuser'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'last_login'),
            'classes': ('collapse',),
        }),
    )

    add_fieldsets = (
        ('Create User', {
            'classes': ('wide',),
            'fields': ('email', 'display_name', 'external_id', 'password1', 'password2'),
        }),
    )

    readonly_fields = ['created_at', 'last_login']
    filter_horizontal = []

    def grants_badge(self, obj):
        if not obj.grants:
            return '-'
        return format_html(
            '<span style="background: #A47449; color: white; padding: 3px 8px; '
            'border-radius: 10px; font-size: 11px;">{}</span>',
            ', '.join(obj.grants)
        )
    grants_badge.short_description = 'Grants'

    actions = [
        'grant_managed_group_admin',
        'revoke_managed_group_admin',
        'grant_research_group_admin',
        'revoke_research_group_admin',
    ]

    def _set_grant(self, request, queryset, grant, enabled):
        count = 0
        for user in queryset:
            grants = [g for g in (user.grants or []) if g != grant]
            if enabled:
                grants.append(grant)
            if grants != user.grants:
                user.grants = grants
                user.save(update_fields=['grants'])
                count += 1
        verb = 'Granted' if enabled else 'Revoked'
        self.message_user(request, f'{verb} {grant} for {count} user(s).')

    @admin.action(description='Grant managed group admin')
    def grant_managed_group_admin(self, request, queryset):
        self._set_grant(request, queryset, AccountPermission.MANAGED_GROUP_ADMIN.value, True)

    @admin.action(description='Revoke managed group admin')
    def revoke_managed_group_admin(self, request, queryset):
        self._set_grant(request, queryset, AccountPermission.MANAGED_GROUP_ADMIN.value, False)

    @admin.action(description='Grant research group admin')
    def grant_research_group_admin(self, request, queryset):
        self._set_grant(request, queryset, AccountPermission.RESEARCH_GROUP_ADMIN.value, True)

    @admin.action(description='Revoke research group admin')
    def revoke_research_group_admin(self, request, queryset):
        self._set_grant(request, queryset, AccountPermission.RESEARCH_GROUP_ADMIN.value, False)
