"""
Groups configuration, loaded once from ``settings.GROUPS``.

The reconciler, the authorization gate and the building-block clients take a
``GroupsConfig`` in their constructors instead of reading settings directly.
"""

from dataclasses import dataclass, field
from typing import Tuple

from django.conf import settings


@dataclass(frozen=True)
class GroupsConfig:
    default_org_id: str = 'default'
    default_app_id: str = 'default'

    authman_base_url: str = ''
    authman_username: str = ''
    authman_password: str = ''
    authman_subject_source_id: str = 'uofinetid'
    authman_admin_uins: Tuple[str, ...] = field(default_factory=tuple)
    authman_stems: Tuple[str, ...] = field(default_factory=tuple)

    core_base_url: str = ''
    core_api_key: str = ''

    notifications_base_url: str = ''
    notifications_api_key: str = ''
    notifications_max_attempts: int = 5

    group_sync_timeout_minutes: int = 60
    group_sync_budget_seconds: int = 600
    authman_sync_timeout_minutes: int = 60
    authman_sync_time_threshold_minutes: int = 30
    http_timeout_seconds: int = 30

    @classmethod
    def from_settings(cls) -> 'GroupsConfig':
        raw = getattr(settings, 'GROUPS', {}) or {}
        return cls(
            default_org_id=raw.get('DEFAULT_ORG_ID', 'default'),
            default_app_id=raw.get('DEFAULT_APP_ID', 'default'),
            authman_base_url=raw.get('AUTHMAN_BASE_URL', ''),
            authman_username=raw.get('AUTHMAN_USERNAME', ''),
            authman_password=raw.get('AUTHMAN_PASSWORD', ''),
            authman_subject_source_id=raw.get('AUTHMAN_SUBJECT_SOURCE_ID', 'uofinetid'),
            authman_admin_uins=tuple(uin for uin in raw.get('AUTHMAN_ADMIN_UINS', ()) if uin),
            authman_stems=tuple(stem for stem in raw.get('AUTHMAN_STEMS', ()) if stem),
            core_base_url=raw.get('CORE_BASE_URL', ''),
            core_api_key=raw.get('CORE_API_KEY', ''),
            notifications_base_url=raw.get('NOTIFICATIONS_BASE_URL', ''),
            notifications_api_key=raw.get('NOTIFICATIONS_API_KEY', ''),
            notifications_max_attempts=raw.get('NOTIFICATIONS_MAX_ATTEMPTS', 5),
            group_sync_timeout_minutes=raw.get('GROUP_SYNC_TIMEOUT_MINUTES', 60),
            group_sync_budget_seconds=raw.get('GROUP_SYNC_BUDGET_SECONDS', 600),
            authman_sync_timeout_minutes=raw.get('AUTHMAN_SYNC_TIMEOUT_MINUTES', 60),
            authman_sync_time_threshold_minutes=raw.get('AUTHMAN_SYNC_TIME_THRESHOLD_MINUTES', 30),
            http_timeout_seconds=raw.get('HTTP_TIMEOUT_SECONDS', 30),
        )
