"""
Groups app services layer.

Services contain business logic and orchestrate operations across models.
All state-changing operations use transactions and concurrency protection.
"""

from .exceptions import (
    GroupsServiceError,
    GroupNotFoundError,
    MembershipNotFoundError,
    DuplicateGroupTitleError,
    AlreadyMemberError,
    MembershipRequestsBlockedError,
    NotMemberError,
    InvalidMembershipTransitionError,
    LastAdminError,
    InsufficientPermissionsError,
    MissingGrantError,
    SyncNotEligibleError,
    SyncInProgressError,
    AlreadySyncedError,
    RosterFetchError,
)

from .authorization import (
    AuthorizationGate,
    PostAudience,
    SpecialOperation,
)

from .redaction import (
    MemberView,
    redact,
    redact_many,
)

from .notification_policy import (
    MembershipEvent,
    Recipient,
    recipients,
    membership_event_message,
    notify_admins_of_membership_event,
    notify_member_of_decision,
)

from .authman_sync import (
    AuthmanReconciler,
    StemSyncReport,
    SyncFailure,
    SyncReport,
    build_reconciler,
)

from .group_management import (
    GroupAccess,
    create_group,
    update_group,
    delete_group,
    get_group_by_id,
    get_visible_group,
    list_groups,
)

from .membership_management import (
    request_membership,
    leave_group,
    add_member,
    approve_membership,
    reject_membership,
    remove_member,
    mark_attended,
    update_notifications_preferences,
    get_group_members,
)

from .role_management import (
    update_member_role,
)


__all__ = [
    # Exceptions
    'GroupsServiceError',
    'GroupNotFoundError',
    'MembershipNotFoundError',
    'DuplicateGroupTitleError',
    'AlreadyMemberError',
    'MembershipRequestsBlockedError',
    'NotMemberError',
    'InvalidMembershipTransitionError',
    'LastAdminError',
    'InsufficientPermissionsError',
    'MissingGrantError',
    'SyncNotEligibleError',
    'SyncInProgressError',
    'AlreadySyncedError',
    'RosterFetchError',

    # Authorization
    'AuthorizationGate',
    'PostAudience',
    'SpecialOperation',

    # Member projection
    'MemberView',
    'redact',
    'redact_many',

    # Notification policy
    'MembershipEvent',
    'Recipient',
    'recipients',
    'membership_event_message',
    'notify_admins_of_membership_event',
    'notify_member_of_decision',

    # Authman sync
    'AuthmanReconciler',
    'StemSyncReport',
    'SyncFailure',
    'SyncReport',
    'build_reconciler',

    # Group Management
    'GroupAccess',
    'create_group',
    'update_group',
    'delete_group',
    'get_group_by_id',
    'get_visible_group',
    'list_groups',

    # Membership Management
    'request_membership',
    'leave_group',
    'add_member',
    'approve_membership',
    'reject_membership',
    'remove_member',
    'mark_attended',
    'update_notifications_preferences',
    'get_group_members',

    # Role Management
    'update_member_role',
]
