"""
Domain-specific exceptions for groups app.

These exceptions represent business rule violations and should be
caught in views and converted to appropriate HTTP responses.
"""


class GroupsServiceError(Exception):
    """Base exception for all groups service errors."""
    pass


class GroupNotFoundError(GroupsServiceError):
    """Raised when a group does not exist or is inaccessible."""
    pass


class MembershipNotFoundError(GroupsServiceError):
    """Raised when a membership does not exist."""
    pass


class DuplicateGroupTitleError(GroupsServiceError):
    """Raised when another group in the organization already uses the title."""
    pass


class AlreadyMemberError(GroupsServiceError):
    """Raised when a user already holds a pending or active membership."""
    pass


class MembershipRequestsBlockedError(GroupsServiceError):
    """Raised when a group does not accept new membership requests."""
    pass


class NotMemberError(GroupsServiceError):
    """Raised when a user tries to perform an action requiring membership."""
    pass


class InvalidMembershipTransitionError(GroupsServiceError):
    """Raised when a status change is not allowed from the current state."""
    pass


class LastAdminError(GroupsServiceError):
    """Raised when an action would leave the group without an admin."""
    pass


class InsufficientPermissionsError(GroupsServiceError):
    """Raised when a user lacks required permissions for an action."""
    pass


class MissingGrantError(InsufficientPermissionsError):
    """Raised when an operation needs an account-level administrative grant."""

    def __init__(self, grant):
        super().__init__(f"The '{grant}' permission is required for this operation")
        self.grant = grant


class SyncNotEligibleError(GroupsServiceError):
    """Raised when a group is not configured for Authman synchronization."""
    pass


class SyncInProgressError(GroupsServiceError):
    """Raised when another reconciliation pass is running for the same group or run."""
    pass


class RosterFetchError(GroupsServiceError):
    """Raised when the external roster cannot be fetched; the pass is aborted."""
    pass


class AlreadySyncedError(GroupsServiceError):
    """Raised when a scheduled run starts within the threshold of the previous one."""
    pass
