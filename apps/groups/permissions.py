from rest_framework import permissions

from apps.accounts.models import AccountPermission


class HasAccountGrant(permissions.BasePermission):
    """
    Permission: the caller's account must carry ``required_grant``.
    """

    required_grant = None
    message = 'This operation requires an administrative grant.'

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and user.has_grant(self.required_grant))


class HasManagedGroupGrant(HasAccountGrant):
    """
    Permission: caller may administer Authman-managed groups.
    """

    required_grant = AccountPermission.MANAGED_GROUP_ADMIN
    message = "The 'managed_group_admin' permission is required for this operation"
