"""User authentication service."""

import structlog
from django.db import transaction
from django.contrib.auth import get_user_model
from django.utils import timezone

from .exceptions import InvalidCredentialsError, InactiveAccountError

User = get_user_model()
log = structlog.get_logger()


@transaction.atomic
def authenticate_user(*, email: str, password: str) -> User:
    """
    Authenticate a caller by email and password and stamp ``last_login``.

    Raises:
        InvalidCredentialsError: If the email is unknown or the password is wrong
        InactiveAccountError: If the account is deactivated
    """
    user = (
        User.objects
        .select_for_update()
        .filter(email__iexact=email)
        .first()
    )
    if user is None or not user.check_password(password):
        log.info('accounts.login_failed', email=email)
        raise InvalidCredentialsError("Invalid email or password")

    if not user.is_active:
        raise InactiveAccountError("Account is deactivated")

    user.last_login = timezone.now()
    user.save(update_fields=['last_login'])
    log.info('accounts.login_succeeded', user_id=str(user.id))

    return user
