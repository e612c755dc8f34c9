"""
Account directory service.

Resolves institutional external ids to account identity. Local users are
consulted first; ids with no local user fall back to the Core building
block. Lookup failures are non-fatal: callers get whatever was resolved.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import structlog

from apps.accounts.models import User
from apps.integrations import CoreClient, IntegrationError

log = structlog.get_logger()


@dataclass(frozen=True)
class AccountRecord:
    """Identity fields used to fill a membership snapshot."""

    user: Optional[User] = None
    external_id: str = ''
    net_id: str = ''
    name: str = ''
    email: str = ''
    photo_url: str = ''

    @classmethod
    def from_user(cls, user: User) -> 'AccountRecord':
        return cls(
            user=user,
            external_id=user.external_id,
            net_id=user.net_id,
            name=user.get_display_name(),
            email=user.email,
            photo_url=user.photo_url,
        )


class AccountDirectory:
    def __init__(self, core_client: Optional[CoreClient] = None):
        self.core_client = core_client

    def resolve_by_external_ids(self, external_ids: Iterable[str]) -> Dict[str, AccountRecord]:
        """
        Map each resolvable external id to an AccountRecord.

        Ids that cannot be resolved are simply absent from the result.
        """
        wanted = {external_id for external_id in external_ids if external_id}
        if not wanted:
            return {}

        resolved = {
            user.external_id: AccountRecord.from_user(user)
            for user in User.objects.filter(external_id__in=wanted, is_active=True)
        }

        missing = sorted(wanted - resolved.keys())
        if missing and self.core_client is not None and self.core_client.configured:
            try:
                accounts = self.core_client.get_accounts_by_external_ids(missing)
            except IntegrationError as e:
                log.warning('accounts.core_lookup_failed', requested=len(missing), error=str(e))
            else:
                for account in accounts:
                    if account.external_id in wanted and account.external_id not in resolved:
                        resolved[account.external_id] = AccountRecord(
                            external_id=account.external_id,
                            net_id=account.net_id,
                            name=account.name,
                            email=account.email,
                        )

        return resolved

    def resolve_by_external_id(self, external_id: str) -> Optional[AccountRecord]:
        return self.resolve_by_external_ids([external_id]).get(external_id)
