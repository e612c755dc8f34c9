"""
Core building block client: the institutional account directory.
"""

from dataclasses import dataclass
from typing import List

import structlog

from .base import BuildingBlockClient

log = structlog.get_logger()

PAGE_SIZE = 100


@dataclass(frozen=True)
class CoreAccount:
    user_id: str
    external_id: str = ''
    net_id: str = ''
    name: str = ''
    email: str = ''

    @classmethod
    def from_payload(cls, payload: dict) -> 'CoreAccount':
        profile = payload.get('profile') or {}
        external_ids = payload.get('external_ids') or {}
        full_name = ' '.join(
            part for part in (profile.get('first_name'), profile.get('last_name')) if part
        )
        return cls(
            user_id=payload.get('id') or '',
            external_id=external_ids.get('uin') or '',
            net_id=external_ids.get('net_id') or '',
            name=full_name,
            email=profile.get('email') or '',
        )


class CoreClient(BuildingBlockClient):
    """API-key authenticated client for Core account lookups."""

    service_name = 'core'

    def __init__(self, base_url: str, api_key: str = '', *, timeout: int = 30, session=None):
        super().__init__(base_url, timeout=timeout, session=session)
        if api_key:
            self.session.headers['Authorization'] = f'Bearer {api_key}'

    def get_accounts_by_external_ids(self, external_ids: List[str]) -> List[CoreAccount]:
        """Page through every account whose UIN is in ``external_ids``."""
        if not external_ids:
            return []

        accounts = []
        offset = 0
        while True:
            page = self._json(
                'POST',
                'bbs/accounts',
                params={'limit': PAGE_SIZE, 'offset': offset},
                json={'external_ids.uin': list(external_ids)},
            )
            if not page:
                break
            accounts.extend(CoreAccount.from_payload(item) for item in page)
            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE

        log.debug('core.accounts_loaded', requested=len(external_ids), loaded=len(accounts))
        return accounts
