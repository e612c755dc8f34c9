"""
Notifications building block client.
"""

from typing import Dict, List, Optional

from .base import BuildingBlockClient


class NotificationsClient(BuildingBlockClient):
    service_name = 'notifications'

    def __init__(self, base_url: str, api_key: str = '', *, timeout: int = 30, session=None):
        super().__init__(base_url, timeout=timeout, session=session)
        if api_key:
            self.session.headers['Authorization'] = f'Bearer {api_key}'

    def send(
        self,
        *,
        recipients: List[Dict],
        topic: Optional[str],
        subject: str,
        body: str,
        data: Dict[str, str],
        org_id: str,
        app_id: str,
    ) -> None:
        """
        Post one message for asynchronous delivery.

        Recipients are dicts with ``user_id``, ``name`` and ``mute``; muted
        recipients still receive the in-app record.
        """
        if not recipients:
            return

        self._request('POST', 'api/bbs/message', json={
            'async': True,
            'message': {
                'org_id': org_id,
                'app_id': app_id,
                'priority': 10,
                'recipients': recipients,
                'topic': topic,
                'subject': subject,
                'body': body,
                'data': data,
            },
        })
