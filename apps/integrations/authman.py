"""
Authman (Grouper) client: the roster source for managed groups.
"""

from dataclasses import dataclass
from typing import Dict, List

import structlog

from .base import BuildingBlockClient

log = structlog.get_logger()

DEFAULT_SUBJECT_SOURCE_ID = 'uofinetid'


@dataclass(frozen=True)
class AuthmanSubject:
    external_id: str
    name: str = ''
    email: str = ''


@dataclass(frozen=True)
class AuthmanStemGroup:
    """One group found under an Authman stem."""

    name: str
    display_extension: str = ''
    description: str = ''

    def title_and_admins(self):
        """
        Parse the pretty title and admin UINs from the description.

        Descriptions follow the convention ``"Title" | uin1 | uin2``. Without
        a separator the whole description is the title; without a description
        the display extension is used.
        """
        if '|' in self.description:
            segments = self.description.split('|')
            title = segments[0].replace('"', '').strip()
            admins = [segment.replace(' ', '') for segment in segments[1:]]
            return title, [uin for uin in admins if uin]

        if self.description:
            return self.description, []
        return self.display_extension, []


class AuthmanClient(BuildingBlockClient):
    """Basic-auth REST client for the Authman web services."""

    service_name = 'authman'

    def __init__(
        self,
        base_url: str,
        username: str = '',
        password: str = '',
        *,
        subject_source_id: str = DEFAULT_SUBJECT_SOURCE_ID,
        timeout: int = 30,
        session=None,
    ):
        super().__init__(base_url, timeout=timeout, session=session)
        self.subject_source_id = subject_source_id
        self.session.auth = (username, password)

    def fetch_group_members(self, group_name: str) -> List[str]:
        """
        Return the external ids of every member of an Authman group.

        Only subjects from the configured institutional source are returned;
        subjects from other sources are dropped silently.
        """
        if not group_name:
            return []

        payload = self._json('GET', f'groups/{group_name}/members')
        result = payload.get('WsGetMembersLiteResult') or {}
        subjects = result.get('wsSubjects') or []

        members = [
            subject['id']
            for subject in subjects
            if subject.get('sourceId') == self.subject_source_id and subject.get('id')
        ]
        log.debug(
            'authman.members_fetched',
            group=group_name, subjects=len(subjects), accepted=len(members),
        )
        return members

    def fetch_subject_details(self, external_ids: List[str]) -> Dict[str, AuthmanSubject]:
        """Look up display name and email for the given external ids."""
        if not external_ids:
            return {}

        body = {
            'WsRestGetSubjectsRequest': {
                'wsSubjectLookups': [
                    {'subjectId': external_id, 'subjectSourceId': self.subject_source_id}
                    for external_id in external_ids
                ],
                'subjectAttributeNames': ['userprincipalname'],
            }
        }
        payload = self._json('GET', 'subjects', json=body)
        result = payload.get('WsGetSubjectsResults') or {}

        details = {}
        for subject in result.get('wsSubjects') or []:
            external_id = subject.get('id')
            if not external_id:
                continue
            attributes = subject.get('attributeValues') or []
            details[external_id] = AuthmanSubject(
                external_id=external_id,
                name=subject.get('name') or '',
                email=attributes[0] if attributes else '',
            )
        return details

    def fetch_stem_groups(self, stem_name: str) -> List[AuthmanStemGroup]:
        """Find every group under a stem."""
        body = {
            'WsRestFindGroupsRequest': {
                'wsQueryFilter': {
                    'queryFilterType': 'FIND_BY_STEM_NAME',
                    'stemName': stem_name,
                }
            }
        }
        payload = self._json('POST', 'groups', json=body)
        result = payload.get('WsFindGroupsResults') or {}

        return [
            AuthmanStemGroup(
                name=entry['name'],
                display_extension=entry.get('displayExtension') or '',
                description=entry.get('description') or '',
            )
            for entry in result.get('groupResults') or []
            if entry.get('name')
        ]

    def add_member(self, group_name: str, external_id: str) -> None:
        if group_name and external_id:
            self._request('PUT', f'groups/{group_name}/members/{external_id}')

    def remove_member(self, group_name: str, external_id: str) -> None:
        if group_name and external_id:
            self._request('DELETE', f'groups/{group_name}/members/{external_id}')

