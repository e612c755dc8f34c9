import pytest
from unittest.mock import Mock

import requests

from apps.integrations import (
    AuthmanClient,
    CoreClient,
    IntegrationError,
    IntegrationNotConfiguredError,
    NotificationsClient,
)


def response(payload=None, status_code=200):
    resp = Mock()
    resp.ok = 200 <= status_code < 300
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


def session_returning(*responses):
    session = Mock()
    session.headers = {}
    session.request.side_effect = list(responses)
    return session


class TestBuildingBlockClient:

    def test_unconfigured_client_raises(self):
        client = AuthmanClient('', session=session_returning())

        with pytest.raises(IntegrationNotConfiguredError):
            client.fetch_group_members('stem:x')

    def test_transport_error_is_wrapped(self):
        session = Mock()
        session.request.side_effect = requests.ConnectionError('refused')
        client = AuthmanClient('https://authman.example.com', session=session)

        with pytest.raises(IntegrationError) as excinfo:
            client.fetch_group_members('stem:x')

        assert excinfo.value.service == 'authman'

    def test_bad_status_is_wrapped(self):
        client = AuthmanClient('https://authman.example.com', session=session_returning(response(status_code=500)))

        with pytest.raises(IntegrationError) as excinfo:
            client.fetch_group_members('stem:x')

        assert excinfo.value.status_code == 500


class TestAuthmanClient:

    def test_fetch_group_members_filters_subject_source(self):
        payload = {
            'WsGetMembersLiteResult': {
                'wsSubjects': [
                    {'id': '111', 'sourceId': 'uofinetid'},
                    {'id': 'svc', 'sourceId': 'g:isa'},
                    {'id': '222', 'sourceId': 'uofinetid'},
                ]
            }
        }
        session = session_returning(response(payload))
        client = AuthmanClient('https://authman.example.com/', 'user', 'secret', session=session)

        assert client.fetch_group_members('stem:x') == ['111', '222']
        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url == 'https://authman.example.com/groups/stem:x/members'
        assert session.auth == ('user', 'secret')

    def test_fetch_subject_details(self):
        payload = {
            'WsGetSubjectsResults': {
                'wsSubjects': [
                    {'id': '111', 'name': 'Jane Doe', 'attributeValues': ['jdoe@example.com']},
                    {'id': '222', 'name': 'No Mail'},
                ]
            }
        }
        client = AuthmanClient('https://authman.example.com', session=session_returning(response(payload)))

        details = client.fetch_subject_details(['111', '222'])

        assert details['111'].email == 'jdoe@example.com'
        assert details['222'].name == 'No Mail'
        assert details['222'].email == ''

    def test_fetch_stem_groups(self):
        payload = {
            'WsFindGroupsResults': {
                'groupResults': [
                    {'name': 'stem:cs101', 'displayExtension': 'cs101', 'description': '"CS 101" | 1'},
                ]
            }
        }
        client = AuthmanClient('https://authman.example.com', session=session_returning(response(payload)))

        groups = client.fetch_stem_groups('stem')

        assert groups[0].name == 'stem:cs101'
        assert groups[0].title_and_admins() == ('CS 101', ['1'])

    def test_add_and_remove_member(self):
        session = session_returning(response(), response())
        client = AuthmanClient('https://authman.example.com', session=session)

        client.add_member('stem:x', '111')
        client.remove_member('stem:x', '111')

        calls = [call[0] for call in session.request.call_args_list]
        assert calls == [
            ('PUT', 'https://authman.example.com/groups/stem:x/members/111'),
            ('DELETE', 'https://authman.example.com/groups/stem:x/members/111'),
        ]


class TestCoreClient:

    def test_accounts_are_parsed(self):
        payload = [{
            'id': 'core-1',
            'profile': {'first_name': 'Jane', 'last_name': 'Doe', 'email': 'jdoe@example.com'},
            'external_ids': {'uin': '111', 'net_id': 'jdoe'},
        }]
        session = session_returning(response(payload))
        client = CoreClient('https://core.example.com', 'key', session=session)

        accounts = client.get_accounts_by_external_ids(['111'])

        assert accounts[0].name == 'Jane Doe'
        assert accounts[0].external_id == '111'
        assert accounts[0].net_id == 'jdoe'
        assert session.headers['Authorization'] == 'Bearer key'

    def test_empty_lookup_makes_no_request(self):
        session = session_returning()
        client = CoreClient('https://core.example.com', session=session)

        assert client.get_accounts_by_external_ids([]) == []
        session.request.assert_not_called()


class TestNotificationsClient:

    def test_send_posts_async_message(self):
        session = session_returning(response())
        client = NotificationsClient('https://notifications.example.com', 'key', session=session)

        client.send(
            recipients=[{'user_id': 'u-1', 'name': 'Jane', 'mute': True}],
            topic='group.invitations',
            subject='Group - Chess Club',
            body='Hello',
            data={'type': 'group'},
            org_id='org-1',
            app_id='app-1',
        )

        args, kwargs = session.request.call_args
        assert args == ('POST', 'https://notifications.example.com/api/bbs/message')
        assert kwargs['json']['async'] is True
        assert kwargs['json']['message']['recipients'][0]['mute'] is True
        assert kwargs['json']['message']['topic'] == 'group.invitations'

    def test_send_without_recipients_is_noop(self):
        session = session_returning()
        client = NotificationsClient('https://notifications.example.com', session=session)

        client.send(recipients=[], topic=None, subject='s', body='b', data={}, org_id='o', app_id='a')

        session.request.assert_not_called()
