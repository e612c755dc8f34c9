import pytest
from unittest.mock import Mock
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from apps.accounts.models import User, AccountPermission
from apps.accounts.services import AccountDirectory
from apps.groups.conf import GroupsConfig
from apps.groups.domain import GroupPrivacy, MembershipStatus
from apps.groups.models import Group, GroupMembership
from apps.groups.services import AuthorizationGate, AuthmanReconciler


def client_for(user):
    """Return a new API client authenticated as ``user``."""
    client = APIClient()
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
    return client


def make_membership(group, user=None, *, status=MembershipStatus.MEMBER, admin=False, **fields):
    """Create a membership, copying identity from ``user`` when given."""
    if user is not None:
        fields.setdefault('external_id', user.external_id)
        fields.setdefault('name', user.get_display_name())
        fields.setdefault('email', user.email)
        fields.setdefault('net_id', user.net_id)
    return GroupMembership.objects.create(
        org_id=group.org_id,
        group=group,
        user=user,
        status=status,
        admin=admin,
        **fields,
    )


@pytest.fixture
def groups_config():
    return GroupsConfig(
        default_org_id='org-1',
        default_app_id='app-1',
        authman_base_url='https://authman.example.com/grouper-ws/servicesRest/json/v2_2_100',
        group_sync_timeout_minutes=60,
        group_sync_budget_seconds=600,
    )


@pytest.fixture
def gate(groups_config):
    return AuthorizationGate(groups_config)


@pytest.fixture(autouse=True)
def groups_settings(settings):
    """Point the services at the test organization; no external services."""
    settings.GROUPS = {
        'DEFAULT_ORG_ID': 'org-1',
        'DEFAULT_APP_ID': 'app-1',
        'AUTHMAN_BASE_URL': '',
        'CORE_BASE_URL': '',
    }
    return settings


@pytest.fixture
def api_client():
    """Return an unauthenticated API client."""
    return APIClient()


@pytest.fixture
def admin_user(db):
    """Create and return the group admin."""
    return User.objects.create_user(
        email='admin@example.com',
        password='TestPass123!',
        display_name='Group Admin',
        external_id='650000100',
        net_id='gadmin',
    )


@pytest.fixture
def member_user(db):
    """Create and return a group member."""
    return User.objects.create_user(
        email='member@example.com',
        password='TestPass123!',
        display_name='Group Member',
        external_id='650000200',
        net_id='gmember',
    )


@pytest.fixture
def other_user(db):
    """Create and return a user not in any group."""
    return User.objects.create_user(
        email='other@example.com',
        password='TestPass123!',
        display_name='Other User',
        external_id='650000300',
        net_id='gother',
    )


@pytest.fixture
def managed_admin_user(db):
    """Create and return a user holding the managed group grant."""
    return User.objects.create_user(
        email='managed@example.com',
        password='TestPass123!',
        display_name='Managed Admin',
        external_id='650000400',
        grants=[AccountPermission.MANAGED_GROUP_ADMIN.value],
    )


@pytest.fixture
def admin_client(admin_user):
    return client_for(admin_user)


@pytest.fixture
def member_client(member_user):
    return client_for(member_user)


@pytest.fixture
def other_client(other_user):
    return client_for(other_user)


@pytest.fixture
def group(db, admin_user):
    """Public, approval-gated group with one admin."""
    group = Group.objects.create(
        org_id='org-1',
        app_id='app-1',
        title='Chess Club',
        description='Weekly games',
        category='Clubs',
        membership_questions=['Why do you want to join?'],
    )
    make_membership(group, admin_user, admin=True)
    return group


@pytest.fixture
def group_with_members(group, member_user):
    """Group with an admin and a member."""
    make_membership(group, member_user)
    return group


@pytest.fixture
def private_group(db, admin_user):
    group = Group.objects.create(
        org_id='org-1',
        app_id='app-1',
        title='Private Circle',
        privacy=GroupPrivacy.PRIVATE,
    )
    make_membership(group, admin_user, admin=True)
    return group


@pytest.fixture
def hidden_group(db, admin_user):
    group = Group.objects.create(
        org_id='org-1',
        app_id='app-1',
        title='Hidden Circle',
        privacy=GroupPrivacy.PRIVATE,
        hidden_for_search=True,
    )
    make_membership(group, admin_user, admin=True)
    return group


@pytest.fixture
def managed_group(db, managed_admin_user):
    """Authman-managed group whose admin holds the managed grant."""
    group = Group.objects.create(
        org_id='org-1',
        app_id='app-1',
        title='CS 101 Fall',
        privacy=GroupPrivacy.PRIVATE,
        hidden_for_search=True,
        can_join_automatically=True,
        authman_enabled=True,
        authman_group='urn:mace:uiuc.edu:urbana:cs101',
    )
    make_membership(group, managed_admin_user, admin=True)
    return group


@pytest.fixture
def roster_source():
    """Stub Authman client; tests set the roster on ``fetch_group_members``."""
    source = Mock()
    source.fetch_group_members.return_value = []
    source.fetch_subject_details.return_value = {}
    return source


@pytest.fixture
def reconciler(groups_config, roster_source):
    return AuthmanReconciler(groups_config, roster_source, AccountDirectory(None))
