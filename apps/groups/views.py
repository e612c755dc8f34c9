from rest_framework import viewsets, status
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.pagination import PageNumberPagination
from drf_spectacular.utils import extend_schema

from .conf import GroupsConfig
from .models import Group
from .permissions import HasManagedGroupGrant
from .serializers import (
    AddMemberSerializer,
    GroupListSerializer,
    GroupPartialSerializer,
    GroupSerializer,
    GroupWriteSerializer,
    JoinGroupSerializer,
    MarkAttendedSerializer,
    MembershipActionSerializer,
    MemberViewSerializer,
    NotificationsPreferencesSerializer,
    RejectMembershipSerializer,
    SyncReportSerializer,
    UpdateMemberRoleSerializer,
)

from apps.groups.services import (
    AuthorizationGate,
    SpecialOperation,
    MemberView,
    redact,
    build_reconciler,
    create_group,
    update_group,
    delete_group,
    get_visible_group,
    list_groups,
    request_membership,
    leave_group,
    add_member,
    approve_membership,
    reject_membership,
    remove_member,
    mark_attended,
    update_notifications_preferences,
    get_group_members,
    update_member_role,
    get_group_by_id,
    # Exceptions
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
    SyncNotEligibleError,
    SyncInProgressError,
    RosterFetchError,
)

# Most specific first: MissingGrantError is an InsufficientPermissionsError.
SERVICE_ERROR_STATUS = (
    (GroupNotFoundError, status.HTTP_404_NOT_FOUND),
    (MembershipNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientPermissionsError, status.HTTP_403_FORBIDDEN),
    (MembershipRequestsBlockedError, status.HTTP_403_FORBIDDEN),
    (DuplicateGroupTitleError, status.HTTP_409_CONFLICT),
    (AlreadyMemberError, status.HTTP_409_CONFLICT),
    (InvalidMembershipTransitionError, status.HTTP_409_CONFLICT),
    (LastAdminError, status.HTTP_409_CONFLICT),
    (SyncInProgressError, status.HTTP_409_CONFLICT),
    (NotMemberError, status.HTTP_400_BAD_REQUEST),
    (SyncNotEligibleError, status.HTTP_400_BAD_REQUEST),
    (RosterFetchError, status.HTTP_502_BAD_GATEWAY),
)


def service_error_response(exc):
    for error_class, status_code in SERVICE_ERROR_STATUS:
        if isinstance(exc, error_class):
            return Response({'error': str(exc)}, status=status_code)
    return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)


class GroupPagination(PageNumberPagination):
    """Custom pagination for groups."""
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


class GroupViewSet(viewsets.GenericViewSet):
    """
    Groups and their memberships.

    All business logic is handled by services; service exceptions are
    translated to HTTP responses in ``handle_exception``.

    list: Groups visible to the caller
    create: Create a group (caller becomes admin)
    retrieve: Full or partial view, depending on the caller
    partial_update: Update a group (admin only)
    destroy: Delete a group (admin only)
    """

    queryset = Group.objects.all()
    serializer_class = GroupSerializer
    pagination_class = GroupPagination

    def get_permissions(self):
        """Anonymous callers may browse; everything else needs an account."""
        if self.action in ['list', 'retrieve', 'members']:
            return [AllowAny()]
        if self.action == 'sync':
            return [IsAuthenticated(), HasManagedGroupGrant()]
        return [IsAuthenticated()]

    def handle_exception(self, exc):
        if isinstance(exc, GroupsServiceError):
            return service_error_response(exc)
        if isinstance(exc, ValueError):
            return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        return super().handle_exception(exc)

    @property
    def gate(self):
        return AuthorizationGate(GroupsConfig.from_settings())

    # -- group CRUD -----------------------------------------------------

    @extend_schema(responses={200: GroupListSerializer(many=True)}, tags=['groups'])
    def list(self, request):
        """Groups visible to the caller, optionally filtered by title or category."""
        groups = list_groups(
            user=request.user,
            org_id=request.query_params.get('org_id') or self.gate.config.default_org_id,
            title=request.query_params.get('title'),
            category=request.query_params.get('category'),
        )
        page = self.paginate_queryset(groups)
        serializer = GroupListSerializer(page, many=True, context={'request': request})
        return self.get_paginated_response(serializer.data)

    @extend_schema(request=GroupWriteSerializer, responses={201: GroupSerializer}, tags=['groups'])
    def create(self, request):
        """Create a new group."""
        serializer = GroupWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        group = create_group(creator=request.user, gate=self.gate, **serializer.validated_data)

        output_serializer = GroupSerializer(group, context={'request': request})
        return Response(output_serializer.data, status=status.HTTP_201_CREATED)

    @extend_schema(responses={200: GroupSerializer}, tags=['groups'])
    def retrieve(self, request, pk=None):
        """Full view for those who may see the group, partial view for those who may join it."""
        access = get_visible_group(group_id=pk, user=request.user, gate=self.gate)
        serializer_class = GroupSerializer if access.full_view else GroupPartialSerializer
        return Response(serializer_class(access.group, context={'request': request}).data)

    @extend_schema(request=GroupWriteSerializer, responses={200: GroupSerializer}, tags=['groups'])
    def partial_update(self, request, pk=None):
        """Update a group (admin only)."""
        group = get_group_by_id(group_id=pk)
        # Deny before validating so hidden groups answer like missing ones
        self.gate.ensure_can_modify(group, group.get_membership(request.user), 'update the group')

        serializer = GroupWriteSerializer(
            instance=group,
            data=request.data,
            partial=True,
        )
        serializer.is_valid(raise_exception=True)

        group = update_group(group_id=pk, user=request.user, gate=self.gate, **serializer.validated_data)
        return Response(GroupSerializer(group, context={'request': request}).data)

    @extend_schema(responses={204: None}, tags=['groups'])
    def destroy(self, request, pk=None):
        """Delete a group."""
        delete_group(group_id=pk, user=request.user, gate=self.gate)
        return Response(status=status.HTTP_204_NO_CONTENT)

    # -- membership -----------------------------------------------------

    @extend_schema(responses={200: MemberViewSerializer(many=True)}, tags=['groups'])
    @action(detail=True, methods=['get'])
    def members(self, request, pk=None):
        """Members of the group, redacted for non-admin viewers."""
        statuses = request.query_params.getlist('status') or None
        views = get_group_members(group_id=pk, user=request.user, statuses=statuses, gate=self.gate)
        return Response(MemberViewSerializer(views, many=True).data)

    @extend_schema(request=JoinGroupSerializer, responses={201: MemberViewSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def join(self, request, pk=None):
        """Request membership, or join directly when the group allows it."""
        serializer = JoinGroupSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = request_membership(
            group_id=pk,
            user=request.user,
            member_answers=serializer.validated_data.get('member_answers'),
            notifications_preferences=serializer.validated_data.get('notifications_preferences'),
            gate=self.gate,
        )
        output = redact(membership, membership.group.group_settings, viewer_is_admin=False)
        return Response(MemberViewSerializer(output).data, status=status.HTTP_201_CREATED)

    @extend_schema(request=None, responses={204: None}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def leave(self, request, pk=None):
        """Leave a group or withdraw a pending request."""
        leave_group(group_id=pk, user=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(
        request=NotificationsPreferencesSerializer,
        responses={200: NotificationsPreferencesSerializer},
        tags=['groups'],
    )
    @action(detail=True, methods=['put'])
    def notifications_preferences(self, request, pk=None):
        """Replace the caller's notification overrides for this group."""
        serializer = NotificationsPreferencesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = update_notifications_preferences(
            group_id=pk,
            user=request.user,
            preferences=serializer.validated_data,
        )
        return Response(NotificationsPreferencesSerializer(membership.preferences).data)

    # -- admin actions --------------------------------------------------

    @extend_schema(request=AddMemberSerializer, responses={201: MemberViewSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def add_member(self, request, pk=None):
        """Add a member by account id or external id (admin only)."""
        serializer = AddMemberSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = add_member(
            group_id=pk,
            added_by=request.user,
            user_id=serializer.validated_data.get('user_id'),
            external_id=serializer.validated_data.get('external_id', ''),
            status=serializer.validated_data['status'],
            admin=serializer.validated_data['admin'],
            gate=self.gate,
        )
        output = MemberView.from_membership(membership)
        return Response(MemberViewSerializer(output).data, status=status.HTTP_201_CREATED)

    @extend_schema(request=MembershipActionSerializer, responses={200: MemberViewSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def approve(self, request, pk=None):
        """Approve a pending request (admin only)."""
        serializer = MembershipActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = approve_membership(
            group_id=pk,
            membership_id=serializer.validated_data['membership_id'],
            approved_by=request.user,
            gate=self.gate,
        )
        return Response(MemberViewSerializer(MemberView.from_membership(membership)).data)

    @extend_schema(request=RejectMembershipSerializer, responses={200: MemberViewSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def reject(self, request, pk=None):
        """Reject a pending request or revoke a member (admin only)."""
        serializer = RejectMembershipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = reject_membership(
            group_id=pk,
            membership_id=serializer.validated_data['membership_id'],
            rejected_by=request.user,
            reason=serializer.validated_data['reason'],
            gate=self.gate,
        )
        return Response(MemberViewSerializer(MemberView.from_membership(membership)).data)

    @extend_schema(request=UpdateMemberRoleSerializer, responses={200: MemberViewSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def update_member_role(self, request, pk=None):
        """Promote or demote a member (admin only)."""
        serializer = UpdateMemberRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = update_member_role(
            group_id=pk,
            membership_id=serializer.validated_data['membership_id'],
            new_role=serializer.validated_data['role'],
            updated_by=request.user,
            gate=self.gate,
        )
        return Response(MemberViewSerializer(MemberView.from_membership(membership)).data)

    @extend_schema(request=MembershipActionSerializer, responses={204: None}, tags=['groups'])
    @action(detail=True, methods=['delete'])
    def remove_member(self, request, pk=None):
        """Remove a member from the group (admin only)."""
        serializer = MembershipActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        remove_member(
            group_id=pk,
            membership_id=serializer.validated_data['membership_id'],
            removed_by=request.user,
            gate=self.gate,
        )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(request=MarkAttendedSerializer, responses={200: MemberViewSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def mark_attended(self, request, pk=None):
        """Record a member's attendance (admin only)."""
        serializer = MarkAttendedSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = mark_attended(
            group_id=pk,
            membership_id=serializer.validated_data['membership_id'],
            marked_by=request.user,
            date_attended=serializer.validated_data.get('date_attended'),
            gate=self.gate,
        )
        return Response(MemberViewSerializer(MemberView.from_membership(membership)).data)

    @extend_schema(request=None, responses={200: SyncReportSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def sync(self, request, pk=None):
        """Reconcile the group with its Authman roster now (group admin with managed group grant)."""
        gate = self.gate
        group = get_group_by_id(group_id=pk)
        gate.ensure_can_modify(group, group.get_membership(request.user), 'synchronize the group')
        gate.check_special_permission(SpecialOperation.SYNC_MANAGED_GROUP, request.user)

        report = build_reconciler(gate.config).reconcile(group.id)
        return Response(SyncReportSerializer(report).data)
