from django.urls import path, include
from rest_framework.routers import DefaultRouter
from . import views

app_name = 'groups'

# Router for ViewSets
router = DefaultRouter()
router.register(r'', views.GroupViewSet, basename='group')

urlpatterns = [
    # Group ViewSet routes
    # GET    /api/groups/              - Groups visible to the caller
    # POST   /api/groups/              - Create group
    # GET    /api/groups/{id}/         - Full or partial group view
    # PATCH  /api/groups/{id}/         - Partial update (admin)
    # DELETE /api/groups/{id}/         - Delete group (admin)

    # Membership actions
    # GET    /api/groups/{id}/members/                    - List members (redacted for non-admins)
    # POST   /api/groups/{id}/join/                       - Request membership
    # POST   /api/groups/{id}/leave/                      - Leave group
    # PUT    /api/groups/{id}/notifications_preferences/  - Caller's notification overrides
    # POST   /api/groups/{id}/add_member/                 - Add member (admin)
    # POST   /api/groups/{id}/approve/                    - Approve request (admin)
    # POST   /api/groups/{id}/reject/                     - Reject request or member (admin)
    # POST   /api/groups/{id}/update_member_role/         - Promote/demote (admin)
    # DELETE /api/groups/{id}/remove_member/              - Remove member (admin)
    # POST   /api/groups/{id}/mark_attended/              - Record attendance (admin)
    # POST   /api/groups/{id}/sync/                       - Authman sync (admin + managed_group_admin)

    path('', include(router.urls)),
]
