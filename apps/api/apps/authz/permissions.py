"""
Role resolution and DRF permission classes.
"""
from rest_framework import permissions

from apps.authz.models import RoleChoices


def get_role_names(user):
    """Return the set of role names held by ``user`` (empty for anonymous)."""
    if user is None or not user.is_authenticated:
        return set()
    return set(user.user_roles.values_list('role__name', flat=True))


def is_privileged(user):
    """
    Privileged actors may reverse case transitions and adjust course ledgers.

    Superusers and holders of the ADMIN role are privileged.
    """
    if user is None or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    return RoleChoices.ADMIN in get_role_names(user)


class IsClinicalStaff(permissions.BasePermission):
    """
    Any authenticated user holding one of the staff roles.

    - Admin: full access
    - Clinic: bookings, case intake, cancellations
    - PT: assessment, completion
    """

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        if request.user.is_superuser:
            return True
        staff_roles = {RoleChoices.ADMIN, RoleChoices.CLINIC, RoleChoices.PT}
        return bool(get_role_names(request.user) & staff_roles)

    def has_object_permission(self, request, view, obj):
        return self.has_permission(request, view)
