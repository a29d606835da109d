# pyright: reportIncompatibleMethodOverride=false
from rest_framework.permissions import BasePermission


class IsAdmin(BasePermission):
    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.role == "admin"


class IsAdminOrSubAdmin(BasePermission):
    def has_permission(self, request, view) -> bool:  # type: ignore
        return request.user.is_authenticated and request.user.role in ["admin", "subadmin"]


class IsStaffRole(BasePermission):
    """Admin, sub-admin and teacher accounts may read and export carnets."""

    def has_permission(self, request, view) -> bool:  # type: ignore
        return request.user.is_authenticated and request.user.role in [
            "admin",
            "subadmin",
            "teacher",
        ]
