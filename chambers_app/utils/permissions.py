# chambers_app/utils/permissions.py

from chambers_app.models.user import UserRole

ROLE_PERMISSIONS = {
    UserRole.CLERK: frozenset({"run_imports", "view_imports", "export_enquiries"}),
    UserRole.BARRISTER: frozenset({"view_imports"}),
    UserRole.ADMIN: frozenset(),
}


def is_elevated(user):
    """Return True for authenticated users holding chambers-wide access."""
    if not user or not getattr(user, "is_authenticated", False):
        return False
    return bool(getattr(user, "is_elevated", False))


def has_permission(user, permission_name):
    """Check if user has a specific permission"""
    if not user or not getattr(user, "is_authenticated", False):
        return False

    # Admins have all permissions
    if is_elevated(user):
        return True

    return permission_name in ROLE_PERMISSIONS.get(getattr(user, "role", None), frozenset())


def can_access_job(user, owner_id):
    """Owners and elevated users may read or cancel a job; everyone else is refused."""
    if not user or not getattr(user, "is_authenticated", False):
        return False
    if is_elevated(user):
        return True
    return owner_id is not None and getattr(user, "id", None) == owner_id
