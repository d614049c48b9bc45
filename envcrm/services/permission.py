"""
Capability checks.

Permissions are resolved upstream and arrive with each request as a set of
capability strings (``tasks:manage-locks``, ``projects:manage``).  Services
only ever ask whether a capability is present.

Usage:
    from envcrm.services.permission import check_permission, has_permission

    # Raises PermissionDenied if not allowed
    check_permission("u-42", perms, "tasks:manage-locks")

    # Boolean check
    if has_permission(perms, "tasks:manage-locks"):
        ...
"""

from envcrm.core.exceptions import PermissionDenied


def normalize_permissions(permissions) -> frozenset[str]:
    """Accept a comma-separated string, any iterable, or None."""
    if not permissions:
        return frozenset()
    if isinstance(permissions, str):
        permissions = permissions.split(",")
    return frozenset(p.strip() for p in permissions if p and p.strip())


def has_permission(permissions, capability: str) -> bool:
    return capability in normalize_permissions(permissions)


def check_permission(actor_id: str | None, permissions, capability: str) -> None:
    """Raise ``PermissionDenied`` unless *capability* is held."""
    if not has_permission(permissions, capability):
        raise PermissionDenied(actor_id, capability)
