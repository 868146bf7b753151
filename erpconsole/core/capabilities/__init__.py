"""
Role hierarchy and role -> capability derivation. Pure; no I/O, no state.
"""

from erpconsole.core.capabilities.engine import (
    CapabilitySet,
    available_roles,
    can,
    capabilities,
    has_permission,
    is_role,
    level,
    no_capabilities,
    normalize_role,
    role_info,
    roles_with,
)
from erpconsole.core.capabilities.models import Role, RoleInfo

__all__ = [
    "CapabilitySet",
    "Role",
    "RoleInfo",
    "available_roles",
    "can",
    "capabilities",
    "has_permission",
    "is_role",
    "level",
    "no_capabilities",
    "normalize_role",
    "role_info",
    "roles_with",
]
