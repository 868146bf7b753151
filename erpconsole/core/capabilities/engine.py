from __future__ import annotations

from types import MappingProxyType
from typing import Any, List, Mapping

from erpconsole.core.capabilities.defaults import (
    CAPABILITY_TABLE,
    ROLE_DESCRIPTIONS,
    ROLE_DISPLAY_NAMES,
    ROLE_LEVELS,
)
from erpconsole.core.capabilities.models import Role, RoleInfo

CapabilitySet = Mapping[str, bool]


def is_role(value: Any) -> bool:
    if isinstance(value, Role):
        return True
    return isinstance(value, str) and value in Role._value2member_map_


def normalize_role(value: Any) -> Role:
    """
    Fail-closed: anything that is not exactly one of the five role values
    (None, "", "Admin", 3, ...) is treated as the lowest role.
    """
    if isinstance(value, Role):
        return value
    if is_role(value):
        return Role(value)
    return Role.user


def level(role: Any) -> int:
    return ROLE_LEVELS[normalize_role(role)]


def has_permission(current: Any, required: Any) -> bool:
    return level(current) >= level(required)


def capabilities(role: Any) -> CapabilitySet:
    r = normalize_role(role)
    return MappingProxyType({name: r in allowed for name, allowed in CAPABILITY_TABLE.items()})


def can(role: Any, capability: str) -> bool:
    allowed = CAPABILITY_TABLE.get(capability)
    if allowed is None:
        # unknown capability: deny by default
        return False
    return normalize_role(role) in allowed


def roles_with(capability: str) -> List[Role]:
    allowed = CAPABILITY_TABLE.get(capability, frozenset())
    return sorted(allowed, key=lambda r: ROLE_LEVELS[r], reverse=True)


def role_info(role: Any) -> RoleInfo:
    r = normalize_role(role)
    return RoleInfo(role=r, display_name=ROLE_DISPLAY_NAMES[r], description=ROLE_DESCRIPTIONS[r], level=ROLE_LEVELS[r])


def available_roles() -> List[RoleInfo]:
    return [role_info(r) for r in Role]


def no_capabilities() -> CapabilitySet:
    """Capability set of a client without a session: everything denied."""
    return MappingProxyType({name: False for name in CAPABILITY_TABLE})
