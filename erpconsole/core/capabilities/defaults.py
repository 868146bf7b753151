from __future__ import annotations

from typing import Dict, FrozenSet

from erpconsole.core.capabilities.models import Role

SA = Role.super_admin
AD = Role.admin
AC = Role.account
RS = Role.reservation
US = Role.user

ALL_ROLES: FrozenSet[Role] = frozenset(Role)

ROLE_LEVELS: Dict[Role, int] = {
    SA: 5,
    AD: 4,
    AC: 3,
    RS: 2,
    US: 1,
}

ROLE_DISPLAY_NAMES: Dict[Role, str] = {
    SA: "Super Admin",
    AD: "Admin",
    AC: "Account",
    RS: "Reservation",
    US: "User",
}

ROLE_DESCRIPTIONS: Dict[Role, str] = {
    SA: "Full system access with all permissions",
    AD: "Administrative access with most permissions",
    AC: "Financial and accounting operations access",
    RS: "Booking and reservation management access",
    US: "Basic user access with limited permissions",
}

# Capability -> roles allowed. Each row is an explicit allow-list; several rows
# are not monotonic in role level (e.g. view_exchange admits reservation,
# manage_customers admits reservation but not account). Do not rewrite rows
# as level thresholds.
CAPABILITY_TABLE: Dict[str, FrozenSet[Role]] = {
    # dashboard
    "dashboard": ALL_ROLES,
    # user management
    "manage_users": frozenset({SA, AD}),
    "view_users": frozenset({SA, AD, AC}),
    # financial operations
    "manage_accounts": frozenset({SA, AD, AC}),
    "view_financial_reports": frozenset({SA, AD, AC}),
    "manage_transactions": frozenset({SA, AD, AC}),
    # reservations
    "manage_reservations": frozenset({SA, AD, RS}),
    "view_reservations": frozenset({SA, AD, RS, AC}),
    # system settings
    "system_settings": frozenset({SA, AD}),
    "backup_restore": frozenset({SA, AD}),
    # business operations
    "manage_businesses": frozenset({SA, AD}),
    "manage_vendors": frozenset({SA, AD, AC}),
    "manage_customers": frozenset({SA, AD, RS}),
    # air ticketing
    "manage_tickets": frozenset({SA, AD, RS}),
    "view_tickets": frozenset({SA, AD, RS, AC}),
    # hajj & umrah
    "manage_hajj_umrah": frozenset({SA, AD, RS}),
    "view_hajj_umrah": frozenset({SA, AD, RS, AC}),
    # visa processing
    "manage_visa": frozenset({SA, AD, RS}),
    "view_visa": frozenset({SA, AD, RS, AC}),
    # money exchange
    "manage_exchange": frozenset({SA, AD, AC}),
    "view_exchange": frozenset({SA, AD, AC, RS}),
    # office management
    "manage_office": frozenset({SA, AD}),
    "view_office": frozenset({SA, AD, AC}),
    # personal finance / own profile
    "personal_finance": ALL_ROLES,
    "manage_profile": ALL_ROLES,
    "view_profile": ALL_ROLES,
}
