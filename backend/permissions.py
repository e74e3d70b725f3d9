# permissions.py - Capability registry and built-in role definitions
#
# Every permission a route can require or a role can hold is listed here.
# Role definitions are validated against this registry, so a misspelled
# permission is rejected when the role is saved instead of silently
# denying every caller.
from enum import Enum
from typing import Iterable, List


class Permission(str, Enum):
    MANAGE_ORGANIZATIONS = "manage_organizations"
    MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
    CREATE_MODULES = "create_modules"
    ADD_LICENSES = "add_licenses"
    VIEW_ALL_DATA = "view_all_data"
    MANAGE_ROLES = "manage_roles"
    MANAGE_USERS = "manage_users"
    ENROLL_EQUIPMENT = "enroll_equipment"
    MANAGE_EQUIPMENT_STATUS = "manage_equipment_status"
    VIEW_EQUIPMENT_STATUS = "view_equipment_status"
    VIEW_ORGANIZATION_DASHBOARD = "view_organization_dashboard"
    VIEW_PATIENT_DATA = "view_patient_data"


KNOWN_PERMISSIONS = frozenset(p.value for p in Permission)


def unknown_permissions(permissions: Iterable[str]) -> List[str]:
    """Return the entries of ``permissions`` that are not in the registry."""
    return sorted({p for p in permissions if p not in KNOWN_PERMISSIONS})


# Lowest-privilege roles, in order of preference, for self-registration
DEFAULT_ROLE_NAMES = ("hospital_user", "read_only")

DEFAULT_ROLES = {
    "agi_admin": {
        "description": "Super administrator for the entire system.",
        "permissions": [
            Permission.MANAGE_ORGANIZATIONS,
            Permission.MANAGE_SUBSCRIPTIONS,
            Permission.CREATE_MODULES,
            Permission.ADD_LICENSES,
            Permission.VIEW_ALL_DATA,
            Permission.MANAGE_ROLES,
        ],
    },
    "hospital_admin": {
        "description": "Administrator for a specific hospital/clinic.",
        "permissions": [
            Permission.MANAGE_USERS,
            Permission.ENROLL_EQUIPMENT,
            Permission.VIEW_ORGANIZATION_DASHBOARD,
        ],
    },
    "doctor": {
        "description": "Clinical role with access to detailed patient data.",
        "permissions": [Permission.VIEW_PATIENT_DATA, Permission.VIEW_EQUIPMENT_STATUS],
    },
    "nurse": {
        "description": "Clinical role for patient monitoring.",
        "permissions": [Permission.VIEW_PATIENT_DATA, Permission.VIEW_EQUIPMENT_STATUS],
    },
    "technician": {
        "description": "Role focused on hardware management.",
        "permissions": [Permission.MANAGE_EQUIPMENT_STATUS, Permission.VIEW_EQUIPMENT_STATUS],
    },
    "ward_clerk": {
        "description": "Administrative role with limited access.",
        "permissions": [Permission.VIEW_EQUIPMENT_STATUS],
    },
    "read_only": {
        "description": "Generic viewer role with no edit permissions.",
        "permissions": [Permission.VIEW_ORGANIZATION_DASHBOARD, Permission.VIEW_EQUIPMENT_STATUS],
    },
    "hospital_user": {
        "description": "Default role for self-registered hospital staff.",
        "permissions": [Permission.VIEW_EQUIPMENT_STATUS],
    },
}


def role_permissions(name: str) -> List[str]:
    """Permission strings of a built-in role."""
    return [p.value for p in DEFAULT_ROLES[name]["permissions"]]
