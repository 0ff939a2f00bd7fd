from types import MappingProxyType
from typing import Optional, Union
import enum

from clinic_engine.models.schema import StaffRole

class Permission(enum.Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_CLINICS = "manage_clinics"
    MANAGE_CLIENTS = "manage_clients"
    VIEW_ALL_CLIENTS = "view_all_clients"
    MANAGE_SESSIONS = "manage_sessions"
    VIEW_ALL_SESSIONS = "view_all_sessions"
    VIEW_OWN_SESSIONS = "view_own_sessions"
    LOG_SESSION_NOTES = "log_session_notes"
    VERIFY_SESSIONS = "verify_sessions"
    MANAGE_ATTENDANCE = "manage_attendance"
    MANAGE_PAYMENTS = "manage_payments"
    COLLECT_PAYMENTS = "collect_payments"
    VIEW_PAYMENTS = "view_payments"
    VIEW_REPORTS = "view_reports"
    VIEW_FINANCIAL_REPORTS = "view_financial_reports"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_PACKAGES = "manage_packages"
    MANAGE_RATES = "manage_rates"

_THERAPIST_PERMISSIONS = frozenset({Permission.VIEW_OWN_SESSIONS, Permission.LOG_SESSION_NOTES})

ROLE_PERMISSIONS = MappingProxyType({
    StaffRole.OWNER: frozenset(Permission),
    StaffRole.SECRETARY: frozenset({
        Permission.MANAGE_CLIENTS,
        Permission.VIEW_ALL_CLIENTS,
        Permission.MANAGE_SESSIONS,
        Permission.VIEW_ALL_SESSIONS,
        Permission.VERIFY_SESSIONS,
        Permission.MANAGE_ATTENDANCE,
        Permission.COLLECT_PAYMENTS,
        Permission.VIEW_PAYMENTS,
    }),
    StaffRole.LICENSED_THERAPIST: _THERAPIST_PERMISSIONS,
    StaffRole.UNLICENSED_THERAPIST: _THERAPIST_PERMISSIONS,
    StaffRole.SPEECH_THERAPIST: _THERAPIST_PERMISSIONS,
})

THERAPIST_ROLES = frozenset({
    StaffRole.LICENSED_THERAPIST,
    StaffRole.UNLICENSED_THERAPIST,
    StaffRole.SPEECH_THERAPIST,
})

def _as_role(role: Union[StaffRole, str]) -> Optional[StaffRole]:
    if isinstance(role, StaffRole):
        return role
    try:
        return StaffRole(role)
    except ValueError:
        return None

def has_permission(role: Union[StaffRole, str], permission: Permission) -> bool:
    staff_role = _as_role(role)
    if staff_role is None:
        return False
    return permission in ROLE_PERMISSIONS.get(staff_role, frozenset())

def get_permissions(role: Union[StaffRole, str]) -> frozenset:
    staff_role = _as_role(role)
    return ROLE_PERMISSIONS.get(staff_role, frozenset()) if staff_role else frozenset()

def is_therapist(role: Union[StaffRole, str]) -> bool:
    return _as_role(role) in THERAPIST_ROLES

def can_access_clinic(role: Union[StaffRole, str], home_clinic_id: Optional[int], target_clinic_id: int) -> bool:
    """Owners reach every clinic; everyone else only their home clinic."""
    if _as_role(role) == StaffRole.OWNER:
        return True
    return home_clinic_id is not None and home_clinic_id == target_clinic_id
