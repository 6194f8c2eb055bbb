from __future__ import annotations

import re
from typing import Dict, Iterable, Mapping, Optional, Tuple


MONITORING_AGENT = "monitoring_agent"
CONTRACT_WORKER = "contract_worker"
OWNER = "owner"
STORE_MANAGER = "store_manager"
BRANCH_MANAGER = "branch_manager"
SYSTEM_ADMIN = "system_admin"

# Lowest to highest permission.
USER_TYPES = [
    MONITORING_AGENT,
    CONTRACT_WORKER,
    OWNER,
    STORE_MANAGER,
    BRANCH_MANAGER,
    SYSTEM_ADMIN,
]

DISPLAY_NAMES: Dict[str, str] = {
    MONITORING_AGENT: "Monitoring Agent",
    CONTRACT_WORKER: "Contract Worker",
    OWNER: "Owner",
    STORE_MANAGER: "Store Manager",
    BRANCH_MANAGER: "Branch Manager",
    SYSTEM_ADMIN: "System Admin",
}

MANAGEMENT_TYPES = {STORE_MANAGER, BRANCH_MANAGER, SYSTEM_ADMIN}

REFERRAL_PREFIX = "LAS"
REFERRAL_CODE_RANGES: Dict[str, Tuple[int, int]] = {
    OWNER: (1000, 2999),
    STORE_MANAGER: (1000, 2999),
    MONITORING_AGENT: (3000, 4999),
    CONTRACT_WORKER: (5000, 6999),
}
_REFERRAL_PATTERN = re.compile(r"^LAS(\d{4})$")
_REFERRAL_CATEGORIES = [
    ((1000, 2999), "Staff (owner/store manager)"),
    ((3000, 4999), "Monitoring Agent"),
    ((5000, 6999), "Contract Worker"),
]


def _user_type(user: Optional[Mapping]) -> Optional[str]:
    if not user:
        return None
    return user.get("user_type")


def display_role(user_type: Optional[str]) -> str:
    return DISPLAY_NAMES.get(user_type or "", user_type or DISPLAY_NAMES[OWNER])


def permission_level(user: Optional[Mapping]) -> int:
    user_type = _user_type(user)
    if user_type not in USER_TYPES:
        return 0
    return USER_TYPES.index(user_type)


def has_higher_permission(user_a: Optional[Mapping], user_b: Optional[Mapping]) -> bool:
    return permission_level(user_a) > permission_level(user_b)


def is_system_admin(user: Optional[Mapping]) -> bool:
    return _user_type(user) == SYSTEM_ADMIN


def can_access_management(user: Optional[Mapping]) -> bool:
    return _user_type(user) in MANAGEMENT_TYPES


def can_manage_users(user: Optional[Mapping]) -> bool:
    return _user_type(user) in MANAGEMENT_TYPES


def can_manage_work_diaries(user: Optional[Mapping]) -> bool:
    return _user_type(user) in MANAGEMENT_TYPES


def can_edit_schedule(user: Optional[Mapping]) -> bool:
    return _user_type(user) in MANAGEMENT_TYPES


def can_write_work_diary(user: Optional[Mapping]) -> bool:
    user_type = _user_type(user)
    return user_type is not None and user_type != MONITORING_AGENT


def can_manage_sales(user: Optional[Mapping]) -> bool:
    user_type = _user_type(user)
    return user_type is not None and user_type != MONITORING_AGENT


def can_get_sales_commission(user: Optional[Mapping]) -> bool:
    user_type = _user_type(user)
    return user_type is not None and user_type not in {MONITORING_AGENT, CONTRACT_WORKER}


def can_access_all_branches(user: Optional[Mapping]) -> bool:
    return _user_type(user) == SYSTEM_ADMIN


def can_view_own_branch_only(user: Optional[Mapping]) -> bool:
    if not user:
        return True
    return _user_type(user) in {STORE_MANAGER, BRANCH_MANAGER}


def visible_branch(user: Optional[Mapping], requested: Optional[str]) -> Optional[str]:
    """Branch ``user`` may look at: the requested one for system admins, otherwise their own."""
    if can_access_all_branches(user):
        return requested or (user or {}).get("branch")
    return (user or {}).get("branch")


def can_view_own_data_only(user: Optional[Mapping]) -> bool:
    if not user:
        return True
    return _user_type(user) in {OWNER, CONTRACT_WORKER, MONITORING_AGENT}


def can_get_referral_code(user: Optional[Mapping]) -> bool:
    return _user_type(user) in REFERRAL_CODE_RANGES


# Which target types each manager may edit or delete inside their own branch.
_MANAGED_TYPES = {
    BRANCH_MANAGER: {STORE_MANAGER, OWNER, CONTRACT_WORKER, MONITORING_AGENT},
    STORE_MANAGER: {OWNER, CONTRACT_WORKER, MONITORING_AGENT},
}


def _manages(user: Mapping, target: Mapping) -> bool:
    managed = _MANAGED_TYPES.get(_user_type(user) or "")
    if not managed:
        return False
    return user.get("branch") == target.get("branch") and _user_type(target) in managed


def can_edit_user(user: Optional[Mapping], target: Optional[Mapping]) -> bool:
    if not user or not target:
        return False
    if user.get("id") == target.get("id"):
        return True
    if is_system_admin(user):
        return True
    return _manages(user, target)


def can_delete_user(user: Optional[Mapping], target: Optional[Mapping]) -> bool:
    if not user or not target:
        return False
    if user.get("id") == target.get("id"):
        return False
    if is_system_admin(user):
        return True
    return _manages(user, target)


def generate_referral_code(user_type: str, existing_codes: Iterable[str] = ()) -> Optional[str]:
    """Lowest free ``LAS####`` code in the range for ``user_type``, or None."""
    code_range = REFERRAL_CODE_RANGES.get(user_type)
    if not code_range:
        return None
    low, high = code_range
    taken = set()
    for code in existing_codes:
        match = _REFERRAL_PATTERN.match((code or "").strip().upper())
        if match:
            taken.add(int(match.group(1)))
    for number in range(low, high + 1):
        if number not in taken:
            return f"{REFERRAL_PREFIX}{number}"
    return None


def validate_referral_code(code: Optional[str]) -> Tuple[bool, str]:
    if not code or not isinstance(code, str):
        return False, "Enter a referral code."
    match = _REFERRAL_PATTERN.match(code.strip().upper())
    if not match:
        return False, "Referral codes look like LAS1000."
    number = int(match.group(1))
    if not any(low <= number <= high for (low, high), _ in _REFERRAL_CATEGORIES):
        return False, "Referral code is outside the issued ranges."
    return True, ""


def referral_code_category(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    match = _REFERRAL_PATTERN.match(code.strip().upper())
    if not match:
        return "Unknown"
    number = int(match.group(1))
    for (low, high), label in _REFERRAL_CATEGORIES:
        if low <= number <= high:
            return label
    return "Unknown"
