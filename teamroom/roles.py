"""
Role names and the role hierarchy.

Every role lookup in the package goes through ``role_key`` so that
"Builder", "builder " and "BUILDER" always address the same participant.
"""
from typing import Iterable, Optional

USER_ROLE = "user"
PLANNER_ROLE = "planner"
BUILDER_ROLE = "builder"
REVIEWER_ROLE = "reviewer"

# Lower number = higher priority. Unknown roles sit between the team and the user.
DEFAULT_ROLE_HIERARCHY = {
    PLANNER_ROLE: 0,
    BUILDER_ROLE: 1,
    REVIEWER_ROLE: 2,
    USER_ROLE: 999,
}
UNKNOWN_ROLE_PRIORITY = 100


def role_key(role: Optional[str]) -> str:
    return (role or "").strip().casefold()


def same_role(a: Optional[str], b: Optional[str]) -> bool:
    return role_key(a) == role_key(b)


def is_user(role: Optional[str]) -> bool:
    return role_key(role) == USER_ROLE


def role_in(role: str, roles: Iterable[str]) -> bool:
    key = role_key(role)
    return any(role_key(r) == key for r in roles)


def dedupe_roles(roles: Iterable[str]) -> list[str]:
    """Case-insensitive dedupe preserving first-seen order; returns role keys."""
    seen: list[str] = []
    for r in roles:
        key = role_key(r)
        if key and key not in seen:
            seen.append(key)
    return seen


def role_priority(role: str) -> int:
    return DEFAULT_ROLE_HIERARCHY.get(role_key(role), UNKNOWN_ROLE_PRIORITY)


def sort_roles_by_priority(roles: Iterable[str]) -> list[str]:
    return sorted(roles, key=role_priority)

