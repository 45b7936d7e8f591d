from typing import Optional

from db import Role, User

# Spellings older clients send for the lead role
ROLE_ALIASES = {
    "admin": Role.Admin,
    "administrator": Role.Admin,
    "lead": Role.Lead,
    "teamlead": Role.Lead,
    "team lead": Role.Lead,
    "team_lead": Role.Lead,
    "member": Role.Member,
}


def normalize_role(value: Optional[str], default: Optional[Role] = Role.Member) -> Optional[Role]:
    """Map a free-form role string onto a Role; unknown or empty input yields ``default``."""
    if value is None:
        return default
    if isinstance(value, Role):
        return value
    key = str(value).strip().lower()
    if not key:
        return default
    return ROLE_ALIASES.get(key, ROLE_ALIASES.get(key.replace("-", " "), default))


def is_admin(user: User) -> bool:
    return user.role == Role.Admin


def is_lead(user: User) -> bool:
    return user.role == Role.Lead


def is_lead_or_admin(user: User) -> bool:
    return user.role in (Role.Lead, Role.Admin)
