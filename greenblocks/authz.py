"""Authorization predicates the engines enforce.

Actors are user documents from ``UserDirectory``; every check raises
``Forbidden`` on mismatch.
"""
from .errors import Forbidden
from .models import UserRole


def has_role(user: dict, *roles: UserRole) -> bool:
    return user.get("role") in {r.value for r in roles}


def require_role(user: dict, *roles: UserRole, action: str = "perform this action") -> None:
    if not has_role(user, *roles):
        raise Forbidden(f"Access denied: insufficient permissions to {action}")


def is_regulator(user: dict) -> bool:
    return has_role(user, UserRole.REGULATORY_BODY)


def require_regulator(user: dict, action: str = "perform this action") -> None:
    require_role(user, UserRole.REGULATORY_BODY, action=action)


def is_owner(user: dict, doc: dict, field: str = "developer") -> bool:
    return doc.get(field) == user["userId"]


def require_owner(user: dict, doc: dict, field: str = "developer", action: str = "modify this resource") -> None:
    if not is_owner(user, doc, field):
        raise Forbidden(f"Not authorized to {action}")


def require_owner_or_regulator(user: dict, doc: dict, field: str = "developer", action: str = "view this resource") -> None:
    if not (is_owner(user, doc, field) or is_regulator(user)):
        raise Forbidden(f"Not authorized to {action}")
