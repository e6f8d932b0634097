from __future__ import annotations

from typing import Dict, Iterable, Optional

from .config import IGNORED_UPDATE_KEYS, TEAM_EDITABLE_FIELDS


def is_admin(user: Optional[Dict]) -> bool:
    return bool(user) and user.get("role") == "ADMIN"


def require_admin(user: Optional[Dict], action: str = "perform this action") -> None:
    if not is_admin(user):
        raise PermissionError(f"Administrator role required to {action}")


def check_record_update(
    user: Optional[Dict],
    updates: Dict,
    editable: Iterable[str] = TEAM_EDITABLE_FIELDS,
) -> None:
    """Raise PermissionError if `user` may not write every key in `updates`.

    Administrators may write any field. Team members are limited to the
    allow-listed operational fields. Keys that record writes drop (_rev, _id etc.) are ignored.
    """
    if not user:
        raise PermissionError("Authentication required")
    if is_admin(user):
        return
    allowed = set(editable)
    blocked = sorted(k for k in (updates or {}) if k not in allowed and k not in IGNORED_UPDATE_KEYS)
    if blocked:
        raise PermissionError(f"Team members may not edit: {', '.join(blocked)}")
