"""
Permission catalog and role grants.

The catalog is an immutable set read from settings once. Role grants are
stored in one canonical shape:

    {"action": "create_user", "granted": true, "modified_by": "<uuid>|null", "modified_at": "<iso>"}

Older rows may hold plain strings or objects; ``normalize_permission_entries``
converts them and is run once by ``scripts/normalize_role_permissions.py``.
Reads never normalize.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import commit_or_raise
from ..errors import InvalidInput
from ..models.models import Role, User
from .roles import get_role


logger = structlog.get_logger(__name__)


class PermissionCatalog:
    def __init__(self, actions: Iterable[str]):
        self._actions: FrozenSet[str] = frozenset(a.strip() for a in actions if a and a.strip())

    @classmethod
    def from_settings(cls) -> "PermissionCatalog":
        return cls(settings.permission_catalog)

    def __contains__(self, action: object) -> bool:
        return action in self._actions

    def __iter__(self):
        return iter(sorted(self._actions))

    def __len__(self) -> int:
        return len(self._actions)

    def invalid(self, actions: Iterable[str]) -> List[str]:
        return [a for a in actions if a not in self._actions]


_catalog: Optional[PermissionCatalog] = None


def get_catalog() -> PermissionCatalog:
    global _catalog
    if _catalog is None:
        _catalog = PermissionCatalog.from_settings()
    return _catalog


def make_grant(action: str, granted: bool = True, modified_by: Optional[str] = None, modified_at: Optional[str] = None) -> Dict[str, Any]:
    return {
        "action": action,
        "granted": granted,
        "modified_by": modified_by,
        "modified_at": modified_at or datetime.now(timezone.utc).isoformat(),
    }


def _looks_char_indexed(entry: Dict[str, Any]) -> bool:
    keys = [k for k in entry.keys() if k not in ("_id", "granted", "modifiedBy", "modifiedAt")]
    return bool(keys) and all(str(k).isdigit() for k in keys)


def normalize_permission_entries(raw: Any) -> List[Dict[str, Any]]:
    """
    Convert legacy permission shapes into canonical grants.

    Accepts plain strings, ``{"action": ...}`` objects (camelCase or snake_case
    metadata) and character-indexed objects such as ``{"0": "v", "1": "i", ...}``
    left behind by an old serialization bug. Duplicates keep the first entry.
    """
    if not raw:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    out: List[Dict[str, Any]] = []
    seen = set()
    for entry in raw:
        action = None
        granted = True
        modified_by = None
        modified_at = None
        if isinstance(entry, str):
            action = entry
        elif isinstance(entry, dict):
            if entry.get("action"):
                action = str(entry["action"])
            elif _looks_char_indexed(entry):
                digits = sorted((int(k), v) for k, v in entry.items() if str(k).isdigit())
                action = "".join(str(v) for _, v in digits)
            granted = bool(entry.get("granted", True))
            modified_by = entry.get("modified_by", entry.get("modifiedBy"))
            modified_at = entry.get("modified_at", entry.get("modifiedAt"))
        if not action:
            logger.warning("permission_entry_dropped", entry=repr(entry))
            continue
        action = action.strip()
        if action in seen:
            continue
        seen.add(action)
        out.append(make_grant(
            action,
            granted,
            str(modified_by) if modified_by else None,
            str(modified_at) if modified_at else None,
        ))
    return out


def granted_actions(role: Optional[Role]) -> List[str]:
    if role is None or not role.is_active:
        return []
    return [p["action"] for p in (role.permissions or []) if p.get("granted")]


def is_admin(user: User) -> bool:
    role = getattr(user, "role", None)
    return bool(role and (role.name or "").lower() == settings.admin_role_name.lower())


def has_permission(user: User, action: str) -> bool:
    if is_admin(user):
        return True
    return action in granted_actions(getattr(user, "role", None))


@dataclass
class PermissionChange:
    role_id: str
    changed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


def _validate_actions(actions: List[str], catalog: PermissionCatalog) -> List[str]:
    if not isinstance(actions, list) or not actions:
        raise InvalidInput("Permissions must be a non-empty array")
    cleaned = [a.strip() for a in actions if isinstance(a, str) and a.strip()]
    invalid = catalog.invalid(cleaned)
    if invalid or not cleaned:
        raise InvalidInput("Some permissions are invalid", invalid_permissions=invalid)
    return cleaned


def add_role_permissions(db: Session, role_id, actions: List[str], actor: Optional[User] = None,
                         catalog: Optional[PermissionCatalog] = None) -> PermissionChange:
    catalog = catalog or get_catalog()
    role = get_role(db, role_id)
    requested = _validate_actions(actions, catalog)

    current = {p["action"]: p for p in (role.permissions or [])}
    result = PermissionChange(role_id=str(role.id))
    actor_id = str(actor.id) if actor else None
    updated = [dict(p) for p in (role.permissions or [])]
    for action in requested:
        existing = current.get(action)
        if existing and existing.get("granted"):
            result.unchanged.append(action)
            continue
        if existing:
            for p in updated:
                if p["action"] == action:
                    p.update(make_grant(action, True, actor_id))
        else:
            updated.append(make_grant(action, True, actor_id))
            current[action] = updated[-1]
        result.changed.append(action)

    if result.changed:
        # Reassign so the JSON column is flagged dirty
        role.permissions = updated
        commit_or_raise(db, "add_role_permissions")
        logger.info("role_permissions_added", role_id=str(role.id), added=result.changed)
    result.permissions = granted_actions(role)
    return result


def remove_role_permissions(db: Session, role_id, actions: List[str], actor: Optional[User] = None,
                            catalog: Optional[PermissionCatalog] = None) -> PermissionChange:
    catalog = catalog or get_catalog()
    role = get_role(db, role_id)
    requested = _validate_actions(actions, catalog)

    assigned = {p["action"] for p in (role.permissions or []) if p.get("granted")}
    result = PermissionChange(role_id=str(role.id))
    for action in requested:
        (result.changed if action in assigned else result.unchanged).append(action)
    if not result.changed:
        raise InvalidInput(
            "No valid permissions found to remove from this role",
            not_assigned=result.unchanged,
        )

    role.permissions = [dict(p) for p in (role.permissions or []) if p["action"] not in result.changed]
    commit_or_raise(db, "remove_role_permissions")
    logger.info("role_permissions_removed", role_id=str(role.id), removed=result.changed,
                actor_id=str(actor.id) if actor else None)
    result.permissions = granted_actions(role)
    return result
