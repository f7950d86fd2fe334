"""
Role lifecycle: create, list, read, update and deactivate.

Role names are stored trimmed and lower-cased and are unique within their
scope (global when ``enterprise_id`` is NULL, otherwise per enterprise).
Roles are never hard-deleted; users keep pointing at a deactivated role and
simply lose its grants.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from ..db import commit_or_raise
from ..errors import Conflict, InvalidInput, NotFound
from ..models.models import Role, User
from .audit import record_activity
from .hierarchy import coerce_uuid
from .lockout import utcnow


logger = structlog.get_logger(__name__)

DEFAULT_RANK = 100


def normalize_role_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    return value or None


def _parse_rank(value: Any) -> int:
    try:
        rank = int(value)
    except (TypeError, ValueError):
        raise InvalidInput("Rank must be an integer")
    if rank < 0:
        raise InvalidInput("Rank must not be negative")
    return rank


def _ensure_name_free(db: Session, name: str, enterprise_id: Any, exclude_id: Any = None) -> None:
    query = db.query(Role.id).filter(Role.name == name)
    if enterprise_id is None:
        query = query.filter(Role.enterprise_id.is_(None))
    else:
        query = query.filter(Role.enterprise_id == enterprise_id)
    if exclude_id is not None:
        query = query.filter(Role.id != exclude_id)
    if query.first() is not None:
        raise Conflict("Role name already exists")


def get_role(db: Session, role_id: Any) -> Role:
    role = db.query(Role).filter(Role.id == coerce_uuid(role_id, "role ID")).first()
    if not role:
        raise NotFound("Role not found")
    return role


def create_role(db: Session, data: Mapping[str, Any], actor: Optional[User] = None) -> Role:
    name = normalize_role_name(data.get("name"))
    if not name:
        raise InvalidInput("Role name is required")
    enterprise_id = coerce_uuid(data["enterprise_id"], "enterprise ID") if data.get("enterprise_id") else None
    rank = _parse_rank(data["rank"]) if data.get("rank") is not None else DEFAULT_RANK
    _ensure_name_free(db, name, enterprise_id)

    actor_id = actor.id if actor else None
    role = Role(
        name=name,
        description=(data.get("description") or "").strip(),
        rank=rank,
        permissions=[],
        enterprise_id=enterprise_id,
        is_active=True,
        created_by=actor_id,
    )
    db.add(role)
    db.flush()
    record_activity(
        db, "create_role", actor_id=actor_id, target_model="Role", target_id=role.id,
        context={"name": name, "rank": rank},
    )
    commit_or_raise(db, "create_role")
    logger.info("role_created", role_id=str(role.id), name=name, rank=rank)
    return role


def list_roles(db: Session, is_active: Optional[bool] = None) -> List[Role]:
    """Newest first."""
    query = db.query(Role)
    if is_active is not None:
        query = query.filter(Role.is_active.is_(is_active))
    return query.order_by(Role.created_at.desc()).all()


def _set_active(role: Role, active: bool, actor_id: Any, now: datetime) -> None:
    role.is_active = active
    if active:
        role.deactivated_by = None
        role.deactivated_at = None
    else:
        role.deactivated_by = actor_id
        role.deactivated_at = now


def update_role(db: Session, role_id: Any, data: Mapping[str, Any], actor: Optional[User] = None,
                now: Optional[datetime] = None) -> Role:
    role = get_role(db, role_id)
    actor_id = actor.id if actor else None
    changed: List[str] = []

    if data.get("name") is not None:
        name = normalize_role_name(data["name"])
        if not name:
            raise InvalidInput("Role name is required")
        if name != role.name:
            _ensure_name_free(db, name, role.enterprise_id, exclude_id=role.id)
            role.name = name
            changed.append("name")
    if data.get("description"):
        role.description = data["description"].strip()
        changed.append("description")
    if data.get("rank") is not None:
        rank = _parse_rank(data["rank"])
        if rank != role.rank:
            role.rank = rank
            changed.append("rank")
    if data.get("is_active") is not None and bool(data["is_active"]) != role.is_active:
        _set_active(role, bool(data["is_active"]), actor_id, now or utcnow())
        changed.append("is_active")

    if changed:
        record_activity(
            db, "update_role", actor_id=actor_id, target_model="Role", target_id=role.id,
            context={"fields": changed},
        )
        commit_or_raise(db, "update_role")
        logger.info("role_updated", role_id=str(role.id), fields=changed)
    return role


def deactivate_role(db: Session, role_id: Any, actor: Optional[User] = None, now: Optional[datetime] = None) -> Role:
    """Soft delete; repeating it on an inactive role changes nothing."""
    role = get_role(db, role_id)
    if not role.is_active:
        return role
    actor_id = actor.id if actor else None
    _set_active(role, False, actor_id, now or utcnow())
    record_activity(db, "deactivate_role", actor_id=actor_id, target_model="Role", target_id=role.id)
    commit_or_raise(db, "deactivate_role")
    logger.info("role_deactivated", role_id=str(role.id), actor_id=str(actor_id) if actor_id else None)
    return role


def role_to_dict(role: Role) -> Dict[str, Any]:
    return {
        "id": str(role.id),
        "name": role.name,
        "description": role.description,
        "rank": role.rank,
        "is_active": role.is_active,
        "enterprise_id": str(role.enterprise_id) if role.enterprise_id else None,
        "permissions": [p["action"] for p in (role.permissions or []) if p.get("granted")],
        "created_by": str(role.created_by) if role.created_by else None,
        "deactivated_by": str(role.deactivated_by) if role.deactivated_by else None,
        "deactivated_at": role.deactivated_at.isoformat() if role.deactivated_at else None,
        "created_at": role.created_at.isoformat() if role.created_at else None,
    }
