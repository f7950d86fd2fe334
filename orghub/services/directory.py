"""
User directory: registration, profile updates, status and soft deletion.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
import uuid

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import get_password_hash
from ..config import settings
from ..db import commit_or_raise
from ..errors import BranchScopeViolation, Conflict, InvalidInput, NotFound, OrgHubError
from ..models.models import Branch, Role, User, UserLogin
from .audit import record_activity
from .hierarchy import branch_scope_ids, coerce_uuid, get_live_user, role_rank
from .lockout import utcnow
from .permissions import is_admin


logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = ("full_name", "email", "phone", "department", "designation", "remarks")


def accessible_branch_ids(user: User) -> Optional[Set[uuid.UUID]]:
    """Branches the user may manage; None means every branch."""
    rank = role_rank(user)
    if is_admin(user) or (rank is not None and rank <= settings.global_scope_max_rank):
        return None
    return branch_scope_ids(user)


def _ensure_branch_in_scope(actor: Optional[User], branch_id: uuid.UUID) -> None:
    if actor is None:
        return
    allowed = accessible_branch_ids(actor)
    if allowed is not None and branch_id not in allowed:
        raise BranchScopeViolation(
            "You can only manage users in branches you have access to",
            branch_id=str(branch_id),
        )


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _normalize_username(value: Any) -> Optional[str]:
    value = _clean(value)
    return value.lower() if value else None


def _load_role(db: Session, role_id: Any) -> Role:
    role = db.query(Role).filter(Role.id == coerce_uuid(role_id, "role ID")).first()
    if not role:
        raise NotFound("Role not found")
    return role


def _load_branch(db: Session, branch_id: Any) -> Branch:
    branch = db.query(Branch).filter(Branch.id == coerce_uuid(branch_id, "branch ID")).first()
    if not branch:
        raise NotFound("Branch not found")
    return branch


def _ensure_unique(db: Session, email: Optional[str], phone: Optional[str], username: Optional[str],
                   exclude_id: Optional[uuid.UUID] = None) -> None:
    def taken(column, value) -> bool:
        query = db.query(User.id).filter(column == value)
        if exclude_id is not None:
            query = query.filter(User.id != exclude_id)
        return query.first() is not None

    if email and taken(User.email, email):
        raise Conflict("Email already exists")
    if phone and taken(User.phone, phone):
        raise Conflict("Phone number already exists")
    if username:
        if taken(User.username, username):
            raise Conflict("Username already exists")
        query = db.query(UserLogin.id).filter(UserLogin.username == username)
        if exclude_id is not None:
            query = query.filter(UserLogin.user_id != exclude_id)
        if query.first() is not None:
            raise Conflict("Username already exists")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def register_user(db: Session, data: Mapping[str, Any], actor: Optional[User] = None) -> User:
    external_id = _clean(data.get("external_id"))
    full_name = _clean(data.get("full_name"))
    if not external_id:
        raise InvalidInput("User ID is required")
    if not full_name:
        raise InvalidInput("Full Name is required")
    if not data.get("role_id"):
        raise InvalidInput("Role is required")
    if not data.get("branch_id"):
        raise InvalidInput("Branch is required")

    can_login = _as_bool(data.get("can_login", False))
    username = _normalize_username(data.get("username"))
    password = data.get("password")
    if can_login:
        if not username:
            raise InvalidInput("Username is required when login is allowed")
        if not password or not str(password).strip():
            raise InvalidInput("Password is required when login is allowed")

    role = _load_role(db, data["role_id"])
    branch = _load_branch(db, data["branch_id"])
    _ensure_branch_in_scope(actor, branch.id)

    email = _clean(data.get("email"))
    phone = _clean(data.get("phone"))
    _ensure_unique(db, email, phone, username if can_login else None)

    actor_id = actor.id if actor else None
    user = User(
        external_id=external_id,
        full_name=full_name,
        email=email,
        phone=phone,
        department=_clean(data.get("department")),
        designation=_clean(data.get("designation")),
        remarks=_clean(data.get("remarks")),
        role_id=role.id,
        branch_id=branch.id,
        can_login=can_login,
        is_active=data.get("is_active", True) is not False,
        created_by=actor_id,
        updated_by=actor_id,
    )
    if can_login:
        user.username = username
        user.login = UserLogin(
            username=username,
            password_hash=get_password_hash(password),
            max_allowed_devices=settings.max_allowed_devices,
        )
    db.add(user)
    db.flush()
    record_activity(
        db, "register_user", actor_id=actor_id, target_model="User", target_id=user.id,
        description=f"Registered {full_name}",
        context={"role_id": str(role.id), "branch_id": str(branch.id), "can_login": can_login},
    )
    commit_or_raise(db, "register_user")
    logger.info("user_registered", user_id=str(user.id), actor_id=str(actor_id) if actor_id else None)
    return user


def _apply_login_change(db: Session, user: User, data: Mapping[str, Any], now: datetime) -> None:
    can_login = _as_bool(data["can_login"]) if "can_login" in data and data["can_login"] is not None else user.can_login

    if not can_login:
        if user.login is not None:
            # delete-orphan cascade drops the credential with its devices
            user.login = None
        user.username = None
        user.can_login = False
        return

    username = _normalize_username(data.get("username")) or user.username
    password = data.get("password")
    if not username:
        raise InvalidInput("Username is required when login is allowed")
    if user.login is None and not (password and str(password).strip()):
        raise InvalidInput("Password is required when login is allowed")
    if username != user.username or (user.login is not None and username != user.login.username):
        _ensure_unique(db, None, None, username, exclude_id=user.id)

    if user.login is None:
        user.login = UserLogin(
            username=username,
            password_hash=get_password_hash(password),
            max_allowed_devices=settings.max_allowed_devices,
        )
    else:
        login = user.login
        if login.username != username:
            login.username = username
            login.updated_at = now
        if password and str(password).strip():
            login.password_hash = get_password_hash(password)
            login.updated_at = now
    user.username = username
    user.can_login = True


def _apply_update(db: Session, user: User, data: Mapping[str, Any], actor: Optional[User], now: datetime) -> List[str]:
    changed: List[str] = []

    if "full_name" in data and not _clean(data.get("full_name")):
        raise InvalidInput("Full Name is required")

    email = _clean(data.get("email")) if "email" in data else None
    phone = _clean(data.get("phone")) if "phone" in data else None
    _ensure_unique(
        db,
        email if email and email != user.email else None,
        phone if phone and phone != user.phone else None,
        None,
        exclude_id=user.id,
    )

    for field in UPDATABLE_FIELDS:
        if field in data:
            value = _clean(data[field])
            if getattr(user, field) != value:
                setattr(user, field, value)
                changed.append(field)

    if data.get("role_id"):
        role = _load_role(db, data["role_id"])
        if role.id != user.role_id:
            user.role_id = role.id
            user.role = role
            changed.append("role_id")

    if data.get("branch_id"):
        branch = _load_branch(db, data["branch_id"])
        if branch.id != user.branch_id:
            _ensure_branch_in_scope(actor, branch.id)
            user.branch_id = branch.id
            user.branch = branch
            changed.append("branch_id")

    if any(k in data for k in ("can_login", "username", "password")):
        _apply_login_change(db, user, data, now)
        changed.append("login")
    return changed


def update_user(db: Session, user_id: Any, data: Mapping[str, Any], actor: Optional[User] = None,
                now: Optional[datetime] = None) -> User:
    now = now or utcnow()
    user = get_live_user(db, user_id)
    try:
        changed = _apply_update(db, user, data, actor, now)
    except OrgHubError:
        # Drop partially applied fields
        db.rollback()
        raise

    actor_id = actor.id if actor else None
    user.updated_by = actor_id
    record_activity(
        db, "update_user", actor_id=actor_id, target_model="User", target_id=user.id,
        context={"fields": changed},
    )
    commit_or_raise(db, "update_user")
    logger.info("user_updated", user_id=str(user.id), fields=changed)
    return user


def toggle_user_status(db: Session, user_id: Any, actor: Optional[User] = None) -> User:
    user = get_live_user(db, user_id)
    user.is_active = not user.is_active
    user.updated_by = actor.id if actor else None
    record_activity(
        db, "activate_user" if user.is_active else "disable_user",
        actor_id=user.updated_by, target_model="User", target_id=user.id,
    )
    commit_or_raise(db, "toggle_user_status")
    logger.info("user_status_toggled", user_id=str(user.id), is_active=user.is_active)
    return user


def soft_delete_user(db: Session, user_id: Any, actor: Optional[User] = None, now: Optional[datetime] = None) -> User:
    user = get_live_user(db, user_id)
    user.is_deleted = True
    user.deleted_at = now or utcnow()
    user.deleted_by = actor.id if actor else None
    record_activity(db, "delete_user", actor_id=user.deleted_by, target_model="User", target_id=user.id)
    commit_or_raise(db, "soft_delete_user")
    logger.info("user_deleted", user_id=str(user.id))
    return user


def restore_user(db: Session, user_id: Any, actor: Optional[User] = None) -> User:
    uid = coerce_uuid(user_id)
    user = db.query(User).filter(User.id == uid, User.is_deleted.is_(True)).first()
    if not user:
        raise NotFound("Deleted user not found")
    user.is_deleted = False
    user.deleted_at = None
    user.deleted_by = None
    user.updated_by = actor.id if actor else None
    record_activity(db, "restore_user", actor_id=user.updated_by, target_model="User", target_id=user.id)
    commit_or_raise(db, "restore_user")
    logger.info("user_restored", user_id=str(user.id))
    return user


def get_user(db: Session, user_id: Any) -> User:
    return get_live_user(db, user_id)


def list_users(
    db: Session,
    is_active: Optional[bool] = None,
    role_id: Any = None,
    branch_id: Any = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[User], int]:
    """Non-deleted users, newest first, with the total before paging."""
    limit = min(max(1, limit), 200)
    page = max(1, page)

    query = db.query(User).filter(User.is_deleted.is_(False))
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))
    if role_id:
        query = query.filter(User.role_id == coerce_uuid(role_id, "role ID"))
    if branch_id:
        query = query.filter(User.branch_id == coerce_uuid(branch_id, "branch ID"))
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            User.full_name.ilike(like),
            User.username.ilike(like),
            User.email.ilike(like),
        ))

    total = query.count()
    users = query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return users, total


def list_users_by_branch(db: Session, branch_id: Any) -> List[User]:
    """Live users whose primary branch is the given one."""
    bid = coerce_uuid(branch_id, "branch ID")
    users = (
        db.query(User)
        .filter(User.branch_id == bid, User.is_deleted.is_(False))
        .order_by(User.full_name)
        .all()
    )
    if not users:
        raise NotFound("No users found for this branch")
    return users


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "external_id": user.external_id,
        "full_name": user.full_name,
        "username": user.username,
        "email": user.email,
        "phone": user.phone,
        "department": user.department,
        "designation": user.designation,
        "remarks": user.remarks,
        "role": {"id": str(user.role.id), "name": user.role.name, "rank": user.role.rank} if user.role else None,
        "branch": {"id": str(user.branch.id), "name": user.branch.name} if user.branch else None,
        "assigned_branches": [{"id": str(b.id), "name": b.name} for b in user.assigned_branches],
        "reporting_to_id": str(user.reporting_to_id) if user.reporting_to_id else None,
        "can_login": user.can_login,
        "is_active": user.is_active,
        "is_deleted": user.is_deleted,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }
