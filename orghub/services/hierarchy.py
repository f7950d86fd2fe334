"""
Reporting hierarchy.

``User.reporting_to_id`` stores each user's direct manager; across all users
the relation is a forest. Assignment keeps it acyclic and enforces the
seniority and branch-scope policy. Every walk is bounded by the user count and
a visited set so a corrupted row can never hang a request.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

import structlog
from sqlalchemy import func, literal, select
from sqlalchemy.orm import Session, aliased

from ..config import settings
from ..db import commit_or_raise
from ..errors import (
    BranchScopeViolation,
    CircularReference,
    Forbidden,
    InsufficientSeniority,
    InvalidInput,
    InvalidOperation,
    NotFound,
)
from ..models.models import User
from .audit import record_activity


logger = structlog.get_logger(__name__)

STRATEGY_RECURSIVE_CTE = "recursive_cte"
STRATEGY_LEVEL_BY_LEVEL = "level_by_level"


@dataclass
class SubordinateNode:
    user: User
    depth: int


@dataclass
class ReportingChange:
    user: User
    manager: Optional[User]
    previous_manager: Optional[User]
    changed: bool
    message: str


def coerce_uuid(value: Any, label: str = "user ID") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {label}")


def get_live_user(db: Session, user_id: Any, not_found: str = "User not found") -> User:
    uid = coerce_uuid(user_id)
    user = db.query(User).filter(User.id == uid, User.is_deleted.is_(False)).first()
    if not user:
        raise NotFound(not_found)
    return user


def _user_count(db: Session) -> int:
    return db.query(func.count(User.id)).scalar() or 0


def _manager_of(db: Session, user_id: uuid.UUID) -> Optional[uuid.UUID]:
    row = db.query(User.reporting_to_id).filter(User.id == user_id).first()
    return row[0] if row else None


def role_rank(user: User) -> Optional[int]:
    role = getattr(user, "role", None)
    return role.rank if role is not None else None


def is_strictly_senior(candidate: User, other: User) -> bool:
    """Lower rank number is more senior."""
    a, b = role_rank(candidate), role_rank(other)
    return a is not None and b is not None and a < b


def branch_scope_ids(user: User) -> Set[uuid.UUID]:
    ids = {b.id for b in (user.assigned_branches or [])}
    if user.branch_id:
        ids.add(user.branch_id)
    return ids


def would_create_cycle(db: Session, target_id: uuid.UUID, candidate_manager_id: uuid.UUID) -> bool:
    """
    True when the candidate already sits below the target, i.e. walking the
    candidate's own chain upward reaches the target. A missing or dangling
    ``reporting_to_id`` ends the walk with no cycle.
    """
    if candidate_manager_id == target_id:
        return True
    max_hops = _user_count(db)
    visited: Set[uuid.UUID] = {candidate_manager_id}
    current = _manager_of(db, candidate_manager_id)
    hops = 0
    while current is not None and hops < max_hops:
        if current == target_id:
            return True
        if current in visited:
            # Pre-existing loop that does not involve the target
            logger.warning("reporting_loop_detected", user_id=str(current))
            return False
        visited.add(current)
        current = _manager_of(db, current)
        hops += 1
    return False


def assign_reporting_authority(db: Session, target_user_id: Any, new_manager_id: Any, acting_user: Optional[User]) -> ReportingChange:
    user = get_live_user(db, target_user_id, "Target user not found")
    actor_id = acting_user.id if acting_user else None
    previous_id = user.reporting_to_id
    previous = db.query(User).filter(User.id == previous_id).first() if previous_id else None

    # Detach
    if new_manager_id is None or new_manager_id == "":
        user.reporting_to_id = None
        user.updated_by = actor_id
        record_activity(
            db, "clear_reporting", actor_id=actor_id, target_model="User", target_id=user.id,
            context={"previous_manager_id": str(previous_id) if previous_id else None},
        )
        commit_or_raise(db, "clear_reporting")
        logger.info("reporting_cleared", user_id=str(user.id), actor_id=str(actor_id) if actor_id else None)
        return ReportingChange(user=user, manager=None, previous_manager=previous, changed=previous_id is not None,
                               message="Reporting authority cleared successfully")

    manager_uuid = coerce_uuid(new_manager_id, "reporting user ID")
    if manager_uuid == user.id:
        raise InvalidOperation("User cannot report to themselves")

    manager = get_live_user(db, manager_uuid, "Reporting authority user not found")

    if would_create_cycle(db, user.id, manager.id):
        raise CircularReference(
            "Circular reporting would be created",
            user_id=str(user.id),
            reporting_to_id=str(manager.id),
        )

    if not is_strictly_senior(manager, user):
        raise InsufficientSeniority(
            "Reporting authority must be senior (lower rank number)",
            manager_rank=role_rank(manager),
            user_rank=role_rank(user),
        )

    manager_rank = role_rank(manager)
    exempt = manager_rank is not None and manager_rank <= settings.branch_scope_exempt_max_rank
    if not exempt and user.branch_id not in branch_scope_ids(manager):
        raise BranchScopeViolation("Reporting authority must be in same branch or assigned to this branch")

    user.reporting_to_id = manager.id
    user.updated_by = actor_id
    record_activity(
        db, "assign_reporting", actor_id=actor_id, target_model="User", target_id=user.id,
        description=f"{user.full_name} now reports to {manager.full_name}",
        context={
            "previous_manager_id": str(previous_id) if previous_id else None,
            "manager_id": str(manager.id),
        },
    )
    commit_or_raise(db, "assign_reporting")
    logger.info("reporting_assigned", user_id=str(user.id), manager_id=str(manager.id),
                actor_id=str(actor_id) if actor_id else None)
    return ReportingChange(user=user, manager=manager, previous_manager=previous, changed=previous_id != manager.id,
                           message="Reporting authority assigned successfully")


def get_ancestor_chain(db: Session, user_id: Any) -> List[User]:
    """Managers from the direct one up to the root; stops at a dangling reference."""
    user = get_live_user(db, user_id)
    max_hops = _user_count(db)
    chain: List[User] = []
    visited: Set[uuid.UUID] = {user.id}
    current_id = user.reporting_to_id
    while current_id is not None and len(chain) < max_hops:
        if current_id in visited:
            logger.warning("reporting_loop_detected", user_id=str(current_id))
            break
        manager = db.query(User).filter(User.id == current_id).first()
        if manager is None:
            break
        chain.append(manager)
        visited.add(manager.id)
        current_id = manager.reporting_to_id
    return chain


def _subtree_recursive_cte(db: Session, root: User) -> List[SubordinateNode]:
    max_depth = _user_count(db)
    tree = (
        select(User.id.label("id"), literal(0).label("depth"))
        .where(User.id == root.id)
        .cte("subordinate_tree", recursive=True)
    )
    child = aliased(User)
    tree = tree.union_all(
        select(child.id, (tree.c.depth + 1).label("depth"))
        .where(child.reporting_to_id == tree.c.id)
        .where(tree.c.depth < max_depth)
    )
    rows = db.execute(
        select(tree.c.id, func.min(tree.c.depth))
        .where(tree.c.depth > 0)
        .where(tree.c.id != root.id)
        .group_by(tree.c.id)
    ).all()
    depths = {row[0]: row[1] for row in rows}
    if not depths:
        return []
    users = db.query(User).filter(User.id.in_(list(depths.keys()))).all()
    return [SubordinateNode(user=u, depth=depths[u.id]) for u in users]


def _subtree_level_by_level(db: Session, root: User) -> List[SubordinateNode]:
    max_depth = _user_count(db)
    visited: Set[uuid.UUID] = {root.id}
    frontier = [root.id]
    depth = 0
    out: List[SubordinateNode] = []
    while frontier and depth < max_depth:
        depth += 1
        children = db.query(User).filter(User.reporting_to_id.in_(frontier)).all()
        next_frontier = []
        for child in children:
            if child.id in visited:
                continue
            visited.add(child.id)
            out.append(SubordinateNode(user=child, depth=depth))
            next_frontier.append(child.id)
        frontier = next_frontier
    return out


def get_subordinate_subtree(db: Session, user_id: Any, strategy: Optional[str] = None) -> List[SubordinateNode]:
    """All descendants, each with its depth (direct reports are depth 1)."""
    root = get_live_user(db, user_id)
    strategy = strategy or settings.hierarchy_strategy
    if strategy == STRATEGY_LEVEL_BY_LEVEL:
        nodes = _subtree_level_by_level(db, root)
    elif strategy == STRATEGY_RECURSIVE_CTE:
        nodes = _subtree_recursive_cte(db, root)
    else:
        raise InvalidInput(f"Unknown hierarchy strategy: {strategy}")
    nodes.sort(key=lambda n: (n.depth, (n.user.full_name or "").lower(), str(n.user.id)))
    return nodes


def user_projection(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "full_name": user.full_name,
        "role": user.role.name if user.role else None,
        "branch": user.branch.name if user.branch else None,
    }


def build_hierarchy_tree(db: Session, user_id: Any, strategy: Optional[str] = None) -> Dict[str, Any]:
    """Nested ``{..., "subordinates": [...]}`` tree rooted at the user."""
    root = get_live_user(db, user_id)
    nodes = get_subordinate_subtree(db, root.id, strategy=strategy)
    root_entry = dict(user_projection(root), subordinates=[])
    by_id: Dict[uuid.UUID, Dict[str, Any]] = {root.id: root_entry}
    # Sorted by depth, so a parent is always placed before its children
    for node in nodes:
        entry = dict(user_projection(node.user), level=node.depth, subordinates=[])
        parent = by_id.get(node.user.reporting_to_id)
        if parent is None:
            continue
        parent["subordinates"].append(entry)
        by_id[node.user.id] = entry
    return root_entry


def remove_reporting_authority(db: Session, target_user_id: Any, acting_user: User) -> ReportingChange:
    user = get_live_user(db, target_user_id)

    if user.reporting_to_id is None:
        return ReportingChange(user=user, manager=None, previous_manager=None, changed=False,
                               message="No reporting authority to remove")

    actor_rank = role_rank(acting_user)
    if actor_rank is None or actor_rank > settings.remove_reporting_max_rank:
        raise Forbidden("Unauthorized: insufficient permission to remove reporting authority")

    previous = db.query(User).filter(User.id == user.reporting_to_id).first()
    user.reporting_to_id = None
    user.updated_by = acting_user.id
    record_activity(
        db, "remove_reporting", actor_id=acting_user.id, target_model="User", target_id=user.id,
        context={"previous_manager_id": str(previous.id) if previous else None},
    )
    commit_or_raise(db, "remove_reporting")
    logger.info("reporting_removed", user_id=str(user.id), actor_id=str(acting_user.id))
    previous_name = previous.full_name if previous else "N/A"
    return ReportingChange(
        user=user,
        manager=None,
        previous_manager=previous,
        changed=True,
        message=f"Reporting authority removed successfully. Previously reported to {previous_name}",
    )
