"""
Additional branch assignments for a user.

Both directions are idempotent: branches already in the requested state are
reported, never treated as errors. Each actual change writes one
``BranchAssignmentLog`` row.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..db import commit_or_raise
from ..errors import InvalidInput, NotFound
from ..models.models import Branch, BranchAssignmentLog, User
from .hierarchy import get_live_user


logger = structlog.get_logger(__name__)

ASSIGN = "assign"
REMOVE = "remove"


@dataclass
class BranchAssignmentResult:
    action: str
    changed: bool
    message: str
    newly_assigned: List[str] = field(default_factory=list)
    already_assigned: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    not_assigned: List[str] = field(default_factory=list)
    assigned_branches: List[Dict[str, Any]] = field(default_factory=list)


def _parse_branch_ids(branch_ids: Any) -> List[uuid.UUID]:
    if not isinstance(branch_ids, list) or not branch_ids:
        raise InvalidInput("branchIds must be a non-empty array")
    parsed: List[uuid.UUID] = []
    for raw in branch_ids:
        try:
            bid = raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw))
        except (TypeError, ValueError):
            continue
        if bid not in parsed:
            parsed.append(bid)
    if not parsed:
        raise InvalidInput("No valid branch IDs provided")
    return parsed


def branch_projection(branch: Branch) -> Dict[str, Any]:
    return {"id": str(branch.id), "name": branch.name, "code": branch.code}


def _assign_message(result: BranchAssignmentResult) -> str:
    if not result.newly_assigned:
        if len(result.already_assigned) == 1:
            return "This branch is already assigned to the user"
        return "All provided branches are already assigned to the user"
    if result.already_assigned:
        return (
            f"Some branches were already assigned ({len(result.already_assigned)}), "
            "others added successfully."
        )
    return "Branch(es) assigned successfully"


def _remove_message(result: BranchAssignmentResult) -> str:
    if not result.removed:
        if len(result.not_assigned) == 1:
            return "This branch is not assigned to the user"
        return "None of the provided branches are assigned to the user"
    return "Branch unassigned successfully" if len(result.removed) == 1 else "Branches unassigned successfully"


def update_user_branches(
    db: Session,
    user_id: Any,
    branch_ids: Any,
    action: str,
    acting_user: Optional[User] = None,
    note: Optional[str] = None,
) -> BranchAssignmentResult:
    if action not in (ASSIGN, REMOVE):
        raise InvalidInput(f"Unknown branch action: {action}")
    parsed = _parse_branch_ids(branch_ids)
    user = get_live_user(db, user_id)

    branches = db.query(Branch).filter(Branch.id.in_(parsed)).all()
    if not branches:
        raise NotFound("No matching branches found")
    # Keep request order
    order = {bid: i for i, bid in enumerate(parsed)}
    branches.sort(key=lambda b: order[b.id])

    current = {b.id for b in user.assigned_branches}
    performed_by = acting_user.id if acting_user else None
    result = BranchAssignmentResult(action=action, changed=False, message="")

    for branch in branches:
        if action == ASSIGN:
            if branch.id in current:
                result.already_assigned.append(str(branch.id))
                continue
            user.assigned_branches.append(branch)
            result.newly_assigned.append(str(branch.id))
        else:
            if branch.id not in current:
                result.not_assigned.append(str(branch.id))
                continue
            user.assigned_branches.remove(branch)
            result.removed.append(str(branch.id))
        db.add(BranchAssignmentLog(
            user_id=user.id,
            branch_id=branch.id,
            action=action,
            performed_by=performed_by,
            note=note,
        ))

    result.changed = bool(result.newly_assigned or result.removed)
    if result.changed:
        user.updated_by = performed_by
        commit_or_raise(db, f"branch_{action}")
        logger.info(
            "branches_assigned" if action == ASSIGN else "branches_removed",
            user_id=str(user.id),
            branch_ids=result.newly_assigned or result.removed,
            actor_id=str(performed_by) if performed_by else None,
        )

    if action == ASSIGN:
        result.message = _assign_message(result)
    else:
        result.message = _remove_message(result)
    result.assigned_branches = [branch_projection(b) for b in user.assigned_branches]
    return result
