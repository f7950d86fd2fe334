from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from ..db import get_db
from ..models.models import User
from ..auth.security import require_permissions
from ..schemas.users import BranchAssignmentRequest, ReportingRequest, UserCreate, UserUpdate
from ..services import directory, hierarchy
from ..services.branch_assignment import ASSIGN, REMOVE, update_user_branches
from ..services.directory import user_to_dict


router = APIRouter(prefix="/users", tags=["users"])


def _branch_response(result) -> dict:
    return {
        "success": True,
        "message": result.message,
        "changed": result.changed,
        "newly_assigned": result.newly_assigned,
        "already_assigned": result.already_assigned,
        "removed": result.removed,
        "not_assigned": result.not_assigned,
        "assigned_branches": result.assigned_branches,
    }


@router.post("/register", status_code=201)
def register(payload: UserCreate, db: Session = Depends(get_db), me: User = Depends(require_permissions("create_user"))):
    user = directory.register_user(db, payload.model_dump(), actor=me)
    return {"success": True, "message": "User registered successfully", "user": user_to_dict(user)}


@router.get("")
def list_users(
    is_active: Optional[bool] = None,
    role: Optional[str] = None,
    branch: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("view_user")),
):
    """
    List non-deleted users, newest first.

    Args:
        is_active: Only active (true) or disabled (false) users
        role / branch: Role and primary branch IDs
        search: Matches full name, username or email
        page: Page number (1-indexed)
        limit: Items per page (default 50, max 200)
    """
    users, total = directory.list_users(
        db, is_active=is_active, role_id=role, branch_id=branch, search=search, page=page, limit=limit,
    )
    limit = min(max(1, limit), 200)
    return {
        "items": [user_to_dict(u) for u in users],
        "total": total,
        "page": max(1, page),
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


@router.post("/assign-branch")
def assign_branch(payload: BranchAssignmentRequest, db: Session = Depends(get_db),
                  me: User = Depends(require_permissions("assign_branch"))):
    result = update_user_branches(db, payload.user_id, payload.branch_ids, ASSIGN, acting_user=me, note=payload.note)
    return _branch_response(result)


@router.post("/remove-branch")
def remove_branch(payload: BranchAssignmentRequest, db: Session = Depends(get_db),
                  me: User = Depends(require_permissions("remove_branch"))):
    result = update_user_branches(db, payload.user_id, payload.branch_ids, REMOVE, acting_user=me, note=payload.note)
    return _branch_response(result)


@router.get("/branch/{branch_id}")
def users_by_branch(branch_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("view_user"))):
    users = directory.list_users_by_branch(db, branch_id)
    return {"success": True, "count": len(users), "items": [user_to_dict(u) for u in users]}


@router.get("/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("view_user"))):
    return user_to_dict(directory.get_user(db, user_id))


@router.put("/{user_id}")
def update_user(user_id: str, payload: UserUpdate, db: Session = Depends(get_db),
                me: User = Depends(require_permissions("edit_user"))):
    user = directory.update_user(db, user_id, payload.model_dump(exclude_unset=True), actor=me)
    return {"success": True, "message": "User updated successfully", "user": user_to_dict(user)}


@router.patch("/{user_id}/status")
def toggle_status(user_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("edit_user"))):
    user = directory.toggle_user_status(db, user_id, actor=me)
    state = "activated" if user.is_active else "disabled"
    return {"success": True, "message": f"User {state} successfully", "id": str(user.id), "is_active": user.is_active}


@router.delete("/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("delete_user"))):
    user = directory.soft_delete_user(db, user_id, actor=me)
    return {"success": True, "message": "User soft-deleted successfully", "id": str(user.id)}


@router.post("/{user_id}/restore")
def restore_user(user_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("delete_user"))):
    user = directory.restore_user(db, user_id, actor=me)
    return {"success": True, "message": "User restored successfully", "user": user_to_dict(user)}


# Reporting hierarchy

@router.post("/{user_id}/reporting")
def assign_reporting(user_id: str, payload: ReportingRequest, db: Session = Depends(get_db),
                     me: User = Depends(require_permissions("edit_user"))):
    change = hierarchy.assign_reporting_authority(db, user_id, payload.reporting_to, me)
    return {
        "success": True,
        "message": change.message,
        "user": hierarchy.user_projection(change.user),
        "reporting_to": hierarchy.user_projection(change.manager) if change.manager else None,
        "previous_reporting_to": (
            hierarchy.user_projection(change.previous_manager) if change.previous_manager else None
        ),
    }


@router.get("/{user_id}/reporting/up")
def reporting_chain_up(user_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("view_user"))):
    chain = hierarchy.get_ancestor_chain(db, user_id)
    return {"success": True, "chain": [hierarchy.user_projection(u) for u in chain]}


@router.get("/{user_id}/subordinates")
def subordinates(user_id: str, strategy: Optional[str] = None, db: Session = Depends(get_db),
                 _=Depends(require_permissions("view_user"))):
    nodes = hierarchy.get_subordinate_subtree(db, user_id, strategy=strategy)
    return {
        "success": True,
        "count": len(nodes),
        "subordinates": [
            dict(hierarchy.user_projection(n.user), level=n.depth,
                 reporting_to_id=str(n.user.reporting_to_id) if n.user.reporting_to_id else None)
            for n in nodes
        ],
    }


@router.get("/{user_id}/hierarchy")
def user_hierarchy(user_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("view_user"))):
    return {"success": True, "hierarchy": hierarchy.build_hierarchy_tree(db, user_id)}


@router.delete("/{user_id}/reporting")
def remove_reporting(user_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("edit_user"))):
    change = hierarchy.remove_reporting_authority(db, user_id, me)
    return {"success": True, "message": change.message, "changed": change.changed}
