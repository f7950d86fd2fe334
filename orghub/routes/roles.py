from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from ..db import get_db
from ..models.models import User
from ..auth.security import require_permissions
from ..schemas.users import RoleCreate, RolePermissionsRequest, RoleUpdate
from ..services import roles
from ..services.permissions import add_role_permissions, get_catalog, remove_role_permissions
from ..services.roles import role_to_dict


router = APIRouter(prefix="/roles", tags=["roles"])


# Static paths before /{role_id}

@router.get("/permissions")
def list_permissions(_=Depends(require_permissions("view_role"))):
    """All actions a role can be granted."""
    return {"success": True, "permissions": list(get_catalog())}


@router.post("/create", status_code=201)
def create_role(payload: RoleCreate, db: Session = Depends(get_db), me: User = Depends(require_permissions("create_role"))):
    role = roles.create_role(db, payload.model_dump(), actor=me)
    return {"success": True, "message": "Role created successfully", "role": role_to_dict(role)}


@router.get("")
def list_roles(is_active: Optional[bool] = None, db: Session = Depends(get_db),
               _=Depends(require_permissions("view_role"))):
    items = roles.list_roles(db, is_active=is_active)
    return {"success": True, "count": len(items), "items": [role_to_dict(r) for r in items]}


@router.get("/{role_id}")
def get_role(role_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("view_role"))):
    return {"success": True, "role": role_to_dict(roles.get_role(db, role_id))}


@router.put("/{role_id}")
def update_role(role_id: str, payload: RoleUpdate, db: Session = Depends(get_db),
                me: User = Depends(require_permissions("edit_role"))):
    role = roles.update_role(db, role_id, payload.model_dump(exclude_unset=True), actor=me)
    return {"success": True, "message": "Role updated successfully", "role": role_to_dict(role)}


@router.delete("/{role_id}")
def deactivate_role(role_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("delete_role"))):
    role = roles.deactivate_role(db, role_id, actor=me)
    return {"success": True, "message": "Role deactivated successfully", "role": role_to_dict(role)}


@router.put("/{role_id}/permissions")
def add_permissions(role_id: str, payload: RolePermissionsRequest, db: Session = Depends(get_db),
                    me: User = Depends(require_permissions("edit_role"))):
    change = add_role_permissions(db, role_id, payload.permissions, actor=me)
    message = "Permissions added successfully" if change.changed else "All permissions already exist on this role"
    return {
        "success": True,
        "message": message,
        "added": change.changed,
        "already_exists": change.unchanged,
        "permissions": change.permissions,
    }


@router.put("/{role_id}/permissions/remove")
def remove_permissions(role_id: str, payload: RolePermissionsRequest, db: Session = Depends(get_db),
                       me: User = Depends(require_permissions("edit_role"))):
    change = remove_role_permissions(db, role_id, payload.permissions, actor=me)
    return {
        "success": True,
        "message": "Permissions removed successfully",
        "removed": change.changed,
        "not_assigned": change.unchanged,
        "permissions": change.permissions,
    }
