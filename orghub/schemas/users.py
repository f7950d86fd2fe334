from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List


class UserCreate(BaseModel):
    external_id: str = Field(alias="userId")
    full_name: str = Field(alias="fullName")
    role_id: str = Field(alias="role")
    branch_id: str = Field(alias="branch")
    can_login: bool = Field(default=False, alias="canLogin")
    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, alias="phoneNo")
    department: Optional[str] = None
    designation: Optional[str] = None
    remarks: Optional[str] = None
    is_active: bool = Field(default=True, alias="isActive")

    model_config = {"populate_by_name": True}


class UserUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, alias="fullName")
    role_id: Optional[str] = Field(default=None, alias="role")
    branch_id: Optional[str] = Field(default=None, alias="branch")
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, alias="phoneNo")
    department: Optional[str] = None
    designation: Optional[str] = None
    remarks: Optional[str] = None
    can_login: Optional[bool] = Field(default=None, alias="canLogin")
    username: Optional[str] = None
    password: Optional[str] = None

    model_config = {"populate_by_name": True}


class BranchAssignmentRequest(BaseModel):
    user_id: str = Field(alias="userId")
    branch_ids: List[str] = Field(alias="branchIds")
    note: Optional[str] = None

    model_config = {"populate_by_name": True}


class ReportingRequest(BaseModel):
    # null or "" detaches the user from their manager
    reporting_to: Optional[str] = Field(default=None, alias="reportingTo")

    model_config = {"populate_by_name": True}


class RolePermissionsRequest(BaseModel):
    permissions: List[str]


class RoleCreate(BaseModel):
    name: str = Field(alias="roleName")
    description: Optional[str] = None
    rank: Optional[int] = None
    enterprise_id: Optional[str] = Field(default=None, alias="enterpriseId")

    model_config = {"populate_by_name": True}


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, alias="roleName")
    description: Optional[str] = None
    rank: Optional[int] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    model_config = {"populate_by_name": True}
