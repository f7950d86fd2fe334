from pydantic import BaseModel, Field
from typing import Optional, List


class LoginRequest(BaseModel):
    username: str
    password: str
    device_id: Optional[str] = Field(default=None, alias="deviceId")

    model_config = {"populate_by_name": True}


class TokenResponse(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    device_id: str
    already_logged_in: bool = False
    message: str
    user: dict


class LogoutRequest(BaseModel):
    device_id: str = Field(alias="deviceId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    username: Optional[str] = None

    model_config = {"populate_by_name": True}


class RefreshRequest(BaseModel):
    refresh_token: str = Field(alias="refreshToken")
    device_id: str = Field(alias="deviceId")

    model_config = {"populate_by_name": True}


class LogoutMultipleRequest(BaseModel):
    user_ids: List[str] = Field(alias="userIds")

    model_config = {"populate_by_name": True}


class BulkLogoutResponse(BaseModel):
    message: str
    logged_out: List[str]
    skipped: List[dict] = []
