from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User
from ..ratelimit import limiter
from ..schemas.auth import (
    BulkLogoutResponse,
    LoginRequest,
    LogoutMultipleRequest,
    LogoutRequest,
    RefreshRequest,
    TokenResponse,
)
from ..services import sessions
from .security import get_current_user


router = APIRouter(prefix="/auth", tags=["auth"])


def _client_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/login", response_model=TokenResponse)
@limiter.limit(settings.login_rate_limit)
def login(request: Request, payload: LoginRequest, db: Session = Depends(get_db)):
    result = sessions.authenticate(
        db,
        payload.username,
        payload.password,
        device_id=payload.device_id or request.headers.get("x-device-id"),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        device_id=result.device_id,
        already_logged_in=result.already_logged_in,
        message=result.message,
        user=result.user,
    )


@router.post("/logout")
def logout(payload: LogoutRequest, db: Session = Depends(get_db)):
    is_logged_in = sessions.end_session(
        db, payload.device_id, user_id=payload.user_id, username=payload.username,
    )
    return {"success": True, "message": "Logout successful", "is_logged_in": is_logged_in}


@router.post("/refresh-token")
def refresh_token(payload: RefreshRequest, db: Session = Depends(get_db)):
    access_token = sessions.refresh_access_credential(db, payload.refresh_token, payload.device_id)
    return {"access_token": access_token, "token_type": "bearer"}


@router.post("/logout-all-devices", response_model=BulkLogoutResponse)
def logout_all_devices(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    result = sessions.logout_all_devices(db, me.id)
    return BulkLogoutResponse(message="Logged out from all devices", logged_out=result.logged_out)


@router.post("/logout-multiple", response_model=BulkLogoutResponse)
def logout_multiple(payload: LogoutMultipleRequest, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    result = sessions.logout_selected_users(db, me, payload.user_ids)
    return BulkLogoutResponse(
        message=f"Logged out {len(result.logged_out)} user(s)",
        logged_out=result.logged_out,
        skipped=result.skipped,
    )


@router.post("/logout-subordinates", response_model=BulkLogoutResponse)
def logout_subordinates(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    result = sessions.logout_all_subordinates(db, me)
    return BulkLogoutResponse(
        message=f"Logged out {len(result.logged_out)} junior user(s)",
        logged_out=result.logged_out,
    )
