"""
Login sessions across devices.

Each credential (``UserLogin``) keeps a registry of devices; each device keeps
an ordered login/logout history and the one refresh token currently valid for
it. Writes to a credential are guarded by its ``version_id`` column: a stale
write raises ``ConcurrentUpdate`` and ``authenticate`` re-reads and re-applies
the attempt a bounded number of times, so two concurrent attempts can never
both count from the same failed-attempt base.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..auth.security import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    verify_password,
)
from ..config import settings
from ..db import commit_or_raise
from ..errors import (
    ConcurrentUpdate,
    DeviceLimitExceeded,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    InvalidToken,
    NotFound,
)
from ..models.models import LoginDevice, LoginSession, Role, User, UserLogin
from .audit import record_activity
from .hierarchy import coerce_uuid, is_strictly_senior, role_rank
from .lockout import LockPolicy, check_lock, register_failure, register_success, utcnow


logger = structlog.get_logger(__name__)


@dataclass
class AuthResult:
    device_id: str
    user: Dict[str, Any]
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    already_logged_in: bool = False
    message: str = "Login successful"


@dataclass
class BulkLogoutResult:
    logged_out: List[str] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)


def auth_user_projection(user: User, login: UserLogin) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "full_name": user.full_name,
        "username": login.username,
        "role": user.role.name if user.role else None,
        "branch": user.branch.name if user.branch else None,
        "department": user.department,
    }


def has_open_session(device: LoginDevice) -> bool:
    if not device.sessions:
        return False
    return device.sessions[-1].logout_at is None


def _match_device(login: UserLogin, device_id: str, ip_address: Optional[str], user_agent: Optional[str]) -> Optional[LoginDevice]:
    for device in login.devices:
        if device.device_id == device_id:
            return device
    if ip_address is None or user_agent is None:
        return None
    for device in login.devices:
        if device.ip_address == ip_address and device.user_agent == user_agent:
            return device
    return None


def find_credential(db: Session, user_id: Any = None, username: Optional[str] = None) -> Optional[UserLogin]:
    if user_id:
        return db.query(UserLogin).filter(UserLogin.user_id == coerce_uuid(user_id)).first()
    if username:
        return db.query(UserLogin).filter(UserLogin.username == username.strip().lower()).first()
    return None


def _authenticate_once(
    db: Session,
    username: str,
    password: str,
    device_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    now: datetime,
    policy: LockPolicy,
) -> AuthResult:
    login = find_credential(db, username=username)
    if not login:
        raise NotFound("User not found")
    user = login.user
    if user is None or user.is_deleted:
        raise NotFound("User details not found")
    if not user.is_active:
        raise Forbidden("User account inactive")
    if not user.can_login:
        raise Forbidden("User cannot log in")

    check_lock(login, now)

    if not verify_password(password, login.password_hash):
        outcome = register_failure(login, now, policy)
        login.updated_at = now
        # The failed attempt must survive a restart
        commit_or_raise(db, "login_failed")
        if outcome.locked:
            logger.warning("account_locked", user_id=str(user.id), lock_level=outcome.lock_level,
                           permanent=outcome.permanent)
            raise InvalidCredentials(
                outcome.message,
                lock_level=outcome.lock_level,
                lock_seconds=outcome.lock_seconds,
                permanently_locked=outcome.permanent,
            )
        logger.info("login_failed", user_id=str(user.id), attempts_remaining=outcome.attempts_remaining)
        raise InvalidCredentials(outcome.message, attempts_remaining=outcome.attempts_remaining)

    register_success(login)
    login.updated_at = now

    resolved_id = device_id or f"manual-{uuid.uuid4()}"
    device = _match_device(login, resolved_id, ip_address, user_agent)

    if device is not None and has_open_session(device):
        commit_or_raise(db, "login_reset")
        logger.info("login_already_active", user_id=str(user.id), device_id=device.device_id)
        return AuthResult(
            device_id=device.device_id,
            user=auth_user_projection(user, login),
            already_logged_in=True,
            message="Already logged in on this device",
        )

    if device is not None:
        device.sessions.append(LoginSession(login_at=now))
        device.login_count = (device.login_count or 0) + 1
    else:
        if len(login.devices) >= login.max_allowed_devices:
            # Correct secret: the lock reset is kept even though admission fails
            commit_or_raise(db, "login_reset")
            logger.warning("device_limit_exceeded", user_id=str(user.id),
                           max_allowed_devices=login.max_allowed_devices)
            raise DeviceLimitExceeded(
                f"Maximum devices reached ({login.max_allowed_devices}). Logout another device first.",
                max_allowed_devices=login.max_allowed_devices,
            )
        device = LoginDevice(
            device_id=resolved_id,
            ip_address=ip_address,
            user_agent=user_agent,
            login_count=1,
            created_at=now,
        )
        device.sessions.append(LoginSession(login_at=now))
        login.devices.append(device)

    access_token = create_access_token(user, now=now)
    refresh_token = create_refresh_token(str(user.id), device.device_id, now=now)
    # Overwrites (and so revokes) this device's previous refresh token
    device.refresh_token = refresh_token
    login.is_logged_in = True
    login.last_login_at = now
    user.last_login_at = now
    commit_or_raise(db, "login")

    logger.info("login_succeeded", user_id=str(user.id), device_id=device.device_id)
    return AuthResult(
        device_id=device.device_id,
        user=auth_user_projection(user, login),
        access_token=access_token,
        refresh_token=refresh_token,
    )


def authenticate(
    db: Session,
    username: Optional[str],
    password: Optional[str],
    device_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[LockPolicy] = None,
) -> AuthResult:
    if not username or not username.strip() or not password:
        raise InvalidInput("Username and password required")
    policy = policy or LockPolicy.from_settings()
    retries = max(1, settings.credential_write_retries)
    attempt = 1
    while True:
        try:
            return _authenticate_once(
                db, username, password, device_id, ip_address, user_agent or "unknown",
                now or utcnow(), policy,
            )
        except ConcurrentUpdate:
            if attempt >= retries:
                raise
            logger.warning("login_retry_after_conflict", username=username.strip().lower(), attempt=attempt)
            db.expire_all()
            attempt += 1


def end_session(
    db: Session,
    device_id: Optional[str],
    user_id: Any = None,
    username: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Close the device's open session and revoke its refresh token; returns is_logged_in."""
    if (not user_id and not username) or not device_id:
        raise InvalidInput("userId/username and deviceId required")
    now = now or utcnow()
    login = find_credential(db, user_id=user_id, username=username)
    if not login:
        raise NotFound("User login record not found")
    device = next((d for d in login.devices if d.device_id == device_id), None)
    if device is None:
        raise NotFound("Device not found")

    if has_open_session(device):
        device.sessions[-1].logout_at = now
    device.refresh_token = None
    login.is_logged_in = any(has_open_session(d) for d in login.devices)
    login.updated_at = now
    commit_or_raise(db, "logout")
    logger.info("logout", user_id=str(login.user_id), device_id=device_id, is_logged_in=login.is_logged_in)
    return login.is_logged_in


def refresh_access_credential(
    db: Session,
    refresh_token: Optional[str],
    device_id: Optional[str],
    now: Optional[datetime] = None,
) -> str:
    if not refresh_token or not device_id:
        raise InvalidInput("refreshToken and deviceId required")
    payload = decode_refresh_token(refresh_token)
    if payload.get("device_id") != device_id:
        raise InvalidToken("Refresh token does not belong to this device")

    login = find_credential(db, user_id=payload.get("sub"))
    if not login:
        raise InvalidToken("Invalid refresh token")
    device = next((d for d in login.devices if d.device_id == device_id), None)
    # Only the device's current token is valid; older ones were superseded
    if device is None or not device.refresh_token or device.refresh_token != refresh_token:
        logger.warning("refresh_token_rejected", user_id=str(login.user_id), device_id=device_id)
        raise InvalidToken("Refresh token has been revoked")

    user = login.user
    if user is None or user.is_deleted or not user.is_active or not user.can_login:
        raise Forbidden("User cannot log in")
    return create_access_token(user, now=now)


def _terminate_all(login: UserLogin, now: datetime) -> bool:
    """Close every open session and clear every refresh token; True if anything changed."""
    changed = login.is_logged_in
    for device in login.devices:
        if has_open_session(device):
            device.sessions[-1].logout_at = now
            changed = True
        if device.refresh_token:
            device.refresh_token = None
            changed = True
    if changed:
        login.is_logged_in = False
        login.updated_at = now
    return changed


def logout_all_devices(db: Session, user_id: Any, now: Optional[datetime] = None) -> BulkLogoutResult:
    now = now or utcnow()
    login = find_credential(db, user_id=user_id)
    if not login:
        raise NotFound("User login record not found")
    result = BulkLogoutResult()
    if _terminate_all(login, now):
        commit_or_raise(db, "logout_all_devices")
        result.logged_out.append(str(login.user_id))
    logger.info("logout_all_devices", user_id=str(login.user_id), changed=bool(result.logged_out))
    return result


def logout_selected_users(db: Session, actor: User, user_ids: List[Any], now: Optional[datetime] = None) -> BulkLogoutResult:
    """Terminate sessions of the listed users; only those strictly junior to the actor."""
    if not isinstance(user_ids, list) or not user_ids:
        raise InvalidInput("userIds (non-empty array) are required")
    now = now or utcnow()
    result = BulkLogoutResult()
    for raw_id in user_ids:
        try:
            uid = coerce_uuid(raw_id)
        except InvalidInput:
            result.skipped.append({"id": str(raw_id), "reason": "Invalid user ID"})
            continue
        if uid == actor.id:
            result.skipped.append({"id": str(uid), "reason": "Cannot terminate your own session here"})
            continue
        target = db.query(User).filter(User.id == uid).first()
        if target is None:
            result.skipped.append({"id": str(uid), "reason": "User not found"})
            continue
        if not is_strictly_senior(actor, target):
            result.skipped.append({"id": str(uid), "reason": "User is not junior to you"})
            continue
        if target.login is None:
            result.skipped.append({"id": str(uid), "reason": "User has no login"})
            continue
        _terminate_all(target.login, now)
        result.logged_out.append(str(uid))

    if result.logged_out:
        record_activity(
            db, "logout_selected_users", actor_id=actor.id, target_model="UserLogin",
            context={"user_ids": result.logged_out},
        )
        commit_or_raise(db, "logout_selected_users")
    logger.info("logout_selected_users", actor_id=str(actor.id), count=len(result.logged_out),
                skipped=len(result.skipped))
    return result


def logout_all_subordinates(db: Session, actor: User, now: Optional[datetime] = None) -> BulkLogoutResult:
    """
    Terminate sessions of every user whose role rank is junior to the actor's.

    Eligibility is a rank comparison only; the reporting hierarchy is not
    consulted. The actor's own credential is never touched.
    """
    actor_rank = role_rank(actor)
    if actor_rank is None:
        raise Forbidden("Acting user has no role")
    now = now or utcnow()
    logins = (
        db.query(UserLogin)
        .join(User, User.id == UserLogin.user_id)
        .join(Role, Role.id == User.role_id)
        .filter(Role.rank > actor_rank, User.id != actor.id)
        .all()
    )
    result = BulkLogoutResult()
    for login in logins:
        if _terminate_all(login, now):
            result.logged_out.append(str(login.user_id))

    if result.logged_out:
        record_activity(
            db, "logout_subordinates", actor_id=actor.id, target_model="UserLogin",
            context={"user_ids": result.logged_out},
        )
        commit_or_raise(db, "logout_subordinates")
    logger.info("logout_subordinates", actor_id=str(actor.id), count=len(result.logged_out))
    return result
