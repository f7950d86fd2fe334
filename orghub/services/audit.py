"""
Activity logging service.
Append-only activity log with integrity hashing.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from ..models.models import ActivityLog
from ..config import settings


def compute_integrity_hash(canonical_data: Dict[str, Any], secret: str) -> str:
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def record_activity(
    db: Session,
    action: str,
    actor_id: Optional[Any] = None,
    target_model: Optional[str] = None,
    target_id: Optional[Any] = None,
    description: Optional[str] = None,
    context: Optional[Dict] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    integrity_secret: Optional[str] = None,
) -> ActivityLog:
    """
    Stage an append-only activity entry in the caller's unit of work.

    The entry is committed together with the change it describes, so callers
    commit once after recording.

    Args:
        db: Database session
        action: Action performed (assign_reporting|clear_reporting|register_user|logout_subordinates|...)
        actor_id: User ID who performed the action
        target_model: Type of the affected record (User|Role|UserLogin)
        target_id: Affected record ID
        description: Human readable summary
        context: Additional context (previous values, affected ids)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        The pending ActivityLog object
    """
    created_at = datetime.now(timezone.utc)
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = compute_integrity_hash(
            {
                "action": action,
                "actor_id": str(actor_id) if actor_id else None,
                "target_model": target_model,
                "target_id": str(target_id) if target_id else None,
                "description": description,
                "created_at": created_at.isoformat(),
                "context": context,
            },
            integrity_secret,
        )

    entry = ActivityLog(
        action=action,
        actor_id=actor_id,
        target_model=target_model,
        target_id=target_id,
        description=description,
        context=context,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=created_at,
        integrity_hash=integrity_hash,
    )
    db.add(entry)
    return entry
