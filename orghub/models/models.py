import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Association table for many-to-many User<->Branch (assigned branches)
user_assigned_branches = Table(
    "user_assigned_branches",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("branch_id", UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "branch_id", name="uq_user_assigned_branch"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), default="")
    # Seniority rank: lower number = more senior
    rank: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    # Canonical grants: [{"action", "granted", "modified_by", "modified_at"}]
    permissions: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    enterprise_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    deactivated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Names are unique per scope; NULL enterprise_id is the global scope
    __table_args__ = (
        Index(
            "uq_role_name_global", "name", unique=True,
            sqlite_where=text("enterprise_id IS NULL"),
            postgresql_where=text("enterprise_id IS NULL"),
        ),
        Index(
            "uq_role_name_enterprise", "name", "enterprise_id", unique=True,
            sqlite_where=text("enterprise_id IS NOT NULL"),
            postgresql_where=text("enterprise_id IS NOT NULL"),
        ),
    )


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    enterprise_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    external_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(100), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    department: Mapped[Optional[str]] = mapped_column(String(50))  # admin|teaching|non-teaching|school-office|other
    designation: Mapped[Optional[str]] = mapped_column(String(255))
    remarks: Mapped[Optional[str]] = mapped_column(String(1000))

    role_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("roles.id"), nullable=False, index=True)
    branch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    reporting_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)

    can_login: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    role = relationship("Role")
    branch = relationship("Branch", foreign_keys=[branch_id])
    assigned_branches = relationship("Branch", secondary=user_assigned_branches)
    reporting_to = relationship("User", remote_side=[id], foreign_keys=[reporting_to_id])
    login = relationship("UserLogin", back_populates="user", uselist=False, cascade="all, delete-orphan")


class UserLogin(Base):
    """Login credential and lock state; one per login-enabled user."""
    __tablename__ = "user_logins"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0-none, 1-1min, 2-3min, 3-5min, 4-permanent
    lock_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_permanently_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_logged_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    max_allowed_devices: Mapped[int] = mapped_column(Integer, default=2, nullable=False)

    # Optimistic concurrency token; every mutation must touch updated_at
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)

    user = relationship("User", back_populates="login")
    devices = relationship(
        "LoginDevice",
        back_populates="credential",
        cascade="all, delete-orphan",
        order_by="LoginDevice.created_at",
    )

    __mapper_args__ = {"version_id_col": version_id}


class LoginDevice(Base):
    __tablename__ = "login_devices"

    id: Mapped[uuid.UUID] = uuid_pk()
    credential_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("user_logins.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(100))
    user_agent: Mapped[Optional[str]] = mapped_column(String(1000))
    login_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    credential = relationship("UserLogin", back_populates="devices")
    sessions = relationship(
        "LoginSession",
        back_populates="device",
        cascade="all, delete-orphan",
        order_by="LoginSession.login_at",
    )

    __table_args__ = (
        UniqueConstraint("credential_id", "device_id", name="uq_credential_device"),
    )


class LoginSession(Base):
    __tablename__ = "login_sessions"

    id: Mapped[uuid.UUID] = uuid_pk()
    device_pk: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("login_devices.id", ondelete="CASCADE"), nullable=False, index=True)
    login_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    logout_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    device = relationship("LoginDevice", back_populates="sessions")


class BranchAssignmentLog(Base):
    """Append-only record of branch assign/remove actions"""
    __tablename__ = "branch_assignment_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    branch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # assign|remove
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    note: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ActivityLog(Base):
    """Append-only activity log"""
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)  # e.g. assign_reporting, register_user, logout_subordinates
    description: Mapped[Optional[str]] = mapped_column(String(1000))
    target_model: Mapped[Optional[str]] = mapped_column(String(50))  # User|Role|Branch|UserLogin
    target_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    ip_address: Mapped[Optional[str]] = mapped_column(String(100))
    user_agent: Mapped[Optional[str]] = mapped_column(String(1000))
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_activity_target', 'target_model', 'target_id'),
        Index('idx_activity_actor', 'actor_id', 'created_at'),
    )
