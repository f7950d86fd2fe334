import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orghub.auth.security import get_password_hash
from orghub.db import Base
from orghub.models.models import Branch, Role, User, UserLogin
from orghub.services.permissions import make_grant


T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class Factory:
    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def branch(self, name=None, code=None) -> Branch:
        n = self._next()
        branch = Branch(name=name or f"Branch {n}", code=code or f"B{n}")
        self.db.add(branch)
        self.db.commit()
        return branch

    def role(self, name=None, rank=50, permissions=(), is_active=True) -> Role:
        role = Role(
            name=name or f"role-{self._next()}",
            rank=rank,
            permissions=[make_grant(p) for p in permissions],
            is_active=is_active,
        )
        self.db.add(role)
        self.db.commit()
        return role

    def user(self, role, branch, full_name=None, reporting_to=None, assigned=(), username=None,
             password=None, is_active=True, is_deleted=False, max_allowed_devices=2) -> User:
        n = self._next()
        user = User(
            external_id=f"EMP-{n:04d}",
            full_name=full_name or f"User {n}",
            role_id=role.id,
            branch_id=branch.id,
            reporting_to_id=reporting_to.id if reporting_to else None,
            is_active=is_active,
            is_deleted=is_deleted,
            can_login=bool(username),
        )
        user.assigned_branches.extend(assigned)
        if username:
            user.username = username.lower()
            user.login = UserLogin(
                username=username.lower(),
                password_hash=get_password_hash(password or "secret123"),
                max_allowed_devices=max_allowed_devices,
            )
        self.db.add(user)
        self.db.commit()
        return user


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def org(factory):
    """
    A small school group:

        director (5)      HQ
        principal (10)    North
        manager (20)      North
        teacher (50)      North
        staff (80)        North
        outsider (20)     South
    """
    hq = factory.branch("Head Office", "HQ")
    north = factory.branch("North Campus", "N")
    south = factory.branch("South Campus", "S")
    roles = {
        "director": factory.role("director", 5),
        "principal": factory.role("principal", 10),
        "manager": factory.role("manager", 20),
        "teacher": factory.role("teacher", 50),
        "staff": factory.role("staff", 80),
    }
    users = {
        "director": factory.user(roles["director"], hq, "Dana Director"),
        "principal": factory.user(roles["principal"], north, "Paula Principal"),
        "manager": factory.user(roles["manager"], north, "Mark Manager"),
        "teacher": factory.user(roles["teacher"], north, "Tina Teacher"),
        "staff": factory.user(roles["staff"], north, "Sam Staff"),
        "outsider": factory.user(roles["manager"], south, "Oscar Outsider"),
    }
    return {"branches": {"hq": hq, "north": north, "south": south}, "roles": roles, "users": users}
