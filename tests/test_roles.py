import uuid

import pytest
from sqlalchemy.exc import IntegrityError

from orghub.errors import Conflict, InvalidInput, NotFound
from orghub.models.models import ActivityLog, Role
from orghub.services.permissions import has_permission
from orghub.services.roles import (
    create_role,
    deactivate_role,
    get_role,
    list_roles,
    role_to_dict,
    update_role,
)

from .conftest import T0


@pytest.fixture
def admin(factory):
    return factory.user(factory.role("admin", 1), factory.branch(), "Ada Admin")


def test_global_role_names_are_unique_in_storage(db):
    db.add(Role(name="manager", rank=20))
    db.commit()

    db.add(Role(name="manager", rank=30))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
    assert db.query(Role).filter(Role.name == "manager").count() == 1


def test_enterprise_scope_has_its_own_namespace(db):
    acme, globex = uuid.uuid4(), uuid.uuid4()
    db.add_all([
        Role(name="manager", rank=20),
        Role(name="manager", rank=20, enterprise_id=acme),
        Role(name="manager", rank=20, enterprise_id=globex),
    ])
    db.commit()

    db.add(Role(name="manager", rank=25, enterprise_id=acme))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_create_role_normalizes_name(db, admin):
    role = create_role(db, {"name": "  Vice Principal ", "description": "Deputy", "rank": 12}, actor=admin)

    assert role.name == "vice principal"
    assert role.rank == 12
    assert role.created_by == admin.id
    assert role.permissions == []
    assert db.query(ActivityLog).filter(ActivityLog.action == "create_role").count() == 1


def test_create_role_rejects_duplicates_and_bad_input(db, admin):
    create_role(db, {"name": "Manager", "rank": 20}, actor=admin)

    with pytest.raises(Conflict) as exc:
        create_role(db, {"name": " MANAGER "}, actor=admin)
    assert exc.value.message == "Role name already exists"

    scoped = create_role(db, {"name": "manager", "enterprise_id": str(uuid.uuid4())}, actor=admin)
    assert scoped.rank == 100

    with pytest.raises(InvalidInput) as exc:
        create_role(db, {"name": "  "})
    assert exc.value.message == "Role name is required"
    with pytest.raises(InvalidInput):
        create_role(db, {"name": "clerk", "rank": "senior"})


def test_update_role(db, admin):
    manager = create_role(db, {"name": "manager", "rank": 20})
    clerk = create_role(db, {"name": "clerk", "rank": 60})

    with pytest.raises(Conflict):
        update_role(db, clerk.id, {"name": "Manager"}, actor=admin)

    updated = update_role(db, clerk.id, {"name": "Senior Clerk", "rank": 55, "description": "Front desk"},
                          actor=admin)
    assert (updated.name, updated.rank, updated.description) == ("senior clerk", 55, "Front desk")
    assert update_role(db, manager.id, {"name": "manager"}).name == "manager"


def test_deactivate_and_reactivate(db, factory, admin):
    role = factory.role("auditor", 40, permissions=["view_user"])
    member = factory.user(role, factory.branch())
    assert has_permission(member, "view_user")

    deactivate_role(db, role.id, actor=admin, now=T0)

    assert role.is_active is False
    assert role.deactivated_by == admin.id
    assert role_to_dict(role)["deactivated_at"].startswith("2024-01-01T09:00")
    assert not has_permission(member, "view_user")
    # Repeating it is a no-op
    assert deactivate_role(db, role.id, actor=admin).deactivated_by == admin.id
    assert db.query(ActivityLog).filter(ActivityLog.action == "deactivate_role").count() == 1

    update_role(db, role.id, {"is_active": True}, actor=admin)
    assert role.is_active is True
    assert role.deactivated_by is None and role.deactivated_at is None


def test_list_and_get_roles(db, factory):
    active = factory.role("teacher", 50)
    retired = factory.role("retired", 90, is_active=False)

    assert {r.id for r in list_roles(db)} == {active.id, retired.id}
    assert [r.id for r in list_roles(db, is_active=False)] == [retired.id]
    assert get_role(db, str(active.id)).name == "teacher"

    with pytest.raises(NotFound):
        get_role(db, uuid.uuid4())
    with pytest.raises(InvalidInput):
        get_role(db, "not-a-uuid")
