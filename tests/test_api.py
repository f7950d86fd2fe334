import pytest
from fastapi.testclient import TestClient

from orghub.db import get_db
from orghub.main import app


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def people(factory):
    branch = factory.branch("North")
    admin_role = factory.role("admin", 1)
    viewer_role = factory.role("viewer", 40, permissions=["view_user"])
    staff_role = factory.role("staff", 80)
    admin = factory.user(admin_role, branch, "Ada Admin", username="ada", password="adminpass")
    viewer = factory.user(viewer_role, branch, "Vic Viewer", username="vic", password="viewpass")
    staff = factory.user(staff_role, branch, "Stan Staff", username="stan", password="staffpass")
    return {"branch": branch, "admin": admin, "viewer": viewer, "staff": staff,
            "roles": {"admin": admin_role, "viewer": viewer_role, "staff": staff_role}}


def login(client, username, password, device_id="test-device"):
    r = client.post("/auth/login", json={"username": username, "password": password, "deviceId": device_id})
    assert r.status_code == 200, r.text
    return r.json()


def bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_login_failure_body(client, people):
    r = client.post("/auth/login", json={"username": "ada", "password": "nope"})
    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "InvalidCredentials"
    assert body["attempts_remaining"] == 2
    assert body["message"] == "Invalid credentials. You have 2 attempt(s) left before lock."


def test_login_refresh_logout(client, people):
    tokens = login(client, "ada", "adminpass", device_id="laptop")
    assert tokens["device_id"] == "laptop"
    assert tokens["user"]["full_name"] == "Ada Admin"

    again = login(client, "ada", "adminpass", device_id="laptop")
    assert again["already_logged_in"] is True
    assert again["access_token"] is None

    r = client.post("/auth/refresh-token", json={"refreshToken": tokens["refresh_token"], "deviceId": "laptop"})
    assert r.status_code == 200
    assert r.json()["access_token"]

    r = client.post("/auth/logout", json={"username": "ada", "deviceId": "laptop"})
    assert r.json() == {"success": True, "message": "Logout successful", "is_logged_in": False}

    r = client.post("/auth/refresh-token", json={"refreshToken": tokens["refresh_token"], "deviceId": "laptop"})
    assert r.status_code == 401
    assert r.json()["error"] == "InvalidToken"


def test_requires_authentication(client, people):
    assert client.get("/users").status_code == 401
    r = client.get("/users", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    assert r.json()["error"] == "InvalidToken"


def test_permission_checks(client, people):
    staff = login(client, "stan", "staffpass")
    assert client.get("/users", headers=bearer(staff)).status_code == 403

    viewer = login(client, "vic", "viewpass")
    r = client.get("/users", headers=bearer(viewer))
    assert r.status_code == 200
    assert r.json()["total"] == 3


def test_reporting_routes(client, people):
    admin = bearer(login(client, "ada", "adminpass"))
    staff_id, viewer_id = str(people["staff"].id), str(people["viewer"].id)

    r = client.post(f"/users/{staff_id}/reporting", json={"reportingTo": viewer_id}, headers=admin)
    assert r.status_code == 200, r.text
    assert r.json()["reporting_to"]["full_name"] == "Vic Viewer"

    r = client.post(f"/users/{viewer_id}/reporting", json={"reportingTo": staff_id}, headers=admin)
    assert r.status_code == 400
    assert r.json()["error"] == "CircularReference"

    chain = client.get(f"/users/{staff_id}/reporting/up", headers=admin).json()["chain"]
    assert [c["full_name"] for c in chain] == ["Vic Viewer"]

    subs = client.get(f"/users/{viewer_id}/subordinates", headers=admin).json()
    assert subs["count"] == 1 and subs["subordinates"][0]["level"] == 1

    tree = client.get(f"/users/{viewer_id}/hierarchy", headers=admin).json()["hierarchy"]
    assert tree["subordinates"][0]["full_name"] == "Stan Staff"

    r = client.delete(f"/users/{staff_id}/reporting", headers=admin)
    assert r.json()["message"] == "Reporting authority removed successfully. Previously reported to Vic Viewer"

    assert client.get("/users/not-a-uuid/reporting/up", headers=admin).status_code == 400


def test_register_and_branch_assignment(client, people, factory):
    admin = bearer(login(client, "ada", "adminpass"))
    east = factory.branch("East")

    r = client.post("/users/register", headers=admin, json={
        "userId": "E-1",
        "fullName": "Erin East",
        "role": str(people["roles"]["staff"].id),
        "branch": str(people["branch"].id),
        "canLogin": True,
        "username": "erin",
        "password": "erinpass",
        "email": "erin@example.com",
    })
    assert r.status_code == 201, r.text
    erin_id = r.json()["user"]["id"]

    body = {"userId": erin_id, "branchIds": [str(east.id)]}
    first = client.post("/users/assign-branch", json=body, headers=admin).json()
    assert first["message"] == "Branch(es) assigned successfully"
    second = client.post("/users/assign-branch", json=body, headers=admin).json()
    assert second["changed"] is False
    assert second["message"] == "This branch is already assigned to the user"

    removed = client.post("/users/remove-branch", json=body, headers=admin).json()
    assert removed["message"] == "Branch unassigned successfully"

    r = client.post("/users/register", headers=admin, json={
        "userId": "E-2", "fullName": "Erin Again", "role": str(people["roles"]["staff"].id),
        "branch": str(people["branch"].id), "email": "erin@example.com",
    })
    assert r.status_code == 409
    assert r.json()["message"] == "Email already exists"


def test_user_lifecycle_routes(client, people):
    admin = bearer(login(client, "ada", "adminpass"))
    staff_id = str(people["staff"].id)

    r = client.put(f"/users/{staff_id}", json={"designation": "Caretaker"}, headers=admin)
    assert r.json()["user"]["designation"] == "Caretaker"

    r = client.patch(f"/users/{staff_id}/status", headers=admin)
    assert r.json()["is_active"] is False

    assert client.delete(f"/users/{staff_id}", headers=admin).status_code == 200
    assert client.get(f"/users/{staff_id}", headers=admin).status_code == 404
    assert client.post(f"/users/{staff_id}/restore", headers=admin).status_code == 200


def test_bulk_logout_routes(client, people):
    admin = bearer(login(client, "ada", "adminpass", device_id="admin-pc"))
    login(client, "stan", "staffpass", device_id="stan-pc")

    r = client.post("/auth/logout-subordinates", headers=admin)
    assert r.status_code == 200
    assert str(people["staff"].id) in r.json()["logged_out"]

    r = client.post("/auth/logout-multiple", json={"userIds": ["bogus"]}, headers=admin)
    assert r.json()["skipped"] == [{"id": "bogus", "reason": "Invalid user ID"}]

    r = client.post("/auth/logout-all-devices", headers=admin)
    assert r.json()["logged_out"] == [str(people["admin"].id)]


def test_role_permission_routes(client, people):
    admin = bearer(login(client, "ada", "adminpass"))
    role_id = str(people["roles"]["staff"].id)

    catalog = client.get("/roles/permissions", headers=admin).json()["permissions"]
    assert "view_user" in catalog

    r = client.put(f"/roles/{role_id}/permissions", json={"permissions": ["view_user"]}, headers=admin)
    assert r.json()["added"] == ["view_user"]

    r = client.put(f"/roles/{role_id}/permissions", json={"permissions": ["make_coffee"]}, headers=admin)
    assert r.status_code == 400
    assert r.json()["invalid_permissions"] == ["make_coffee"]

    r = client.put(f"/roles/{role_id}/permissions/remove", json={"permissions": ["view_user"]}, headers=admin)
    assert r.json()["removed"] == ["view_user"]


def test_role_lifecycle_routes(client, people):
    admin = bearer(login(client, "ada", "adminpass"))

    r = client.post("/roles/create", json={"roleName": " Librarian ", "rank": 45}, headers=admin)
    assert r.status_code == 201, r.text
    role = r.json()["role"]
    assert role["name"] == "librarian"

    r = client.post("/roles/create", json={"roleName": "LIBRARIAN"}, headers=admin)
    assert r.status_code == 409
    assert r.json()["message"] == "Role name already exists"

    names = {item["name"] for item in client.get("/roles", headers=admin).json()["items"]}
    assert {"admin", "viewer", "staff", "librarian"} <= names

    r = client.put(f"/roles/{role['id']}", json={"description": "Keeps the books"}, headers=admin)
    assert r.json()["role"]["description"] == "Keeps the books"

    r = client.delete(f"/roles/{role['id']}", headers=admin)
    assert r.json()["role"]["is_active"] is False
    assert client.get(f"/roles/{role['id']}", headers=admin).json()["role"]["deactivated_by"] == str(people["admin"].id)


def test_users_by_branch_route(client, people, factory):
    viewer = bearer(login(client, "vic", "viewpass"))

    r = client.get(f"/users/branch/{people['branch'].id}", headers=viewer)
    assert r.status_code == 200
    assert r.json()["count"] == 3

    empty = factory.branch("Empty")
    assert client.get(f"/users/branch/{empty.id}", headers=viewer).status_code == 404
