import uuid
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from orghub.auth.security import decode_access_token
from orghub.db import Base, commit_or_raise
from orghub.errors import (
    AccountLocked,
    ConcurrentUpdate,
    DeviceLimitExceeded,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    InvalidToken,
    NotFound,
    TemporarilyLocked,
)
from orghub.models.models import UserLogin
from orghub.services import sessions
from orghub.services.lockout import register_failure
from orghub.services.sessions import (
    authenticate,
    end_session,
    has_open_session,
    logout_all_devices,
    logout_all_subordinates,
    logout_selected_users,
    refresh_access_credential,
)

from .conftest import T0, Factory


@pytest.fixture
def setup(factory):
    branch = factory.branch("North Campus")
    teacher = factory.role("teacher", 50)
    alice = factory.user(teacher, branch, "Alice Adams", username="Alice", password="secret123")
    return {"branch": branch, "role": teacher, "alice": alice, "factory": factory}


def test_login_creates_device_and_session(db, setup):
    alice = setup["alice"]
    result = authenticate(db, " ALICE ", "secret123", device_id="laptop",
                          ip_address="10.0.0.1", user_agent="UA-1", now=T0)

    assert result.access_token and result.refresh_token
    assert result.device_id == "laptop"
    assert result.already_logged_in is False
    assert result.user["username"] == "alice"
    assert result.user["role"] == "teacher"

    login = alice.login
    assert login.is_logged_in
    [device] = login.devices
    assert device.login_count == 1
    assert has_open_session(device)
    assert device.refresh_token == result.refresh_token
    assert alice.last_login_at is not None


def test_same_device_while_logged_in_short_circuits(db, setup):
    authenticate(db, "alice", "secret123", device_id="laptop", now=T0)
    again = authenticate(db, "alice", "secret123", device_id="laptop", now=T0 + timedelta(minutes=5))

    assert again.already_logged_in is True
    assert again.access_token is None and again.refresh_token is None
    [device] = setup["alice"].login.devices
    assert device.login_count == 1
    assert len(device.sessions) == 1


def test_device_matched_by_ip_and_user_agent(db, setup):
    authenticate(db, "alice", "secret123", device_id="tablet", ip_address="10.0.0.7", user_agent="Safari", now=T0)
    end_session(db, "tablet", username="alice", now=T0 + timedelta(minutes=1))

    result = authenticate(db, "alice", "secret123", ip_address="10.0.0.7", user_agent="Safari",
                          now=T0 + timedelta(minutes=2))

    assert result.device_id == "tablet"
    [device] = setup["alice"].login.devices
    assert device.login_count == 2
    assert len(device.sessions) == 2
    assert device.sessions[0].logout_at is not None
    assert device.sessions[1].logout_at is None


def test_missing_device_id_gets_generated_id(db, setup):
    result = authenticate(db, "alice", "secret123", now=T0)
    assert result.device_id.startswith("manual-")


def test_device_limit_rejects_new_device_but_keeps_lock_reset(db, setup):
    alice = setup["alice"]
    authenticate(db, "alice", "secret123", device_id="d1", ip_address="10.0.0.1", now=T0)
    authenticate(db, "alice", "secret123", device_id="d2", ip_address="10.0.0.2", now=T0)
    end_session(db, "d1", user_id=alice.id, now=T0)
    end_session(db, "d2", user_id=alice.id, now=T0)
    with pytest.raises(InvalidCredentials):
        authenticate(db, "alice", "wrong", device_id="d1", now=T0)

    # Logged-out devices still occupy the registry
    with pytest.raises(DeviceLimitExceeded) as exc:
        authenticate(db, "alice", "secret123", device_id="d3", ip_address="10.0.0.3", now=T0)

    assert exc.value.message == "Maximum devices reached (2). Logout another device first."
    db.expire_all()
    assert alice.login.failed_login_attempts == 0
    assert len(alice.login.devices) == 2


def test_failed_attempt_is_persisted(db, setup, session_factory):
    with pytest.raises(InvalidCredentials) as exc:
        authenticate(db, "alice", "nope", now=T0)
    assert exc.value.details["attempts_remaining"] == 2

    other = session_factory()
    try:
        stored = other.query(UserLogin).filter(UserLogin.username == "alice").one()
        assert stored.failed_login_attempts == 1
    finally:
        other.close()


def test_lock_blocks_correct_secret_until_it_expires(db, setup):
    for _ in range(2):
        with pytest.raises(InvalidCredentials):
            authenticate(db, "alice", "nope", now=T0)
    with pytest.raises(InvalidCredentials) as exc:
        authenticate(db, "alice", "nope", now=T0)
    assert exc.value.details["lock_level"] == 1
    assert exc.value.message == "Account locked for 1 minute due to multiple failed attempts."

    with pytest.raises(TemporarilyLocked):
        authenticate(db, "alice", "secret123", now=T0 + timedelta(seconds=30))

    result = authenticate(db, "alice", "secret123", now=T0 + timedelta(seconds=61))
    assert result.access_token
    assert setup["alice"].login.lock_level == 0


def test_repeated_failures_end_in_permanent_lock(db, setup):
    now = T0
    for minutes in (1, 3, 5, None):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                authenticate(db, "alice", "nope", now=now)
        if minutes:
            now = now + timedelta(minutes=minutes, seconds=1)

    with pytest.raises(AccountLocked):
        authenticate(db, "alice", "secret123", now=now + timedelta(days=1))
    assert setup["alice"].login.is_permanently_locked


def test_login_preconditions(db, setup):
    factory, role, branch = setup["factory"], setup["role"], setup["branch"]
    factory.user(role, branch, username="idle", is_active=False)
    factory.user(role, branch, username="gone", is_deleted=True)

    with pytest.raises(InvalidInput):
        authenticate(db, "alice", "")
    with pytest.raises(NotFound):
        authenticate(db, "nobody", "secret123")
    with pytest.raises(Forbidden):
        authenticate(db, "idle", "secret123")
    with pytest.raises(NotFound):
        authenticate(db, "gone", "secret123")


def test_refresh_token_is_superseded_by_next_login(db, setup):
    alice = setup["alice"]
    first = authenticate(db, "alice", "secret123", device_id="phone")
    access = refresh_access_credential(db, first.refresh_token, "phone")
    assert decode_access_token(access)["sub"] == str(alice.id)

    end_session(db, "phone", user_id=alice.id)
    second = authenticate(db, "alice", "secret123", device_id="phone")

    with pytest.raises(InvalidToken):
        refresh_access_credential(db, first.refresh_token, "phone")
    assert refresh_access_credential(db, second.refresh_token, "phone")
    with pytest.raises(InvalidToken):
        refresh_access_credential(db, second.refresh_token, "laptop")
    with pytest.raises(InvalidToken):
        refresh_access_credential(db, "garbage", "phone")


def test_end_session_recomputes_logged_in(db, setup):
    alice = setup["alice"]
    authenticate(db, "alice", "secret123", device_id="d1", ip_address="1.1.1.1", now=T0)
    authenticate(db, "alice", "secret123", device_id="d2", ip_address="2.2.2.2", now=T0)

    assert end_session(db, "d1", user_id=alice.id, now=T0) is True
    assert end_session(db, "d2", username="alice", now=T0) is False
    assert all(d.refresh_token is None for d in alice.login.devices)

    with pytest.raises(NotFound):
        end_session(db, "unknown", user_id=alice.id)
    with pytest.raises(InvalidInput):
        end_session(db, "d1")


def test_logout_all_devices(db, setup):
    alice = setup["alice"]
    authenticate(db, "alice", "secret123", device_id="d1", ip_address="1.1.1.1", now=T0)
    authenticate(db, "alice", "secret123", device_id="d2", ip_address="2.2.2.2", now=T0)

    result = logout_all_devices(db, alice.id, now=T0)

    assert result.logged_out == [str(alice.id)]
    assert alice.login.is_logged_in is False
    assert not any(has_open_session(d) for d in alice.login.devices)
    assert logout_all_devices(db, alice.id, now=T0).logged_out == []


def test_logout_all_subordinates_uses_rank_only(db, setup):
    factory, branch = setup["factory"], setup["branch"]
    principal_role = factory.role("principal", 10)
    boss = factory.user(principal_role, branch, username="boss")
    peer = factory.user(principal_role, branch, username="peer")
    for name in ("boss", "peer", "alice"):
        authenticate(db, name, "secret123", device_id=f"{name}-pc", now=T0)

    result = logout_all_subordinates(db, boss, now=T0)

    assert result.logged_out == [str(setup["alice"].id)]
    assert setup["alice"].login.is_logged_in is False
    assert peer.login.is_logged_in is True
    assert boss.login.is_logged_in is True


def test_logout_selected_users_skips_ineligible(db, setup):
    factory, branch = setup["factory"], setup["branch"]
    manager = factory.user(factory.role("manager", 20), branch, username="manny")
    senior = factory.user(factory.role("director", 5), branch, username="dora")
    authenticate(db, "alice", "secret123", device_id="pc", now=T0)

    result = logout_selected_users(
        db, manager,
        [str(setup["alice"].id), str(senior.id), str(manager.id), "not-a-uuid", str(uuid.uuid4())],
        now=T0,
    )

    assert result.logged_out == [str(setup["alice"].id)]
    assert len(result.skipped) == 4
    assert setup["alice"].login.is_logged_in is False
    with pytest.raises(InvalidInput):
        logout_selected_users(db, manager, [])


def test_stale_credential_write_is_rejected(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'orghub.db'}", future=True)
    Base.metadata.create_all(eng)
    Session = sessionmaker(bind=eng, autoflush=False, autocommit=False, future=True)

    seed = Session()
    factory = Factory(seed)
    factory.user(factory.role("teacher", 50), factory.branch(), username="bob")
    seed.close()

    first, second = Session(), Session()
    try:
        a = first.query(UserLogin).filter(UserLogin.username == "bob").one()
        b = second.query(UserLogin).filter(UserLogin.username == "bob").one()
        for state in (a, b):
            register_failure(state, T0)
            state.updated_at = T0

        commit_or_raise(first, "login_failed")
        with pytest.raises(ConcurrentUpdate):
            commit_or_raise(second, "login_failed")
    finally:
        first.close()
        second.close()

    check = Session()
    assert check.query(UserLogin).one().failed_login_attempts == 1
    check.close()
    eng.dispose()


def test_authenticate_reapplies_attempt_after_conflict(db, setup, monkeypatch):
    calls = []
    real_commit = sessions.commit_or_raise

    def flaky(session, operation):
        calls.append(operation)
        if len(calls) == 1:
            session.rollback()
            raise ConcurrentUpdate("Record was modified concurrently, please retry")
        real_commit(session, operation)

    monkeypatch.setattr(sessions, "commit_or_raise", flaky)
    with pytest.raises(InvalidCredentials) as exc:
        authenticate(db, "alice", "nope", now=T0)

    assert calls == ["login_failed", "login_failed"]
    assert exc.value.details["attempts_remaining"] == 2
    db.expire_all()
    assert setup["alice"].login.failed_login_attempts == 1


def test_authenticate_gives_up_after_bounded_retries(db, setup, monkeypatch):
    calls = []

    def always_stale(session, operation):
        calls.append(operation)
        session.rollback()
        raise ConcurrentUpdate("Record was modified concurrently, please retry")

    monkeypatch.setattr(sessions, "commit_or_raise", always_stale)
    with pytest.raises(ConcurrentUpdate):
        authenticate(db, "alice", "secret123", device_id="pc", now=T0)
    assert len(calls) == 3


def test_single_write_attempt_surfaces_conflict(db, setup, monkeypatch):
    calls = []

    def always_stale(session, operation):
        calls.append(operation)
        session.rollback()
        raise ConcurrentUpdate("Record was modified concurrently, please retry")

    monkeypatch.setattr(sessions.settings, "credential_write_retries", 1)
    monkeypatch.setattr(sessions, "commit_or_raise", always_stale)
    with pytest.raises(ConcurrentUpdate):
        authenticate(db, "alice", "nope", now=T0)
    assert calls == ["login_failed"]
