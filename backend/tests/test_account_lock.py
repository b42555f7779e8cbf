from datetime import timedelta

from conftest import security_events
from sqlalchemy import select
from sqlalchemy.orm import load_only

from phoneauth.core.events import EVENT_ACCOUNT_LOCKED
from phoneauth.db.models.user import User
from phoneauth.services.account_lock import AccountLockPolicy
from phoneauth.services.users import UserRepository


def _setup(db_session, clock):
    users = UserRepository(db_session, now=clock.now)
    user = users.create_user_with_default_org("+15551230001").user
    return users, user, AccountLockPolicy(users, now=clock.now)


def test_five_failures_lock_the_account(db_session, clock):
    users, user, policy = _setup(db_session, clock)

    results = [policy.record_failure(user) for _ in range(4)]
    assert [r.attempts_remaining for r in results] == [4, 3, 2, 1]
    assert not any(r.locked for r in results)

    fifth = policy.record_failure(user)
    assert fifth.locked is True
    assert fifth.failed_attempts == 5
    assert fifth.locked_until == clock.now() + timedelta(minutes=30)

    status = policy.current_lock(users.get_user(user.id))
    assert status.locked is True
    assert status.retry_after_seconds == 1800

    events = security_events(db_session, user.id, EVENT_ACCOUNT_LOCKED)
    assert len(events) == 1
    assert events[0].severity == "danger"


def test_counter_never_exceeds_max_attempts(db_session, clock):
    users, user, policy = _setup(db_session, clock)
    for _ in range(12):
        policy.record_failure(user)

    db_session.expire_all()
    assert db_session.get(User, user.id).failed_login_attempts == 5


def test_failures_while_locked_do_not_extend_lock(db_session, clock):
    users, user, policy = _setup(db_session, clock)
    for _ in range(5):
        policy.record_failure(user)
    locked_until = users.get_user(user.id).locked_until

    clock.advance(minutes=10)
    again = policy.record_failure(user)
    assert again.locked is True
    assert again.locked_until == locked_until


def test_lock_elapses_and_counter_restarts(db_session, clock):
    users, user, policy = _setup(db_session, clock)
    for _ in range(5):
        policy.record_failure(user)

    clock.advance(minutes=31)
    assert policy.current_lock(users.get_user(user.id)).locked is False

    after = policy.record_failure(user)
    assert after.locked is False
    assert after.failed_attempts == 1
    assert after.attempts_remaining == 4
    db_session.expire_all()
    assert db_session.get(User, user.id).is_locked is False


def test_success_resets_counter(db_session, clock):
    users, user, policy = _setup(db_session, clock)
    policy.record_failure(user)
    policy.record_failure(user)

    policy.record_success(user)
    db_session.expire_all()
    assert db_session.get(User, user.id).failed_login_attempts == 0
    assert policy.record_failure(user).attempts_remaining == 4


def test_custom_thresholds(db_session, clock):
    users = UserRepository(db_session, now=clock.now)
    user = users.create_user_with_default_org("+15551230002").user
    policy = AccountLockPolicy(users, max_attempts=2, lock_minutes=5, now=clock.now)

    assert policy.record_failure(user).locked is False
    locked = policy.record_failure(user)
    assert locked.locked is True
    assert locked.locked_until == clock.now() + timedelta(minutes=5)


def test_lock_holds_for_a_user_loaded_in_another_session(container, db_session, clock):
    users, user, policy = _setup(db_session, clock)
    other = container.session_factory()
    try:
        stale = other.get(User, user.id)
        for _ in range(5):
            policy.record_failure(user)
        locked_until = clock.now() + timedelta(minutes=30)

        clock.advance(minutes=10)
        other_policy = AccountLockPolicy(UserRepository(other, now=clock.now), now=clock.now)
        assert other_policy.current_lock(stale).locked_until == locked_until

        again = other_policy.record_failure(stale)
        assert again.locked is True
        assert again.failed_attempts == 5
    finally:
        other.close()

    db_session.expire_all()
    row = db_session.get(User, user.id)
    assert row.failed_login_attempts == 5
    assert row.locked_until == locked_until


def test_lock_is_visible_on_partially_loaded_user(db_session, clock):
    users, user, policy = _setup(db_session, clock)
    db_session.expunge_all()
    partial = db_session.scalars(
        select(User).where(User.id == user.id).options(load_only(User.id, User.is_locked))
    ).one()

    for _ in range(5):
        policy.record_failure(partial)

    status = policy.current_lock(partial)
    assert status.locked is True
    assert status.retry_after_seconds == 1800
    assert policy.record_failure(partial).failed_attempts == 5
    assert len(security_events(db_session, user.id, EVENT_ACCOUNT_LOCKED)) == 1
