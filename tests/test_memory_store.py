from datetime import timedelta

import pytest

from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.memory import MemoryStore
from shopauth.storage.models import FailedAttemptRecord, MfaChallenge, Session, utcnow


def test_memory_store_persists_accounts_and_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", "hash-1", role="admin", status="active")
    store.update_password(user.id, "hash-2", utcnow())
    session = Session.new(user.id, "token-1", 900, role="admin", client_class="api")
    store.run_exclusive(user.id, lambda txn: txn.add_session(session))
    store.save_security_config({"session_lifetime": 600})

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == "admin"
    assert reloaded_user.status == "active"
    assert reloaded.get_credential(user.id).password_hash == "hash-2"
    assert [e.password_hash for e in reloaded.list_password_history(user.id)] == ["hash-1", "hash-2"]
    reloaded_session = reloaded.get_session_by_token("token-1")
    assert reloaded_session.id == session.id
    assert reloaded_session.client_class == "api"
    assert reloaded_session.expires_at == session.expires_at
    assert reloaded.get_security_config() == {"session_lifetime": 600}


def test_duplicate_email_is_rejected_case_insensitively(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com", "hash")
    with pytest.raises(ConstraintViolation):
        store.create_user(" DUP@example.com", "hash")


def test_run_exclusive_rolls_back_on_error(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("rollback@example.com", "hash", status="active")

    def _work(txn):
        txn.set_status("locked_temporary")
        txn.add_session(Session.new(user.id, "token-x", 900))
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError):
        store.run_exclusive(user.id, _work)

    assert store.get_user(user.id).status == "active"
    assert store.get_session_by_token("token-x") is None
    assert MemoryStore(fs_root=str(tmp_path)).get_user(user.id).status == "active"


def test_challenges_are_kept_per_purpose(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("mfa@example.com", "hash", status="active")
    now = utcnow()

    def _challenge(purpose, code):
        return MfaChallenge(
            id=f"{purpose}-id",
            user_id=user.id,
            code=code,
            expires_at=now + timedelta(minutes=15),
            purpose=purpose,
            attempts_remaining=3,
            valid=True,
            created_at=now,
        )

    store.run_exclusive(user.id, lambda txn: txn.save_challenge(_challenge("login", "AAAA1111")))
    store.run_exclusive(user.id, lambda txn: txn.save_challenge(_challenge("recovery", "BBBB2222")))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.run_exclusive(user.id, lambda txn: txn.get_challenge("login")).code == "AAAA1111"
    assert reloaded.run_exclusive(user.id, lambda txn: txn.get_challenge("recovery")).code == "BBBB2222"


def test_session_token_swap_requires_expected_token(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("swap@example.com", "hash", status="active")
    session = Session.new(user.id, "old-token", 900)
    store.run_exclusive(user.id, lambda txn: txn.add_session(session))
    later = utcnow() + timedelta(minutes=10)

    assert store.replace_session_token(session.id, "wrong", "new-token", later, later) is None
    swapped = store.replace_session_token(session.id, "old-token", "new-token", later, later)
    assert swapped.token == "new-token"
    assert store.get_session_by_token("old-token") is None

    store.revoke_session(session.id, later)
    assert store.replace_session_token(session.id, "new-token", "newer", later, later) is None


def test_revoke_user_sessions_returns_only_newly_revoked(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("bulk@example.com", "hash", status="active")
    first = Session.new(user.id, "t1", 900)
    second = Session.new(user.id, "t2", 900)
    store.run_exclusive(user.id, lambda txn: (txn.add_session(first), txn.add_session(second)))
    assert store.revoke_session(first.id, utcnow()) is True
    assert store.revoke_session(first.id, utcnow()) is False

    revoked = store.revoke_user_sessions(user.id, utcnow())
    assert [s.id for s in revoked] == [second.id]


def test_failed_attempts_since_spans_accounts(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = store.create_user("first@example.com", "hash", status="active")
    second = store.create_user("second@example.com", "hash", status="active")
    now = utcnow()
    old = FailedAttemptRecord.open(first.id, None, now - timedelta(days=10))
    recent = FailedAttemptRecord.open(first.id, "203.0.113.9", now)
    other = FailedAttemptRecord.open(second.id, None, now - timedelta(hours=2))
    store.run_exclusive(first.id, lambda txn: txn.save_failed_attempt(old))
    store.run_exclusive(first.id, lambda txn: txn.save_failed_attempt(recent))
    store.run_exclusive(second.id, lambda txn: txn.save_failed_attempt(other))

    found = store.list_failed_attempts_since(now - timedelta(days=1))
    assert sorted(r.id for r in found) == sorted([recent.id, other.id])


def test_failed_snapshot_write_keeps_previous_state(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("kept@example.com", "hash", status="active")
    state_dir = tmp_path / "state"
    before = (state_dir / "memory_store.json").read_text()

    def _fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("shopauth.storage.memory.os.replace", _fail_replace)
    with pytest.raises(RuntimeError):
        store.create_user("lost@example.com", "hash")

    assert (state_dir / "memory_store.json").read_text() == before
    assert list(state_dir.glob("*.tmp")) == []
