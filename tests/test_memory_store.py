from datetime import datetime, timedelta, timezone

import pytest

from tessera.storage.errors import ConstraintViolation
from tessera.storage.memory import MemoryStore
from tessera.storage.models import ResetRequest, Session


def _now():
    return datetime.now(timezone.utc)


def _reset_request(user_id: str, *, token_hash: str = "tok", expires_in=timedelta(minutes=15)):
    now = _now()
    return ResetRequest(
        id=f"req-{token_hash}",
        user_id=user_id,
        otp_hash="argon-hash",
        token_hash=token_hash,
        otp_hint="12****",
        created_at=now,
        expires_at=now + expires_in,
    )


class TestTransactions:
    """Units of work commit or roll back as a whole."""

    def test_failed_unit_is_rolled_back(self):
        store = MemoryStore()

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                user = tx.create_user("carol@example.com")
                tx.save_password(user.id, "hash", "argon2id")
                raise RuntimeError("abort")

        assert store.users == {}
        assert store.credentials == {}

    def test_committed_unit_is_kept(self):
        store = MemoryStore()
        with store.transaction() as tx:
            tx.create_user("carol@example.com")
        assert store.get_user_by_email("CAROL@example.com") is not None

    def test_duplicate_email(self):
        store = MemoryStore()
        store.create_user("carol@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user(" Carol@Example.com ")


class TestSessions:
    """Session row constraints and conditional updates."""

    def test_conditional_revoke(self):
        store = MemoryStore()
        user = store.create_user("carol@example.com")
        now = _now()
        session = store.insert_session(
            Session.new(user.id, refresh_token_hash="h1", expires_at=now + timedelta(days=1), now=now)
        )

        assert not store.revoke_session_if_active(
            session.id, reason="rotated", now=now, expected_hash="other"
        )
        assert store.revoke_session_if_active(
            session.id, reason="rotated", now=now, expected_hash="h1", replaced_by="next"
        )
        assert not store.revoke_session_if_active(session.id, reason="rotated", now=now)
        assert store.get_session(session.id).replaced_by_session_id == "next"

    def test_active_hash_is_unique_per_user(self):
        store = MemoryStore()
        user = store.create_user("carol@example.com")
        expires = _now() + timedelta(days=1)
        store.insert_session(Session.new(user.id, refresh_token_hash="h1", expires_at=expires))

        with pytest.raises(ConstraintViolation):
            store.insert_session(Session.new(user.id, refresh_token_hash="h1", expires_at=expires))

    def test_session_requires_user(self):
        store = MemoryStore()
        with pytest.raises(ConstraintViolation):
            store.insert_session(
                Session.new("missing", refresh_token_hash="h1", expires_at=_now())
            )


class TestResetRequests:
    """Reset request attempt counting and consumption."""

    def test_attempts_stop_at_budget(self):
        store = MemoryStore()
        user = store.create_user("carol@example.com")
        request = store.insert_reset_request(_reset_request(user.id))

        for expected in (1, 2):
            updated = store.record_otp_attempt(
                request.id, now=_now(), verified=False, max_attempts=2, metadata={"n": expected}
            )
            assert updated.attempt_count == expected
        assert store.record_otp_attempt(request.id, now=_now(), verified=True, max_attempts=2) is None
        assert store.get_reset_request(request.id).verified_at is None

    def test_consume_once(self):
        store = MemoryStore()
        user = store.create_user("carol@example.com")
        request = store.insert_reset_request(_reset_request(user.id))

        assert store.consume_reset_request(request.id, now=_now())
        assert not store.consume_reset_request(request.id, now=_now())

    def test_consume_expired_only(self):
        store = MemoryStore()
        user = store.create_user("carol@example.com")
        store.insert_reset_request(_reset_request(user.id, token_hash="old", expires_in=timedelta(0)))
        fresh = store.insert_reset_request(_reset_request(user.id, token_hash="new"))

        assert store.consume_user_reset_requests(user.id, now=_now(), expired_only=True) == 1
        assert store.get_reset_request(fresh.id).consumed_at is None


class TestPersistence:
    """State file round trip across restarts."""

    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("carol@example.com")
        store.save_password(user.id, "hash", "argon2id")
        now = _now()
        store.insert_session(
            Session.new(user.id, refresh_token_hash="h1", expires_at=now + timedelta(days=1), now=now)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user(user.id).email == "carol@example.com"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        session = reloaded.find_session_by_refresh_hash(user.id, "h1")
        assert session.expires_at == now + timedelta(days=1)

    def test_corrupt_state_is_ignored(self, tmp_path):
        (tmp_path / "tessera_state.json").write_text("{not json")
        store = MemoryStore(fs_root=str(tmp_path))
        assert store.users == {}
