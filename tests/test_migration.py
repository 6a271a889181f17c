# tests/test_migration.py
import pytest

from blogauth.core.errors import AuthError, ErrorKind, StoreError
from blogauth.core.security import hash_password, is_bcrypt_hash, verify_password
from blogauth.infra.blob_store import MemoryBlobStore
from blogauth.services.credential_store import CredentialStore
from blogauth.services.migration import MIGRATION_SOURCE, MigrationEngine

MIGRATION_KEY = "test-migration-key-0123456789"

LEGACY = {
    "user_bob": {"username": "bob", "password": "plain123", "isAdmin": False, "theme": "dark"},
    "pending_user_carol": {"username": "carol", "password": "Carol123!", "email": "carol@example.com"},
    "user_follows_bob": {"communities": ["python"]},
    "session_old": {"username": "bob", "token": "legacy-token"},
    "session_null": None,
    "current_user": {"username": "bob"},
}


class SpyHasher:
    """记录每次被哈希的明文，确认迁移从不对已有哈希再哈希一次。"""

    def __init__(self):
        self.calls = []

    def __call__(self, password):
        self.calls.append(password)
        return hash_password(password)


@pytest.fixture
def legacy_blobs():
    blobs = MemoryBlobStore(LEGACY)
    blobs.set_raw("session_corrupt", "{not json")
    return blobs


@pytest.fixture
def engine(legacy_blobs, settings):
    return MigrationEngine(CredentialStore(legacy_blobs), settings=settings)


def test_bob_is_migrated_to_a_bcrypt_hash(engine, legacy_blobs):
    report = engine.run(MIGRATION_KEY)
    assert report.success, report.errors
    assert report.users_processed == 1
    assert report.pending_users_processed == 1
    assert report.backups_created == 2

    bob = legacy_blobs.get("user_bob")
    assert "password" not in bob
    assert is_bcrypt_hash(bob["passwordHash"])
    assert bob["passwordSalt"] == bob["passwordHash"][:29]
    assert verify_password("plain123", bob["passwordHash"])
    assert bob["migrationSource"] == MIGRATION_SOURCE
    assert bob["id"]
    assert bob["theme"] == "dark"
    assert bob["bio"] == "Hello! I'm bob"
    assert bob["failedLoginAttempts"] == 0
    assert bob["lockedUntil"] is None


def test_pending_user_gets_defaults(engine, legacy_blobs):
    engine.run(MIGRATION_KEY)
    carol = legacy_blobs.get("pending_user_carol")
    assert carol["status"] == "pending"
    assert carol["isAdmin"] is False
    assert carol["emailVerified"] is False
    assert carol["email"] == "carol@example.com"
    assert len(carol["verificationToken"]) == 64
    assert carol["verificationExpiry"]
    assert carol["registrationIP"] == "migrated"
    assert verify_password("Carol123!", carol["passwordHash"])


def test_legacy_sessions_and_current_user_are_cleaned(engine, legacy_blobs):
    legacy_blobs.set("session_new", {"sessionId": "new", "username": "bob"})
    report = engine.run(MIGRATION_KEY)
    # session_old / session_null / session_corrupt / current_user
    assert report.sessions_cleaned == 4
    assert legacy_blobs.list("session_") == ["session_new"]
    assert legacy_blobs.get_raw("current_user") is None


def test_follows_are_never_touched(engine, legacy_blobs):
    before = legacy_blobs.get_raw("user_follows_bob")
    engine.run(MIGRATION_KEY)
    assert legacy_blobs.get_raw("user_follows_bob") == before
    assert not [k for k in legacy_blobs.list("backup_migration_") if "user_follows_" in k]


def test_second_run_is_a_no_op_and_never_rehashes(legacy_blobs, settings):
    spy = SpyHasher()
    engine = MigrationEngine(CredentialStore(legacy_blobs), settings=settings, hasher=spy)
    engine.run(MIGRATION_KEY)
    assert sorted(spy.calls) == ["Carol123!", "plain123"]
    migrated_bob = legacy_blobs.get_raw("user_bob")

    second = engine.run(MIGRATION_KEY)
    assert second.success
    assert second.users_processed == 0
    assert second.pending_users_processed == 0
    assert second.sessions_cleaned == 0
    assert len(spy.calls) == 2
    assert not any(is_bcrypt_hash(p) for p in spy.calls)
    assert legacy_blobs.get_raw("user_bob") == migrated_bob


def test_wrong_key_has_no_side_effects(engine, legacy_blobs):
    snapshot = {k: legacy_blobs.get_raw(k) for k in legacy_blobs.list()}
    for key in (None, "", "wrong-key"):
        with pytest.raises(AuthError) as ei:
            engine.run(key)
        assert ei.value.kind is ErrorKind.Unauthorized
    assert {k: legacy_blobs.get_raw(k) for k in legacy_blobs.list()} == snapshot


def test_record_without_password_is_reported(settings):
    blobs = MemoryBlobStore({"user_dan": {"username": "dan", "id": "d1"}})
    report = MigrationEngine(CredentialStore(blobs), settings=settings).run(MIGRATION_KEY)
    assert report.success is False
    assert any("dan has no password field" in e for e in report.errors)
    assert report.users_processed == 0


def test_integrity_failure_is_reported_without_auto_rollback(settings):
    blobs = MemoryBlobStore({
        "user_bob": {"username": "bob", "password": "plain123"},
        "user_eve": {"username": "eve", "passwordHash": "not-a-bcrypt-hash"},
    })
    report = MigrationEngine(CredentialStore(blobs), settings=settings).run(MIGRATION_KEY)
    assert report.success is False
    assert any("eve missing required field: id" in e for e in report.errors)
    assert any("eve has a malformed password hash" in e for e in report.errors)
    # bob 的迁移结果保留，没有自动回滚
    assert is_bcrypt_hash(blobs.get("user_bob")["passwordHash"])


def test_backup_write_failure_skips_that_record(settings):
    class NoBackupBlobStore(MemoryBlobStore):
        def set_raw(self, key, text):
            if key.startswith("backup_migration_") and "user_bob" in key:
                raise StoreError("disk full")
            super().set_raw(key, text)

    blobs = NoBackupBlobStore({
        "user_bob": {"username": "bob", "password": "plain123"},
        "user_ann": {"username": "ann", "password": "plain456"},
    })
    report = MigrationEngine(CredentialStore(blobs), settings=settings).run(MIGRATION_KEY)
    assert report.success is False
    assert report.users_processed == 1
    assert blobs.get("user_bob")["password"] == "plain123"
    assert "password" not in blobs.get("user_ann")


def test_rollback_restores_exact_originals(engine, legacy_blobs):
    originals = {k: legacy_blobs.get_raw(k) for k in ("user_bob", "pending_user_carol")}
    report = engine.run(MIGRATION_KEY)

    restored = engine.rollback(report.migration_id)
    assert restored.success
    assert restored.records_restored == 2
    for key, text in originals.items():
        assert legacy_blobs.get_raw(key) == text
    assert legacy_blobs.get("user_follows_bob") == {"communities": ["python"]}


def test_rollback_restores_legacy_text_byte_for_byte(settings):
    # 老系统写的是紧凑 JSON，非 ASCII 字符以 \u 转义
    legacy_user = r'{"username":"bob","password":"plain123","bio":"caf\u00e9"}'
    legacy_pending = r'{"username":"carol","password":"Carol123!","bio":"\u4f60\u597d"}'
    blobs = MemoryBlobStore()
    blobs.set_raw("user_bob", legacy_user)
    blobs.set_raw("pending_user_carol", legacy_pending)
    engine = MigrationEngine(CredentialStore(blobs), settings=settings)

    report = engine.run(MIGRATION_KEY)
    assert report.success, report.errors
    assert blobs.get("user_bob")["bio"] == "café"

    restored = engine.rollback(report.migration_id)
    assert restored.records_restored == 2
    assert blobs.get_raw("user_bob") == legacy_user
    assert blobs.get_raw("pending_user_carol") == legacy_pending


def test_rollback_of_backup_without_raw_text_uses_data(engine, legacy_blobs):
    legacy_blobs.set("backup_migration_old_user_bob_1", {
        "originalKey": "user_bob",
        "migrationId": "old",
        "backupTimestamp": "2025-01-01T00:00:00.000Z",
        "data": {"username": "bob", "password": "plain123"},
    })
    report = engine.rollback("old")
    assert report.records_restored == 1
    assert legacy_blobs.get("user_bob") == {"username": "bob", "password": "plain123"}


def test_rollback_unknown_migration_is_not_found(engine):
    with pytest.raises(AuthError) as ei:
        engine.rollback("does-not-exist")
    assert ei.value.kind is ErrorKind.NotFound


def test_audit_log_entries_are_written(engine, legacy_blobs):
    report = engine.run(MIGRATION_KEY)
    entries = [legacy_blobs.get(k) for k in legacy_blobs.list("migration_log_")]
    types = {e["type"] for e in entries}
    assert {"migration_started", "migration_completed"} <= types
    assert all(e["migrationId"] == report.migration_id for e in entries)
