# tests/test_scripts.py
from blogauth.core.security import verify_password
from blogauth.infra.blob_store import MemoryBlobStore
from blogauth.services.credential_store import CredentialStore
from scripts.migrate_secure_auth import main as migrate_main
from scripts.migrate_secure_auth import run as migrate_run
from scripts.rollback_migration import main as rollback_main
from scripts.rollback_migration import run as rollback_run
from scripts.seed_users import run as seed_run


def test_migrate_and_rollback_scripts():
    blobs = MemoryBlobStore({"user_bob": {"username": "bob", "password": "plain123"}})
    original = blobs.get_raw("user_bob")

    report = migrate_run(blobs=blobs)
    assert report.success
    assert verify_password("plain123", blobs.get("user_bob")["passwordHash"])

    restored = rollback_run(report.migration_id, blobs=blobs)
    assert restored.records_restored == 1
    assert blobs.get_raw("user_bob") == original


def test_migrate_script_rejects_wrong_key(capsys):
    assert migrate_main(["--migration-key", "wrong"]) == 1
    assert "Invalid migration key" in capsys.readouterr().err


def test_rollback_script_unknown_migration_exits_1():
    assert rollback_main(["no-such-migration"]) == 1


def test_seed_users_only_seeds_accounts_with_passwords(monkeypatch):
    monkeypatch.setenv("SEED_ADMIN_PASSWORD", "RootAdmin123!")
    monkeypatch.delenv("SEED_DEMO_PASSWORD", raising=False)
    blobs = MemoryBlobStore()

    assert seed_run(blobs=blobs) == ["rootadmin"]
    admin = CredentialStore(blobs).get_user("rootadmin")
    assert admin.is_admin is True
    assert admin.status.value == "active"
    assert verify_password("RootAdmin123!", admin.password_hash)
    assert blobs.get("user_demo") is None


def test_seed_users_is_repeatable(monkeypatch):
    monkeypatch.setenv("SEED_ADMIN_PASSWORD", "RootAdmin123!")
    monkeypatch.setenv("SEED_DEMO_USERNAME", "demo")
    monkeypatch.setenv("SEED_DEMO_PASSWORD", "DemoUser123!")
    blobs = MemoryBlobStore()
    seed_run(blobs=blobs)
    first_id = blobs.get("user_demo")["id"]

    monkeypatch.setenv("SEED_DEMO_PASSWORD", "DemoUser456!")
    assert seed_run(blobs=blobs) == ["rootadmin", "demo"]
    demo = CredentialStore(blobs).get_user("demo")
    assert demo.id == first_id
    assert demo.is_admin is False
    assert verify_password("DemoUser456!", demo.password_hash)
