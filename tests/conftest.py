# tests/conftest.py
import os
import tempfile

# 测试环境变量要在导入 blogauth 之前设置
_TMP_DIR = tempfile.mkdtemp(prefix="blogauth-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/test.db"
os.environ["LOG_TO_FILE"] = "false"   # 测试别落盘，减少噪音
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["SECRET_KEY"] = "test-access-secret-0123456789abcdef0123456789"
os.environ["REFRESH_SECRET_KEY"] = "test-refresh-secret-abcdef0123456789abcdef01"
os.environ["MIGRATION_KEY"] = "test-migration-key-0123456789"
os.environ["PROTECTED_ADMIN_USERNAME"] = "rootadmin"
os.environ["BCRYPT_ROUNDS"] = "4"     # 测试里用最低 cost，跑得快
os.environ.pop("RATE_LIMIT_REDIS_URL", None)
os.environ.pop("TRUSTED_PROXIES", None)

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from blogauth.core.clock import to_iso
from blogauth.core.config import get_settings
from blogauth.core.models_user import UserRecord, UserStatus
from blogauth.core.security import hash_password
from blogauth.infra.blob_store import MemoryBlobStore
from blogauth.services.auth import AuthService
from blogauth.services.credential_store import CredentialStore
from blogauth.services.sessions import TokenService

STRONG_PASSWORD = "Secret123!"


class FakeClock:
    """可手动拨动的时钟，供锁定/限流窗口测试使用。"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_active_user(store: CredentialStore, username: str, password: str = STRONG_PASSWORD,
                     is_admin: bool = False) -> UserRecord:
    password_hash, password_salt = hash_password(password)
    user = UserRecord(
        id=str(uuid.uuid4()),
        username=username,
        password_hash=password_hash,
        password_salt=password_salt,
        is_admin=is_admin,
        status=UserStatus.active,
        created_at=to_iso(datetime.now(timezone.utc)),
    )
    store.save_user(user)
    return user


def approve(store: CredentialStore, username: str) -> UserRecord:
    """模拟管理员审核通过：pending_user_ → user_，status=active。"""
    pending = store.get_pending_user(username)
    assert pending is not None
    data = pending.to_store()
    data["status"] = UserStatus.active.value
    user = UserRecord.model_validate(data)
    store.save_user(user)
    store.delete_pending_user(username)
    return user


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def store(blobs):
    return CredentialStore(blobs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(store, settings):
    return TokenService(store, settings=settings)


@pytest.fixture
def auth(store, tokens, settings):
    return AuthService(store, tokens, settings=settings)
