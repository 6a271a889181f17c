""""开发用种子脚本：创建/刷新两个已激活账户（口令哈希存储）。

- 受保护管理员：用户名取 PROTECTED_ADMIN_USERNAME，口令取 SEED_ADMIN_PASSWORD
- 演示用户：用户名取 SEED_DEMO_USERNAME（默认 demo），口令取 SEED_DEMO_PASSWORD
没给口令的账户跳过，不使用任何默认口令。

可作为脚本执行，也可被测试直接导入调用（提供 run() 函数）"""
# scripts/seed_users.py
import os
import sys
import uuid
from pathlib import Path
from typing import List, Optional

# 确保脚本在控制台有输出；不影响主服务的日志设置
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from dotenv import load_dotenv  # noqa: E402

load_dotenv(Path(__file__).resolve().parents[1] / ".env", override=False)

from blogauth.core.clock import to_iso, utcnow  # noqa: E402
from blogauth.core.config import get_settings  # noqa: E402
from blogauth.core.models_user import UserRecord, UserStatus  # noqa: E402
from blogauth.core.security import hash_password  # noqa: E402
from blogauth.infra.blob_store import BlobStore, SqlBlobStore  # noqa: E402
from blogauth.infra.db import SessionLocal, init_db  # noqa: E402
from blogauth.infra.logger import emit  # noqa: E402
from blogauth.services.auth import default_bio  # noqa: E402
from blogauth.services.credential_store import CredentialStore  # noqa: E402


def _get_env(k: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(k)
    return v if v is not None and v != "" else default


def upsert_user(store: CredentialStore, username: str, password: str, is_admin: bool) -> str:
    now_iso = to_iso(utcnow())
    password_hash, password_salt = hash_password(password)
    user = store.get_user(username)
    if user:
        action = "updated"
        user.is_admin = is_admin
        user.status = UserStatus.active
        user.failed_login_attempts = 0
        user.locked_until = None
    else:
        action = "created"
        user = UserRecord(
            id=str(uuid.uuid4()),
            username=username,
            bio=default_bio(username),
            is_admin=is_admin,
            status=UserStatus.active,
            created_at=now_iso,
        )
    user.password_hash, user.password_salt = password_hash, password_salt
    user.updated_at = now_iso
    store.save_user(user)

    emit("seed_user_upsert", username=username, is_admin=is_admin, action=action)
    print(f"[seed_users] {action} user: {username} ({'admin' if is_admin else 'user'})", flush=True)
    return action


def run(blobs: Optional[BlobStore] = None) -> List[str]:
    settings = get_settings()
    if blobs is None:
        init_db()
        blobs = SqlBlobStore(SessionLocal)
    store = CredentialStore(blobs)
    emit("seed_begin", database_url=os.getenv("DATABASE_URL"))
    print("[seed_users] seeding users ...", flush=True)

    accounts = [
        (settings.protected_admin_username, _get_env("SEED_ADMIN_PASSWORD"), True),
        (_get_env("SEED_DEMO_USERNAME", "demo"), _get_env("SEED_DEMO_PASSWORD"), False),
    ]
    seeded: List[str] = []
    for username, password, is_admin in accounts:
        if not password:
            emit("seed_user_skipped", username=username, reason="no_password")
            print(f"[seed_users] skipped {username}: no password configured", flush=True)
            continue
        upsert_user(store, username, password, is_admin)
        seeded.append(username)

    emit("seed_done", status="ok", users=len(seeded))
    print("[seed_users] done.", flush=True)
    return seeded


if __name__ == "__main__":
    try:
        run()
        sys.exit(0)
    except Exception as e:
        emit("seed_error", error=str(e))
        print(f"[seed_users] ERROR: {e}", file=sys.stderr, flush=True)
        sys.exit(1)
