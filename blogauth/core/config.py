"""
运行配置：全部来自环境变量（main.py 启动时先用 python-dotenv 加载 .env.example / .env）。

必填密钥（缺任何一个即启动失败，不做随机/字面量兜底）：
- SECRET_KEY              访问令牌签名密钥
- REFRESH_SECRET_KEY      刷新令牌签名密钥
- MIGRATION_KEY           迁移接口/脚本的授权口令
- PROTECTED_ADMIN_USERNAME 受保护管理员用户名（不可降级/删除）

其余为可调参数，格式不合法时回退默认值。
TRUSTED_PROXIES：逗号分隔的反向代理地址，只有来自这些对端的请求才采信 X-Forwarded-For 等头；"*" 表示全部采信。
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

REQUIRED_SECRETS = (
    "SECRET_KEY",
    "REFRESH_SECRET_KEY",
    "MIGRATION_KEY",
    "PROTECTED_ADMIN_USERNAME",
)


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _get_list(name: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    secret_key: str
    refresh_secret_key: str
    migration_key: str
    protected_admin_username: str

    database_url: str = "sqlite:///./blogauth.db"
    bcrypt_rounds: int = 12
    password_max_length: int = 128

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    remember_me_ttl_seconds: int = 30 * 24 * 60 * 60
    max_concurrent_sessions: int = 5

    max_failed_login_attempts: int = 5
    lockout_seconds: int = 30 * 60

    rate_limit_redis_url: Optional[str] = None
    trusted_proxies: Tuple[str, ...] = ()


def missing_secrets() -> list[str]:
    return [name for name in REQUIRED_SECRETS if not os.getenv(name)]


@lru_cache
def get_settings() -> Settings:
    missing = missing_secrets()
    if missing:
        raise RuntimeError(f"required secrets are not set in environment: {', '.join(missing)}")

    return Settings(
        secret_key=os.environ["SECRET_KEY"],
        refresh_secret_key=os.environ["REFRESH_SECRET_KEY"],
        migration_key=os.environ["MIGRATION_KEY"],
        protected_admin_username=os.environ["PROTECTED_ADMIN_USERNAME"],
        database_url=os.getenv("DATABASE_URL", "sqlite:///./blogauth.db"),
        bcrypt_rounds=_get_int("BCRYPT_ROUNDS", 12),
        password_max_length=_get_int("PASSWORD_MAX_LENGTH", 128),
        access_token_ttl_seconds=_get_int("ACCESS_TOKEN_TTL_SECONDS", 15 * 60),
        refresh_token_ttl_seconds=_get_int("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60),
        remember_me_ttl_seconds=_get_int("REMEMBER_ME_TTL_SECONDS", 30 * 24 * 60 * 60),
        max_concurrent_sessions=_get_int("MAX_CONCURRENT_SESSIONS", 5),
        max_failed_login_attempts=_get_int("MAX_FAILED_LOGIN_ATTEMPTS", 5),
        lockout_seconds=_get_int("LOCKOUT_SECONDS", 30 * 60),
        rate_limit_redis_url=os.getenv("RATE_LIMIT_REDIS_URL") or None,
        trusted_proxies=_get_list("TRUSTED_PROXIES"),
    )
