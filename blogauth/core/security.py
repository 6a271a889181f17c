# blogauth/core/security.py
""""封装口令哈希/校验（passlib[bcrypt]）。

hash_password() 返回 (hash, salt)：salt 就是 hash 里内嵌的那段（$2b$12$ + 22 位），
每次调用都会生成新盐；cost 由 BCRYPT_ROUNDS 决定（默认 12）。

verify_password() 对格式不对的 hash 一律返回 False，不抛异常（fail closed）；
比较由 bcrypt 本身完成，耗时与不匹配位置无关。"""

import re
from functools import lru_cache
from typing import Tuple

from passlib.context import CryptContext

from blogauth.core.config import get_settings
from blogauth.core.errors import AuthError, ErrorKind

BCRYPT_HASH_RE = re.compile(r"^\$2[abxy]?\$\d{2}\$[./A-Za-z0-9]{53}$")
BCRYPT_SALT_LENGTH = 29


@lru_cache
def _context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def pwd_context() -> CryptContext:
    return _context(get_settings().bcrypt_rounds)


def is_bcrypt_hash(value) -> bool:
    return isinstance(value, str) and bool(BCRYPT_HASH_RE.match(value))


def hash_password(plain: str) -> Tuple[str, str]:
    if not isinstance(plain, str) or not plain:
        raise AuthError(ErrorKind.InvalidInput, "Password is required")
    max_length = get_settings().password_max_length
    if len(plain) > max_length:
        raise AuthError(ErrorKind.InvalidInput, f"Password must be at most {max_length} characters long")
    hashed = pwd_context().hash(plain)
    return hashed, hashed[:BCRYPT_SALT_LENGTH]


def verify_password(plain: str, hashed: str) -> bool:
    if not isinstance(plain, str) or not is_bcrypt_hash(hashed):
        return False
    try:
        return pwd_context().verify(plain, hashed)
    except (ValueError, TypeError):
        return False
