"""
注册与改密的输入校验。失败统一抛 AuthError(InvalidInput)，message 直接回给客户端。

规则：
- 用户名 3-20 位，仅字母/数字/下划线
- 口令 9-128 位，至少各含一个大写、小写、数字、特殊字符，且不在常见弱口令表里
- 简介不超过 500 字；邮箱可选，给了就要像个邮箱
"""
from __future__ import annotations

import re
from typing import Optional

from blogauth.core.config import get_settings
from blogauth.core.errors import AuthError, ErrorKind

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

USERNAME_MIN, USERNAME_MAX = 3, 20
PASSWORD_MIN = 9
BIO_MAX = 500

COMMON_PASSWORDS = frozenset({
    "password", "123456789", "qwertyuiop", "password123",
    "admin", "letmein", "welcome", "monkey", "1234567890",
})


def _invalid(message: str, field: str) -> AuthError:
    return AuthError(ErrorKind.InvalidInput, message, {"field": field})


def validate_username(username) -> str:
    if not username or not isinstance(username, str):
        raise _invalid("Username is required", "username")
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
        raise _invalid(f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters long", "username")
    if not USERNAME_RE.match(username):
        raise _invalid("Username can only contain letters, numbers, and underscores", "username")
    return username


def validate_password(password, field: str = "password") -> str:
    if not password or not isinstance(password, str):
        raise _invalid("Password is required", field)
    max_length = get_settings().password_max_length
    if len(password) < PASSWORD_MIN:
        raise _invalid(f"Password must be at least {PASSWORD_MIN} characters long", field)
    if len(password) > max_length:
        raise _invalid(f"Password must be at most {max_length} characters long", field)
    if not re.search(r"[A-Z]", password):
        raise _invalid("Password must contain at least one uppercase letter", field)
    if not re.search(r"[a-z]", password):
        raise _invalid("Password must contain at least one lowercase letter", field)
    if not re.search(r"\d", password):
        raise _invalid("Password must contain at least one number", field)
    if not SPECIAL_RE.search(password):
        raise _invalid('Password must contain at least one special character (!@#$%^&*(),.?":{}|<>)', field)
    if password.lower() in COMMON_PASSWORDS:
        raise _invalid("Password is too common. Please choose a more secure password", field)
    return password


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def validate_registration(username, password, bio: Optional[str] = None, email: Optional[str] = None) -> None:
    validate_username(username)
    validate_password(password)
    if bio and len(bio) > BIO_MAX:
        raise _invalid(f"Bio must be {BIO_MAX} characters or less", "bio")
    if email and not is_valid_email(email):
        raise _invalid("Please provide a valid email address", "email")
