"""
模块职能：
- 注册：校验输入 → 查重（user_ / pending_user_）→ 哈希口令 → 写 pending_user_{username}。
  同进程内按用户名加建议锁串行化；写入后回读比对 id，跨进程竞争的输家得到 Conflict。
  不同实例同时写同一用户名仍是最后写入者生效（已知限制）。
- 登录：查 user_ → 状态检查 → 锁定检查（先于口令校验）→ 口令校验 → 签发令牌 → 更新登录统计。
  口令错误会累加 failedLoginAttempts，达到上限后写 lockedUntil 并清零计数；该写入失败直接向上抛。
  登录成功后的统计写入失败只记日志，不影响登录结果。
- 改密：校验旧口令与新口令 → 重新哈希 → 作废该用户除当前会话外的所有会话。
- 受保护管理员：ensure_not_protected_admin() 供管理类调用方在修改账户前检查；
  revoke_user_sessions() 是目前唯一的管理操作（强制某用户全部下线）。

日志：
- auth_register_attempt / auth_register_ok / auth_register_duplicate / auth_register_race_lost
- auth_login_attempt / auth_login_failed / auth_account_locked / auth_lockout_set / auth_login_success
- auth_login_bookkeeping_failed
- auth_password_changed / auth_password_change_failed
- auth_sessions_revoked
"""
from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from blogauth.core.clock import Clock, parse_iso, to_iso, utcnow
from blogauth.core.config import Settings, get_settings
from blogauth.core.errors import AuthError, ErrorKind, StoreError
from blogauth.core.models_user import PendingUserRecord, UserRecord, UserStatus
from blogauth.core.security import hash_password, verify_password
from blogauth.infra.logger import emit, emit_error
from blogauth.services.credential_store import CredentialStore
from blogauth.services.sessions import TokenPair, TokenService
from blogauth.services.validation import validate_password, validate_registration

VERIFICATION_TTL = timedelta(hours=24)

Hasher = Callable[[str], Tuple[str, str]]


def default_bio(username: str) -> str:
    return f"Hello! I'm {username}"


@dataclass
class LoginResult:
    user: UserRecord
    tokens: TokenPair


class AuthService:
    def __init__(self, store: CredentialStore, tokens: TokenService, settings: Optional[Settings] = None,
                 clock: Clock = utcnow, hasher: Hasher = hash_password):
        self.store = store
        self.tokens = tokens
        self.settings = settings or get_settings()
        self.clock = clock
        self.hasher = hasher
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    def _username_lock(self, username: str) -> Lock:
        with self._locks_guard:
            return self._locks.setdefault(username, Lock())

    # —— 注册 —— #
    def register(self, username: str, password: str, email: Optional[str] = None,
                 bio: Optional[str] = None, ip: Optional[str] = None) -> PendingUserRecord:
        emit("auth_register_attempt", username=username if isinstance(username, str) else None, ip=ip)
        validate_registration(username, password, bio=bio, email=email)

        with self._username_lock(username):
            if self.store.get_user(username) is not None or self.store.get_pending_user(username) is not None:
                emit("auth_register_duplicate", level="WARNING", username=username, ip=ip)
                raise AuthError(ErrorKind.Conflict, "Username already exists or is pending approval")

            password_hash, password_salt = self.hasher(password)
            now = self.clock()
            pending = PendingUserRecord(
                id=str(uuid.uuid4()),
                username=username,
                email=email or None,
                password_hash=password_hash,
                password_salt=password_salt,
                bio=bio or default_bio(username),
                created_at=to_iso(now),
                status=UserStatus.pending,
                is_admin=False,
                email_verified=False,
                verification_token=secrets.token_hex(32),
                verification_expiry=to_iso(now + VERIFICATION_TTL),
                registration_ip=ip or "unknown",
                failed_login_attempts=0,
                locked_until=None,
                securityEvents=[],
                settings={
                    "twoFactorEnabled": False,
                    "sessionTimeout": self.settings.access_token_ttl_seconds,
                },
            )
            self.store.save_pending_user(pending)

            stored = self.store.get_pending_user(username)
            if stored is None or stored.id != pending.id:
                emit("auth_register_race_lost", level="WARNING", username=username, ip=ip)
                raise AuthError(ErrorKind.Conflict, "Username already exists or is pending approval")

        emit("auth_register_ok", username=username, ip=ip, email_provided=bool(email))
        return pending

    # —— 登录 —— #
    def login(self, username: str, password: str, ip: Optional[str] = None,
              user_agent: Optional[str] = None, remember_me: bool = False) -> LoginResult:
        emit("auth_login_attempt", username=username, ip=ip, ua=user_agent)
        if not username or not password:
            raise AuthError(ErrorKind.InvalidInput, "Username and password required")

        user = self.store.get_user(username)
        if user is None:
            if self.store.get_pending_user(username) is not None:
                emit("auth_login_failed", username=username, ip=ip, reason="pending")
                raise AuthError(ErrorKind.InvalidCredentials, "Your account is pending admin approval")
            # 不区分“用户不存在”和“口令错误”
            emit("auth_login_failed", username=username, ip=ip, reason="not_found")
            raise AuthError(ErrorKind.InvalidCredentials, "Invalid credentials")

        if user.status is not UserStatus.active:
            emit("auth_login_failed", username=username, ip=ip, reason=f"status_{user.status.value}")
            raise AuthError(ErrorKind.InvalidCredentials, "Invalid credentials")

        now = self.clock()
        locked_until = parse_iso(user.locked_until)
        if locked_until is not None and locked_until > now:
            emit("auth_account_locked", level="WARNING", username=username, ip=ip, locked_until=user.locked_until)
            raise AuthError(
                ErrorKind.AccountLocked,
                "Account temporarily locked due to too many failed attempts",
                {"lockedUntil": user.locked_until},
            )

        if not verify_password(password, user.password_hash):
            self._record_failed_attempt(user, ip)
            raise AuthError(ErrorKind.InvalidCredentials, "Invalid credentials")

        pair = self.tokens.issue(user, ip=ip, user_agent=user_agent, remember_me=remember_me)

        user.last_login = to_iso(now)
        user.login_count += 1
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_ip = ip
        try:
            self.store.save_user(user)
        except StoreError as e:
            emit_error("auth_login_bookkeeping_failed", username=username, error=str(e))

        emit("auth_login_success", username=username, user_id=user.id, is_admin=user.is_admin,
             session_id=pair.session.session_id, ip=ip)
        return LoginResult(user=user, tokens=pair)

    def _record_failed_attempt(self, user: UserRecord, ip: Optional[str]) -> None:
        attempts = user.failed_login_attempts + 1
        locked = attempts >= self.settings.max_failed_login_attempts
        if locked:
            user.locked_until = to_iso(self.clock() + timedelta(seconds=self.settings.lockout_seconds))
            user.failed_login_attempts = 0
        else:
            user.failed_login_attempts = attempts
        self.store.save_user(user)

        emit("auth_login_failed", username=user.username, ip=ip, reason="bad_password", attempts=attempts)
        if locked:
            emit("auth_lockout_set", level="WARNING", username=user.username, locked_until=user.locked_until)

    # —— 改密 —— #
    def change_password(self, username: str, current_password: str, new_password: str,
                        session_id: Optional[str] = None, ip: Optional[str] = None) -> int:
        """返回被作废的其它会话数量。"""
        if not current_password or not new_password:
            raise AuthError(ErrorKind.InvalidInput, "Current password and new password required")
        validate_password(new_password, field="newPassword")

        user = self.store.get_user(username)
        if user is None:
            raise AuthError(ErrorKind.NotFound, "User not found")

        if not verify_password(current_password, user.password_hash):
            emit("auth_password_change_failed", level="WARNING", username=username, ip=ip)
            raise AuthError(ErrorKind.InvalidCredentials, "Current password is incorrect")
        if verify_password(new_password, user.password_hash):
            raise AuthError(ErrorKind.InvalidInput, "New password must be different from current password")

        user.password_hash, user.password_salt = self.hasher(new_password)
        now_iso = to_iso(self.clock())
        user.password_changed_at = now_iso
        user.updated_at = now_iso
        self.store.save_user(user)

        revoked = self.tokens.invalidate_user_sessions(username, except_session_id=session_id)
        emit("auth_password_changed", username=username, ip=ip, sessions_revoked=revoked)
        return revoked

    # —— 受保护管理员 —— #
    def ensure_not_protected_admin(self, username: str) -> None:
        if username == self.settings.protected_admin_username:
            raise AuthError(ErrorKind.Unauthorized, "The protected administrator account cannot be modified")

    def revoke_user_sessions(self, target_username: str, admin_username: str) -> int:
        """管理员强制下线某个用户；受保护管理员只能自己操作自己。"""
        if target_username != admin_username:
            self.ensure_not_protected_admin(target_username)
        if self.store.get_user(target_username) is None:
            raise AuthError(ErrorKind.NotFound, "User not found")
        revoked = self.tokens.invalidate_user_sessions(target_username)
        emit("auth_sessions_revoked", username=target_username, by=admin_username, sessions=revoked)
        return revoked
