"""
模块职能：
- 会话与令牌：签发访问令牌（15 分钟）+ 刷新令牌（7 天 / 记住我 30 天），服务端落 session_{sid} 记录。
- 校验：签名、类型、必填声明、过期时间、会话是否仍有效（撤销靠 session.active）。
- 刷新：每次刷新都轮换刷新令牌（新 jti），但不延长会话寿命；旧刷新令牌再次出现视为泄露，直接吊销会话。
- 登出：尽力而为，令牌缺失/无效/会话不存在都不算错误。
- 会话管理：列出、终止、批量失效；每个用户最多保留 MAX_CONCURRENT_SESSIONS 个活跃会话。

状态机：Issued → Active → (Refreshed | Expired | Revoked)

日志：
- token_issued / token_invalid / token_expired / token_session_inactive
- token_refreshed / token_refresh_reuse_detected
- session_logout / session_logout_all / session_terminated / session_limit_enforced
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, List, Optional

import jwt
from pydantic import ValidationError

from blogauth.core.clock import Clock, parse_iso, to_iso, utcnow
from blogauth.core.config import Settings, get_settings
from blogauth.core.errors import AuthError, CorruptRecordError, ErrorKind
from blogauth.core.models_user import Claims, SessionRecord, UserRecord, UserStatus
from blogauth.infra.logger import emit
from blogauth.services.credential_store import CredentialStore

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["sub", "uid", "sid", "jti", "type", "admin", "iat", "exp"]


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    claims: Claims
    session: SessionRecord
    expires_in: int


class TokenService:
    def __init__(self, store: CredentialStore, settings: Optional[Settings] = None, clock: Clock = utcnow):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # —— 签名 / 解码 —— #
    def _secret(self, token_type: str) -> str:
        return self.settings.secret_key if token_type == "access" else self.settings.refresh_secret_key

    def _sign(self, *, username: str, user_id: str, is_admin: bool, session_id: str,
              token_type: str, issued_at: int, expires_at: int) -> tuple[str, Claims]:
        claims = Claims(
            sub=username,
            uid=user_id,
            sid=session_id,
            jti=str(uuid.uuid4()),
            type=token_type,
            admin=is_admin,
            iat=issued_at,
            exp=expires_at,
        )
        token = jwt.encode(claims.model_dump(), self._secret(token_type), algorithm=ALGORITHM)
        return token, claims

    def _decode(self, token: Optional[str], token_type: str, verify_exp: bool = True) -> Claims:
        if not token or not isinstance(token, str) or not token.strip():
            raise AuthError(ErrorKind.Unauthenticated, "Authentication required")
        try:
            # exp / iat 按注入的 clock 判断，不用 PyJWT 的系统时间
            payload = jwt.decode(
                token.strip(),
                self._secret(token_type),
                algorithms=[ALGORITHM],
                options={"require": REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except jwt.PyJWTError as e:
            emit("token_invalid", type=token_type, error=str(e))
            raise AuthError(ErrorKind.Unauthenticated, "Invalid token")

        try:
            claims = Claims.model_validate(payload)
        except ValidationError:
            emit("token_invalid", type=token_type, error="malformed_claims")
            raise AuthError(ErrorKind.Unauthenticated, "Invalid token")
        if claims.type != token_type:
            emit("token_invalid", type=token_type, error="wrong_token_type")
            raise AuthError(ErrorKind.Unauthenticated, "Invalid token type")
        if verify_exp and claims.exp <= int(self.clock().timestamp()):
            emit("token_expired", type=token_type)
            raise AuthError(ErrorKind.Expired, "Token expired")
        return claims

    def _session_usable(self, session: Optional[SessionRecord]) -> bool:
        if session is None or not session.active:
            return False
        expires_at = parse_iso(session.expires_at)
        return expires_at is not None and expires_at > self.clock()

    # —— 签发 —— #
    def issue(self, user: UserRecord, ip: Optional[str] = None, user_agent: Optional[str] = None,
              remember_me: bool = False) -> TokenPair:
        now = self.clock()
        now_ts = int(now.timestamp())
        session_ttl = self.settings.remember_me_ttl_seconds if remember_me else self.settings.refresh_token_ttl_seconds
        session_id = str(uuid.uuid4())
        user_id = user.id or user.username

        access_token, access_claims = self._sign(
            username=user.username, user_id=user_id, is_admin=user.is_admin, session_id=session_id,
            token_type="access", issued_at=now_ts, expires_at=now_ts + self.settings.access_token_ttl_seconds,
        )
        refresh_token, refresh_claims = self._sign(
            username=user.username, user_id=user_id, is_admin=user.is_admin, session_id=session_id,
            token_type="refresh", issued_at=now_ts, expires_at=now_ts + session_ttl,
        )

        session = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            username=user.username,
            is_admin=user.is_admin,
            created_at=to_iso(now),
            last_activity=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=session_ttl)),
            ip=ip,
            user_agent=user_agent or "Unknown",
            active=True,
            remember_me=remember_me,
            refresh_jti=refresh_claims.jti,
        )
        self.store.save_session(session)
        self._index_session(session)
        self._enforce_session_limit(user.username, keep_session_id=session_id)

        emit("token_issued", username=user.username, session_id=session_id, remember_me=remember_me)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            claims=access_claims,
            session=session,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    # —— 校验 —— #
    def validate(self, token: Optional[str]) -> Claims:
        claims = self._decode(token, "access")
        session = self.store.get_session(claims.sid)
        if not self._session_usable(session):
            emit("token_session_inactive", username=claims.sub, session_id=claims.sid)
            raise AuthError(ErrorKind.Unauthenticated, "Session expired or revoked")
        return claims

    # —— 刷新（轮换） —— #
    def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        claims = self._decode(refresh_token, "refresh")
        session = self.store.get_session(claims.sid)
        if not self._session_usable(session):
            emit("token_session_inactive", username=claims.sub, session_id=claims.sid)
            raise AuthError(ErrorKind.Unauthenticated, "Session expired or invalid")

        now = self.clock()
        if session.refresh_jti != claims.jti:
            # 已轮换掉的刷新令牌又被使用：按泄露处理，整条会话作废
            session.active = False
            session.logged_out_at = to_iso(now)
            self.store.save_session(session)
            emit("token_refresh_reuse_detected", level="WARNING", username=claims.sub, session_id=claims.sid)
            raise AuthError(ErrorKind.Unauthenticated, "Refresh token already used")

        user = self.store.get_user(session.username)
        if user is None or user.status is not UserStatus.active:
            raise AuthError(ErrorKind.Unauthenticated, "Account is no longer active")

        now_ts = int(now.timestamp())
        session_expiry_ts = int(parse_iso(session.expires_at).timestamp())
        access_token, access_claims = self._sign(
            username=session.username, user_id=session.user_id, is_admin=user.is_admin,
            session_id=session.session_id, token_type="access", issued_at=now_ts,
            expires_at=min(now_ts + self.settings.access_token_ttl_seconds, session_expiry_ts),
        )
        new_refresh, refresh_claims = self._sign(
            username=session.username, user_id=session.user_id, is_admin=user.is_admin,
            session_id=session.session_id, token_type="refresh", issued_at=now_ts,
            expires_at=session_expiry_ts,
        )

        session.refresh_jti = refresh_claims.jti
        session.is_admin = user.is_admin
        session.last_activity = to_iso(now)
        self.store.save_session(session)

        emit("token_refreshed", username=session.username, session_id=session.session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            claims=access_claims,
            session=session,
            expires_in=access_claims.exp - now_ts,
        )

    # —— 登出 —— #
    def logout(self, token: Optional[str], logout_all: bool = False) -> Optional[str]:
        """返回被登出会话的用户名；令牌无效或会话不存在时返回 None。"""
        if not token:
            return None
        try:
            # 过期的访问令牌也允许用来登出，签名仍需有效
            claims = self._decode(token, "access", verify_exp=False)
        except AuthError:
            return None

        session = self.store.get_session(claims.sid)
        if session is None:
            return None

        if logout_all:
            count = self.invalidate_user_sessions(session.username)
            emit("session_logout_all", username=session.username, sessions=count)
        elif session.active:
            session.active = False
            session.logged_out_at = to_iso(self.clock())
            self.store.save_session(session)
            emit("session_logout", username=session.username, session_id=session.session_id)
        return session.username

    # —— 会话管理 —— #
    def _iter_sessions(self) -> Iterator[SessionRecord]:
        for key in self.store.session_keys():
            try:
                data = self.store.get(key)
                if not data:
                    continue
                yield SessionRecord.model_validate(data)
            except (CorruptRecordError, ValidationError):
                # 老格式或损坏的会话交给迁移清理，这里跳过
                continue

    def list_sessions(self, username: str, active_only: bool = False) -> List[SessionRecord]:
        sessions = self._indexed_sessions(username)
        if active_only:
            sessions = [s for s in sessions if self._session_usable(s)]
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    def terminate_session(self, session_id: str, username: str) -> SessionRecord:
        session = self.store.get_session(session_id)
        if session is None:
            raise AuthError(ErrorKind.NotFound, "Session not found")
        if session.username != username:
            raise AuthError(ErrorKind.Unauthorized, "Permission denied")
        session.active = False
        session.logged_out_at = to_iso(self.clock())
        self.store.save_session(session)
        emit("session_terminated", username=username, session_id=session_id)
        return session

    def invalidate_user_sessions(self, username: str, except_session_id: Optional[str] = None) -> int:
        now_iso = to_iso(self.clock())
        count = 0
        for session in self._iter_sessions():
            if session.username != username or not session.active or session.session_id == except_session_id:
                continue
            session.active = False
            session.logged_out_at = now_iso
            self.store.save_session(session)
            count += 1
        self.store.save_session_index(username, [except_session_id] if except_session_id else [])
        return count

    def _indexed_sessions(self, username: str) -> List[SessionRecord]:
        sessions = []
        for session_id in self.store.session_ids_for(username):
            try:
                session = self.store.get_session(session_id)
            except CorruptRecordError:
                continue
            if session is not None and session.username == username:
                sessions.append(session)
        return sessions

    def _index_session(self, session: SessionRecord) -> None:
        ids = self.store.session_ids_for(session.username)
        if session.session_id not in ids:
            ids.append(session.session_id)
        self.store.save_session_index(session.username, ids)

    def _enforce_session_limit(self, username: str, keep_session_id: str) -> None:
        active = self.list_sessions(username, active_only=True)
        keep = max(0, self.settings.max_concurrent_sessions - 1)
        others = [s for s in active if s.session_id != keep_session_id]
        excess = others[keep:]
        # 索引只保留仍可用的会话，过期/已登出的顺手清掉
        self.store.save_session_index(username, [keep_session_id] + [s.session_id for s in others[:keep]])
        if not excess:
            return
        now_iso = to_iso(self.clock())
        for session in excess:
            session.active = False
            session.logged_out_at = now_iso
            self.store.save_session(session)
        emit("session_limit_enforced", username=username, deactivated=len(excess))
