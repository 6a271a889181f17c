# blogauth/api/auth.py
"""
认证路由（挂载在 /auth 下）：
- POST /auth/register         注册（进入待审核），201
- POST /auth/login            登录，返回访问令牌 + 刷新令牌 + 公开资料
- POST /auth/refresh          刷新（刷新令牌会轮换）
- POST /auth/logout           登出（尽力而为，永远返回成功）
- GET  /auth/me               当前令牌的声明
- GET  /auth/sessions         当前用户的会话列表
- DELETE /auth/sessions/{id}  终止自己的某个会话
- POST /auth/password         修改口令，其它会话全部下线
- POST /auth/users/{username}/revoke-sessions  管理员强制某用户下线

限流：login / register / password 各自单独计数，其余需要认证的接口按 api_call 计数。
日志事件由 services 层发出，这里不记录明文口令和令牌。
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from blogauth.api.deps.auth import (
    get_auth_service, get_bearer_token, get_claims, get_token_service, rate_limit, require_admin,
)
from blogauth.core.clock import to_iso
from blogauth.core.models_user import Claims, SessionRecord
from blogauth.services.auth import AuthService
from blogauth.services.rate_limit import ActionClass
from blogauth.services.sessions import TokenService

router = APIRouter(tags=["auth"])


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterInput(_Body):
    username: str
    password: str
    email: Optional[str] = None
    bio: Optional[str] = None


class LoginInput(_Body):
    username: str
    password: str
    remember_me: bool = False


class RefreshInput(_Body):
    refresh_token: str


class LogoutInput(_Body):
    logout_all: bool = False


class ChangePasswordInput(_Body):
    current_password: str
    new_password: str


def _session_view(session: SessionRecord, current_sid: Optional[str] = None) -> dict:
    return {
        "id": session.session_id,
        "createdAt": session.created_at,
        "lastActivity": session.last_activity,
        "expiresAt": session.expires_at,
        "ip": session.ip,
        "userAgent": session.user_agent,
        "active": session.active,
        "rememberMe": session.remember_me,
        "current": session.session_id == current_sid,
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterInput,
    ip: str = Depends(rate_limit(ActionClass.registration)),
    auth: AuthService = Depends(get_auth_service),
):
    pending = auth.register(body.username, body.password, email=body.email, bio=body.bio, ip=ip)
    return {
        "success": True,
        "message": "Registration submitted for admin approval",
        "status": pending.status.value,
        "username": pending.username,
        "emailVerificationRequired": bool(body.email),
    }


@router.post("/login")
def login(
    body: LoginInput,
    request: Request,
    ip: str = Depends(rate_limit(ActionClass.login)),
    auth: AuthService = Depends(get_auth_service),
):
    result = auth.login(
        body.username,
        body.password,
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        remember_me=body.remember_me,
    )
    pair = result.tokens
    return {
        "success": True,
        "accessToken": pair.access_token,
        "refreshToken": pair.refresh_token,
        "expiresIn": pair.expires_in,
        "user": result.user.to_public(),
        "session": {
            "id": pair.session.session_id,
            "expiresAt": pair.session.expires_at,
            "rememberMe": pair.session.remember_me,
        },
    }


@router.post("/refresh")
def refresh(
    body: RefreshInput,
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    tokens: TokenService = Depends(get_token_service),
):
    pair = tokens.refresh(body.refresh_token)
    return {
        "success": True,
        "accessToken": pair.access_token,
        "refreshToken": pair.refresh_token,
        "expiresIn": pair.expires_in,
    }


@router.post("/logout")
def logout(
    body: Optional[LogoutInput] = None,
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    token: Optional[str] = Depends(get_bearer_token),
    tokens: TokenService = Depends(get_token_service),
):
    logout_all = bool(body and body.logout_all)
    tokens.logout(token, logout_all=logout_all)
    message = "Logged out from all devices" if logout_all else "Logged out successfully"
    return {"success": True, "message": message}


@router.get("/me")
def me(
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    claims: Claims = Depends(get_claims),
):
    return {
        "success": True,
        "user": {
            "id": claims.uid,
            "username": claims.sub,
            "isAdmin": claims.admin,
            "sessionId": claims.sid,
            "issuedAt": to_iso(datetime.fromtimestamp(claims.iat, tz=timezone.utc)),
            "expiresAt": to_iso(datetime.fromtimestamp(claims.exp, tz=timezone.utc)),
        },
    }


@router.get("/sessions")
def list_sessions(
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    claims: Claims = Depends(get_claims),
    tokens: TokenService = Depends(get_token_service),
):
    sessions = tokens.list_sessions(claims.sub, active_only=True)
    return {"success": True, "sessions": [_session_view(s, claims.sid) for s in sessions]}


@router.delete("/sessions/{session_id}")
def terminate_session(
    session_id: str,
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    claims: Claims = Depends(get_claims),
    tokens: TokenService = Depends(get_token_service),
):
    tokens.terminate_session(session_id, claims.sub)
    return {"success": True, "message": "Session terminated"}


@router.post("/password")
def change_password(
    body: ChangePasswordInput,
    ip: str = Depends(rate_limit(ActionClass.password_reset)),
    claims: Claims = Depends(get_claims),
    auth: AuthService = Depends(get_auth_service),
):
    revoked = auth.change_password(
        claims.sub, body.current_password, body.new_password, session_id=claims.sid, ip=ip,
    )
    return {
        "success": True,
        "message": "Password changed successfully. Please log in again on other devices.",
        "sessionsRevoked": revoked,
    }


@router.post("/users/{username}/revoke-sessions")
def revoke_user_sessions(
    username: str,
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    admin: Claims = Depends(require_admin),
    auth: AuthService = Depends(get_auth_service),
):
    revoked = auth.revoke_user_sessions(username, admin_username=admin.sub)
    return {"success": True, "sessionsRevoked": revoked}
