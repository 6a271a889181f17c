# blogauth/api/deps/auth.py
"""
路由依赖：
- 从 app.state 取共享的服务对象（测试里可以直接替换 app.state 上的实例）
- client_ip()：对端在 TRUSTED_PROXIES 里时依次取 cf-connecting-ip → x-forwarded-for 第一个 → x-real-ip → x-client-ip；
  否则只认对端地址（没有则 "unknown"），客户端自带的转发头不参与限流计数
- rate_limit(action)：按 (IP, 动作) 限流，超限抛 RateLimited（429 + Retry-After）
- get_claims()：解析 Authorization: Bearer <token>，校验签名/过期/会话状态
- require_admin()：在 get_claims 基础上要求 admin 声明
"""
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from blogauth.core.errors import AuthError, ErrorKind
from blogauth.core.models_user import Claims
from blogauth.infra.logger import emit
from blogauth.services.auth import AuthService
from blogauth.services.credential_store import CredentialStore
from blogauth.services.migration import MigrationEngine
from blogauth.services.rate_limit import ActionClass, RateLimiter
from blogauth.services.sessions import TokenService

bearer_scheme = HTTPBearer(auto_error=False)

IP_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip", "x-client-ip")


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_migration_engine(request: Request) -> MigrationEngine:
    return request.app.state.migration


def _peer_is_trusted(request: Request, peer: Optional[str]) -> bool:
    settings = getattr(request.app.state, "settings", None)
    trusted = settings.trusted_proxies if settings is not None else ()
    return "*" in trusted or (peer is not None and peer in trusted)


def client_ip(request: Request) -> str:
    peer = request.client.host if request.client and request.client.host else None
    if not _peer_is_trusted(request, peer):
        return peer or "unknown"
    for header in IP_HEADERS:
        value = request.headers.get(header)
        if value:
            # x-forwarded-for: client, proxy1, proxy2
            first = value.split(",")[0].strip()
            if first:
                return first
    return peer or "unknown"


def rate_limit(action: ActionClass) -> Callable[..., str]:
    def dependency(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> str:
        ip = client_ip(request)
        decision = limiter.check(ip, action)
        if not decision.allowed:
            raise AuthError(
                ErrorKind.RateLimited,
                "Too many requests. Please try again later.",
                {"retryAfter": decision.retry_after_seconds},
                retry_after=decision.retry_after_seconds,
            )
        return ip

    return dependency


def get_bearer_token(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Optional[str]:
    if creds and creds.credentials:
        return creds.credentials
    return None


def get_claims(
    token: Optional[str] = Depends(get_bearer_token),
    tokens: TokenService = Depends(get_token_service),
) -> Claims:
    if not token:
        emit("auth_missing_header")
        raise AuthError(ErrorKind.Unauthenticated, "Authentication required")
    return tokens.validate(token)


def require_admin(claims: Claims = Depends(get_claims)) -> Claims:
    if not claims.admin:
        emit("auth_admin_required", level="WARNING", username=claims.sub)
        raise AuthError(ErrorKind.Unauthorized, "Admin privileges required")
    return claims
