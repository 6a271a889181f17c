"""
错误分类与统一响应。

- ErrorKind：业务错误种类，每种对应一个 HTTP 状态码
- AuthError：服务层抛出的唯一业务异常（kind + message + details）
- StoreError / CorruptRecordError：存储层故障（映射为 Internal）
- register_exception_handlers(app)：把上述异常与请求校验错误包装成
  {"success": false, "code": ..., "error": ..., "details": {...}}
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from blogauth.infra.logger import emit, emit_error


class ErrorKind(str, Enum):
    InvalidInput = "InvalidInput"
    InvalidCredentials = "InvalidCredentials"
    AccountLocked = "AccountLocked"
    Unauthenticated = "Unauthenticated"
    Expired = "Expired"
    Unauthorized = "Unauthorized"
    RateLimited = "RateLimited"
    NotFound = "NotFound"
    Conflict = "Conflict"
    Internal = "Internal"


HTTP_STATUS = {
    ErrorKind.InvalidInput: status.HTTP_400_BAD_REQUEST,
    ErrorKind.InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.AccountLocked: status.HTTP_403_FORBIDDEN,
    ErrorKind.Unauthenticated: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.Expired: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.Unauthorized: status.HTTP_403_FORBIDDEN,
    ErrorKind.RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.NotFound: status.HTTP_404_NOT_FOUND,
    ErrorKind.Conflict: status.HTTP_409_CONFLICT,
    ErrorKind.Internal: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AuthError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value}, {self.message!r})"


class StoreError(Exception):
    """存储后端读写失败。"""


class CorruptRecordError(StoreError):
    """存储里的值无法解析为 JSON。"""


def error_payload(kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None) -> dict:
    return {"success": False, "code": kind.value, "error": message, "details": details or {}}


async def auth_error_handler(request: Request, exc: AuthError):
    emit("api_error", level="WARNING", path=str(request.url.path), code=exc.kind.value, status_code=exc.status_code)
    headers = {}
    if exc.kind is ErrorKind.RateLimited and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.kind, exc.message, exc.details),
        headers=headers,
    )


async def store_error_handler(request: Request, exc: StoreError):
    emit_error("api_store_error", path=str(request.url.path), error=repr(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(ErrorKind.Internal, "Storage backend failure"),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(item) for item in err.get("loc", []) if item != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_payload(ErrorKind.InvalidInput, "Invalid request body", {"errors": errors}),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(AuthError)(auth_error_handler)
    app.exception_handler(StoreError)(store_error_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
