"""
模块职责：请求级日志中间件。
- 沿用上游传来的 x-request-id，没有就生成一个；
- 记录 request_start 与 request_end（含耗时、状态码、客户端 IP）；4xx 记 WARNING，5xx 记 ERROR；
- 捕获异常并输出 request_error，随后抛出让 FastAPI 处理。
- 不记录请求体（里面可能有口令）和 Authorization 头。
"""
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from blogauth.api.deps.auth import client_ip
from blogauth.infra.logger import emit


def _level_for(status_code: int) -> str:
    if status_code >= 500:
        return "ERROR"
    if status_code >= 400:
        return "WARNING"
    return "INFO"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        ip = client_ip(request)
        start = time.perf_counter()
        emit("request_start", request_id=rid, method=request.method, path=str(request.url.path), ip=ip)
        try:
            response: Response = await call_next(request)
        except Exception as e:
            emit(
                "request_error",
                level="ERROR",
                request_id=rid,
                method=request.method,
                path=str(request.url.path),
                error=repr(e),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise

        emit(
            "request_end",
            level=_level_for(response.status_code),
            request_id=rid,
            method=request.method,
            path=str(request.url.path),
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        response.headers["x-request-id"] = rid
        return response
