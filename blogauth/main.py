"""
应用入口：
- 加载 .env（先 .env.example 作默认，再用 .env 覆盖）
- lifespan 启动阶段：配置日志 → 打印 logger_config → 读取配置（缺密钥直接启动失败）→ 初始化数据库 → 装配服务
- 装载请求日志中间件、统一错误处理、路由
- 提供 /health
"""
from pathlib import Path
from dotenv import load_dotenv

# 1) 先加载 .env，务必在导入 logger 之前
ROOT = Path(__file__).resolve().parents[1]
ENV = ROOT / ".env"
ENV_EXAMPLE = ROOT / ".env.example"
if ENV_EXAMPLE.exists():
    load_dotenv(ENV_EXAMPLE, override=False)
if ENV.exists():
    load_dotenv(ENV, override=True)

# 2) 正常导入
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from blogauth.api import auth as auth_api
from blogauth.api import migrate as migrate_api
from blogauth.core.clock import Clock, utcnow
from blogauth.core.config import Settings, get_settings
from blogauth.core.errors import register_exception_handlers
from blogauth.infra.blob_store import BlobStore, SqlBlobStore
from blogauth.infra.db import SessionLocal, init_db
from blogauth.infra.logger import (
    configure_logging, emit,
    LOG_TO_FILE, LOG_DIR, LOG_FILE, LOG_ROTATE_WHEN, LOG_BACKUP_COUNT,
)
from blogauth.middleware.logging import RequestLoggingMiddleware
from blogauth.services.auth import AuthService
from blogauth.services.credential_store import CredentialStore
from blogauth.services.migration import MigrationEngine
from blogauth.services.rate_limit import RateLimiter, build_rate_limiter
from blogauth.services.sessions import TokenService


def install_services(app: FastAPI, blobs: BlobStore, settings: Settings,
                     clock: Clock = utcnow, rate_limiter: Optional[RateLimiter] = None) -> None:
    """把共享服务挂到 app.state 上；测试里用内存存储 / 假时钟重新装配即可。"""
    store = CredentialStore(blobs)
    tokens = TokenService(store, settings=settings, clock=clock)
    app.state.settings = settings
    app.state.store = store
    app.state.tokens = tokens
    app.state.auth = AuthService(store, tokens, settings=settings, clock=clock)
    app.state.migration = MigrationEngine(store, settings=settings, clock=clock)
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings, clock=clock)


# 3) lifespan：替代 on_event（startup/shutdown）
@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    configure_logging()
    emit(
        "logger_config",
        to_file=LOG_TO_FILE, dir=LOG_DIR, file=LOG_FILE,
        when=LOG_ROTATE_WHEN, backup=LOG_BACKUP_COUNT,
    )
    settings = get_settings()
    init_db()
    emit("db_init_done")
    install_services(app, SqlBlobStore(SessionLocal), settings)
    emit("services_ready", bcrypt_rounds=settings.bcrypt_rounds,
         redis_rate_limit=bool(settings.rate_limit_redis_url))
    yield
    # shutdown
    emit("app_shutdown")


# 4) 创建应用并装配（lifespan 要在这里传入）
app = FastAPI(title="blogauth: authentication & credential migration", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)


@app.get("/health")
def health():
    return {"ok": True}


# 路由
app.include_router(auth_api.router, prefix="/auth", tags=["auth"])
app.include_router(migrate_api.router, prefix="/migrate", tags=["migrate"])
