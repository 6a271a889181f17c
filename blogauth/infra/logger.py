"""
模块职责：统一日志配置与结构化输出。
- configure_logging(): 根据环境变量设置日志等级与落盘方式，兼容 uvicorn。
- emit(event, **kwargs) / emit_error(event, **kwargs): 输出结构化日志（dict -> 一行 JSON），方便检索。

约定：
- 任何事件都不得携带明文口令、完整令牌；用户名、IP、session_id 可以记录。
"""
import logging, json, os, pathlib
from logging.handlers import TimedRotatingFileHandler
from datetime import datetime


LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "true").lower() == "true"
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FILE = os.getenv("LOG_FILE", "blogauth.log")
LOG_ROTATE_WHEN = os.getenv("LOG_ROTATE_WHEN", "midnight")
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "7"))

_configured = False


def configure_logging():
    global _configured
    if _configured:
        return

    if LOG_TO_FILE:
        pathlib.Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
        logfile_path = os.path.join(LOG_DIR, LOG_FILE)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, LEVEL, logging.INFO))
    console.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    ))
    root.addHandler(console)

    if LOG_TO_FILE:
        fileh = TimedRotatingFileHandler(
            logfile_path, when=LOG_ROTATE_WHEN, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        fileh.setLevel(getattr(logging, LEVEL, logging.INFO))
        # 文件里只写 message（纯 JSON），便于 grep / jq
        fileh.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(fileh)

    root.setLevel(getattr(logging, LEVEL, logging.INFO))

    # 合流 uvicorn 日志
    for ln in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(ln)
        lg.handlers = []
        lg.propagate = True

    _configured = True


_app_logger = logging.getLogger("blogauth")


def _now_iso():
    # 本地时区 + 毫秒，示例：2025-09-18T17:30:42.123+09:00
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


# 调用方误传也不落日志
REDACTED_FIELDS = frozenset({
    "password", "current_password", "new_password", "password_hash", "password_salt",
    "token", "access_token", "refresh_token", "migration_key", "verification_token",
})
REDACTED = "***"


def _redact(fields: dict) -> dict:
    return {k: (REDACTED if k.lower() in REDACTED_FIELDS and v is not None else v) for k, v in fields.items()}


def _render(rec: dict) -> str:
    try:
        return json.dumps(rec, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(rec)


def emit(event: str, level: str = "INFO", **kwargs):
    """
    结构化日志：默认 INFO；每条都带时间戳 ts（本地时区）。
    用法：emit("auth_login_attempt", username="alice", ip="1.2.3.4")
    """
    rec = {"ts": _now_iso(), "level": level.upper(), "event": event, **_redact(kwargs)}
    _app_logger.log(getattr(logging, level.upper(), logging.INFO), _render(rec))


def emit_error(event: str, **kwargs):
    """
    错误日志（level=ERROR），同样带 ts。
    用法：emit_error("store_write_failed", key="user_bob", error=str(e))
    """
    rec = {"ts": _now_iso(), "level": "ERROR", "event": event, **_redact(kwargs)}
    _app_logger.error(_render(rec))
