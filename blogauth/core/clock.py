"""
时间工具：统一 UTC 时间与 ISO-8601 字符串（毫秒 + Z 后缀）的互转。

存储层里的 createdAt / lockedUntil / expiresAt 等字段都用这种格式，
服务层通过注入 clock（无参、返回 aware datetime 的可调用对象）获取“现在”，方便测试里换成假时钟。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """解析 ISO 字符串；空值或格式不对返回 None。无时区信息按 UTC 处理。"""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
