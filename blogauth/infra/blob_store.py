"""
模块职能：
- 键值 Blob 存储的窄接口：get / set / delete / list(prefix)，值为 JSON。
- 两种实现：
  - SqlBlobStore：SQLAlchemy + blobs 表（默认，生产/脚本使用）
  - MemoryBlobStore：进程内 dict（单实例部署、测试）

约定：
- set 时用 json.dumps(ensure_ascii=False) 序列化且保留字段顺序；其它系统写入的文本（紧凑格式、\\u 转义）
  经 get 再 set 会改变字节，需要原样保留时用 get_raw / set_raw；
- get 遇到非法 JSON 抛 CorruptRecordError，由调用方决定跳过还是删除；
- delete 不存在的 key 不报错；
- list 返回按 key 排序的列表，前缀匹配区分大小写。

日志：
- store_error
"""
from __future__ import annotations

import json
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from blogauth.core.errors import CorruptRecordError, StoreError
from blogauth.core.models import Blob
from blogauth.infra.logger import emit_error


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def loads(key: str, text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as e:
        raise CorruptRecordError(f"value under {key!r} is not valid JSON") from e


class BlobStore:
    """子类只需实现 get_raw / set_raw / delete / list。"""

    def get_raw(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_raw(self, key: str, text: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def get(self, key: str) -> Optional[Any]:
        text = self.get_raw(key)
        if text is None:
            return None
        return loads(key, text)

    def set(self, key: str, value: Any) -> None:
        self.set_raw(key, dumps(value))


class SqlBlobStore(BlobStore):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get_raw(self, key: str) -> Optional[str]:
        try:
            with self._session_factory() as db:
                row = db.get(Blob, key)
                return row.value if row is not None else None
        except SQLAlchemyError as e:
            emit_error("store_error", op="get", key=key, error=str(e))
            raise StoreError(f"get {key!r} failed") from e

    def set_raw(self, key: str, text: str) -> None:
        try:
            with self._session_factory() as db:
                row = db.get(Blob, key)
                if row is None:
                    db.add(Blob(key=key, value=text))
                else:
                    row.value = text
                db.commit()
        except SQLAlchemyError as e:
            emit_error("store_error", op="set", key=key, error=str(e))
            raise StoreError(f"set {key!r} failed") from e

    def delete(self, key: str) -> None:
        try:
            with self._session_factory() as db:
                db.query(Blob).filter(Blob.key == key).delete()
                db.commit()
        except SQLAlchemyError as e:
            emit_error("store_error", op="delete", key=key, error=str(e))
            raise StoreError(f"delete {key!r} failed") from e

    def list(self, prefix: str = "") -> List[str]:
        try:
            with self._session_factory() as db:
                q = db.query(Blob.key)
                if prefix:
                    q = q.filter(Blob.key.startswith(prefix, autoescape=True))
                keys = [r[0] for r in q.order_by(Blob.key).all()]
        except SQLAlchemyError as e:
            emit_error("store_error", op="list", prefix=prefix, error=str(e))
            raise StoreError(f"list {prefix!r} failed") from e
        # SQLite 的 LIKE 对 ASCII 不区分大小写，这里再精确过滤一次
        return [k for k in keys if k.startswith(prefix)]


class MemoryBlobStore(BlobStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        self._lock = Lock()
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get_raw(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set_raw(self, key: str, text: str) -> None:
        with self._lock:
            self._data[key] = text

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))
