"""
模块职能：
- 在 BlobStore 之上提供带类型的凭据读写，集中维护 key 布局：
  user_{username} / pending_user_{username} / session_{sessionId} / sessions_by_user_{username}
  backup_migration_{migrationId}_{originalKey}_{ms} / migration_log_{uuid}
- user_follows_{username} 与用户记录共用 user_ 前缀，扫描用户时一律排除；
  备份 key 以 backup_migration_ 开头，永远不会出现在线上前缀的扫描结果里。
- sessions_by_user_{username} 是该用户会话 id 的索引（JSON 数组），登录时的会话数限制和会话列表只读它；
  索引是读改写、非原子的，并发登录可能丢一条 id，所以强制下线（invalidate）仍然全量扫描 session_*。
- 记录字段不合法（未知 status、缺 username 等）按 CorruptRecordError 上抛，与无法解析的 JSON 同等对待。

日志：
- migration_log_write_failed / session_index_corrupt
"""
from __future__ import annotations

import uuid
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from blogauth.core.clock import to_iso, utcnow
from blogauth.core.errors import CorruptRecordError, StoreError
from blogauth.core.models_user import BackupRecord, PendingUserRecord, SessionRecord, UserRecord
from blogauth.infra.blob_store import BlobStore
from blogauth.infra.logger import emit_error

USER_PREFIX = "user_"
USER_FOLLOWS_PREFIX = "user_follows_"
PENDING_USER_PREFIX = "pending_user_"
SESSION_PREFIX = "session_"
SESSION_INDEX_PREFIX = "sessions_by_user_"
BACKUP_PREFIX = "backup_migration_"
MIGRATION_LOG_PREFIX = "migration_log_"
LEGACY_CURRENT_USER_KEY = "current_user"

R = TypeVar("R", bound=BaseModel)


def user_key(username: str) -> str:
    return f"{USER_PREFIX}{username}"


def pending_user_key(username: str) -> str:
    return f"{PENDING_USER_PREFIX}{username}"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def session_index_key(username: str) -> str:
    return f"{SESSION_INDEX_PREFIX}{username}"


def backup_prefix(migration_id: str) -> str:
    return f"{BACKUP_PREFIX}{migration_id}_"


def is_live_user_key(key: str) -> bool:
    return (
        key.startswith(USER_PREFIX)
        and not key.startswith(USER_FOLLOWS_PREFIX)
        and BACKUP_PREFIX not in key
    )


class CredentialStore:
    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    def _load(self, model: Type[R], key: str) -> Optional[R]:
        data = self.blobs.get(key)
        if not data:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise CorruptRecordError(f"value under {key!r} is not a valid {model.__name__}") from e

    # —— 原始读写（迁移需要处理任意 JSON） —— #
    def get(self, key: str) -> Optional[Any]:
        return self.blobs.get(key)

    def set(self, key: str, value: Any) -> None:
        self.blobs.set(key, value)

    def get_raw(self, key: str) -> Optional[str]:
        return self.blobs.get_raw(key)

    def set_raw(self, key: str, text: str) -> None:
        self.blobs.set_raw(key, text)

    def delete(self, key: str) -> None:
        self.blobs.delete(key)

    def exists(self, key: str) -> bool:
        return self.blobs.get_raw(key) is not None

    # —— 用户 —— #
    def get_user(self, username: str) -> Optional[UserRecord]:
        return self._load(UserRecord, user_key(username))

    def save_user(self, user: UserRecord) -> None:
        self.blobs.set(user_key(user.username), user.to_store())

    def user_keys(self) -> List[str]:
        return [k for k in self.blobs.list(USER_PREFIX) if is_live_user_key(k)]

    # —— 待审核用户 —— #
    def get_pending_user(self, username: str) -> Optional[PendingUserRecord]:
        return self._load(PendingUserRecord, pending_user_key(username))

    def save_pending_user(self, pending: PendingUserRecord) -> None:
        self.blobs.set(pending_user_key(pending.username), pending.to_store())

    def delete_pending_user(self, username: str) -> None:
        self.blobs.delete(pending_user_key(username))

    def pending_user_keys(self) -> List[str]:
        return [k for k in self.blobs.list(PENDING_USER_PREFIX) if BACKUP_PREFIX not in k]

    # —— 会话 —— #
    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return self._load(SessionRecord, session_key(session_id))

    def save_session(self, session: SessionRecord) -> None:
        self.blobs.set(session_key(session.session_id), session.to_store())

    def delete_session(self, session_id: str) -> None:
        self.blobs.delete(session_key(session_id))

    def session_keys(self) -> List[str]:
        return self.blobs.list(SESSION_PREFIX)

    def session_ids_for(self, username: str) -> List[str]:
        try:
            ids = self.blobs.get(session_index_key(username))
        except CorruptRecordError as e:
            emit_error("session_index_corrupt", username=username, error=str(e))
            return []
        if not isinstance(ids, list):
            return []
        return [i for i in ids if isinstance(i, str)]

    def save_session_index(self, username: str, session_ids: List[str]) -> None:
        self.blobs.set(session_index_key(username), session_ids)

    # —— 迁移备份与审计 —— #
    def write_backup(self, backup: BackupRecord, stamp_ms: int) -> str:
        key = f"{backup_prefix(backup.migration_id)}{backup.original_key}_{stamp_ms}"
        self.blobs.set(key, backup.to_store())
        return key

    def backup_keys(self, migration_id: str) -> List[str]:
        return self.blobs.list(backup_prefix(migration_id))

    def append_migration_log(self, event: dict) -> None:
        """审计日志写失败不影响迁移本身。"""
        event_id = str(uuid.uuid4())
        entry = {"id": event_id, **event, "category": "migration", "timestamp": to_iso(utcnow())}
        try:
            self.blobs.set(f"{MIGRATION_LOG_PREFIX}{event_id}", entry)
        except StoreError as e:
            emit_error("migration_log_write_failed", type=event.get("type"), error=str(e))
