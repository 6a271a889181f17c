"""
模块职能：
- 把老的明文口令记录（user_* / pending_user_*）一次性迁移为 bcrypt 哈希记录，可重复执行，可回滚。
- run(migration_key) 严格按顺序执行：
  1) 授权：migration_key 与 MIGRATION_KEY 常量时间比较，不符直接拒绝，不产生任何副作用
  2) 备份：每条可读的用户/待审核记录写一份 backup_migration_{id}_{key}_{ms}；读失败记日志跳过
  3) 用户：已有 passwordHash 且无 password 的跳过（不计数）；两者都没有记错误；
     否则哈希 password、补齐缺省字段、打迁移标记、删除 password，原 key 写回
  4) 待审核用户：同上，另外重新生成 verificationToken，验证有效期 24 小时
  5) 会话清理：缺 sessionId 的老格式会话、null/无法解析的会话一律删除，顺带删掉 current_user
  6) 完整性校验：重新扫描线上记录，缺字段/残留 password/哈希格式不对都记错误；
     有错误则 success=False，但不自动回滚（回滚是单独的显式操作）
- rollback(migration_id)：把该次迁移的每份备份按原始文本（rawData）写回 originalKey，字节级一致；
  单条失败不影响其它记录。

日志：
- migrate_unauthorized / migrate_start / migrate_backup_failed / migrate_record_skipped
- migrate_user_done / migrate_session_cleanup_failed / migrate_integrity_failed / migrate_done
- rollback_start / rollback_record_failed / rollback_done
审计（best-effort 写入 migration_log_*）：migration_started / migration_completed / migration_failed / migration_rolled_back
"""
from __future__ import annotations

import hmac
import secrets
import uuid
from datetime import timedelta
from typing import Callable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from blogauth.core.clock import Clock, to_iso, utcnow
from blogauth.core.config import Settings, get_settings
from blogauth.core.errors import AuthError, CorruptRecordError, ErrorKind, StoreError
from blogauth.core.models_user import BackupRecord
from blogauth.core.security import hash_password, is_bcrypt_hash
from blogauth.infra.blob_store import loads
from blogauth.infra.logger import emit, emit_error
from blogauth.services.credential_store import LEGACY_CURRENT_USER_KEY, CredentialStore
from blogauth.services.auth import VERIFICATION_TTL, default_bio

MIGRATION_SOURCE = "legacy_plaintext"
REQUIRED_FIELDS = ("id", "username", "passwordHash", "passwordSalt")

Hasher = Callable[[str], Tuple[str, str]]


class _Report(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class MigrationReport(_Report):
    migration_id: str
    start_time: str
    end_time: Optional[str] = None
    duration: Optional[int] = None
    users_processed: int = 0
    pending_users_processed: int = 0
    sessions_cleaned: int = 0
    backups_created: int = 0
    errors: List[str] = Field(default_factory=list)
    success: bool = False


class RollbackReport(_Report):
    migration_id: str
    records_restored: int = 0
    errors: List[str] = Field(default_factory=list)
    success: bool = False


class MigrationEngine:
    def __init__(self, store: CredentialStore, settings: Optional[Settings] = None,
                 hasher: Hasher = hash_password, clock: Clock = utcnow):
        self.store = store
        self.settings = settings or get_settings()
        self.hasher = hasher
        self.clock = clock

    def authorize(self, migration_key: Optional[str]) -> None:
        supplied = (migration_key or "").encode("utf-8")
        expected = self.settings.migration_key.encode("utf-8")
        if not migration_key or not hmac.compare_digest(supplied, expected):
            emit("migrate_unauthorized", level="WARNING")
            raise AuthError(ErrorKind.Unauthorized, "Invalid migration key")

    # —— 入口 —— #
    def run(self, migration_key: Optional[str]) -> MigrationReport:
        self.authorize(migration_key)

        started = self.clock()
        report = MigrationReport(migration_id=str(uuid.uuid4()), start_time=to_iso(started))
        emit("migrate_start", migration_id=report.migration_id)
        self.store.append_migration_log({"type": "migration_started", "migrationId": report.migration_id})

        user_keys = self.store.user_keys()
        pending_keys = self.store.pending_user_keys()

        not_backed_up = self._backup(report, user_keys + pending_keys)
        report.users_processed = self._migrate_records(report, user_keys, not_backed_up, pending=False)
        report.pending_users_processed = self._migrate_records(report, pending_keys, not_backed_up, pending=True)
        report.sessions_cleaned = self._cleanup_sessions()

        integrity_errors = self._verify_integrity()
        if integrity_errors:
            emit("migrate_integrity_failed", level="WARNING", migration_id=report.migration_id,
                 errors=len(integrity_errors))
        report.errors.extend(integrity_errors)

        finished = self.clock()
        report.end_time = to_iso(finished)
        report.duration = int((finished - started).total_seconds() * 1000)
        report.success = not report.errors

        self.store.append_migration_log({
            "type": "migration_completed" if report.success else "migration_failed",
            "migrationId": report.migration_id,
            "results": report.to_wire(),
        })
        emit("migrate_done", migration_id=report.migration_id, success=report.success,
             users=report.users_processed, pending=report.pending_users_processed,
             sessions_cleaned=report.sessions_cleaned, backups=report.backups_created,
             errors=len(report.errors))
        return report

    # —— 1) 备份 —— #
    def _backup(self, report: MigrationReport, keys: List[str]) -> Set[str]:
        """返回没能备份的 key；这些记录本次不做迁移。"""
        backup_time = to_iso(self.clock())
        failed: Set[str] = set()
        for key in keys:
            try:
                raw = self.store.get_raw(key)
                if raw is None:
                    continue
                data = loads(key, raw)
            except StoreError as e:
                emit_error("migrate_backup_failed", key=key, phase="read", error=str(e))
                failed.add(key)
                continue
            backup = BackupRecord(
                original_key=key,
                migration_id=report.migration_id,
                backup_timestamp=backup_time,
                data=data,
                raw_data=raw,
            )
            try:
                self.store.write_backup(backup, int(self.clock().timestamp() * 1000))
            except StoreError as e:
                emit_error("migrate_backup_failed", key=key, phase="write", error=str(e))
                report.errors.append(f"Backup failed for {key}, record not migrated: {e}")
                failed.add(key)
                continue
            report.backups_created += 1
        return failed

    # —— 2) / 3) 用户与待审核用户 —— #
    def _migrate_records(self, report: MigrationReport, keys: List[str], skip: Set[str], pending: bool) -> int:
        label = "Pending user" if pending else "User"
        processed = 0
        for key in keys:
            if key in skip:
                continue
            try:
                data = self.store.get(key)
            except StoreError as e:
                report.errors.append(f"Failed to migrate {label.lower()} {key}: {e}")
                continue

            if not isinstance(data, dict) or not data.get("username"):
                emit("migrate_record_skipped", level="WARNING", key=key, reason="no_username")
                continue
            if data.get("passwordHash") and not data.get("password"):
                continue
            if not data.get("password"):
                report.errors.append(f"{label} {data['username']} has no password field")
                continue

            try:
                migrated = self._transform(data, pending)
                self.store.set(key, migrated)
            except (AuthError, StoreError) as e:
                report.errors.append(f"Failed to migrate {label.lower()} {key}: {e}")
                continue
            processed += 1
            emit("migrate_user_done", key=key, pending=pending)
        return processed

    def _transform(self, data: dict, pending: bool) -> dict:
        now = self.clock()
        now_iso = to_iso(now)
        username = data["username"]
        password_hash, password_salt = self.hasher(data["password"])

        record = dict(data)
        record.pop("password", None)
        record["id"] = data.get("id") or str(uuid.uuid4())
        record["email"] = data.get("email") or None
        record["passwordHash"] = password_hash
        record["passwordSalt"] = password_salt
        record["bio"] = data.get("bio") or default_bio(username)
        record["profilePicture"] = data.get("profilePicture") or None
        record["isAdmin"] = False if pending else bool(data.get("isAdmin"))
        record["emailVerified"] = False
        record["failedLoginAttempts"] = 0
        record["lockedUntil"] = None
        record["loginCount"] = data.get("loginCount") or 0
        record["createdAt"] = data.get("createdAt") or now_iso
        record["updatedAt"] = now_iso
        record["migratedAt"] = now_iso
        record["migrationSource"] = MIGRATION_SOURCE
        if pending:
            record["status"] = "pending"
            record["verificationToken"] = secrets.token_hex(32)
            record["verificationExpiry"] = to_iso(now + VERIFICATION_TTL)
            record["registrationIP"] = data.get("registrationIP") or "migrated"
        return record

    # —— 4) 会话清理 —— #
    def _cleanup_sessions(self) -> int:
        cleaned = 0
        for key in self.store.session_keys():
            try:
                data = self.store.get(key)
            except CorruptRecordError:
                data, reason = None, "corrupted"
            else:
                reason = "stale" if isinstance(data, dict) else "corrupted"
            if isinstance(data, dict) and data.get("sessionId"):
                continue
            if self._delete_quietly(key, reason):
                cleaned += 1

        if self.store.exists(LEGACY_CURRENT_USER_KEY) and self._delete_quietly(LEGACY_CURRENT_USER_KEY, "legacy"):
            cleaned += 1
        return cleaned

    def _delete_quietly(self, key: str, reason: str) -> bool:
        try:
            self.store.delete(key)
            return True
        except StoreError as e:
            emit_error("migrate_session_cleanup_failed", key=key, reason=reason, error=str(e))
            return False

    # —— 5) 完整性校验 —— #
    def _verify_integrity(self) -> List[str]:
        errors: List[str] = []
        for key in self.store.user_keys() + self.store.pending_user_keys():
            try:
                data = self.store.get(key)
            except StoreError as e:
                errors.append(f"Error verifying {key}: {e}")
                continue
            if not isinstance(data, dict):
                errors.append(f"Record data missing: {key}")
                continue

            name = data.get("username") or key
            for field in REQUIRED_FIELDS:
                if not data.get(field):
                    errors.append(f"User {name} missing required field: {field}")
            if "password" in data:
                errors.append(f"User {name} still has insecure password field")
            if data.get("passwordHash") and not is_bcrypt_hash(data["passwordHash"]):
                errors.append(f"User {name} has a malformed password hash")
        return errors

    # —— 回滚 —— #
    def rollback(self, migration_id: str) -> RollbackReport:
        emit("rollback_start", migration_id=migration_id)
        keys = self.store.backup_keys(migration_id)
        if not keys:
            emit("rollback_done", level="WARNING", migration_id=migration_id, restored=0, reason="no_backups")
            raise AuthError(ErrorKind.NotFound, f"No backups found for migration {migration_id}")

        report = RollbackReport(migration_id=migration_id)
        for key in keys:
            try:
                backup = BackupRecord.model_validate(self.store.get(key))
                if backup.raw_data is not None:
                    self.store.set_raw(backup.original_key, backup.raw_data)
                else:
                    self.store.set(backup.original_key, backup.data)
            except (StoreError, ValidationError) as e:
                emit_error("rollback_record_failed", key=key, error=str(e))
                report.errors.append(f"Failed to restore {key}: {e}")
                continue
            report.records_restored += 1

        report.success = not report.errors
        self.store.append_migration_log({
            "type": "migration_rolled_back",
            "migrationId": migration_id,
            "results": report.to_wire(),
        })
        emit("rollback_done", migration_id=migration_id, restored=report.records_restored,
             errors=len(report.errors), success=report.success)
        return report
