# blogauth/core/models_user.py
""""定义存储在 Blob 里的记录结构（JSON 字段为 camelCase，Python 侧为 snake_case）：

- UserStatus（active|pending|banned）
- UserRecord / PendingUserRecord：用户与待审核用户
- SessionRecord：服务端会话（撤销、刷新令牌轮换都靠它）
- Claims：令牌解码后的载荷，字段全部必填，缺任一字段即拒绝
- BackupRecord：迁移前快照
- RateLimitWindow：限流窗口计数

记录允许携带未声明字段（extra="allow"），读出再写回时不丢数据。"""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class UserStatus(str, Enum):
    active = "active"
    pending = "pending"
    banned = "banned"


class _StoredRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class UserRecord(_StoredRecord):
    id: Optional[str] = None
    username: str
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    profile_picture: Optional[str] = None
    is_admin: bool = False
    # user_ 前缀下的老记录没有 status 字段，视为 active
    status: UserStatus = UserStatus.active
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login: Optional[str] = None
    password_changed_at: Optional[str] = None
    login_count: int = 0
    last_ip: Optional[str] = Field(default=None, alias="lastIP")

    @field_validator("is_admin", "email_verified", mode="before")
    @classmethod
    def _none_as_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("failed_login_attempts", "login_count", mode="before")
    @classmethod
    def _none_as_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    def to_public(self) -> dict:
        """去掉口令材料、验证令牌和历史明文字段后的资料，可直接返回给客户端。"""
        data = self.to_store()
        for field in ("passwordHash", "passwordSalt", "password", "verificationToken", "securityEvents"):
            data.pop(field, None)
        return data


class PendingUserRecord(UserRecord):
    status: UserStatus = UserStatus.pending
    verification_token: Optional[str] = None
    verification_expiry: Optional[str] = None
    registration_ip: Optional[str] = Field(default=None, alias="registrationIP")


class SessionRecord(_StoredRecord):
    session_id: str
    user_id: str
    username: str
    is_admin: bool = False
    created_at: str
    last_activity: str
    expires_at: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    active: bool = True
    remember_me: bool = False
    refresh_jti: Optional[str] = None
    logged_out_at: Optional[str] = None


class Claims(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    sub: str
    uid: str
    sid: str
    jti: str
    type: Literal["access", "refresh"]
    admin: bool
    iat: int
    exp: int


class BackupRecord(_StoredRecord):
    original_key: str
    migration_id: str
    backup_timestamp: str
    data: Any
    # 原记录的存储文本，回滚时原样写回；老备份没有该字段则用 data 重新序列化
    raw_data: Optional[str] = None


class RateLimitWindow(_StoredRecord):
    count: int = 0
    window_start: float
