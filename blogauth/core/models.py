"""
模块职能：

定义 blobs 表：键值存储的唯一物理表，所有业务记录（user_* / pending_user_* /
session_* / backup_migration_* / migration_log_* / rate_limit_*）都以 JSON 文本存在 value 里。

主要类型：

Blob：字段 key（主键）/ value（JSON 文本）/ updated_at
"""
from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func

Base = declarative_base()


class Blob(Base):
    __tablename__ = "blobs"
    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
