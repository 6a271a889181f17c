# blogauth/infra/db.py
""""模块职能：

读取 DATABASE_URL，创建 SQLAlchemy 引擎

暴露 SessionLocal、init_db()

init_db()：启动时统一建表（只有 blobs 一张表）"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from blogauth.core.models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./blogauth.db")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db():
    Base.metadata.create_all(bind=engine)
