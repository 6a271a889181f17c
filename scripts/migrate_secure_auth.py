""""把 blobs 表里的明文口令记录迁移为 bcrypt 哈希（离线批处理，跑之前先停掉线上流量）。

用法：python scripts/migrate_secure_auth.py [--migration-key KEY]
不给 --migration-key 时读 MIGRATION_KEY。成功退出码 0，失败（含完整性校验失败）退出码 1。
失败后可用 scripts/rollback_migration.py <migrationId> 回滚。

可作为脚本执行，也可被测试直接导入调用（提供 run() 函数）"""
# scripts/migrate_secure_auth.py
import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional

# 确保脚本在控制台有输出；不影响主服务的日志设置
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from dotenv import load_dotenv  # noqa: E402

load_dotenv(Path(__file__).resolve().parents[1] / ".env", override=False)

from blogauth.core.config import get_settings  # noqa: E402
from blogauth.infra.blob_store import BlobStore, SqlBlobStore  # noqa: E402
from blogauth.infra.db import SessionLocal, init_db  # noqa: E402
from blogauth.infra.logger import emit  # noqa: E402
from blogauth.services.credential_store import CredentialStore  # noqa: E402
from blogauth.services.migration import MigrationEngine, MigrationReport  # noqa: E402


def run(migration_key: Optional[str] = None, blobs: Optional[BlobStore] = None) -> MigrationReport:
    settings = get_settings()
    if blobs is None:
        init_db()
        blobs = SqlBlobStore(SessionLocal)
    emit("migrate_script_begin", database_url=os.getenv("DATABASE_URL"))
    print("[migrate_secure_auth] migrating legacy credentials ...", flush=True)

    engine = MigrationEngine(CredentialStore(blobs), settings=settings)
    report = engine.run(migration_key or settings.migration_key)

    print(json.dumps(report.to_wire(), ensure_ascii=False, indent=2), flush=True)
    status = "ok" if report.success else "failed"
    emit("migrate_script_done", status=status, migration_id=report.migration_id)
    print(f"[migrate_secure_auth] {status}. migrationId={report.migration_id}", flush=True)
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Hash legacy plaintext passwords in the credential store.")
    parser.add_argument("--migration-key", default=None, help="defaults to $MIGRATION_KEY")
    args = parser.parse_args(argv)
    try:
        report = run(args.migration_key)
    except Exception as e:
        emit("migrate_script_error", error=str(e))
        print(f"[migrate_secure_auth] ERROR: {e}", file=sys.stderr, flush=True)
        return 1
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
