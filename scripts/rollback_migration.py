""""按 migrationId 把迁移前的备份写回原 key。

用法：python scripts/rollback_migration.py MIGRATION_ID [--migration-key KEY]
单条记录恢复失败不影响其它记录；有任何失败退出码为 1。"""
# scripts/rollback_migration.py
import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from dotenv import load_dotenv  # noqa: E402

load_dotenv(Path(__file__).resolve().parents[1] / ".env", override=False)

from blogauth.core.config import get_settings  # noqa: E402
from blogauth.infra.blob_store import BlobStore, SqlBlobStore  # noqa: E402
from blogauth.infra.db import SessionLocal, init_db  # noqa: E402
from blogauth.infra.logger import emit  # noqa: E402
from blogauth.services.credential_store import CredentialStore  # noqa: E402
from blogauth.services.migration import MigrationEngine, RollbackReport  # noqa: E402


def run(migration_id: str, migration_key: Optional[str] = None,
        blobs: Optional[BlobStore] = None) -> RollbackReport:
    settings = get_settings()
    if blobs is None:
        init_db()
        blobs = SqlBlobStore(SessionLocal)
    emit("rollback_script_begin", migration_id=migration_id)
    print(f"[rollback_migration] restoring backups of {migration_id} ...", flush=True)

    engine = MigrationEngine(CredentialStore(blobs), settings=settings)
    engine.authorize(migration_key or settings.migration_key)
    report = engine.rollback(migration_id)

    print(json.dumps(report.to_wire(), ensure_ascii=False, indent=2), flush=True)
    emit("rollback_script_done", migration_id=migration_id, restored=report.records_restored,
         success=report.success)
    print(f"[rollback_migration] restored {report.records_restored} record(s).", flush=True)
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Restore credential records from a migration's backups.")
    parser.add_argument("migration_id")
    parser.add_argument("--migration-key", default=None, help="defaults to $MIGRATION_KEY")
    args = parser.parse_args(argv)
    try:
        report = run(args.migration_id, args.migration_key)
    except Exception as e:
        emit("rollback_script_error", migration_id=args.migration_id, error=str(e))
        print(f"[rollback_migration] ERROR: {e}", file=sys.stderr, flush=True)
        return 1
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
