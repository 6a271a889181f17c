# blogauth/api/migrate.py
"""
迁移触发接口：
- POST /migrate            {"migrationKey": "..."} → {"success": true, "results": {...}}
- POST /migrate/rollback   {"migrationKey": "...", "migrationId": "..."} → {"success": true, "results": {...}}

口令不对 → 403 Unauthorized（无副作用）；完整性校验失败或存储故障 → 500，
body 为 {"success": false, "code": "Internal", "error": ..., "details": {...}}。
"""
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from blogauth.api.deps.auth import get_migration_engine, rate_limit
from blogauth.core.errors import ErrorKind, StoreError, error_payload
from blogauth.infra.logger import emit_error
from blogauth.services.migration import MigrationEngine
from blogauth.services.rate_limit import ActionClass

router = APIRouter(tags=["migrate"])


class MigrateInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    migration_key: Optional[str] = None


class RollbackInput(MigrateInput):
    migration_id: str


def _failure(message: str, details: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(ErrorKind.Internal, message, details),
    )


@router.post("")
def migrate(
    body: MigrateInput,
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    engine: MigrationEngine = Depends(get_migration_engine),
):
    try:
        report = engine.run(body.migration_key)
    except StoreError as e:
        emit_error("migrate_aborted", error=str(e))
        return _failure("Migration failed", {"reason": str(e)})

    if not report.success:
        return _failure("Migration failed", {"errors": report.errors, "results": report.to_wire()})
    return {"success": True, "message": "Migration successful", "results": report.to_wire()}


@router.post("/rollback")
def rollback(
    body: RollbackInput,
    _ip: str = Depends(rate_limit(ActionClass.api_call)),
    engine: MigrationEngine = Depends(get_migration_engine),
):
    engine.authorize(body.migration_key)
    try:
        report = engine.rollback(body.migration_id)
    except StoreError as e:
        emit_error("rollback_aborted", migration_id=body.migration_id, error=str(e))
        return _failure("Rollback failed", {"reason": str(e)})

    if not report.success:
        return _failure("Rollback completed with errors", {"errors": report.errors, "results": report.to_wire()})
    return {"success": True, "message": "Rollback successful", "results": report.to_wire()}
