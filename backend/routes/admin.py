"""
Admin Routes - plan catalog management and provisioning job operations.

Reads (plans, jobs, audit) are open to operators; anything that changes the
catalog or drives a job requires ROLE_ADMIN.
"""
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import StreamingResponse
from datetime import datetime, timezone
from typing import Optional
import io
import logging

from errors import InvalidJobState, JobNotFound, LeaseConflict, PlanNotFound, SpreadsheetImportError
from middleware import admin_route_guard, operator_name, operator_route_guard
from models import JobState, PlanStatus
from services.audit_log import replay_audit
from services.container import Services, get_services
from services.plan_spreadsheet import export_plans

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
MAX_UPLOAD_BYTES = 5 * 1024 * 1024


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ============================================
# PLANS
# ============================================

@router.get("/plans")
async def list_plans(
    plan_status: Optional[PlanStatus] = Query(None, alias="status"),
    limit: int = Query(500, ge=1, le=2000),
    user: dict = Depends(operator_route_guard),
    services: Services = Depends(get_services),
):
    plans = await services.catalog.list_plans(status=plan_status, limit=limit)
    return {"plans": [p.model_dump(mode="json") for p in plans], "total": len(plans)}


@router.post("/plans/import")
async def import_plans(
    file: UploadFile = File(...),
    user: dict = Depends(admin_route_guard),
    services: Services = Depends(get_services),
):
    """Upsert plans from an edited export (.xlsx)."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Workbook too large")

    try:
        report = await services.importer.import_workbook(content)
    except SpreadsheetImportError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "row_errors": e.row_errors},
        )
    logger.info("Plan import by %s: %s", operator_name(user), file.filename)
    return report.to_dict()


@router.get("/plans/export")
async def export_plan_workbook(
    plan_status: Optional[PlanStatus] = Query(None, alias="status"),
    user: dict = Depends(operator_route_guard),
    services: Services = Depends(get_services),
):
    plans = await services.catalog.list_plans(status=plan_status)
    content = export_plans(plans)
    filename = f"snapshot_plans_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}.xlsx"
    return StreamingResponse(
        io.BytesIO(content),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/plans/{plan_id}/archive")
async def archive_plan(
    plan_id: str,
    user: dict = Depends(admin_route_guard),
    services: Services = Depends(get_services),
):
    try:
        plan = await services.catalog.archive_plan(plan_id)
    except PlanNotFound as e:
        raise _not_found(e)
    logger.info("Plan %s archived by %s", plan_id, operator_name(user))
    return plan.model_dump(mode="json")


@router.get("/tenants")
async def list_tenants(
    plan_id: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    user: dict = Depends(operator_route_guard),
    services: Services = Depends(get_services),
):
    tenants = await services.catalog.list_tenants(plan_id=plan_id, limit=limit)
    return {"tenants": [t.model_dump(mode="json") for t in tenants], "total": len(tenants)}


# ============================================
# PROVISIONING JOBS
# ============================================

@router.get("/jobs")
async def list_jobs(
    state: Optional[JobState] = None,
    limit: int = Query(100, ge=1, le=1000),
    user: dict = Depends(operator_route_guard),
    services: Services = Depends(get_services),
):
    jobs = await services.jobs.list_jobs(state=state, limit=limit)
    return {"jobs": [j.model_dump(mode="json") for j in jobs], "total": len(jobs)}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    user: dict = Depends(operator_route_guard),
    services: Services = Depends(get_services),
):
    try:
        job = await services.engine.get_job(job_id)
    except JobNotFound as e:
        raise _not_found(e)
    tenant = await services.catalog.get_tenant_for_job(job_id)
    return {
        "job": job.model_dump(mode="json"),
        "tenant": tenant.model_dump(mode="json") if tenant else None,
    }


@router.get("/jobs/{job_id}/audit")
async def get_job_audit(
    job_id: str,
    user: dict = Depends(operator_route_guard),
    services: Services = Depends(get_services),
):
    """Ordered audit trail plus the state it replays to."""
    try:
        await services.engine.get_job(job_id)
    except JobNotFound as e:
        raise _not_found(e)
    entries = await services.audit.list_for_job(job_id)
    replay = replay_audit(entries)
    replay["state"] = replay["state"].value
    return {
        "job_id": job_id,
        "entries": [e.model_dump(mode="json") for e in entries],
        "replay": replay,
    }


@router.post("/jobs/{job_id}/retry")
async def retry_job(
    job_id: str,
    user: dict = Depends(admin_route_guard),
    services: Services = Depends(get_services),
):
    """Operator retry of a DEAD job (fresh attempt budget)."""
    try:
        handle = await services.engine.retry_job(job_id, operator=operator_name(user))
    except JobNotFound as e:
        raise _not_found(e)
    except InvalidJobState as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return handle.model_dump(mode="json")


@router.post("/jobs/{job_id}/run")
async def run_job_now(
    job_id: str,
    user: dict = Depends(admin_route_guard),
    services: Services = Depends(get_services),
):
    """Run a job inline (does nothing for terminal jobs or retries not yet due)."""
    try:
        outcome = await services.engine.run_job(job_id)
    except JobNotFound as e:
        raise _not_found(e)
    except LeaseConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.info("Job %s run by %s -> %s", job_id, operator_name(user), outcome.state.value)
    return outcome.model_dump(mode="json")
