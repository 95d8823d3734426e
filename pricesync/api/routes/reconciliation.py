"""Reconciliation trigger and run history routes."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.api.deps import get_database, get_task_runner, require_admin_api_key
from pricesync.db.models import ReconciliationRun
from pricesync.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reconciliation", tags=["reconciliation"])


class RunReportResponse(BaseModel):
    run_id: str
    trigger: str
    status: str
    total: int
    successful: int
    failed: int
    skipped: int
    alerts_sent: int
    errors: List[str]
    started_at: str
    completed_at: Optional[str]
    duration_seconds: Optional[float]


class ReconciliationRunResponse(BaseModel):
    id: int
    run_id: str
    trigger: str
    status: str
    total_items: int
    success_count: int
    error_count: int
    alerts_sent: int
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


@router.post(
    "/run",
    response_model=RunReportResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def trigger_run(runner: TaskRunner = Depends(get_task_runner)):
    """Run reconciliation now and return the report (skipped if a run is in progress)."""
    report = await runner.run_reconciliation(trigger="manual")
    return report.to_dict()


@router.post("/cancel", dependencies=[Depends(require_admin_api_key)])
async def cancel_run(runner: TaskRunner = Depends(get_task_runner)):
    """Stop the current run before its next item."""
    return {"cancelled": runner.cancel_current_run()}


@router.get("/runs", response_model=List[ReconciliationRunResponse])
async def list_runs(
    status: Optional[str] = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_database),
):
    """List reconciliation runs, newest first."""
    query = select(ReconciliationRun).order_by(ReconciliationRun.started_at.desc()).limit(limit)
    if status:
        query = query.where(ReconciliationRun.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/runs/{run_id}", response_model=ReconciliationRunResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_database)):
    run = await db.scalar(select(ReconciliationRun).where(ReconciliationRun.run_id == run_id))
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/lock", dependencies=[Depends(require_admin_api_key)])
async def get_lock_status(runner: TaskRunner = Depends(get_task_runner)):
    """Current run lock holder, if any."""
    info = await runner.lock_manager.get_lock_info()
    return {"locked": info is not None, "lock": info}
