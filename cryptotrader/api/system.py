"""System API — health check, controller and scheduler status, job logs, emergency stop."""

import math

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from cryptotrader.api.deps import get_controller, require_token, require_write_access
from cryptotrader.database import get_session
from cryptotrader.models.job_log import JobLog

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/status", dependencies=[Depends(require_token)])
def controller_status(controller=Depends(get_controller)):
    """Per-job progress, capital allocation and run state."""
    return controller.status()


@router.get("/scheduler", dependencies=[Depends(require_token)])
def scheduler_status():
    """Current scheduler state with job details."""
    from cryptotrader.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.get("/logs", dependencies=[Depends(require_token)])
def job_logs(
    pair: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if pair is not None:
        stmt = stmt.where(JobLog.pair == pair)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    rows = session.exec(stmt).all()
    # Replace inf/nan with None so JSON serialization doesn't blow up.
    float_fields = ("close", "fast_avg", "slow_avg", "macd_line", "macd_signal_line")
    for row in rows:
        for f in float_fields:
            v = getattr(row, f, None)
            if isinstance(v, float) and (math.isinf(v) or math.isnan(v)):
                setattr(row, f, None)
    return rows


@router.post("/emergency-stop", dependencies=[Depends(require_write_access)])
async def emergency_stop(controller=Depends(get_controller)):
    """Stop all jobs, cancel open orders and close every position at market."""
    return await controller.emergency_stop()
