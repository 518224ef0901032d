"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
The periodic compliance sweep and its run history.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import config
from ..config import EngineConfig
from ..database import get_db
from ..models.db_models import ComplianceEventDB, SweepRunDB, ACTIVE_STATUSES
from ..services.compliance import ComplianceSweep, event_to_dict
from ..services.compliance.clock import utcnow


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != config.INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def get_sweep() -> ComplianceSweep:
    return ComplianceSweep(config=EngineConfig.from_env())


class SweepRequest(BaseModel):
    resume_run_id: Optional[str] = Field(None, description="Continue a cancelled or crashed run")


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/sweep", response_model=dict)
def run_sweep(
    request: Optional[SweepRequest] = None,
    sweep: ComplianceSweep = Depends(get_sweep),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the compliance sweep.

    System-automatic - no user confirmation required.
    Materializes events, advances lifecycles and sends notifications
    for every active entity. Blocking, so served from the threadpool.
    """
    resume_run_id = request.resume_run_id if request else None
    try:
        return sweep.run(resume_run_id=resume_run_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/sweep-runs/{run_id}", response_model=dict)
async def get_sweep_run(
    run_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    run = db.get(SweepRunDB, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sweep run {run_id} not found")

    return {
        "id": run.id,
        "status": run.status,
        "started_at": run.started_at.isoformat(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "events_transitioned": run.events_transitioned,
        "notifications_sent": run.notifications_sent,
        "result": run.result,
    }


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/deadlines", response_model=dict)
async def get_upcoming_deadlines(
    days_ahead: int = 7,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Get upcoming deadlines across all entities for monitoring.
    """
    today = utcnow().date()
    events = db.query(ComplianceEventDB).filter(
        ComplianceEventDB.status.in_(ACTIVE_STATUSES),
        ComplianceEventDB.due_date <= today + timedelta(days=days_ahead),
    ).order_by(ComplianceEventDB.due_date).all()

    return {
        "run_date": datetime.now(timezone.utc).isoformat(),
        "days_ahead": days_ahead,
        "count": len(events),
        "deadlines": [event_to_dict(e) for e in events],
    }
