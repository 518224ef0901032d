"""
Compliance API Routes

Query and command surface for the compliance calendar:
upcoming/overdue lists, dashboard summary, completion, waiver,
on-demand materialization, notification interactions and the
in-app inbox.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import InteractionType
from ..services.compliance import (
    ComplianceService,
    EntityNotFound,
    EventNotFound,
    InvalidTransition,
    NotificationNotFound,
    RecordNotFound,
    event_to_dict,
    inbox_entry_to_dict,
)


router = APIRouter(prefix="/compliance", tags=["compliance"])


def get_compliance_service(db: Session = Depends(get_db)) -> ComplianceService:
    return ComplianceService(db)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class MarkCompletedRequest(BaseModel):
    """Request to mark an event completed."""
    by: str = Field(..., description="ID of the user completing the obligation")


class MarkWaivedRequest(BaseModel):
    """Administrative waiver."""
    by: str = Field(..., description="ID of the admin waiving the obligation")
    reason: str = Field(..., min_length=1, description="Why the obligation is waived")


class MaterializeRequest(BaseModel):
    look_ahead_days: Optional[int] = Field(None, ge=0, description="Horizon in days (defaults to config)")


class InteractionRequest(BaseModel):
    """User reaction to a delivered notification."""
    interaction: InteractionType = Field(..., description="dismissed, opened or clicked")


# =============================================================================
# QUERIES
# =============================================================================

@router.get("/entities/{entity_id}/upcoming", response_model=dict)
async def list_upcoming(
    entity_id: str,
    within_days: int = Query(30, ge=0, le=3650),
    service: ComplianceService = Depends(get_compliance_service),
):
    """Active events due within the next `within_days` days, earliest first."""
    try:
        events = service.list_upcoming(entity_id, within_days)
    except EntityNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "entity_id": entity_id,
        "within_days": within_days,
        "count": len(events),
        "events": [event_to_dict(e) for e in events],
    }


@router.get("/entities/{entity_id}/overdue", response_model=dict)
async def list_overdue(
    entity_id: str,
    service: ComplianceService = Depends(get_compliance_service),
):
    try:
        events = service.list_overdue(entity_id)
    except EntityNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "entity_id": entity_id,
        "count": len(events),
        "events": [event_to_dict(e) for e in events],
    }


@router.get("/entities/{entity_id}/dashboard", response_model=dict)
async def get_dashboard(
    entity_id: str,
    service: ComplianceService = Depends(get_compliance_service),
):
    """Status counts plus annotated upcoming and overdue events."""
    try:
        return service.dashboard(entity_id)
    except EntityNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# =============================================================================
# COMMANDS
# =============================================================================

@router.post("/entities/{entity_id}/materialize", response_model=dict)
async def materialize_entity(
    entity_id: str,
    request: MaterializeRequest,
    service: ComplianceService = Depends(get_compliance_service),
):
    try:
        created = service.materialize(entity_id, request.look_ahead_days)
    except EntityNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "entity_id": entity_id,
        "created": len(created),
        "events": [event_to_dict(e) for e in created],
    }


@router.post("/events/{event_id}/complete", response_model=dict)
async def mark_completed(
    event_id: str,
    request: MarkCompletedRequest,
    service: ComplianceService = Depends(get_compliance_service),
):
    """
    Mark an obligation done.

    Recurring obligations get their next cycle created immediately.
    Returns 409 when the event is already completed or waived.
    """
    try:
        event = service.mark_completed(event_id, request.by)
    except EventNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    return event_to_dict(event)


@router.post("/events/{event_id}/waive", response_model=dict)
async def mark_waived(
    event_id: str,
    request: MarkWaivedRequest,
    service: ComplianceService = Depends(get_compliance_service),
):
    """Administrative override. Terminal."""
    try:
        event = service.mark_waived(event_id, request.by, request.reason)
    except EventNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return event_to_dict(event)


@router.post("/notifications/{record_id}/interactions", response_model=dict)
async def record_interaction(
    record_id: str,
    request: InteractionRequest,
    service: ComplianceService = Depends(get_compliance_service),
):
    try:
        row = service.record_interaction(record_id, request.interaction)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "id": row.id,
        "record_id": row.record_id,
        "event_id": row.event_id,
        "interaction": row.interaction.value,
        "occurred_at": row.occurred_at.isoformat(),
    }


# =============================================================================
# IN-APP INBOX
# =============================================================================

@router.get("/users/{user_id}/notifications", response_model=dict)
async def list_notifications(
    user_id: str,
    unread_only: bool = False,
    limit: int = Query(10, ge=1, le=100),
    service: ComplianceService = Depends(get_compliance_service),
):
    """Inbox entries, unread and most urgent first."""
    rows = service.list_notifications(user_id, unread_only, limit)

    return {
        "user_id": user_id,
        "count": len(rows),
        "notifications": [inbox_entry_to_dict(row) for row in rows],
    }


@router.post("/users/{user_id}/notifications/read-all", response_model=dict)
async def mark_all_notifications_read(
    user_id: str,
    service: ComplianceService = Depends(get_compliance_service),
):
    return {"user_id": user_id, "marked_read": service.mark_all_notifications_read(user_id)}


@router.post("/users/{user_id}/notifications/{notification_id}/read", response_model=dict)
async def mark_notification_read(
    user_id: str,
    notification_id: str,
    service: ComplianceService = Depends(get_compliance_service),
):
    try:
        row = service.mark_notification_read(user_id, notification_id)
    except NotificationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return inbox_entry_to_dict(row)


@router.get("/users/{user_id}/notifications/stats", response_model=dict)
async def get_notification_stats(
    user_id: str,
    service: ComplianceService = Depends(get_compliance_service),
):
    """Delivery counts, inbox breakdowns, read rate and remaining rate budget."""
    return service.notification_stats(user_id)
