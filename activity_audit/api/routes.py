"""API routes for reading the activity log and the event catalog."""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from activity_audit.api.schemas import (
    ActivityLogDetail,
    ActivityLogResponse,
    DataBlock,
    EventDefinitionResponse,
    EventGroupResponse,
)
from activity_audit.context import RequestContext
from activity_audit.database import get_db, settings
from activity_audit.events import user as user_events
from activity_audit.exceptions import QueryConfigurationError
from activity_audit.hooks import HookRegistry
from activity_audit.services.auditor import Auditor
from activity_audit.services.display import render_message
from activity_audit.services.flatten import parse_message, split_updates, unflatten_data
from activity_audit.services.repository import ActivityLogRepository

router = APIRouter()


def request_context(request: Request) -> RequestContext:
    """Context for an API request. API callers are never logged-in site users."""
    client_ip = request.client.host if request.client else "0.0.0.0"
    return RequestContext(
        client_ip=client_ip,
        client_ips=[client_ip],
        referer=request.headers.get("referer", ""),
        request_method=request.method,
        server={
            "REQUEST_URI": request.url.path,
            "QUERY_STRING": request.url.query,
            "REQUEST_SCHEME": request.url.scheme,
        },
    )


def get_auditor(request: Request, db: Session = Depends(get_db)) -> Auditor:
    auditor = Auditor(
        request_context(request),
        settings,
        HookRegistry(),
        ActivityLogRepository(db),
        handlers=[user_events.handlers],
    )
    return auditor.setup(user_events.USER_EVENTS, user_events.SUPER_ADMIN_EVENTS)


def _blocks(text: Optional[str]) -> List[DataBlock]:
    return [DataBlock(updated_at=ts, data=unflatten_data(block)) for ts, block in split_updates(text)]


# Activity log endpoints
@router.get("/logs", response_model=List[ActivityLogResponse])
def list_logs(
    event_id: Optional[int] = None,
    event_group: Optional[str] = None,
    object_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List activity logs, newest first."""
    repository = ActivityLogRepository(db)
    try:
        return repository.list_logs(
            limit=limit, offset=offset,
            event_id=event_id, event_group=event_group, object_id=object_id,
        )
    except QueryConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.get("/logs/{log_id}", response_model=ActivityLogDetail)
def get_log(log_id: int, auditor: Auditor = Depends(get_auditor)):
    """Get one activity log with its parsed message and rendered display."""
    log = auditor.repository.get(log_id)
    if not log:
        raise HTTPException(status_code=404, detail="Activity log not found")

    summary = ActivityLogResponse.model_validate(log)
    return ActivityLogDetail(
        **summary.model_dump(),
        message_fields=parse_message(log.message),
        display=render_message(log, auditor.hooks),
        user_data=_blocks(log.user_data),
        object_data=_blocks(log.object_data),
        metadata=_blocks(log.event_metadata),
        previous_content=log.previous_content,
        new_content=log.new_content,
    )


# Event catalog endpoints
@router.get("/events", response_model=List[EventDefinitionResponse])
def list_events(group: Optional[str] = None, auditor: Auditor = Depends(get_auditor)):
    """List registered events with their disabled state for this request."""
    return sorted(auditor.registry.events(group), key=lambda d: d.id)


@router.get("/events/groups", response_model=Dict[str, EventGroupResponse])
def list_event_groups(auditor: Auditor = Depends(get_auditor)):
    return auditor.registry.groups()


@router.get("/events/{event_id}", response_model=EventDefinitionResponse)
def get_event(event_id: int, auditor: Auditor = Depends(get_auditor)):
    definition = auditor.registry.get_by_id(event_id)
    if not definition:
        raise HTTPException(status_code=404, detail="Event not found")
    return definition
