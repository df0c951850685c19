"""
Control API.

This module exposes:
- Read API: list tracked calls, get call details, query a call's events
- Write API: hang up a call

Hangup goes through the reconciliation engine and always converges, so the
endpoint reports ok even when the platform refused; platform failures are
visible in the call's events instead.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component
from observability.event_store import event_store
from observability.events import Component as EventComponent, EventEmitter, new_correlation_id

from .call import Call, CallSource
from .engine import engine
from .registry import call_registry


router = APIRouter(prefix="/control", tags=["control"])
emitter = EventEmitter(EventComponent.CONTROL_API)
logger = get_logger(Component.CONTROL_API)


class HangupRequest(BaseModel):
    call_id: str = Field(..., min_length=1, description="Platform call id")


class HangupResponse(BaseModel):
    status: str


class CallSummary(BaseModel):
    call_id: str
    source: str
    state: Optional[str] = None
    created_at: str


class CallDetail(CallSummary):
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    commandable: bool = False


def _summary(call: Call) -> CallSummary:
    return CallSummary(
        call_id=call.call_id,
        source=call.source.value,
        state=call.state,
        created_at=call.created_at.isoformat(),
    )


def _parse_timestamp(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        # "+" in a query string may arrive as a space
        clean = value.replace(" ", "+").replace("Z", "+00:00")
        if "+" not in clean and "-" not in clean[-6:]:
            clean += "+00:00"
        return datetime.fromisoformat(clean)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


@router.post("/call/hangup", response_model=HangupResponse)
async def hangup_call(req: HangupRequest) -> HangupResponse:
    """Hang up and retire a call by id."""
    correlation_id = new_correlation_id()
    emitter.command_received(req.call_id, "call.hangup", correlation_id)
    logger.info("Hangup requested via control API", call_id=req.call_id)

    await engine.hangup(req.call_id)

    emitter.command_applied(req.call_id, "call.hangup", correlation_id, result="ok")
    return HangupResponse(status="ok")


@router.get("/calls", response_model=List[CallSummary])
async def list_calls(
    source: Optional[str] = Query(None, description="Filter by source (realtime, webhook)"),
    state: Optional[str] = Query(None, description="Filter by platform state"),
) -> List[CallSummary]:
    source_filter: Optional[CallSource] = None
    if source:
        try:
            source_filter = CallSource(source.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid source: {source}")

    return [_summary(c) for c in call_registry.list_calls(source=source_filter, state=state)]


@router.get("/calls/{call_id}", response_model=CallDetail)
async def get_call(call_id: str) -> CallDetail:
    call = call_registry.get(call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")

    return CallDetail(
        call_id=call.call_id,
        source=call.source.value,
        state=call.state,
        created_at=call.created_at.isoformat(),
        from_number=call.from_number,
        to_number=call.to_number,
        commandable=call.is_commandable(),
    )


@router.get("/calls/{call_id}/events")
async def get_call_events(
    call_id: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    """
    Events recorded for a call, oldest first.

    Retired calls keep their history, so only ids with neither a record nor
    any event are reported as 404.
    """
    events = event_store.query(
        call_id=call_id,
        event_type=event_type,
        component=component,
        since=_parse_timestamp(since, "since"),
        until=_parse_timestamp(until, "until"),
        limit=limit,
    )

    if not events and call_id not in call_registry and not engine.was_ended(call_id):
        raise HTTPException(status_code=404, detail="Call not found")

    return {
        "call_id": call_id,
        "events": events,
        "count": len(events),
    }
