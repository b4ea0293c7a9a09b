#!/usr/bin/env python3
"""
Raw event log and analytics routes.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.context import AppContext, get_context
from api.models.auction import AnalyticsResponse, EventListResponse
from api.routes.auctions import clamp_limit

router = APIRouter(tags=["events"])


@router.get("/events", response_model=EventListResponse)
async def list_events(
    limit: Optional[int] = Query(None, ge=1, description="Items per page (clamped to the server maximum)"),
    offset: int = Query(0, ge=0),
    name: Optional[str] = Query(None, description="Filter by event name, e.g. BidPlaced"),
    context: AppContext = Depends(get_context)
):
    """Get the paged raw event log, most recent first"""
    limit = clamp_limit(limit, context)
    events, total = await context.store.list_events(limit=limit, offset=offset, name=name)
    return {"events": events, "total": total, "limit": limit, "offset": offset}


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(context: AppContext = Depends(get_context)):
    """Event counts by type and bid activity"""
    return await context.store.event_stats()
