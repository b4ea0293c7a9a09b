#!/usr/bin/env python3
"""
FastAPI routes for auction endpoints.
Everything except refresh is served from the store without touching the chain.
"""

import time
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from indexer.auction_state import with_status
from indexer.indexer import AuctionIndexer

from api.context import AppContext, get_context, get_indexer
from api.models.auction import AuctionDetail, AuctionItem, AuctionListResponse, EventListResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auctions"])

RECENT_BIDS = 10


def clamp_limit(limit: Optional[int], context: AppContext) -> int:
    """Apply the default page size and the server-side maximum"""
    settings = context.settings
    return min(limit or settings.default_page_limit, settings.max_page_limit)


@router.get("/auctions", response_model=AuctionListResponse)
async def list_auctions(
    limit: Optional[int] = Query(None, ge=1, description="Items per page (clamped to the server maximum)"),
    offset: int = Query(0, ge=0, description="Items to skip"),
    context: AppContext = Depends(get_context)
):
    """Get paginated list of auctions, newest first"""
    limit = clamp_limit(limit, context)
    items, total = await context.store.list_auctions(limit=limit, offset=offset)
    now = time.time()
    return {
        "auctions": [with_status(item, now) for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/auctions/{auction_id}", response_model=AuctionDetail)
async def get_auction(
    auction_id: int = Path(..., ge=0),
    context: AppContext = Depends(get_context)
):
    """Get one auction with its most recent bids"""
    auction = await context.store.get_auction(auction_id, bid_limit=RECENT_BIDS)
    if auction is None:
        raise HTTPException(status_code=404, detail=f"Auction {auction_id} not found")
    return with_status(auction)


@router.get("/auctions/{auction_id}/events", response_model=EventListResponse)
async def get_auction_events(
    auction_id: int = Path(..., ge=0),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    context: AppContext = Depends(get_context)
):
    """Event history for one auction, most recent first"""
    limit = clamp_limit(limit, context)
    events, total = await context.store.list_events(limit=limit, offset=offset, auction_id=auction_id)
    return {"events": events, "total": total, "limit": limit, "offset": offset}


@router.post("/auctions/{auction_id}/refresh", response_model=AuctionItem)
async def refresh_auction(
    auction_id: int = Path(..., ge=0),
    context: AppContext = Depends(get_context),
    indexer: AuctionIndexer = Depends(get_indexer)
):
    """Force one canonical re-read of an auction and broadcast the result"""
    try:
        snapshot = await indexer.refresh_auction(auction_id)
    except Exception as e:
        logger.error(f"Error refreshing auction {auction_id}: {e}")
        raise HTTPException(status_code=502, detail=f"Chain read failed: {e}")

    snapshot = with_status(snapshot)
    await context.hub.broadcast("AuctionRefreshed", auction_id, snapshot)
    return snapshot
