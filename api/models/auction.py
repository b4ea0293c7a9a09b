#!/usr/bin/env python3
"""
Pydantic models for the read endpoints.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class BidItem(BaseModel):
    """One recorded bid"""
    id: int
    auction_id: int
    bidder: str = Field(..., description="Bidder address")
    amount: str = Field(..., description="Bid amount in wei")
    timestamp: int = Field(..., description="Unix timestamp of the including block")
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None


class AuctionItem(BaseModel):
    """Stored auction record plus server-derived status"""
    id: int = Field(..., description="Auction id assigned by the contract")
    auction_type: Optional[int] = Field(None, description="0 English, 1 sealed-bid, 2 Dutch, 3 Vickrey (advanced contract only)")
    seller: str
    start_time: int
    end_time: int = Field(..., description="End of bidding (unix seconds)")
    reveal_end_time: Optional[int] = Field(None, description="End of the reveal phase for sealed-bid auctions")
    reserve_price: str = Field(..., description="Reserve price in wei")
    min_increment: str
    buy_it_now_price: str
    anti_sniping_window: int
    anti_sniping_extension: int
    metadata_id: Optional[str] = Field(None, description="Content identifier of the item metadata")
    ended: bool
    highest_bidder: Optional[str] = None
    highest_bid: str = Field(..., description="Current highest bid in wei")
    dutch_price: Optional[str] = Field(None, description="Dutch auction price in wei at the last canonical read")
    title: Optional[str] = None
    image: Optional[str] = None
    created_at: float
    updated_at: float
    bid_count: int = 0
    status: str = Field(..., description="ended, upcoming, active, revealing or awaiting_end")
    active: bool


class AuctionDetail(AuctionItem):
    bids: List[BidItem] = Field(default_factory=list, description="Most recent bids, newest first")


class AuctionListResponse(BaseModel):
    auctions: List[AuctionItem]
    total: int
    limit: int
    offset: int


class EventItem(BaseModel):
    """Raw contract event"""
    id: int
    name: str
    auction_id: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None
    timestamp: int


class EventListResponse(BaseModel):
    events: List[EventItem]
    total: int
    limit: int
    offset: int


class AnalyticsResponse(BaseModel):
    total_auctions: int
    ended_auctions: int
    total_bids: int
    events_by_type: Dict[str, int]
    average_bids_per_auction: float
