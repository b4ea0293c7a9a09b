#!/usr/bin/env python3
"""
Database models and access layer for the auction mirror.

Three record kinds: auctions (latest canonical state, upserted), bids and
events (append-only logs). A small indexer_state table holds the live tail
resume point.
"""

import os
import time
import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    BigInteger, Boolean, Column, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, func, select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .chain_client import AuctionState
from .event_publisher import dumps
from .metadata import Metadata

logger = logging.getLogger(__name__)

# SQLAlchemy base
Base = declarative_base()


class Auction(Base):
    """Latest known state of one on-chain auction"""

    __tablename__ = "auctions"

    id = Column(Integer, primary_key=True, autoincrement=False)
    auction_type = Column(Integer, nullable=True)
    seller = Column(String(42), nullable=False)
    start_time = Column(BigInteger, nullable=False)
    end_time = Column(BigInteger, nullable=False)
    reveal_end_time = Column(BigInteger, nullable=True)
    # Wei amounts overflow 64-bit integers, keep them as decimal strings
    reserve_price = Column(String(78), nullable=False, default="0")
    min_increment = Column(String(78), nullable=False, default="0")
    buy_it_now_price = Column(String(78), nullable=False, default="0")
    anti_sniping_window = Column(BigInteger, nullable=False, default=0)
    anti_sniping_extension = Column(BigInteger, nullable=False, default=0)
    metadata_id = Column(String(255), nullable=True)
    ended = Column(Boolean, nullable=False, default=False)
    highest_bidder = Column(String(42), nullable=True)
    highest_bid = Column(String(78), nullable=False, default="0")
    dutch_price = Column(String(78), nullable=True)
    title = Column(String(255), nullable=True)
    image = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "auction_type": self.auction_type,
            "seller": self.seller,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "reveal_end_time": self.reveal_end_time,
            "reserve_price": self.reserve_price,
            "min_increment": self.min_increment,
            "buy_it_now_price": self.buy_it_now_price,
            "anti_sniping_window": self.anti_sniping_window,
            "anti_sniping_extension": self.anti_sniping_extension,
            "metadata_id": self.metadata_id,
            "ended": bool(self.ended),
            "highest_bidder": self.highest_bidder,
            "highest_bid": self.highest_bid,
            "dutch_price": self.dutch_price,
            "title": self.title,
            "image": self.image,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Bid(Base):
    """One observed bid, in chain order"""

    __tablename__ = "bids"
    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_bids_tx_log"),
        Index("ix_bids_auction_id", "auction_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False)
    bidder = Column(String(42), nullable=False)
    amount = Column(String(78), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    block_number = Column(BigInteger, nullable=True)
    transaction_hash = Column(String(66), nullable=True)
    log_index = Column(Integer, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "auction_id": self.auction_id,
            "bidder": self.bidder,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
        }


class Event(Base):
    """Raw contract event kept for history and analytics"""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_events_tx_log"),
        Index("ix_events_auction_id", "auction_id"),
        Index("ix_events_name", "name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)
    auction_id = Column(Integer, nullable=True)
    payload = Column(Text, nullable=False, default="{}")
    block_number = Column(BigInteger, nullable=True)
    transaction_hash = Column(String(66), nullable=True)
    log_index = Column(Integer, nullable=True)
    timestamp = Column(BigInteger, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "auction_id": self.auction_id,
            "payload": json.loads(self.payload) if self.payload else {},
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "timestamp": self.timestamp,
        }


class IndexerCheckpoint(Base):
    """Last block the live tail fully processed"""

    __tablename__ = "indexer_state"

    key = Column(String(128), primary_key=True)
    last_indexed_block = Column(BigInteger, nullable=False)
    updated_at = Column(Float, nullable=False)


class AuctionStore:
    """Process-wide handle on the relational mirror"""

    def __init__(self, database_url: str, echo: Optional[bool] = None):
        if echo is None:
            # Only enable SQL logging in debug mode (set SQL_DEBUG=true to enable)
            echo = os.getenv("SQL_DEBUG", "false").lower() == "true"

        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if not database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=3600)

        self.database_url = database_url
        self.engine = create_async_engine(database_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def init(self) -> None:
        """Create tables if they do not exist yet"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> bool:
        """Check if database connection is working"""
        try:
            async with self.session_factory() as session:
                return (await session.scalar(select(1))) == 1
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_auction(self, state: AuctionState, metadata: Optional[Metadata] = None) -> Dict[str, Any]:
        """Replace the stored row for state.auction_id with the canonical read.

        Writes for one auction id are serialised; different ids proceed
        concurrently. ended never flips back from true to false.
        """
        async with self._locks[state.auction_id]:
            async with self.session_factory() as session:
                async with session.begin():
                    now = time.time()
                    row = await session.get(Auction, state.auction_id)
                    if row is None:
                        row = Auction(id=state.auction_id, created_at=now)
                        session.add(row)
                        keep_enrichment = False
                    else:
                        if row.ended and not state.ended:
                            logger.warning(f"Auction {state.auction_id} already ended, ignoring stale ended=false read")
                        keep_enrichment = bool(state.metadata_id) and row.metadata_id == state.metadata_id

                    row.ended = bool(row.ended) or state.ended
                    row.auction_type = state.auction_type
                    row.seller = state.seller
                    row.start_time = state.start_time
                    row.end_time = state.end_time
                    row.reveal_end_time = state.reveal_end_time
                    row.reserve_price = str(state.reserve_price)
                    row.min_increment = str(state.min_increment)
                    row.buy_it_now_price = str(state.buy_it_now_price)
                    row.anti_sniping_window = state.anti_sniping_window
                    row.anti_sniping_extension = state.anti_sniping_extension
                    row.metadata_id = state.metadata_id or None
                    row.highest_bidder = state.highest_bidder
                    row.highest_bid = str(state.highest_bid)
                    row.dutch_price = str(state.dutch_price) if state.dutch_price is not None else None

                    if metadata is not None:
                        row.title = metadata.title
                        row.image = metadata.image
                    elif not keep_enrichment:
                        row.title = None
                        row.image = None

                    row.updated_at = max(now, row.created_at)

                return row.to_dict()

    async def insert_bid(self, auction_id: int, bidder: str, amount: int, timestamp: int,
                         block_number: Optional[int] = None, transaction_hash: Optional[str] = None,
                         log_index: Optional[int] = None) -> bool:
        """Append a bid. Returns False when the same log was already recorded."""
        async with self.session_factory() as session:
            if transaction_hash is not None and log_index is not None:
                existing = await session.scalar(
                    select(Bid.id).where(Bid.transaction_hash == transaction_hash, Bid.log_index == log_index)
                )
                if existing is not None:
                    logger.debug(f"Bid {transaction_hash}:{log_index} already recorded")
                    return False

            session.add(Bid(
                auction_id=auction_id,
                bidder=bidder,
                amount=str(amount),
                timestamp=timestamp,
                block_number=block_number,
                transaction_hash=transaction_hash,
                log_index=log_index,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f"Bid {transaction_hash}:{log_index} lost an insert race, skipping")
                return False
            return True

    async def insert_event(self, name: str, auction_id: Optional[int], payload: Dict[str, Any], timestamp: int,
                           block_number: Optional[int] = None, transaction_hash: Optional[str] = None,
                           log_index: Optional[int] = None) -> bool:
        """Append a raw event. Returns False when the same log was already recorded."""
        async with self.session_factory() as session:
            if transaction_hash is not None and log_index is not None:
                existing = await session.scalar(
                    select(Event.id).where(Event.transaction_hash == transaction_hash, Event.log_index == log_index)
                )
                if existing is not None:
                    logger.debug(f"Event {transaction_hash}:{log_index} already recorded")
                    return False

            session.add(Event(
                name=name,
                auction_id=auction_id,
                payload=dumps(payload),
                block_number=block_number,
                transaction_hash=transaction_hash,
                log_index=log_index,
                timestamp=timestamp,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def get_last_indexed_block(self, key: str) -> Optional[int]:
        async with self.session_factory() as session:
            row = await session.get(IndexerCheckpoint, key)
            return row.last_indexed_block if row else None

    async def set_last_indexed_block(self, key: str, block_number: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(IndexerCheckpoint, key)
                if row is None:
                    session.add(IndexerCheckpoint(key=key, last_indexed_block=block_number, updated_at=time.time()))
                elif block_number > row.last_indexed_block:
                    row.last_indexed_block = block_number
                    row.updated_at = time.time()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def has_auction(self, auction_id: int) -> bool:
        async with self.session_factory() as session:
            return (await session.get(Auction, auction_id)) is not None

    async def list_auctions(self, limit: int = 50, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Auctions ordered by id descending, each with its bid count"""
        bid_counts = (
            select(Bid.auction_id, func.count(Bid.id).label("bid_count"))
            .group_by(Bid.auction_id)
            .subquery()
        )
        query = (
            select(Auction, func.coalesce(bid_counts.c.bid_count, 0))
            .outerjoin(bid_counts, bid_counts.c.auction_id == Auction.id)
            .order_by(Auction.id.desc())
            .limit(limit)
            .offset(offset)
        )

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Auction))
            result = await session.execute(query)
            items = []
            for auction, bid_count in result.all():
                item = auction.to_dict()
                item["bid_count"] = int(bid_count)
                items.append(item)
            return items, int(total or 0)

    async def get_auction(self, auction_id: int, bid_limit: int = 10) -> Optional[Dict[str, Any]]:
        """One auction plus its most recent bids (newest first)"""
        async with self.session_factory() as session:
            auction = await session.get(Auction, auction_id)
            if auction is None:
                return None

            bid_count = await session.scalar(
                select(func.count(Bid.id)).where(Bid.auction_id == auction_id)
            )
            bids = []
            if bid_limit > 0:
                result = await session.execute(
                    select(Bid).where(Bid.auction_id == auction_id).order_by(Bid.id.desc()).limit(bid_limit)
                )
                bids = [bid.to_dict() for bid in result.scalars().all()]

            item = auction.to_dict()
            item["bid_count"] = int(bid_count or 0)
            item["bids"] = bids
            return item

    async def list_events(self, limit: int = 50, offset: int = 0, auction_id: Optional[int] = None,
                          name: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
        """Raw event log, most recent first"""
        filters = []
        if auction_id is not None:
            filters.append(Event.auction_id == auction_id)
        if name:
            filters.append(Event.name == name)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(Event.id)).where(*filters))
            result = await session.execute(
                select(Event).where(*filters).order_by(Event.id.desc()).limit(limit).offset(offset)
            )
            return [event.to_dict() for event in result.scalars().all()], int(total or 0)

    async def event_stats(self) -> Dict[str, Any]:
        """Aggregate counts for the analytics endpoint"""
        async with self.session_factory() as session:
            by_name = await session.execute(
                select(Event.name, func.count(Event.id)).group_by(Event.name).order_by(Event.name)
            )
            events_by_type = {name: int(count) for name, count in by_name.all()}

            per_auction = await session.execute(
                select(Bid.auction_id, func.count(Bid.id)).group_by(Bid.auction_id)
            )
            bid_counts = [int(count) for _, count in per_auction.all()]

            total_auctions = await session.scalar(select(func.count()).select_from(Auction))
            ended_auctions = await session.scalar(
                select(func.count()).select_from(Auction).where(Auction.ended.is_(True))
            )

        return {
            "total_auctions": int(total_auctions or 0),
            "ended_auctions": int(ended_auctions or 0),
            "total_bids": sum(bid_counts),
            "events_by_type": events_by_type,
            "average_bids_per_auction": (sum(bid_counts) / len(bid_counts)) if bid_counts else 0.0,
        }
