#!/usr/bin/env python3
"""
Auction Indexer
Mirrors one auction contract into the relational store: backfills every
existing auction, then tails contract events and re-reads canonical state
on each one.
"""

import sys
import time
import asyncio
import logging
import argparse
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any

from rich.console import Console
from rich.table import Table

from .auction_state import with_status
from .chain_client import ZERO_ADDRESS, ChainClient, ChainEvent, ChainUnavailable, SubscriptionLost
from .config import ConfigurationError, Settings, configure_logging, get_contract_variant, get_settings
from .database import AuctionStore
from .event_publisher import BroadcastHub, jsonable
from .metadata import MetadataFetcher

logger = logging.getLogger(__name__)


class IndexerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    LIVE = "live"
    DEGRADED = "degraded"
    DISABLED = "disabled"


@dataclass
class BackfillReport:
    total: int = 0
    indexed: int = 0
    failed: List[int] = field(default_factory=list)


@dataclass
class ReplayReport:
    from_block: int
    to_block: int
    events: int = 0
    bids: int = 0
    failed_types: List[str] = field(default_factory=list)


class AuctionIndexer:
    """Process-lifetime indexer for one contract"""

    def __init__(self, chain: ChainClient, store: AuctionStore, metadata: MetadataFetcher,
                 hub: Optional[BroadcastHub] = None, backfill_delay: float = 0.1,
                 backfill_concurrency: int = 1):
        self.chain = chain
        self.store = store
        self.metadata = metadata
        self.hub = hub
        self.backfill_delay = backfill_delay
        self.backfill_concurrency = max(1, backfill_concurrency)

        self.state = IndexerState.UNINITIALIZED
        self.head_at_connect: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_backfill: Optional[BackfillReport] = None
        self._callbacks_registered = False

    @property
    def variant(self):
        return self.chain.variant

    @property
    def checkpoint_key(self) -> str:
        return f"{self.variant.name}:{self.chain.contract_address.lower()}"

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "variant": self.variant.name,
            "contract_address": self.chain.contract_address,
            "head_at_connect": self.head_at_connect,
            "last_processed_block": self.chain.last_processed_block,
            "last_error": self.last_error,
        }

    async def connect(self) -> bool:
        """Uninitialized -> Connecting. Returns False (and disables indexing) on failure."""
        self.state = IndexerState.CONNECTING
        try:
            self.head_at_connect = await self.chain.connect()
        except ChainUnavailable as e:
            self.state = IndexerState.DISABLED
            self.last_error = str(e)
            logger.error(f"❌ Indexing disabled, chain unavailable: {e}")
            return False
        return True

    async def refresh_auction(self, auction_id: int) -> Dict[str, Any]:
        """Canonical re-read of one auction, enriched and upserted. Returns the stored row."""
        state = await self.chain.get_auction_state(auction_id)
        metadata = await self.metadata.resolve(state.metadata_id)
        return await self.store.upsert_auction(state, metadata)

    async def backfill(self) -> BackfillReport:
        """Connecting -> Backfilling. Seed the store with every auction the contract knows about."""
        self.state = IndexerState.BACKFILLING
        report = BackfillReport()

        try:
            report.total = await self.chain.auction_count()
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"❌ Could not read auction count, skipping backfill: {e}")
            self.last_backfill = report
            return report

        logger.info(f"[{self.head_at_connect}] 🔄 Backfilling {report.total} auctions "
                    f"(concurrency {self.backfill_concurrency})")
        semaphore = asyncio.Semaphore(self.backfill_concurrency)

        async def index_one(auction_id: int) -> None:
            async with semaphore:
                try:
                    row = await self.refresh_auction(auction_id)
                    report.indexed += 1
                    logger.debug(f"Backfilled auction {auction_id} ({row.get('title') or 'no metadata'})")
                except Exception as e:
                    report.failed.append(auction_id)
                    logger.error(f"❌ Failed to backfill auction {auction_id}: {e}")
                if self.backfill_delay:
                    await asyncio.sleep(self.backfill_delay)

        await asyncio.gather(*(index_one(auction_id) for auction_id in range(report.total)))
        report.failed.sort()

        logger.info(f"✅ Backfill complete: {report.indexed}/{report.total} indexed, {len(report.failed)} failed")
        self.last_backfill = report
        return report

    async def _event_timestamp(self, event: ChainEvent) -> int:
        if event.block_number is not None:
            try:
                return await self.chain.get_block_timestamp(event.block_number)
            except Exception as e:
                logger.debug(f"[{event.block_number}] Block timestamp unavailable: {e}")
        return int(time.time())

    async def _record_event(self, event: ChainEvent, timestamp: int) -> bool:
        """Append the Event row, plus a Bid row for bid events. Returns True if a bid was recorded."""
        auction_id = event.auction_id
        await self.store.insert_event(
            event.name, auction_id, jsonable(event.args), timestamp,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
        )
        if auction_id is None or event.name not in self.variant.bid_events:
            return False

        if not await self.store.has_auction(auction_id):
            await self.refresh_auction(auction_id)

        return await self.store.insert_bid(
            auction_id,
            event.participant or ZERO_ADDRESS,
            event.amount or 0,
            timestamp,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
        )

    async def handle_event(self, event: ChainEvent) -> None:
        """Live event handler: record, re-read canonical state, upsert, broadcast.

        Never raises; one bad event must not stop the tail.
        """
        try:
            timestamp = await self._event_timestamp(event)
            await self._record_event(event, timestamp)

            auction_id = event.auction_id
            if auction_id is None:
                logger.warning(f"[{event.block_number}] {event.name} without auctionId, recorded only")
                return

            # Current state always comes from the contract, never from the event payload
            snapshot = await self.refresh_auction(auction_id)
            logger.info(f"[{event.block_number}] 📝 {event.name} auction {auction_id} "
                        f"(highest bid {snapshot['highest_bid']}, ended={snapshot['ended']})")

            if self.hub is not None:
                await self.hub.broadcast(event.name, auction_id, with_status(snapshot))
        except Exception as e:
            logger.error(f"[{event.block_number}] ❌ Failed to handle {event.name} "
                         f"(tx {event.transaction_hash}): {e}")

    async def _checkpoint(self, block_number: int) -> None:
        await self.store.set_last_indexed_block(self.checkpoint_key, block_number)

    async def live_start_block(self) -> int:
        last = await self.store.get_last_indexed_block(self.checkpoint_key)
        if last is not None:
            return last + 1
        if self.head_at_connect is None:
            self.head_at_connect = await self.chain.get_block_number()
        return self.head_at_connect + 1

    async def go_live(self) -> None:
        """Backfilling -> Live. Returns when the tail is stopped or lost."""
        if not self._callbacks_registered:
            for event_name in self.variant.events:
                self.chain.on(event_name, self.handle_event)
            self._callbacks_registered = True

        start_block = await self.live_start_block()
        self.state = IndexerState.LIVE
        try:
            await self.chain.subscribe(start_block, checkpoint=self._checkpoint)
        except SubscriptionLost as e:
            self.state = IndexerState.DEGRADED
            self.last_error = str(e)
            logger.error(f"🚨 Live tail lost, indexer degraded: {e}")

    async def run(self) -> None:
        """Full lifecycle: connect, backfill, then tail until stopped"""
        logger.info(f"🚀 Starting indexer for {self.chain.short_address} (variant {self.variant.name})")
        if not await self.connect():
            return
        await self.backfill()
        await self.go_live()

    def stop(self) -> None:
        self.chain.stop()

    async def close(self) -> None:
        self.stop()
        await self.chain.close()
        await self.metadata.close()

    async def replay_history(self, from_block: int = 0, to_block: Optional[int] = None) -> ReplayReport:
        """Rebuild the Event/Bid side logs from historical logs.

        Each event type is queried separately so a provider failure for one
        type only leaves a gap for that type. Already recorded logs are skipped.
        """
        if to_block is None:
            to_block = await self.chain.get_block_number()
        report = ReplayReport(from_block=from_block, to_block=to_block)

        collected: List[ChainEvent] = []
        for event_name in self.variant.events:
            try:
                events = await self.chain.get_events(event_name, from_block, to_block)
            except Exception as e:
                report.failed_types.append(event_name)
                logger.error(f"[{from_block}-{to_block}] ❌ Skipping {event_name} history: {e}")
                continue
            logger.info(f"[{from_block}-{to_block}] Found {len(events)} {event_name} events")
            collected.extend(events)

        collected.sort(key=lambda ev: (ev.block_number or 0, ev.log_index or 0))
        for event in collected:
            try:
                timestamp = await self._event_timestamp(event)
                if await self._record_event(event, timestamp):
                    report.bids += 1
                report.events += 1
            except Exception as e:
                logger.error(f"[{event.block_number}] ❌ Failed to replay {event.name}: {e}")

        logger.info(f"✅ Replay complete: {report.events} events, {report.bids} new bids")
        return report


def build_indexer(settings: Settings, store: AuctionStore, hub: Optional[BroadcastHub] = None) -> AuctionIndexer:
    """Wire an indexer from settings. Raises ConfigurationError without a contract address."""
    if not settings.contract_address:
        raise ConfigurationError("CONTRACT_ADDRESS is not set")

    variant = get_contract_variant(settings.contract_variant)
    chain = ChainClient(
        settings.rpc_url,
        settings.contract_address,
        variant,
        poll_interval=settings.poll_interval,
        log_span=settings.log_span,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        reconnect_backoff=settings.reconnect_backoff,
    )
    metadata = MetadataFetcher(settings.ipfs_gateway, timeout=settings.metadata_timeout)
    return AuctionIndexer(
        chain, store, metadata, hub,
        backfill_delay=settings.backfill_delay,
        backfill_concurrency=settings.backfill_concurrency,
    )


def print_backfill_summary(report: BackfillReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="🔄 Backfill Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Auctions on chain", str(report.total))
    table.add_row("Indexed", str(report.indexed))
    table.add_row("Failed", ", ".join(str(i) for i in report.failed) or "none")
    console.print(table)


def print_replay_summary(report: ReplayReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="📜 Replay Summary")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Block range", f"{report.from_block} - {report.to_block}")
    table.add_row("Events", str(report.events))
    table.add_row("New bids", str(report.bids))
    table.add_row("Skipped event types", ", ".join(report.failed_types) or "none")
    console.print(table)


async def _run_command(args: argparse.Namespace, settings: Settings) -> None:
    store = AuctionStore(settings.get_effective_database_url())
    await store.init()
    indexer = build_indexer(settings, store)
    try:
        if args.command == "backfill":
            if not await indexer.connect():
                raise ChainUnavailable(indexer.last_error)
            print_backfill_summary(await indexer.backfill())
        elif args.command == "replay":
            if not await indexer.connect():
                raise ChainUnavailable(indexer.last_error)
            print_replay_summary(await indexer.replay_history(args.from_block, args.to_block))
        else:
            await indexer.run()
            if indexer.state == IndexerState.DISABLED:
                raise ChainUnavailable(indexer.last_error)
    finally:
        await indexer.close()
        await store.close()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Auction contract indexer')
    parser.add_argument('command', nargs='?', default='run', choices=['run', 'backfill', 'replay'],
                        help='run: backfill then tail live events (default); '
                             'backfill: one-shot canonical backfill; replay: rebuild event history')
    parser.add_argument('--from-block', type=int, default=0, dest='from_block',
                        help='First block for replay (default: 0)')
    parser.add_argument('--to-block', type=int, default=None, dest='to_block',
                        help='Last block for replay (default: head)')
    parser.add_argument('--variant', default=None,
                        help='Contract variant override (simple or advanced)')

    args = parser.parse_args()
    settings = get_settings()
    if args.variant:
        settings = settings.model_copy(update={"contract_variant": args.variant})
    configure_logging(settings.log_level)

    if not settings.contract_address:
        logger.error("❌ CONTRACT_ADDRESS is not set, refusing to start the indexer")
        sys.exit(1)

    try:
        asyncio.run(_run_command(args, settings))
    except KeyboardInterrupt:
        logger.info("Indexer stopped by user")
    except Exception as e:
        logger.error(f"Failed to start indexer: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
