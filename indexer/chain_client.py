#!/usr/bin/env python3
"""
Async Web3.py wrapper around the auction contract.

Exposes the canonical state read, a bounded historical log query and a
live tail that dispatches decoded events to registered callbacks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from web3 import AsyncWeb3

from .config import ContractVariant
from .event_publisher import normalize_tx_hash

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# auctionType values of the advanced contract
ENGLISH_AUCTION, SEALED_BID_AUCTION, DUTCH_AUCTION, VICKREY_AUCTION = range(4)

# Provider errors that usually go away when the block range is narrowed
SPLIT_ERROR_MARKERS = (
    'query returned more than',
    'more than',
    'too many',
    'exceed',
    'response size',
    'limit',
    'range',
    'timeout',
    'gateway',
    'internal error',
    'server error',
)


class IndexerError(Exception):
    """Base class for indexing failures"""


class ChainUnavailable(IndexerError):
    """The JSON-RPC node could not be reached"""


class SubscriptionLost(IndexerError):
    """The live tail exhausted its reconnect budget"""


@dataclass
class AuctionState:
    """Canonical configuration + bid state of one auction, as read from the contract"""
    auction_id: int
    seller: str
    start_time: int
    end_time: int
    reserve_price: int
    min_increment: int
    buy_it_now_price: int
    anti_sniping_window: int
    anti_sniping_extension: int
    ended: bool
    metadata_id: str
    highest_bidder: str
    highest_bid: int
    reveal_end_time: Optional[int] = None
    auction_type: Optional[int] = None
    # Dutch price at the block of the read; moves with time, refresh for a current value
    dutch_price: Optional[int] = None


@dataclass
class ChainEvent:
    """A decoded contract event plus where it came from"""
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None

    @property
    def auction_id(self) -> Optional[int]:
        value = self.args.get('auctionId')
        return int(value) if value is not None else None

    @property
    def participant(self) -> Optional[str]:
        for key in ('bidder', 'buyer', 'winner', 'account'):
            if self.args.get(key):
                return self.args[key]
        return None

    @property
    def amount(self) -> Optional[int]:
        value = self.args.get('amount')
        return int(value) if value is not None else None


EventCallback = Callable[[ChainEvent], Awaitable[None]]
Checkpoint = Callable[[int], Awaitable[None]]


def event_signature(event_abi: Dict) -> str:
    types = ','.join(item['type'] for item in event_abi.get('inputs', []))
    return f"{event_abi['name']}({types})"


def _plain(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    return value


class ChainClient:
    """Typed reads and event delivery for one auction contract"""

    MAX_BLOCK_CACHE = 1000  # Limit memory usage

    def __init__(self, rpc_url: str, contract_address: str, variant: ContractVariant,
                 poll_interval: float = 2.0, log_span: int = 2000,
                 max_reconnect_attempts: int = 5, reconnect_backoff: float = 2.0,
                 w3: Optional[AsyncWeb3] = None):
        self.rpc_url = rpc_url
        self.variant = variant
        self.poll_interval = poll_interval
        self.log_span = log_span
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_backoff = reconnect_backoff

        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=variant.abi)

        self.callbacks: Dict[str, List[EventCallback]] = {}
        self.topics: Dict[str, str] = {}  # {topic0_hex: event_name}
        self.block_timestamps: Dict[int, int] = {}
        self.last_processed_block: Optional[int] = None
        self._running = False

        for name in variant.events:
            self.topics[self._topic_for(name)] = name

    def _topic_for(self, event_name: str) -> str:
        signature = event_signature(self.variant.event_abi(event_name))
        return '0x' + bytes(AsyncWeb3.keccak(text=signature)).hex()

    @property
    def short_address(self) -> str:
        return f"{self.contract_address[:5]}..{self.contract_address[-4:]}"

    async def connect(self) -> int:
        """Verify liveness with a trivial read and return the head block"""
        try:
            block = await self.w3.eth.block_number
        except Exception as e:
            raise ChainUnavailable(f"Failed to reach {self.rpc_url}: {e}") from e
        logger.info(f"[{block}] Connected to {self.rpc_url} (contract {self.short_address}, variant {self.variant.name})")
        return block

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, 'disconnect', None)
        if disconnect is not None:
            try:
                await disconnect()
            except Exception as e:
                logger.debug(f"Error closing provider: {e}")

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get a block timestamp with caching to reduce RPC calls"""
        if block_number in self.block_timestamps:
            return self.block_timestamps[block_number]

        if len(self.block_timestamps) >= self.MAX_BLOCK_CACHE:
            oldest_block = min(self.block_timestamps)
            del self.block_timestamps[oldest_block]

        block = await self.w3.eth.get_block(block_number)
        timestamp = int(block['timestamp'])
        self.block_timestamps[block_number] = timestamp
        return timestamp

    async def auction_count(self) -> int:
        return int(await self.contract.functions.auctionsCount().call())

    async def get_auction_state(self, auction_id: int) -> AuctionState:
        """Read the full configuration + state of one auction in a single logical read"""
        if self.variant.state_reader == 'single':
            raw = await self.contract.functions.getAuction(auction_id).call()
            return AuctionState(
                auction_id=auction_id,
                seller=raw[0],
                start_time=int(raw[1]),
                end_time=int(raw[2]),
                reserve_price=int(raw[3]),
                min_increment=int(raw[4]),
                buy_it_now_price=int(raw[5]),
                anti_sniping_window=int(raw[6]),
                anti_sniping_extension=int(raw[7]),
                ended=bool(raw[8]),
                metadata_id=raw[9] or '',
                highest_bidder=raw[10],
                highest_bid=int(raw[11]),
            )

        # Composite reader: pin every call to one block so they cannot straddle a new bid
        block = await self.w3.eth.block_number
        cfg = await self.contract.functions.auctions(auction_id).call(block_identifier=block)
        auction_type = int(cfg[0])
        if auction_type == ENGLISH_AUCTION:
            reader = self.contract.functions.getEnglishState
        else:
            reader = self.contract.functions.getSealedHighest
        highest_bidder, highest_bid = await reader(auction_id).call(block_identifier=block)

        dutch_price = None
        if auction_type == DUTCH_AUCTION and self.variant.has_function('getCurrentDutchPrice'):
            dutch_price = int(await self.contract.functions.getCurrentDutchPrice(auction_id).call(block_identifier=block))

        reveal_end_time = int(cfg[3])
        return AuctionState(
            auction_id=auction_id,
            auction_type=auction_type,
            start_time=int(cfg[1]),
            end_time=int(cfg[2]),
            reveal_end_time=reveal_end_time or None,
            reserve_price=int(cfg[4]),
            min_increment=int(cfg[5]),
            buy_it_now_price=int(cfg[6]),
            anti_sniping_window=int(cfg[7]),
            anti_sniping_extension=int(cfg[8]),
            ended=bool(cfg[9]),
            seller=cfg[10],
            metadata_id=cfg[15] or '',
            highest_bidder=highest_bidder,
            highest_bid=int(highest_bid),
            dutch_price=dutch_price,
        )

    def on(self, event_name: str, callback: EventCallback) -> None:
        """Register an async callback for a named contract event"""
        topic = self._topic_for(event_name)
        self.topics[topic] = event_name
        self.callbacks.setdefault(event_name, []).append(callback)

    async def _get_logs_with_split(self, from_block: int, to_block: int,
                                   topics: Optional[List[str]] = None, min_span: int = 1) -> List[Any]:
        """Fetch logs with eth_getLogs, splitting the block range on provider size/limit errors"""
        params: Dict[str, Any] = {
            'address': self.contract_address,
            'fromBlock': from_block,
            'toBlock': to_block,
        }
        if topics:
            params['topics'] = [topics]

        try:
            return list(await self.w3.eth.get_logs(params))
        except Exception as e:
            span = to_block - from_block
            msg = str(e).lower()
            if span >= min_span and any(marker in msg for marker in SPLIT_ERROR_MARKERS):
                mid = from_block + span // 2
                logger.debug(f"Splitting log query {from_block}-{to_block} at {mid}: {e}")
                left = await self._get_logs_with_split(from_block, mid, topics, min_span)
                right = await self._get_logs_with_split(mid + 1, to_block, topics, min_span)
                return left + right
            raise

    def decode_log(self, log: Any) -> Optional[ChainEvent]:
        """Decode a raw log into a ChainEvent, or None when it is not one of ours"""
        log_topics = log.get('topics') or []
        if not log_topics:
            return None
        event_name = self.topics.get(normalize_tx_hash(log_topics[0]).lower())
        if event_name is None:
            return None

        decoded = getattr(self.contract.events, event_name)().process_log(log)
        return ChainEvent(
            name=event_name,
            args={key: _plain(value) for key, value in dict(decoded['args']).items()},
            block_number=int(decoded['blockNumber']),
            transaction_hash=normalize_tx_hash(decoded['transactionHash']),
            log_index=int(decoded['logIndex']),
        )

    async def get_events(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        """Bounded historical query for one event type"""
        logs = await self._get_logs_with_split(from_block, to_block, [self._topic_for(event_name)])
        events = []
        for log in sorted(logs, key=lambda l: (l['blockNumber'], l['logIndex'])):
            try:
                event = self.decode_log(log)
            except Exception as e:
                logger.debug(f"Dropping undecodable {event_name} log in block {log.get('blockNumber')}: {e}")
                continue
            if event is not None:
                events.append(event)
        return events

    async def _dispatch(self, log: Any) -> None:
        try:
            event = self.decode_log(log)
        except Exception as e:
            logger.debug(f"Dropping malformed log in block {log.get('blockNumber')}: {e}")
            return
        if event is None:
            return

        for callback in self.callbacks.get(event.name, []):
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"[{event.block_number}] Callback for {event.name} failed: {e}")

    async def subscribe(self, from_block: int, checkpoint: Optional[Checkpoint] = None) -> None:
        """Tail the chain from from_block, dispatching events until stop() is called.

        Transport failures are retried with exponential backoff, resuming from the
        last fully processed block. After max_reconnect_attempts consecutive
        failures SubscriptionLost is raised.
        """
        self._running = True
        next_block = from_block
        failures = 0
        topics = [topic for topic, name in self.topics.items() if name in self.callbacks]
        logger.info(f"[{from_block}] Live tail started for {', '.join(sorted(self.callbacks)) or 'all events'}")

        while self._running:
            caught_up = True
            try:
                head = await self.w3.eth.block_number
                if head >= next_block:
                    to_block = min(head, next_block + self.log_span - 1)
                    caught_up = to_block >= head

                    logs = await self._get_logs_with_split(next_block, to_block, topics or None)
                    for log in sorted(logs, key=lambda l: (l['blockNumber'], l['logIndex'])):
                        await self._dispatch(log)

                    self.last_processed_block = to_block
                    next_block = to_block + 1
                    if checkpoint is not None:
                        try:
                            await checkpoint(to_block)
                        except Exception as e:
                            logger.error(f"[{to_block}] Failed to record checkpoint: {e}")
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                if failures > self.max_reconnect_attempts:
                    self._running = False
                    raise SubscriptionLost(
                        f"Live tail lost after {failures} consecutive failures at block {next_block}: {e}"
                    ) from e
                delay = min(self.reconnect_backoff * (2 ** (failures - 1)), 60.0)
                logger.warning(f"[{next_block}] Transport error ({failures}/{self.max_reconnect_attempts}), "
                               f"resuming in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
                continue

            if caught_up:
                await asyncio.sleep(self.poll_interval)

        logger.info(f"[{self.last_processed_block}] Live tail stopped")

    def stop(self) -> None:
        self._running = False
