"""
Event publishing helpers for the indexer.
Serialises change notifications once and fans them out to every open push channel.
"""
import asyncio
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

# JavaScript clients lose precision above 2**53
MAX_SAFE_INTEGER = 2 ** 53 - 1


def normalize_tx_hash(tx_hash: Any) -> str:
    """Normalize a transaction hash (or topic) to a hex string with 0x prefix.

    Accepts bytes/bytearray/HexBytes or str.
    """
    if isinstance(tx_hash, (bytes, bytearray)):
        return '0x' + bytes(tx_hash).hex()
    s = str(tx_hash)
    return s if s.startswith('0x') else f'0x{s}'


def json_default(obj: Any) -> Any:
    """JSON fallback for values web3 and the store hand us"""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return normalize_tx_hash(obj)
    if isinstance(obj, set):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def jsonable(value: Any) -> Any:
    """Stringify integers JavaScript cannot represent and bytes, recursively"""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, (bytes, bytearray)):
        return normalize_tx_hash(value)
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def dumps(payload: Any) -> str:
    return json.dumps(jsonable(payload), default=json_default)


class ChannelClosed(Exception):
    """Raised when writing to a channel whose client went away"""


class QueueChannel:
    """Push channel backed by a bounded asyncio queue (one per SSE client)"""

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ChannelClosed("channel closed")
        # A full queue means the client stopped reading; treat it as gone
        self.queue.put_nowait(message)

    async def receive(self, timeout: Optional[float] = None) -> str:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        self.closed = True


class BroadcastHub:
    """Set of connected push channels, written to on every indexed change"""

    def __init__(self):
        self.channels: Set[Any] = set()

    def register(self, channel) -> None:
        self.channels.add(channel)
        logger.info(f"Push channel registered ({len(self.channels)} connected)")

    def unregister(self, channel) -> None:
        if channel in self.channels:
            self.channels.discard(channel)
            logger.info(f"Push channel unregistered ({len(self.channels)} connected)")

    @property
    def connection_count(self) -> int:
        return len(self.channels)

    @staticmethod
    def build_message(event_type: str, auction_id: Optional[int], data: Any) -> Dict[str, Any]:
        return {
            'type': event_type,
            'auctionId': auction_id,
            'data': data,
            'timestamp': int(time.time() * 1000),
        }

    async def broadcast(self, event_type: str, auction_id: Optional[int], data: Any) -> int:
        """Send one notification to every channel; returns how many received it.

        A channel whose write fails is dropped without affecting the others.
        """
        if not self.channels:
            return 0

        message = dumps(self.build_message(event_type, auction_id, data))
        channels = list(self.channels)
        results = await asyncio.gather(
            *(channel.send(message) for channel in channels),
            return_exceptions=True
        )

        delivered = 0
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.warning(f"Dropping push channel after failed write: {result!r}")
                self.unregister(channel)
            else:
                delivered += 1
        return delivered

    async def close_all(self) -> None:
        for channel in list(self.channels):
            close = getattr(channel, 'close', None)
            if close is not None:
                result = close()
                if asyncio.iscoroutine(result):
                    await result
        self.channels.clear()
