#!/usr/bin/env python3
"""
Pytest configuration and fakes for the indexer and API tests
"""

import asyncio
from dataclasses import replace
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from web3 import AsyncWeb3

from indexer.chain_client import ZERO_ADDRESS, AuctionState, ChainEvent, ChainUnavailable
from indexer.config import get_contract_variant
from indexer.database import AuctionStore
from indexer.event_publisher import BroadcastHub
from indexer.indexer import AuctionIndexer
from indexer.metadata import MetadataFetcher

SELLER = "0x00000000000000000000000000000000005e11e5"
BIDDER_ABC = "0x0000000000000000000000000000000000000ABC"
BIDDER_DEF = "0x0000000000000000000000000000000000000DEF"
CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
GATEWAY = "https://gateway.test/ipfs"
SERVER_ACCOUNT = "0x00000000000000000000000000000000000005E5"


class FakeChainClient:
    """In-memory stand-in for ChainClient"""

    def __init__(self, variant, head: int = 100):
        self.variant = variant
        self.contract_address = CONTRACT
        self.head = head
        self.states: Dict[int, AuctionState] = {}
        self.count: Optional[int] = None
        self.failing_ids = set()
        self.connect_error: Optional[Exception] = None
        self.count_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None
        self.history: Dict[str, List[ChainEvent]] = {}
        self.failing_event_types = set()
        self.callbacks: Dict[str, List[Any]] = {}
        self.subscribed_from: Optional[int] = None
        self.last_processed_block: Optional[int] = None
        self.reads: List[int] = []
        self.stopped = False
        self.closed = False

    @property
    def short_address(self) -> str:
        return f"{self.contract_address[:5]}..{self.contract_address[-4:]}"

    async def connect(self) -> int:
        if self.connect_error is not None:
            raise self.connect_error
        return self.head

    async def get_block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        return 1_700_000_000 + block_number

    async def auction_count(self) -> int:
        if self.count_error is not None:
            raise self.count_error
        return self.count if self.count is not None else len(self.states)

    async def get_auction_state(self, auction_id: int) -> AuctionState:
        self.reads.append(auction_id)
        if auction_id in self.failing_ids or auction_id not in self.states:
            raise ChainUnavailable(f"read of auction {auction_id} failed")
        return replace(self.states[auction_id])

    def on(self, event_name: str, callback) -> None:
        self.callbacks.setdefault(event_name, []).append(callback)

    async def get_events(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        if event_name in self.failing_event_types:
            raise ValueError("query returned more than 10000 results")
        return [
            event for event in self.history.get(event_name, [])
            if from_block <= event.block_number <= to_block
        ]

    async def subscribe(self, from_block: int, checkpoint=None) -> None:
        self.subscribed_from = from_block
        if self.subscribe_error is not None:
            raise self.subscribe_error

    async def emit(self, event: ChainEvent) -> None:
        """Deliver an event the way the live tail would"""
        for callback in self.callbacks.get(event.name, []):
            await callback(event)

    def stop(self) -> None:
        self.stopped = True

    async def close(self) -> None:
        self.closed = True


class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class _FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Minimal aiohttp.ClientSession replacement keyed by URL"""

    def __init__(self):
        self.responses: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.closed = False

    def add(self, identifier: str, outcome: Any) -> None:
        self.responses[f"{GATEWAY}/{identifier}"] = outcome

    def get(self, url: str, timeout=None):
        self.calls.append(url)
        return _FakeRequest(self.responses.get(url, FakeResponse(404)))

    async def close(self) -> None:
        self.closed = True


class RecordingChannel:
    """Broadcast channel that keeps every frame it receives"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[str] = []

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        self.messages.append(message)


class FakeCall:
    """One bound contract function: records every call and build"""

    def __init__(self, contract: "FakeContract", name: str, args: tuple):
        self.contract = contract
        self.name = name
        self.args = args

    async def call(self, block_identifier=None):
        self.contract.calls.append((self.name, self.args, block_identifier))
        result = self.contract.results[self.name]
        if isinstance(result, Exception):
            raise result
        return result

    async def build_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        self.contract.built.append((self.name, self.args, dict(tx)))
        return {**tx, 'to': CONTRACT, 'data': self.name, 'gas': 100_000}


class _FakeFunctions:
    def __init__(self, contract: "FakeContract"):
        self._contract = contract

    def __getattr__(self, name: str):
        return lambda *args: FakeCall(self._contract, name, args)


class FakeContract:
    """Contract stand-in with canned call results; events come from a real contract for decoding"""

    def __init__(self, results: Optional[Dict[str, Any]] = None, events: Any = None):
        self.results = results or {}
        self.events = events
        self.calls: List[tuple] = []
        self.built: List[tuple] = []
        self.functions = _FakeFunctions(self)


class FakeAccount:
    address = SERVER_ACCOUNT

    def __init__(self):
        self.signed: List[Dict[str, Any]] = []

    def sign_transaction(self, tx: Dict[str, Any]):
        self.signed.append(tx)
        return SimpleNamespace(raw_transaction=f"raw-{tx['data']}-{tx['nonce']}".encode())


class FakeEth:
    """Just enough of w3.eth for the chain client and transaction sender"""

    def __init__(self, codec_w3: AsyncWeb3, head: int = 100):
        self._w3 = codec_w3
        self.head = head
        self.logs: List[Dict[str, Any]] = []
        self.get_logs_calls: List[tuple] = []
        self.max_span: Optional[int] = None
        self.logs_error: Optional[Exception] = None
        self.block_number_errors = 0
        self.block_requests = 0

        self.account = SimpleNamespace(from_key=lambda key: self.signer)
        self.signer = FakeAccount()
        self.raw_sent: List[bytes] = []
        self.receipts: List[Dict[str, Any]] = []

    def contract(self, address, abi):
        return self._w3.eth.contract(address=address, abi=abi)

    @property
    def block_number(self):
        return self._block_number()

    async def _block_number(self):
        if self.block_number_errors:
            self.block_number_errors -= 1
            raise ConnectionError("connection reset by peer")
        return self.head

    async def get_logs(self, params):
        from_block, to_block = params['fromBlock'], params['toBlock']
        self.get_logs_calls.append((from_block, to_block))
        if self.logs_error is not None:
            raise self.logs_error
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            raise ValueError("query returned more than 10000 results")
        wanted = set(params['topics'][0]) if params.get('topics') else None
        return [
            log for log in self.logs
            if from_block <= log['blockNumber'] <= to_block
            and (wanted is None or '0x' + bytes(log['topics'][0]).hex() in wanted)
        ]

    async def get_block(self, block_number):
        self.block_requests += 1
        return {'timestamp': 1_700_000_000 + block_number}

    async def get_transaction_count(self, address, block_identifier):
        # Yield so concurrent senders interleave here
        await asyncio.sleep(0)
        return len(self.raw_sent)

    async def send_raw_transaction(self, raw: bytes) -> bytes:
        self.raw_sent.append(raw)
        return bytes([len(self.raw_sent)]) * 32

    async def wait_for_transaction_receipt(self, tx_hash, timeout=None):
        if self.receipts:
            return self.receipts.pop(0)
        return {'status': 1, 'blockNumber': self.head, 'logs': []}


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth
        self.provider = None


@pytest.fixture
def make_state():
    """Factory for canonical auction reads"""
    def _make(auction_id: int, **overrides) -> AuctionState:
        fields = dict(
            auction_id=auction_id,
            seller=SELLER,
            start_time=1_000,
            end_time=2_000,
            reserve_price=0,
            min_increment=10,
            buy_it_now_price=0,
            anti_sniping_window=60,
            anti_sniping_extension=120,
            ended=False,
            metadata_id="",
            highest_bidder=ZERO_ADDRESS,
            highest_bid=0,
        )
        fields.update(overrides)
        return AuctionState(**fields)
    return _make


@pytest.fixture
def make_event():
    """Factory for decoded contract events"""
    counter = {"log_index": 0}

    def _make(name: str, block_number: int = 101, transaction_hash: Optional[str] = None, **args) -> ChainEvent:
        counter["log_index"] += 1
        log_index = counter["log_index"]
        return ChainEvent(
            name=name,
            args=args,
            block_number=block_number,
            transaction_hash=transaction_hash or f"0x{block_number:032x}{log_index:032x}",
            log_index=log_index,
        )
    return _make


@pytest.fixture
def variant():
    return get_contract_variant("simple")


@pytest.fixture
def advanced_variant():
    return get_contract_variant("advanced")


@pytest.fixture
async def store(tmp_path):
    """Fresh SQLite store per test"""
    store = AuctionStore(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}", echo=False)
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def metadata(fake_session):
    return MetadataFetcher(GATEWAY, timeout=1.0, session=fake_session)


@pytest.fixture
def chain(variant):
    return FakeChainClient(variant)


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def indexer(chain, store, metadata, hub):
    return AuctionIndexer(chain, store, metadata, hub, backfill_delay=0, backfill_concurrency=2)


@pytest.fixture
def codec_w3():
    # Never connects; only used for ABI encoding and decoding
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider("http://127.0.0.1:8545"))


@pytest.fixture
def eth(codec_w3):
    return FakeEth(codec_w3)
