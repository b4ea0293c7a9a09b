#!/usr/bin/env python3
"""
Server-signed contract transactions for the write-proxy endpoints.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

from indexer.chain_client import ChainClient, IndexerError
from indexer.event_publisher import normalize_tx_hash

logger = logging.getLogger(__name__)


class TransactionFailed(IndexerError):
    """The transaction was mined but reverted"""


class UnsupportedFunction(IndexerError):
    """The active contract variant has no such function"""


class TransactionSender:
    """Signs with the server-held key, submits, and waits for inclusion. Never retries."""

    def __init__(self, chain: ChainClient, private_key: str, timeout: int = 120):
        self.chain = chain
        self.w3 = chain.w3
        self.timeout = timeout
        self.account = self.w3.eth.account.from_key(private_key)
        # One in-flight submission at a time so nonces never collide
        self._nonce_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    def supports(self, fn_name: str) -> bool:
        return self.chain.variant.has_function(fn_name)

    def _function(self, fn_name: str, *args):
        if not self.supports(fn_name):
            raise UnsupportedFunction(f"{fn_name} is not available on the {self.chain.variant.name} contract")
        return getattr(self.chain.contract.functions, fn_name)(*args)

    async def call(self, fn_name: str, *args) -> Any:
        """Read-only call, e.g. to price a Dutch acceptance"""
        return await self._function(fn_name, *args).call()

    async def _transact(self, fn_name: str, *args, value: int = 0) -> Tuple[str, Any]:
        """Sign, submit and wait for one transaction; returns (tx hash, receipt)"""
        fn = self._function(fn_name, *args)

        async with self._nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, 'pending')
            tx = await fn.build_transaction({
                'from': self.account.address,
                'nonce': nonce,
                'value': value,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hex = normalize_tx_hash(tx_hash)
        logger.info(f"📤 Sent {fn_name}{args} value={value} tx {tx_hex}")

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        block_number = int(receipt['blockNumber'])
        if receipt['status'] != 1:
            raise TransactionFailed(f"Transaction {tx_hex} reverted in block {block_number}")

        logger.info(f"[{block_number}] ✅ {fn_name} included, tx {tx_hex}")
        return tx_hex, receipt

    async def send(self, fn_name: str, *args, value: int = 0) -> Dict[str, Any]:
        tx_hex, receipt = await self._transact(fn_name, *args, value=value)
        return {"txHash": tx_hex, "blockNumber": int(receipt['blockNumber'])}

    def created_auction_id(self, receipt: Any) -> Optional[int]:
        """Auction id from the AuctionCreated log of a createAuction receipt"""
        for log in receipt.get('logs') or []:
            if str(log.get('address', '')).lower() != self.chain.contract_address.lower():
                continue
            try:
                event = self.chain.decode_log(log)
            except Exception as e:
                logger.debug(f"Skipping undecodable receipt log: {e}")
                continue
            if event is not None and event.name == 'AuctionCreated':
                return event.auction_id
        return None

    async def create_auction(self, params: Sequence[Any], nft: Optional[Sequence[Any]] = None,
                             metadata: Optional[Sequence[Any]] = None,
                             dutch_pricing: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
        """Create an auction, then apply the optional NFT, metadata and Dutch pricing setters.

        Each follow-up is its own transaction and runs only after the previous
        one was included. A failure stops the sequence.
        """
        tx_hex, receipt = await self._transact('createAuction', *params)
        block_number = int(receipt['blockNumber'])
        auction_id = self.created_auction_id(receipt)

        follow_ups = [
            ('setAuctionNFT', nft),
            ('setAuctionMetadata', metadata),
            ('setDutchPricing', dutch_pricing),
        ]
        follow_ups = [(fn_name, args) for fn_name, args in follow_ups if args is not None]
        if follow_ups and auction_id is None:
            raise TransactionFailed(f"Transaction {tx_hex} emitted no AuctionCreated event")

        for fn_name, args in follow_ups:
            await self._transact(fn_name, auction_id, *args)

        logger.info(f"[{block_number}] 🆕 Created auction {auction_id} ({len(follow_ups)} follow-up transactions)")
        return {"txHash": tx_hex, "blockNumber": block_number, "auctionId": auction_id}
