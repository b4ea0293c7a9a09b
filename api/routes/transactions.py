#!/usr/bin/env python3
"""
Write-proxy routes: submit contract transactions with the server-held key.

Failures are reported, never retried.
"""

import time
import logging
from decimal import Decimal
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Path
from web3 import Web3

from indexer.chain_client import (
    DUTCH_AUCTION, ENGLISH_AUCTION, SEALED_BID_AUCTION, VICKREY_AUCTION,
)

from api.context import get_transaction_sender
from api.models.transaction import (
    BidRequest, CommitRequest, CreateAuctionRequest, CreateAuctionResponse, RevealRequest, SetMetaRequest,
    SetNftRequest, TransactionResponse,
)
from api.services.transactions import TransactionSender, UnsupportedFunction

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transactions"])

AUCTION_TYPES = (ENGLISH_AUCTION, SEALED_BID_AUCTION, DUTCH_AUCTION, VICKREY_AUCTION)
# Delay before a new auction opens, so it is not already running when mined
START_DELAY = 5
DEFAULT_REVEAL_DURATION = 60


def eth_to_wei(amount: str) -> int:
    return int(Web3.to_wei(Decimal(amount), 'ether'))


async def _submit(sender: TransactionSender, fn_name: str, *args, value: int = 0) -> Dict[str, Any]:
    if not sender.supports(fn_name):
        raise HTTPException(
            status_code=400,
            detail=f"{fn_name} is not supported by the {sender.chain.variant.name} contract"
        )
    try:
        return await sender.send(fn_name, *args, value=value)
    except UnsupportedFunction as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"❌ {fn_name}{args} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/bid/{auction_id}", response_model=TransactionResponse)
async def place_bid(
    body: BidRequest,
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Place an open bid of bidEth"""
    return await _submit(sender, "bid", auction_id, value=eth_to_wei(body.bidEth))


@router.post("/commit/{auction_id}", response_model=TransactionResponse)
async def commit_bid(
    body: CommitRequest,
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Commit a sealed bid"""
    return await _submit(sender, "commitBid", auction_id, Web3.to_bytes(hexstr=body.commitment))


@router.post("/reveal/{auction_id}", response_model=TransactionResponse)
async def reveal_bid(
    body: RevealRequest,
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Reveal a sealed bid, paying the revealed amount"""
    amount_wei = eth_to_wei(body.amountEth)
    return await _submit(
        sender, "revealBid", auction_id, amount_wei, Web3.to_bytes(hexstr=body.secretHex),
        value=amount_wei
    )


@router.post("/accept-dutch/{auction_id}", response_model=TransactionResponse)
async def accept_dutch(
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Accept a Dutch auction at its current price"""
    if not sender.supports("acceptDutch"):
        raise HTTPException(status_code=400, detail=f"acceptDutch is not supported by the {sender.chain.variant.name} contract")
    try:
        price = int(await sender.call("getCurrentDutchPrice", auction_id))
    except Exception as e:
        logger.error(f"Error reading Dutch price for auction {auction_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return await _submit(sender, "acceptDutch", auction_id, value=price)


@router.post("/end/{auction_id}", response_model=TransactionResponse)
async def end_auction(
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Close an auction whose deadline has passed"""
    return await _submit(sender, "endAuction", auction_id)


@router.post("/withdraw/{auction_id}", response_model=TransactionResponse)
async def withdraw(
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Withdraw refundable funds held for the server account"""
    return await _submit(sender, "withdraw", auction_id)


@router.post("/create-auction", response_model=CreateAuctionResponse)
async def create_auction(
    body: CreateAuctionRequest,
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Create an auction owned by the server account, with optional NFT, metadata and Dutch pricing"""
    if body.auctionType not in AUCTION_TYPES:
        raise HTTPException(status_code=400, detail="auctionType must be 0..3")
    if not body.durationSec or body.durationSec <= 0:
        raise HTTPException(status_code=400, detail="durationSec required")
    if not sender.supports("createAuction"):
        raise HTTPException(status_code=400, detail=f"createAuction is not supported by the {sender.chain.variant.name} contract")

    start_time = int(time.time()) + START_DELAY
    bidding_end_time = start_time + body.durationSec
    reveal_end_time = 0
    if body.auctionType in (SEALED_BID_AUCTION, VICKREY_AUCTION):
        reveal_end_time = bidding_end_time + (body.revealDurationSec or DEFAULT_REVEAL_DURATION)

    params = [
        body.auctionType, start_time, bidding_end_time, reveal_end_time,
        body.reservePriceWei, body.minIncrementWei, body.buyItNowWei,
        body.antiSnipingWindowSec, body.antiSnipingExtensionSec,
    ]
    nft = None
    if body.nftAddress and body.tokenId is not None:
        nft = [body.nftAddress, body.tokenId, body.tokenAmount, body.isERC1155]
    metadata = None
    if body.ipfsCid or body.requireVerification:
        metadata = [body.ipfsCid or "", body.requireVerification]
    dutch_pricing = None
    if body.auctionType == DUTCH_AUCTION and body.dutchStartPriceWei and body.dutchEndPriceWei \
            and body.dutchDecrementPerSecWei:
        dutch_pricing = [body.dutchStartPriceWei, body.dutchEndPriceWei, body.dutchDecrementPerSecWei]

    try:
        return await sender.create_auction(params, nft=nft, metadata=metadata, dutch_pricing=dutch_pricing)
    except UnsupportedFunction as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"❌ createAuction failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/set-nft/{auction_id}", response_model=TransactionResponse)
async def set_nft(
    body: SetNftRequest,
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Attach the auctioned NFT (owner only)"""
    return await _submit(
        sender, "setAuctionNFT", auction_id, body.nftAddress, body.tokenId, body.tokenAmount, body.isERC1155
    )


@router.post("/set-meta/{auction_id}", response_model=TransactionResponse)
async def set_meta(
    body: SetMetaRequest,
    auction_id: int = Path(..., ge=0),
    sender: TransactionSender = Depends(get_transaction_sender)
):
    """Set the metadata identifier and identity gating (owner only)"""
    return await _submit(sender, "setAuctionMetadata", auction_id, body.ipfsCid, body.requireVerification)
