#!/usr/bin/env python3
"""
Request/response models for the write-proxy endpoints.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator
from web3 import Web3

BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
MAX_UINT256 = 2 ** 256 - 1
WEI_PER_ETH = 10 ** 18


def _positive_eth(v):
    try:
        amount = Decimal(str(v))
    except InvalidOperation:
        raise ValueError('must be a decimal ETH amount')
    if not amount.is_finite() or amount <= 0:
        raise ValueError('must be a positive ETH amount')
    if amount * WEI_PER_ETH > MAX_UINT256:
        raise ValueError('exceeds the largest uint256 wei amount')
    return str(v)


def _uint256(v):
    """Wei amounts and counts arrive as decimal strings or integers"""
    if isinstance(v, bool) or isinstance(v, float):
        raise ValueError('must be an integer')
    try:
        value = int(str(v).strip())
    except ValueError:
        raise ValueError('must be an integer')
    if value < 0 or value > MAX_UINT256:
        raise ValueError('must fit in uint256')
    return value


def _bytes32(v):
    if not isinstance(v, str) or not BYTES32_RE.match(v):
        raise ValueError('must be a 0x-prefixed 32 byte hex string')
    return v


def _address(v):
    if not isinstance(v, str) or not Web3.is_address(v):
        raise ValueError('must be an address')
    return Web3.to_checksum_address(v)


class BidRequest(BaseModel):
    bidEth: Union[str, float] = Field(..., description="Bid amount in ETH")

    @field_validator('bidEth')
    @classmethod
    def validate_amount(cls, v):
        return _positive_eth(v)


class CommitRequest(BaseModel):
    commitment: str = Field(..., description="keccak256(amount, secret) as 0x hex")

    @field_validator('commitment')
    @classmethod
    def validate_commitment(cls, v):
        return _bytes32(v)


class RevealRequest(BaseModel):
    amountEth: Union[str, float] = Field(..., description="Committed amount in ETH")
    secretHex: str = Field(..., description="Secret used in the commitment")

    @field_validator('amountEth')
    @classmethod
    def validate_amount(cls, v):
        return _positive_eth(v)

    @field_validator('secretHex')
    @classmethod
    def validate_secret(cls, v):
        return _bytes32(v)


class CreateAuctionRequest(BaseModel):
    """createAuction plus optional NFT custody, metadata and Dutch pricing"""
    # auctionType and durationSec are checked by the route so they answer 400
    auctionType: Optional[int] = Field(None, description="0 English, 1 sealed-bid, 2 Dutch, 3 Vickrey")
    durationSec: Optional[int] = Field(None, description="Bidding duration in seconds")
    reservePriceWei: Union[str, int] = 0
    minIncrementWei: Union[str, int] = 0
    buyItNowWei: Union[str, int] = 0
    antiSnipingWindowSec: Union[str, int] = 0
    antiSnipingExtensionSec: Union[str, int] = 0
    revealDurationSec: Union[str, int] = 0

    nftAddress: Optional[str] = None
    tokenId: Optional[Union[str, int]] = None
    tokenAmount: Union[str, int] = 0
    isERC1155: bool = False

    ipfsCid: Optional[str] = None
    requireVerification: bool = False

    dutchStartPriceWei: Optional[Union[str, int]] = None
    dutchEndPriceWei: Optional[Union[str, int]] = None
    dutchDecrementPerSecWei: Optional[Union[str, int]] = None

    @field_validator('reservePriceWei', 'minIncrementWei', 'buyItNowWei', 'antiSnipingWindowSec',
                     'antiSnipingExtensionSec', 'revealDurationSec', 'tokenAmount')
    @classmethod
    def validate_uint(cls, v):
        return _uint256(v)

    @field_validator('tokenId', 'dutchStartPriceWei', 'dutchEndPriceWei', 'dutchDecrementPerSecWei')
    @classmethod
    def validate_optional_uint(cls, v):
        return None if v is None else _uint256(v)

    @field_validator('nftAddress')
    @classmethod
    def validate_nft_address(cls, v):
        return None if v is None else _address(v)


class SetNftRequest(BaseModel):
    nftAddress: str
    tokenId: Union[str, int]
    tokenAmount: Union[str, int] = 0
    isERC1155: bool = False

    @field_validator('nftAddress')
    @classmethod
    def validate_nft_address(cls, v):
        return _address(v)

    @field_validator('tokenId', 'tokenAmount')
    @classmethod
    def validate_uint(cls, v):
        return _uint256(v)


class SetMetaRequest(BaseModel):
    ipfsCid: str = ""
    requireVerification: bool = False


class TransactionResponse(BaseModel):
    txHash: str
    blockNumber: int


class CreateAuctionResponse(TransactionResponse):
    auctionId: Optional[int] = Field(None, description="Id parsed from the AuctionCreated log")
