#!/usr/bin/env python3
"""
Process-lifetime application context shared by every route.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from indexer.config import ConfigurationError, Settings
from indexer.database import AuctionStore
from indexer.event_publisher import BroadcastHub
from indexer.indexer import AuctionIndexer, build_indexer

from api.services.transactions import TransactionSender
from api.services.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: AuctionStore
    hub: BroadcastHub
    indexer: Optional[AuctionIndexer] = None
    transactions: Optional[TransactionSender] = None
    websockets: Optional[WebSocketManager] = None
    indexer_task: Optional[asyncio.Task] = None
    disabled_reason: Optional[str] = None
    write_disabled_reason: Optional[str] = None

    def __post_init__(self):
        if self.websockets is None:
            self.websockets = WebSocketManager(self.hub)


async def build_context(settings: Settings) -> AppContext:
    """Create the store, hub, indexer and write-proxy from settings.

    Missing configuration disables the affected capability instead of
    preventing the API from serving what is already stored.
    """
    store = AuctionStore(settings.get_effective_database_url())
    await store.init()
    context = AppContext(settings=settings, store=store, hub=BroadcastHub())

    try:
        context.indexer = build_indexer(settings, store, context.hub)
    except ConfigurationError as e:
        context.disabled_reason = str(e)
        logger.warning(f"⚠️ Indexing disabled: {e}")

    if context.indexer is None:
        context.write_disabled_reason = "indexing is not configured"
    elif not settings.private_key:
        context.write_disabled_reason = "PRIVATE_KEY is not set"
    else:
        try:
            context.transactions = TransactionSender(
                context.indexer.chain, settings.private_key, timeout=settings.tx_timeout
            )
            logger.info(f"✍️ Write-proxy enabled for {context.transactions.address}")
        except ValueError as e:
            context.write_disabled_reason = "PRIVATE_KEY is invalid"
            logger.error(f"❌ Write-proxy disabled, invalid PRIVATE_KEY: {e}")

    return context


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the running context"""
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return context


def get_indexer(request: Request) -> AuctionIndexer:
    context = get_context(request)
    if context.indexer is None:
        raise HTTPException(status_code=503, detail=f"Indexing disabled: {context.disabled_reason}")
    return context.indexer


def get_transaction_sender(request: Request) -> TransactionSender:
    context = get_context(request)
    if context.transactions is None:
        raise HTTPException(status_code=503, detail=f"Write-proxy disabled: {context.write_disabled_reason}")
    return context.transactions
