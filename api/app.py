#!/usr/bin/env python3
"""
Auction mirror API server.
Serves the indexed store, pushes live updates and proxies contract writes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from indexer.config import Settings, get_settings

from api.context import AppContext, build_context
from api.routes.auctions import router as auctions_router
from api.routes.events import router as events_router
from api.routes.health import router as health_router
from api.routes.stream import router as stream_router
from api.routes.transactions import router as transactions_router

logger = logging.getLogger(__name__)

# Read routes are served both at the root and under /api
READ_ROUTERS = (auctions_router, events_router, health_router, stream_router)


async def _stop_indexer(context: AppContext) -> None:
    task = context.indexer_task
    if task is None:
        return
    context.indexer.stop()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Indexer task ended with error: {e}")
    context.indexer_task = None


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None,
               start_indexer: bool = True) -> FastAPI:
    """Build the FastAPI app.

    With no context one is built from settings on startup and torn down on
    shutdown. A supplied context is used as-is and left open.
    """
    settings = settings or (context.settings if context is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_context = getattr(app.state, "context", None) is None
        if owns_context:
            app.state.context = await build_context(settings)
        ctx: AppContext = app.state.context

        logger.info("=" * 60)
        logger.info(f"🚀 Starting Auction API on {settings.api_host}:{settings.port}")
        logger.info(f"Database: {ctx.store.database_url}")
        logger.info(f"Contract: {settings.contract_address or 'not configured'} ({settings.contract_variant})")
        logger.info("=" * 60)

        if start_indexer and ctx.indexer is not None:
            ctx.indexer_task = asyncio.create_task(ctx.indexer.run())

        try:
            yield
        finally:
            await _stop_indexer(ctx)
            await ctx.websockets.disconnect_all()
            await ctx.hub.close_all()
            if owns_context:
                if ctx.indexer is not None:
                    await ctx.indexer.close()
                await ctx.store.close()
                app.state.context = None

    app = FastAPI(
        title="Auction Mirror API",
        description="Indexed auction contract data with live updates",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.context = context

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in READ_ROUTERS:
        app.include_router(router)
        app.include_router(router, prefix="/api")
    app.include_router(transactions_router)

    @app.get("/")
    async def root():
        """Root endpoint with API status"""
        return {
            "name": "Auction Mirror API",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "docs": "/api/docs",
                "health": "/health",
                "auctions": "/auctions",
                "events": "/events",
                "analytics": "/analytics",
                "sse": "/sse",
                "websocket": "/ws",
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
