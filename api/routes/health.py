from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Dict, Any

from indexer.indexer import IndexerState

from api.context import AppContext, get_context

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(context: AppContext = Depends(get_context)):
    """Indexer state, push channel count and store reachability"""
    if context.indexer is not None:
        indexer: Dict[str, Any] = context.indexer.status()
    else:
        indexer = {"state": IndexerState.DISABLED.value, "last_error": context.disabled_reason}

    database_ok = await context.store.ping()
    status = {
        "status": "healthy" if database_ok and indexer["state"] == IndexerState.LIVE.value else "degraded",
        "database": "healthy" if database_ok else "unhealthy",
        "indexer": indexer,
        "connections": context.hub.connection_count,
        "write_proxy": context.transactions is not None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if not database_ok:
        status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=status)
    return status
