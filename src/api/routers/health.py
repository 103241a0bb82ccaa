"""Health checks, no auth required."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from loguru import logger

from src.api.dependencies import get_rpc
from src.core.exceptions import RpcError
from src.trading.solana_rpc import SolanaRpcClient

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    from src.api.app import VERSION

    return {
        "success": True,
        "message": "Battle daemon is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "network": request.app.state.network,
        "version": VERSION,
    }


@router.get("/health/solana", response_model=None)
async def solana_health(
    request: Request, rpc: SolanaRpcClient = Depends(get_rpc)
) -> dict | JSONResponse:
    try:
        slot = await rpc.get_slot()
        block_height = await rpc.get_block_height()
    except RpcError as e:
        logger.warning(f"[API] Solana health check failed: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Failed to connect to Solana network",
                "details": str(e),
            },
        )
    return {
        "success": True,
        "data": {
            "connected": True,
            "slot": slot,
            "block_height": block_height,
            "network": request.app.state.network,
        },
    }
