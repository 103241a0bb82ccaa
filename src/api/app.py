"""FastAPI application factory for the daemon control surface."""

from __future__ import annotations

import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.cors import CORSMiddleware

from src.api.middleware import SecurityHeadersMiddleware
from src.battles.monitor import BattleMonitor
from src.trading.solana_rpc import SolanaRpcClient

# Rate limiter (shared instance)
limiter = Limiter(key_func=get_remote_address)

VERSION = "1.0.0"


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[API] {request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


def create_app(
    monitor: BattleMonitor,
    rpc: SolanaRpcClient,
    *,
    network: str = "mainnet-beta",
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Build the app around the process's single monitor instance."""
    app = FastAPI(
        title="Token Battle Daemon API",
        version=VERSION,
        docs_url="/api/docs" if os.getenv("DAEMON_API_DEBUG") else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if os.getenv("DAEMON_API_DEBUG") else None,
    )

    app.state.monitor = monitor
    app.state.rpc = rpc
    app.state.network = network

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, _unhandled_error)

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    from src.api.routers.daemon import router as daemon_router
    from src.api.routers.health import router as health_router

    app.include_router(health_router)
    app.include_router(daemon_router)

    return app
