"""Control API server: runs uvicorn inside the existing asyncio event loop."""

from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from loguru import logger


async def run_api_server(app: FastAPI, host: str, port: int) -> None:
    """Serve ``app`` until cancelled.

    Designed to run as an asyncio task alongside the battle monitor.
    Uses ``uvicorn.Server.serve()`` which is fully async.
    """
    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="warning",
        loop="none",  # use the existing event loop
    )
    server = uvicorn.Server(config)
    logger.info(f"[API] Control API starting on http://{host}:{port}")
    await server.serve()
