"""Daemon control endpoints: status, start, stop, forced check."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from src.api.app import limiter
from src.api.dependencies import get_monitor
from src.battles.monitor import BattleMonitor

router = APIRouter(prefix="/api/daemon", tags=["daemon"])


@router.get("/status")
async def daemon_status(monitor: BattleMonitor = Depends(get_monitor)) -> dict:
    return {"success": True, "data": monitor.status()}


@router.post("/start")
async def start_daemon(monitor: BattleMonitor = Depends(get_monitor)) -> dict:
    started = monitor.start()
    return {
        "success": True,
        "message": "Battle daemon started" if started else "Battle daemon already running",
        "data": monitor.status(),
    }


@router.post("/stop")
async def stop_daemon(monitor: BattleMonitor = Depends(get_monitor)) -> dict:
    stopped = monitor.stop()
    return {
        "success": True,
        "message": "Battle daemon stopped" if stopped else "Battle daemon was not running",
        "data": monitor.status(),
    }


@router.post("/check", response_model=None)
@limiter.limit(settings.api_force_check_rate)
async def force_check(
    request: Request, monitor: BattleMonitor = Depends(get_monitor)
) -> dict | JSONResponse:
    """Run one pass now. Only the top-level result is reported."""
    report = await monitor.force_check()
    if report.skipped:
        return JSONResponse(
            status_code=409,
            content={"success": False, "error": "A battle check is already running"},
        )
    if not report.success:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to check battles"},
        )
    return {"success": True, "message": "Battle check completed", "data": report.summary()}
