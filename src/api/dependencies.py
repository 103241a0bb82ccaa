"""FastAPI dependencies: the services wired in by the composition root."""

from __future__ import annotations

from fastapi import Request

from src.battles.monitor import BattleMonitor
from src.trading.solana_rpc import SolanaRpcClient


def get_monitor(request: Request) -> BattleMonitor:
    return request.app.state.monitor


def get_rpc(request: Request) -> SolanaRpcClient:
    return request.app.state.rpc
