"""Entry point for the token battle daemon."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings, settings
from src.api.app import create_app
from src.api.server import run_api_server
from src.battles.monitor import BattleMonitor
from src.battles.repository import SqlBattleRepository
from src.core.exceptions import ConfigurationError
from src.db.database import build_engine, build_session_factory
from src.parsers.meteora.client import MeteoraClient
from src.parsers.meteora.constants import DAMM_V2_MIGRATION_FEE_CONFIGS
from src.parsers.pool_resolver import PoolInfoResolver
from src.parsers.quote_price import QuotePriceFeed
from src.trading.damm_v2_tx import TransactionSender
from src.trading.liquidity_redistributor import LiquidityRedistributor
from src.trading.solana_rpc import SolanaRpcClient
from src.trading.wallet import SettlementWallet
from src.utils.logger import setup_logger


@dataclass
class Services:
    monitor: BattleMonitor
    rpc: SolanaRpcClient
    price_feed: QuotePriceFeed
    engine: AsyncEngine

    async def close(self) -> None:
        await self.monitor.shutdown()
        await self.price_feed.close()
        await self.rpc.close()
        await self.engine.dispose()


def _migration_configs(cfg: Settings) -> tuple[str, ...]:
    override = [c.strip() for c in cfg.damm_v2_migration_configs.split(",") if c.strip()]
    return tuple(override) or DAMM_V2_MIGRATION_FEE_CONFIGS


def build_services(cfg: Settings) -> Services:
    """Wire every collaborator once. Raises ConfigurationError on missing settings."""
    if not cfg.database_url:
        raise ConfigurationError("DATABASE_URL is not set")
    if not cfg.solana_rpc_url:
        raise ConfigurationError("SOLANA_RPC_URL is not set")
    if not cfg.platform_pool_address:
        raise ConfigurationError("PLATFORM_POOL_ADDRESS is not set")

    wallet = SettlementWallet.load(
        cfg.settlement_wallet_private_key, cfg.settlement_wallet_keypair_path
    )

    engine = build_engine(cfg.database_url)
    repository = SqlBattleRepository(build_session_factory(engine))

    rpc = SolanaRpcClient(cfg.solana_rpc_url, max_rps=cfg.rpc_max_rps, timeout=cfg.rpc_timeout_sec)
    meteora = MeteoraClient(rpc)
    price_feed = QuotePriceFeed(
        url=cfg.quote_price_url,
        symbol=cfg.quote_price_symbol,
        default_usd=cfg.quote_price_default_usd,
        ttl=cfg.quote_price_ttl_sec,
    )
    resolver = PoolInfoResolver(
        meteora,
        price_feed,
        base_decimals=cfg.base_token_decimals,
        quote_decimals=cfg.quote_token_decimals,
        default_migration_threshold=cfg.dbc_default_migration_threshold_lamports,
        min_price_quote=cfg.amm_min_price_quote,
        max_price_quote=cfg.amm_max_price_quote,
        migration_configs=_migration_configs(cfg),
    )
    sender = TransactionSender(
        rpc,
        wallet,
        compute_unit_limit=cfg.settlement_compute_unit_limit,
        priority_fee_microlamports=cfg.settlement_priority_fee_microlamports,
        skip_preflight=cfg.settlement_skip_preflight,
        confirm_timeout=cfg.settlement_confirm_timeout_sec,
    )
    redistributor = LiquidityRedistributor(
        meteora, wallet, sender, slippage_bps=cfg.settlement_slippage_bps
    )
    monitor = BattleMonitor(
        repository,
        resolver,
        redistributor,
        platform_pool=cfg.platform_pool_address,
        interval=cfg.monitor_interval_sec,
        batch_size=cfg.monitor_batch_size,
        batch_delay=cfg.monitor_batch_delay_sec,
        pre_resolve_delay=cfg.monitor_pre_resolve_delay_sec,
        token_delay=cfg.monitor_token_delay_sec,
        about_to_bond_pct=cfg.about_to_bond_progress_pct,
        max_tie_deferrals=cfg.tie_break_max_deferrals,
    )
    return Services(monitor=monitor, rpc=rpc, price_feed=price_feed, engine=engine)


async def main() -> None:
    setup_logger(level="INFO")
    logger.info("Starting token battle daemon...")

    try:
        services = build_services(settings)
    except ConfigurationError as e:
        logger.critical(f"Configuration error, aborting startup: {e}")
        raise SystemExit(1) from e

    logger.warning(
        "Run exactly ONE daemon per settlement wallet: concurrent instances "
        "race on liquidity withdrawal and are not guarded against."
    )

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    if settings.monitor_autostart:
        services.monitor.start()

    tasks = [asyncio.create_task(shutdown_event.wait())]
    if settings.api_enabled:
        app = create_app(
            services.monitor,
            services.rpc,
            network=settings.solana_network,
            cors_origins=[o.strip() for o in settings.api_cors_origins.split(",") if o.strip()],
        )
        tasks.append(asyncio.create_task(run_api_server(app, settings.api_host, settings.api_port)))

    # Wait for either the API server to exit or a shutdown signal
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

    # Cancel remaining tasks
    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    await services.close()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
