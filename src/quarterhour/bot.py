"""Main entry point: drives one lifecycle manager per asset from live data."""

import asyncio
import signal
import sys
import time
from typing import Dict, Optional

import structlog
from prometheus_client import start_http_server

from . import __version__
from .client.ctf import CTFRedeemer
from .client.gamma import GammaClient, interval_start
from .client.polymarket import PolymarketGateway
from .client.price_stream import PriceToBeatBook, ReferencePriceStream
from .config import AppConfig, StrategyConfigStore
from .core.logging import setup_logging
from .domain.market import MarketDescriptor, MarketSnapshot
from .lifecycle.manager import LifecycleManager
from .lifecycle.multi_asset import MultiAssetLifecycle
from .metrics import TICK_ERRORS, init_metrics
from .redemption import RedemptionMonitor

log = structlog.get_logger()

BALANCE_REFRESH_SECONDS = 30.0


class TradingBot:
    """Wires the venue adapters, lifecycle managers and redemption monitor."""

    def __init__(self, config: AppConfig):
        """Initialize the bot.

        Args:
            config: Application configuration
        """
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start)
        self._gateway: Optional[PolymarketGateway] = None
        self._gamma: Optional[GammaClient] = None
        self._redeemer: Optional[CTFRedeemer] = None
        self._prices: Optional[ReferencePriceStream] = None
        self._lifecycles: Optional[MultiAssetLifecycle] = None
        self._redemption: Optional[RedemptionMonitor] = None
        self._store = StrategyConfigStore(config.bot.strategy_store_path)

        self._price_to_beat = PriceToBeatBook()
        self._markets: Dict[str, MarketDescriptor] = {}
        self._market_intervals: Dict[str, int] = {}
        self._balance_checked_at = 0.0
        self._stream_task: Optional[asyncio.Task] = None

    @property
    def lifecycles(self) -> Optional[MultiAssetLifecycle]:
        return self._lifecycles

    async def start(self) -> None:
        """Start all components and run the tick loop until stopped."""
        bot = self.config.bot
        log.info("Starting quarterhour", version=__version__, assets=bot.assets)
        self._running = True

        init_metrics(version=__version__, assets=",".join(bot.assets))
        if bot.metrics_port:
            start_http_server(bot.metrics_port)
            log.info("Metrics server started", port=bot.metrics_port)

        await self._init_components()
        self._register_signals()
        self._log_startup_info()

        self._stream_task = asyncio.create_task(self._prices.run())
        await self._redemption.start()

        strategy = self._lifecycles.get(bot.assets[0]).get_strategy_config()
        if strategy.enabled:
            self._lifecycles.start_all()
        else:
            log.warning("Strategy disabled, monitoring only")

        try:
            await self._tick_loop()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the bot gracefully."""
        if not self._running:
            return

        log.info("Stopping quarterhour")
        self._running = False
        self._shutdown_event.set()

        if self._lifecycles:
            self._lifecycles.stop_all()
        if self._redemption:
            await self._redemption.stop()
        if self._prices:
            await self._prices.disconnect()
        if self._stream_task:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
        if self._gamma:
            await self._gamma.close()
        if self._redeemer:
            await self._redeemer.close()
        if self._gateway:
            await self._gateway.close()

        log.info("Quarterhour stopped")

    async def _init_components(self) -> None:
        settings = self.config.polymarket

        self._gateway = PolymarketGateway(settings)
        await self._gateway.connect()

        self._gamma = GammaClient(settings.gamma_api_url, http_proxy=settings.http_proxy)

        self._redeemer = CTFRedeemer(
            rpc_url=settings.polygon_rpc_url,
            private_key=settings.private_key,
            proxy_wallet=settings.proxy_wallet or None,
            use_proxy=settings.signature_type != 0,
        )
        await self._redeemer.connect()

        strategy = self._store.load(self.config.strategy)
        self._lifecycles = MultiAssetLifecycle(
            self._gateway,
            self.config.bot.assets,
            strategy=strategy,
            settings=self.config.lifecycle,
        )
        self._prices = ReferencePriceStream(self.config.bot.assets)
        self._redemption = RedemptionMonitor(
            feed=self._gamma,
            redeemer=self._redeemer,
            get_positions=self._lifecycles.get_positions,
            remove_positions=self._lifecycles.remove_positions_by_ids,
            interval=self.config.lifecycle.redemption_interval,
        )

        log.info("All components initialized")

    def update_strategy(self, **changes) -> None:
        """Apply a strategy change to every asset and persist it."""
        self._lifecycles.set_strategy_config(**changes)
        self._store.save(self._lifecycles.get(self.config.bot.assets[0]).get_strategy_config())

    # =========================================================================
    # Tick loop
    # =========================================================================

    async def _tick_loop(self) -> None:
        lifecycle = self.config.lifecycle
        while self._running:
            now = time.time()
            await self._refresh_balance(now)
            for asset, manager in self._lifecycles:
                try:
                    await self.tick_asset(asset, manager, now)
                except Exception as e:
                    TICK_ERRORS.labels(asset=asset).inc()
                    log.error("Tick failed", asset=asset, error=str(e))
                    await asyncio.sleep(lifecycle.error_backoff)
            await asyncio.sleep(lifecycle.tick_interval)

    async def tick_asset(self, asset: str, manager: LifecycleManager, now: float) -> None:
        market = await self._market_for(asset, now)
        current = self._prices.latest(asset)
        price_to_beat = None
        if market is not None:
            price_to_beat = self._price_to_beat.capture(market.id, current)
        await manager.on_tick(
            MarketSnapshot(
                current_price=current,
                price_to_beat=price_to_beat,
                market=market,
                now=now,
            )
        )

    async def _market_for(self, asset: str, now: float) -> Optional[MarketDescriptor]:
        start = interval_start(now)
        if self._market_intervals.get(asset) != start or asset not in self._markets:
            market = await self._gamma.current_market(asset, now)
            if market is None:
                return None
            self._markets[asset] = market
            self._market_intervals[asset] = start
            self._price_to_beat.forget_except(m.id for m in self._markets.values())
        return self._markets[asset]

    async def _refresh_balance(self, now: float) -> None:
        if now - self._balance_checked_at < BALANCE_REFRESH_SECONDS:
            return
        self._balance_checked_at = now
        try:
            balance = await self._gateway.get_collateral_balance()
        except Exception as e:
            log.warning("Balance refresh failed", error=str(e))
            return
        self._lifecycles.set_wallet_balance(balance)

    # =========================================================================
    # Process lifecycle
    # =========================================================================

    def _register_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.create_task(self._handle_signal(s)),
            )

    async def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("Received shutdown signal", signal=sig.name)
        self._running = False

    def _log_startup_info(self) -> None:
        strategy = self._lifecycles.get(self.config.bot.assets[0]).get_strategy_config()
        log.info(
            "Strategy configuration",
            enabled=strategy.enabled,
            entry_price=strategy.entry_price,
            profit_target=strategy.profit_target_price,
            stop_loss=strategy.stop_loss_price,
            trade_size=f"{strategy.trade_size} {strategy.trade_size_unit}",
            assets=self.config.bot.assets,
        )


async def run_bot() -> None:
    """Load configuration and run the bot until shutdown."""
    config = AppConfig.load()
    setup_logging(config.polymarket.log_level, json_output=config.polymarket.log_json)

    bot = TradingBot(config)
    try:
        await bot.start()
    except Exception as e:
        log.error("Bot crashed", error=str(e))
        raise
    finally:
        await bot.stop()


def run() -> None:
    """Console entry point."""
    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        log.info("Shutdown complete")
        sys.exit(0)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    run()
