"""One lifecycle manager per asset, each with its own breaker and ledger."""

import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..client.gateway import OrderGateway
from ..config import LifecycleSettings, StrategyConfig
from ..core.errors import ConfigurationError
from ..domain.position import Position, TradingStatus
from .context import Sleeper
from .manager import LifecycleManager

log = structlog.get_logger()

SUPPORTED_ASSETS = ("btc", "eth", "sol", "xrp")


class MultiAssetLifecycle:
    """Independent lifecycle managers sharing one order gateway.

    A failure streak in one asset's markets never halts another asset.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        assets: Iterable[str],
        strategy: Optional[StrategyConfig] = None,
        settings: Optional[LifecycleSettings] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._managers: Dict[str, LifecycleManager] = {}
        for asset in assets:
            asset = asset.lower()
            if asset not in SUPPORTED_ASSETS:
                raise ConfigurationError(f"Unsupported asset: {asset}")
            self._managers[asset] = LifecycleManager(
                gateway,
                strategy=strategy,
                settings=settings,
                label=asset,
                sleep=sleep,
                clock=clock,
            )
        if not self._managers:
            raise ConfigurationError("At least one asset is required")

    @property
    def assets(self) -> List[str]:
        return list(self._managers)

    def get(self, asset: str) -> LifecycleManager:
        try:
            return self._managers[asset.lower()]
        except KeyError:
            raise ConfigurationError(f"No lifecycle manager for asset: {asset}") from None

    def __iter__(self):
        return iter(self._managers.items())

    def start_all(self) -> None:
        for manager in self._managers.values():
            manager.start_trading()
        log.info("Trading started for all assets", assets=self.assets)

    def stop_all(self) -> None:
        for manager in self._managers.values():
            manager.stop_trading()
        log.info("Trading stopped for all assets", assets=self.assets)

    def set_strategy_config(self, **changes) -> None:
        for manager in self._managers.values():
            manager.set_strategy_config(**changes)

    def set_wallet_balance(self, balance: Optional[float]) -> None:
        for manager in self._managers.values():
            manager.set_wallet_balance(balance)

    def get_positions(self) -> List[Position]:
        positions: List[Position] = []
        for manager in self._managers.values():
            positions.extend(manager.get_positions())
        return positions

    def remove_positions_by_ids(self, position_ids: Iterable[str]) -> List[str]:
        ids = list(position_ids)
        removed: List[str] = []
        for manager in self._managers.values():
            removed.extend(manager.remove_positions_by_ids(ids))
        return removed

    def get_status(self) -> Dict[str, TradingStatus]:
        return {asset: manager.get_status() for asset, manager in self._managers.items()}
