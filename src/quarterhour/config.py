"""Configuration management for the quarterhour lifecycle manager."""

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings

from .core.errors import ConfigurationError

log = structlog.get_logger()

TRADE_SIZE_UNITS = ("USD", "shares")
DIRECTIONS = ("UP", "DOWN")


class PolymarketSettings(BaseSettings):
    """Polymarket API and wallet configuration."""

    # Wallet Configuration
    private_key: str = Field(default="", description="Polygon wallet private key")
    proxy_wallet: str = Field(default="", description="Polymarket proxy wallet address")
    signature_type: int = Field(default=2, description="0=EOA, 1=Magic, 2=Browser")

    # API Credentials (generated from private key when absent)
    api_key: Optional[str] = Field(default=None, description="Polymarket API key")
    api_secret: Optional[str] = Field(default=None, description="Polymarket API secret")
    api_passphrase: Optional[str] = Field(default=None, description="Polymarket API passphrase")

    # Network Configuration
    polygon_rpc_url: str = Field(
        default="https://polygon-rpc.com",
        description="Polygon RPC URL"
    )
    clob_http_url: str = Field(
        default="https://clob.polymarket.com/",
        description="CLOB HTTP API URL"
    )
    gamma_api_url: str = Field(
        default="https://gamma-api.polymarket.com",
        description="Gamma API URL for market metadata"
    )

    # HTTP Proxy (for routing through VPN)
    http_proxy: Optional[str] = Field(
        default=None,
        description="HTTP proxy URL (e.g., http://gluetun:8888)"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Enable JSON structured logging")

    model_config = {"env_prefix": "POLYMARKET_"}


@dataclass(frozen=True)
class StrategyConfig:
    """User-facing strategy thresholds.

    Prices are on the 0-100 scale used by the market (cents per share).
    Instances are immutable; changes go through ``replace`` so a tick always
    sees one consistent configuration.
    """

    enabled: bool = False
    entry_price: float = 96.0
    profit_target_price: float = 99.0
    stop_loss_price: float = 91.0
    trade_size: float = 50.0
    trade_size_unit: str = "USD"  # "USD" collateral or "shares"

    # Minimum |price_to_beat - current_price| in USD before entering (None = off)
    price_difference: Optional[float] = None

    # Flip guard: distances in USD of the underlying
    flip_guard_pending_distance: float = 15.0
    flip_guard_filled_distance: float = 5.0

    # Only enter during the final N seconds of the market
    entry_time_remaining_max: float = 180.0

    # Tolerance for the profit-target comparison
    profit_target_epsilon: float = 0.01

    # Side preferred when both UP and DOWN qualify on the same tick
    entry_priority: str = "UP"

    # Max exposure as fraction of known wallet balance
    max_exposure_fraction: float = 0.5

    # Maker buy rests this far below entry_price
    entry_limit_offset: float = 1.0

    def validate(self) -> None:
        """Raise ConfigurationError if any threshold is out of range."""
        for name in ("entry_price", "profit_target_price", "stop_loss_price"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ConfigurationError(f"{name} must be within 0-100, got {value}")
        # A fill at the entry price must not trigger an exit on the same tick
        if self.stop_loss_price >= self.entry_price:
            raise ConfigurationError(
                f"stop_loss_price ({self.stop_loss_price}) must be below "
                f"entry_price ({self.entry_price})"
            )
        if self.profit_target_price <= self.entry_price:
            raise ConfigurationError(
                f"profit_target_price ({self.profit_target_price}) must be above "
                f"entry_price ({self.entry_price})"
            )
        if self.trade_size <= 0:
            raise ConfigurationError(f"trade_size must be positive, got {self.trade_size}")
        if self.trade_size_unit not in TRADE_SIZE_UNITS:
            raise ConfigurationError(
                f"trade_size_unit must be one of {TRADE_SIZE_UNITS}, got {self.trade_size_unit}"
            )
        if self.entry_priority not in DIRECTIONS:
            raise ConfigurationError(
                f"entry_priority must be one of {DIRECTIONS}, got {self.entry_priority}"
            )
        if self.price_difference is not None and self.price_difference < 0:
            raise ConfigurationError("price_difference cannot be negative")
        if self.flip_guard_pending_distance < 0 or self.flip_guard_filled_distance < 0:
            raise ConfigurationError("flip guard distances cannot be negative")
        if self.flip_guard_filled_distance > self.flip_guard_pending_distance:
            raise ConfigurationError(
                "flip_guard_filled_distance cannot exceed flip_guard_pending_distance"
            )
        if self.entry_time_remaining_max <= 0:
            raise ConfigurationError("entry_time_remaining_max must be positive")
        if not 0 < self.max_exposure_fraction <= 1:
            raise ConfigurationError("max_exposure_fraction must be within (0, 1]")
        if self.entry_limit_offset < 0:
            raise ConfigurationError("entry_limit_offset cannot be negative")

    def with_changes(self, **changes: Any) -> "StrategyConfig":
        """Return a validated copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Unknown strategy fields: {sorted(unknown)}")
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        known = {f.name for f in fields(cls)}
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    @classmethod
    def from_env(cls) -> "StrategyConfig":
        """Load configuration from environment variables."""
        price_difference = os.getenv("QUARTERHOUR_PRICE_DIFFERENCE", "")
        config = cls(
            enabled=os.getenv("QUARTERHOUR_ENABLED", "false").lower() == "true",
            entry_price=float(os.getenv("QUARTERHOUR_ENTRY_PRICE", "96")),
            profit_target_price=float(os.getenv("QUARTERHOUR_PROFIT_TARGET", "99")),
            stop_loss_price=float(os.getenv("QUARTERHOUR_STOP_LOSS", "91")),
            trade_size=float(os.getenv("QUARTERHOUR_TRADE_SIZE", "50")),
            trade_size_unit=os.getenv("QUARTERHOUR_TRADE_SIZE_UNIT", "USD"),
            price_difference=float(price_difference) if price_difference else None,
            flip_guard_pending_distance=float(os.getenv("QUARTERHOUR_FLIP_GUARD_PENDING", "15")),
            flip_guard_filled_distance=float(os.getenv("QUARTERHOUR_FLIP_GUARD_FILLED", "5")),
            entry_time_remaining_max=float(os.getenv("QUARTERHOUR_ENTRY_TIME_REMAINING_MAX", "180")),
            profit_target_epsilon=float(os.getenv("QUARTERHOUR_PROFIT_EPSILON", "0.01")),
            entry_priority=os.getenv("QUARTERHOUR_ENTRY_PRIORITY", "UP").upper(),
            max_exposure_fraction=float(os.getenv("QUARTERHOUR_MAX_EXPOSURE_FRACTION", "0.5")),
            entry_limit_offset=float(os.getenv("QUARTERHOUR_ENTRY_LIMIT_OFFSET", "1")),
        )
        config.validate()
        return config


@dataclass
class LifecycleSettings:
    """Operational tuning for the lifecycle manager (not user-facing)."""

    # Circuit breaker
    max_consecutive_failures: int = 5

    # In-flight flags older than this are force-cleared
    max_in_flight_seconds: float = 30.0

    # Stop-loss retry pacing
    stop_loss_retry_delay: float = 1.0
    emergency_retry_delay: float = 2.0

    # Manual close splitting
    split_threshold: float = 50.0
    split_count: int = 3
    split_delay: float = 0.5

    # Used when the venue reports no fee rate
    default_fee_rate_bps: int = 1000

    # Tick driver
    tick_interval: float = 0.1
    error_backoff: float = 0.5

    # Redemption monitor
    redemption_interval: float = 60.0

    @classmethod
    def from_env(cls) -> "LifecycleSettings":
        """Load configuration from environment variables."""
        return cls(
            max_consecutive_failures=int(os.getenv("QUARTERHOUR_MAX_CONSECUTIVE_FAILURES", "5")),
            max_in_flight_seconds=float(os.getenv("QUARTERHOUR_MAX_IN_FLIGHT_SECONDS", "30")),
            stop_loss_retry_delay=float(os.getenv("QUARTERHOUR_STOP_LOSS_RETRY_DELAY", "1.0")),
            emergency_retry_delay=float(os.getenv("QUARTERHOUR_EMERGENCY_RETRY_DELAY", "2.0")),
            split_threshold=float(os.getenv("QUARTERHOUR_SPLIT_THRESHOLD", "50")),
            split_count=int(os.getenv("QUARTERHOUR_SPLIT_COUNT", "3")),
            split_delay=float(os.getenv("QUARTERHOUR_SPLIT_DELAY", "0.5")),
            default_fee_rate_bps=int(os.getenv("QUARTERHOUR_DEFAULT_FEE_RATE_BPS", "1000")),
            tick_interval=float(os.getenv("QUARTERHOUR_TICK_INTERVAL", "0.1")),
            error_backoff=float(os.getenv("QUARTERHOUR_ERROR_BACKOFF", "0.5")),
            redemption_interval=float(os.getenv("QUARTERHOUR_REDEMPTION_INTERVAL", "60")),
        )


@dataclass
class BotConfig:
    """Process-level settings for the trading bot."""

    assets: List[str] = field(default_factory=lambda: ["btc"])
    metrics_port: int = 0  # 0 = metrics server disabled
    strategy_store_path: str = "strategy.json"

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Load configuration from environment variables."""
        return cls(
            assets=[
                a.strip().lower()
                for a in os.getenv("QUARTERHOUR_ASSETS", "btc").split(",")
                if a.strip()
            ],
            metrics_port=int(os.getenv("QUARTERHOUR_METRICS_PORT", "0")),
            strategy_store_path=os.getenv("QUARTERHOUR_STRATEGY_STORE", "strategy.json"),
        )


class StrategyConfigStore:
    """Persists the user's strategy configuration as JSON on disk."""

    def __init__(self, path: str):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, default: StrategyConfig) -> StrategyConfig:
        """Load the stored configuration, falling back to ``default``."""
        if not self._path.exists():
            return default
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Failed to read strategy store", path=str(self._path), error=str(e))
            return default
        merged = default.to_dict()
        merged.update(data)
        return StrategyConfig.from_dict(merged)

    def save(self, config: StrategyConfig) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(config.to_dict(), indent=2, sort_keys=True))
        log.debug("Strategy config saved", path=str(self._path))


@dataclass
class AppConfig:
    """Main application configuration."""

    polymarket: PolymarketSettings
    strategy: StrategyConfig
    lifecycle: LifecycleSettings
    bot: BotConfig

    @classmethod
    def load(cls) -> "AppConfig":
        """Load all configuration from environment."""
        from dotenv import load_dotenv
        load_dotenv()

        return cls(
            polymarket=PolymarketSettings(),
            strategy=StrategyConfig.from_env(),
            lifecycle=LifecycleSettings.from_env(),
            bot=BotConfig.from_env(),
        )
