"""Tests for configuration loading, validation and persistence."""

import json

import pytest

from quarterhour.config import (
    BotConfig,
    LifecycleSettings,
    PolymarketSettings,
    StrategyConfig,
    StrategyConfigStore,
)
from quarterhour.core.errors import ConfigurationError


class TestStrategyConfig:
    """Defaults and validation."""

    def test_defaults(self):
        config = StrategyConfig()

        assert config.enabled is False
        assert config.entry_price == 96
        assert config.profit_target_price == 99
        assert config.stop_loss_price == 91
        assert config.trade_size == 50
        assert config.trade_size_unit == "USD"
        assert config.price_difference is None
        assert config.flip_guard_pending_distance == 15
        assert config.flip_guard_filled_distance == 5
        assert config.entry_time_remaining_max == 180
        config.validate()

    @pytest.mark.parametrize(
        "changes",
        [
            {"entry_price": 101},
            {"stop_loss_price": -1},
            {"trade_size": 0},
            {"trade_size_unit": "EUR"},
            {"entry_priority": "SIDEWAYS"},
            {"price_difference": -5},
            {"flip_guard_filled_distance": -1},
            {"entry_time_remaining_max": 0},
            {"max_exposure_fraction": 1.5},
            {"stop_loss_price": 96},
            {"stop_loss_price": 97},
            {"profit_target_price": 96},
            {"profit_target_price": 95},
            {"flip_guard_filled_distance": 20},
        ],
    )
    def test_invalid_values(self, changes):
        """Test out-of-range values are rejected."""
        with pytest.raises(ConfigurationError):
            StrategyConfig(**changes).validate()

    def test_with_changes_returns_copy(self):
        """Test with_changes leaves the original untouched."""
        config = StrategyConfig()
        updated = config.with_changes(trade_size=25, price_difference=40)

        assert updated.trade_size == 25
        assert updated.price_difference == 40
        assert config.trade_size == 50

    def test_with_changes_rejects_unknown(self):
        with pytest.raises(ConfigurationError, match="Unknown strategy fields"):
            StrategyConfig().with_changes(foo=1)

    def test_dict_round_trip_ignores_extra_keys(self):
        data = StrategyConfig(entry_price=95).to_dict()
        data["legacy_field"] = True

        assert StrategyConfig.from_dict(data).entry_price == 95


class TestFromEnv:
    """Environment variable loading."""

    def test_strategy_from_env(self, monkeypatch):
        monkeypatch.setenv("QUARTERHOUR_ENABLED", "true")
        monkeypatch.setenv("QUARTERHOUR_ENTRY_PRICE", "95")
        monkeypatch.setenv("QUARTERHOUR_PRICE_DIFFERENCE", "30")
        monkeypatch.setenv("QUARTERHOUR_ENTRY_PRIORITY", "down")

        config = StrategyConfig.from_env()

        assert config.enabled is True
        assert config.entry_price == 95
        assert config.price_difference == 30
        assert config.entry_priority == "DOWN"

    def test_strategy_from_env_invalid(self, monkeypatch):
        monkeypatch.setenv("QUARTERHOUR_STOP_LOSS", "120")

        with pytest.raises(ConfigurationError):
            StrategyConfig.from_env()

    def test_lifecycle_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("QUARTERHOUR_MAX_CONSECUTIVE_FAILURES", "3")
        monkeypatch.setenv("QUARTERHOUR_SPLIT_COUNT", "4")

        settings = LifecycleSettings.from_env()

        assert settings.max_consecutive_failures == 3
        assert settings.split_count == 4
        assert settings.default_fee_rate_bps == 1000

    def test_bot_config_assets(self, monkeypatch):
        monkeypatch.setenv("QUARTERHOUR_ASSETS", "BTC, eth,,sol")

        assert BotConfig.from_env().assets == ["btc", "eth", "sol"]

    def test_polymarket_settings_prefix(self, monkeypatch):
        monkeypatch.setenv("POLYMARKET_SIGNATURE_TYPE", "0")
        monkeypatch.setenv("POLYMARKET_PROXY_WALLET", "0xabc")

        settings = PolymarketSettings()

        assert settings.signature_type == 0
        assert settings.proxy_wallet == "0xabc"


class TestStrategyConfigStore:
    """JSON persistence of the user's strategy."""

    def test_missing_file_returns_default(self, tmp_path):
        store = StrategyConfigStore(str(tmp_path / "strategy.json"))
        default = StrategyConfig(trade_size=10)

        assert store.load(default) is default

    def test_save_then_load(self, tmp_path):
        store = StrategyConfigStore(str(tmp_path / "nested" / "strategy.json"))
        store.save(StrategyConfig(enabled=True, stop_loss_price=89))

        loaded = store.load(StrategyConfig())

        assert loaded.enabled is True
        assert loaded.stop_loss_price == 89

    def test_partial_file_merges_with_default(self, tmp_path):
        path = tmp_path / "strategy.json"
        path.write_text(json.dumps({"entry_price": 94}))

        loaded = StrategyConfigStore(str(path)).load(StrategyConfig(trade_size=20))

        assert loaded.entry_price == 94
        assert loaded.trade_size == 20

    def test_corrupt_file_returns_default(self, tmp_path):
        path = tmp_path / "strategy.json"
        path.write_text("{not json")
        default = StrategyConfig()

        assert StrategyConfigStore(str(path)).load(default) is default
