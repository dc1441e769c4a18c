"""Tests for the configuration loader."""

import logging
import pathlib
from unittest.mock import patch

import pytest
import yaml

from nestscout.config import (
    AnomalySettings,
    DiscoverySettings,
    EngineConfig,
    NetworkConfig,
    ScoringSettings,
    Settings,
    load_settings,
)
from nestscout.discovery.session import DiscoveryConfig
from nestscout.scanner.service_names import DEFAULT_PROBE_PORTS

ENGINE_ROOT = pathlib.Path(__file__).resolve().parents[2]
DEFAULTS_PATH = ENGINE_ROOT / "config" / "discovery_defaults.yaml"


class TestSettingsModels:
    """Verify that Pydantic config models have correct defaults."""

    def test_engine_defaults(self) -> None:
        cfg = EngineConfig()
        assert cfg.name == "NestScout"
        assert cfg.vendor_file is None

    def test_network_defaults(self) -> None:
        cfg = NetworkConfig()
        assert cfg.subnet == "auto"
        assert tuple(cfg.ports) == DEFAULT_PROBE_PORTS
        assert cfg.cache_timeout == 0.5

    def test_discovery_defaults(self) -> None:
        cfg = DiscoverySettings()
        assert cfg.min_listen_window == 1
        assert cfg.max_listen_window == 10
        assert cfg.early_exit_quiet_period == 3
        assert cfg.max_concurrency == 10
        assert cfg.per_attempt_timeout == 0.3
        assert cfg.max_records == 512
        assert cfg.channels == ["mdns", "ssdp"]

    def test_scoring_and_anomaly_defaults(self) -> None:
        assert ScoringSettings().merge_suggestion_threshold == 0.85
        assert AnomalySettings().rate_limit_per_minute == 100


class TestLoadDefaults:
    """Verify loading from the default YAML file."""

    def test_defaults_file_exists(self) -> None:
        assert DEFAULTS_PATH.is_file()

    def test_load_from_defaults_file(self) -> None:
        settings = load_settings(config_path=DEFAULTS_PATH)
        assert settings.engine.name == "NestScout"
        assert settings.discovery.max_concurrency == 10
        assert tuple(settings.network.ports) == DEFAULT_PROBE_PORTS

    def test_defaults_file_matches_model_defaults(self) -> None:
        assert load_settings(config_path=DEFAULTS_PATH) == Settings()

    def test_load_without_path_uses_builtin(self) -> None:
        assert isinstance(load_settings(), Settings)


class TestLoadFromCustomFile:

    def test_override_discovery_value(self, tmp_path: pathlib.Path) -> None:
        custom = tmp_path / "custom.yaml"
        custom.write_text(yaml.dump({"discovery": {"max_concurrency": 25}}))
        settings = load_settings(config_path=custom)
        assert settings.discovery.max_concurrency == 25
        # Other defaults should still be present
        assert settings.discovery.max_records == 512

    def test_seed_entries(self, tmp_path: pathlib.Path) -> None:
        custom = tmp_path / "custom.yaml"
        custom.write_text(yaml.dump({
            "scoring": {
                "roster": ["Kitchen Plug"],
                "seed": [{"identity": "aa:bb:cc:00:00:01", "network_address": "10.0.0.9"}],
            },
        }))
        settings = load_settings(config_path=custom)
        assert settings.scoring.roster == ["Kitchen Plug"]
        seeds = settings.seed_identities()
        assert seeds[0].identity == "aa:bb:cc:00:00:01"
        assert seeds[0].network_address == "10.0.0.9"

    def test_missing_file_warns_and_uses_defaults(
        self, tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="nestscout.config"):
            settings = load_settings(config_path=tmp_path / "nope.yaml")
        assert settings == Settings()
        assert "not found" in caplog.text

    def test_empty_file(self, tmp_path: pathlib.Path) -> None:
        custom = tmp_path / "empty.yaml"
        custom.write_text("")
        assert load_settings(config_path=custom) == Settings()


class TestEnvOverrides:

    def test_nested_int(self, tmp_path: pathlib.Path) -> None:
        with patch.dict("os.environ", {"NESTSCOUT_DISCOVERY__MAX_CONCURRENCY": "20"}):
            settings = load_settings(config_path=DEFAULTS_PATH)
        assert settings.discovery.max_concurrency == 20

    def test_env_beats_file(self, tmp_path: pathlib.Path) -> None:
        custom = tmp_path / "custom.yaml"
        custom.write_text(yaml.dump({"network": {"subnet": "10.0.0.0/24"}}))
        with patch.dict("os.environ", {"NESTSCOUT_NETWORK__SUBNET": "192.168.50.0/24"}):
            settings = load_settings(config_path=custom)
        assert settings.network.subnet == "192.168.50.0/24"

    def test_comma_list(self) -> None:
        with patch.dict("os.environ", {"NESTSCOUT_NETWORK__PORTS": "80, 443,51826"}):
            settings = load_settings(config_path=DEFAULTS_PATH)
        assert settings.network.ports == [80, 443, 51826]

    def test_bool(self) -> None:
        with patch.dict("os.environ", {"NESTSCOUT_DISCOVERY__FULL_COVERAGE": "true"}):
            settings = load_settings(config_path=DEFAULTS_PATH)
        assert settings.discovery.full_coverage is True


class TestClamping:
    """Out-of-range values degrade to usable ones with a warning."""

    def test_concurrency_clamped(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="nestscout.config"):
            cfg = DiscoverySettings(max_concurrency=0)
        assert cfg.max_concurrency == 1
        assert "max_concurrency" in caplog.text

    def test_timeout_clamped(self) -> None:
        assert DiscoverySettings(per_attempt_timeout=-1).per_attempt_timeout == 0.01
        assert DiscoverySettings(per_attempt_timeout=999).per_attempt_timeout == 30.0

    def test_invalid_ports_dropped(self) -> None:
        assert NetworkConfig(ports=[0, 80, 70000]).ports == [80]

    def test_inverted_ranges_dropped(self) -> None:
        assert NetworkConfig(common_ranges=[(10, 1), (1, 5)]).common_ranges == [(1, 5)]

    def test_threshold_clamped(self) -> None:
        assert ScoringSettings(merge_suggestion_threshold=3).merge_suggestion_threshold == 1.0


class TestDiscoveryConfig:

    def test_flattens_sections(self) -> None:
        settings = Settings(
            discovery=DiscoverySettings(max_concurrency=7, min_listen_window=20),
            anomalies=AnomalySettings(rate_limit_per_minute=5),
        )
        cfg = settings.discovery_config()
        assert isinstance(cfg, DiscoveryConfig)
        assert cfg.max_concurrency == 7
        assert cfg.rate_limit_per_minute == 5
        # min window can never exceed max window
        assert cfg.min_listen_window == cfg.max_listen_window == 10
        cfg.validate()
