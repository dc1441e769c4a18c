"""Configuration loader for NestScout.

Loads settings from a YAML file with built-in defaults. Supports environment
variable overrides using the NESTSCOUT_ prefix with double-underscore
nesting (e.g., NESTSCOUT_DISCOVERY__MAX_CONCURRENCY=20).

Out-of-range values are clamped to the nearest usable value with a logged
warning rather than rejected; a config typo should degrade a run, not stop
it.
"""

from __future__ import annotations

import logging
import os
import pathlib
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from nestscout.devices.records import KnownIdentity
from nestscout.discovery.session import DiscoveryConfig
from nestscout.discovery.targets import DEFAULT_COMMON_RANGES, DEFAULT_MAX_SWEEP_HOSTS
from nestscout.scanner.service_names import DEFAULT_PROBE_PORTS

logger = logging.getLogger(__name__)


def _clamp(name: str, value: float, low: float, high: float | None = None) -> float:
    clamped = max(low, value)
    if high is not None:
        clamped = min(high, clamped)
    if clamped != value:
        logger.warning("Config %s=%s out of range, using %s", name, value, clamped)
    return clamped


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    name: str = "NestScout"
    vendor_file: str | None = None


class SeedEntry(BaseModel):
    identity: str
    network_address: str | None = None
    display_name: str | None = None
    manufacturer: str | None = None


class NetworkConfig(BaseModel):
    subnet: str = "auto"
    ports: list[int] = Field(default_factory=lambda: list(DEFAULT_PROBE_PORTS))
    common_ranges: list[tuple[int, int]] = Field(
        default_factory=lambda: list(DEFAULT_COMMON_RANGES)
    )
    known_addresses: list[str] = Field(default_factory=list)
    cache_timeout: float = 0.5
    max_sweep_hosts: int = DEFAULT_MAX_SWEEP_HOSTS

    @field_validator("ports")
    @classmethod
    def _valid_ports(cls, value: list[int]) -> list[int]:
        kept = [p for p in value if 1 <= p <= 65535]
        if len(kept) != len(value):
            logger.warning("Ignoring ports outside 1..65535: %s", sorted(set(value) - set(kept)))
        return kept

    @field_validator("common_ranges")
    @classmethod
    def _valid_ranges(cls, value: list[tuple[int, int]]) -> list[tuple[int, int]]:
        kept = [(low, high) for low, high in value if 1 <= low <= high]
        if len(kept) != len(value):
            logger.warning("Ignoring empty or inverted host ranges in common_ranges")
        return kept

    @field_validator("cache_timeout")
    @classmethod
    def _cache_timeout(cls, value: float) -> float:
        return _clamp("network.cache_timeout", value, 0.05, 10.0)

    @field_validator("max_sweep_hosts")
    @classmethod
    def _sweep(cls, value: int) -> int:
        return int(_clamp("network.max_sweep_hosts", value, 1, 65534))


class DiscoverySettings(BaseModel):
    min_listen_window: int = 1
    max_listen_window: int = 10
    early_exit_quiet_period: int = 3
    listen_tick: float = 1.0
    max_concurrency: int = 10
    per_attempt_timeout: float = 0.3
    phase_timeout: float = 60.0
    max_records: int = 512
    icmp_fallback: bool = True
    grab_banners: bool = False
    resolve_names: bool = True
    name_lookup_timeout: float = 1.0
    full_coverage: bool = False
    expected_device_count: int = 0
    channels: list[str] = Field(default_factory=lambda: ["mdns", "ssdp"])
    mdns_service_types: list[str] | None = None

    @field_validator("max_listen_window", "early_exit_quiet_period", "max_concurrency", "max_records")
    @classmethod
    def _at_least_one(cls, value: int, info: ValidationInfo) -> int:
        return int(_clamp(f"discovery.{info.field_name}", value, 1))

    @field_validator("min_listen_window", "expected_device_count")
    @classmethod
    def _non_negative(cls, value: int, info: ValidationInfo) -> int:
        return int(_clamp(f"discovery.{info.field_name}", value, 0))

    @field_validator("listen_tick", "per_attempt_timeout", "name_lookup_timeout")
    @classmethod
    def _short_duration(cls, value: float, info: ValidationInfo) -> float:
        return _clamp(f"discovery.{info.field_name}", value, 0.01, 30.0)

    @field_validator("phase_timeout")
    @classmethod
    def _phase_timeout(cls, value: float) -> float:
        return _clamp("discovery.phase_timeout", value, 1.0, 3600.0)


class ScoringSettings(BaseModel):
    roster: list[str] = Field(default_factory=list)
    merge_suggestion_threshold: float = 0.85
    seed: list[SeedEntry] = Field(default_factory=list)

    @field_validator("merge_suggestion_threshold")
    @classmethod
    def _threshold(cls, value: float) -> float:
        return _clamp("scoring.merge_suggestion_threshold", value, 0.0, 1.0)


class AnomalySettings(BaseModel):
    rate_limit_per_minute: int = 100
    max_addresses_per_name: int = 3
    max_names_per_address: int = 5

    @field_validator("rate_limit_per_minute", "max_addresses_per_name", "max_names_per_address")
    @classmethod
    def _at_least_one(cls, value: int, info: ValidationInfo) -> int:
        return int(_clamp(f"anomalies.{info.field_name}", value, 1))


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    anomalies: AnomalySettings = Field(default_factory=AnomalySettings)

    def discovery_config(self) -> DiscoveryConfig:
        """Flatten the relevant sections into the orchestrator's config block."""
        d = self.discovery
        max_window = d.max_listen_window
        return DiscoveryConfig(
            min_listen_window=min(d.min_listen_window, max_window),
            max_listen_window=max_window,
            early_exit_quiet_period=d.early_exit_quiet_period,
            listen_tick=d.listen_tick,
            max_concurrency=d.max_concurrency,
            per_attempt_timeout=d.per_attempt_timeout,
            max_records=d.max_records,
            rate_limit_per_minute=self.anomalies.rate_limit_per_minute,
            cache_timeout=self.network.cache_timeout,
            phase_timeout=d.phase_timeout,
            icmp_fallback=d.icmp_fallback,
            grab_banners=d.grab_banners,
            resolve_names=d.resolve_names,
            name_lookup_timeout=d.name_lookup_timeout,
            common_ranges=tuple(self.network.common_ranges),
            max_sweep_hosts=self.network.max_sweep_hosts,
            max_addresses_per_name=self.anomalies.max_addresses_per_name,
            max_names_per_address=self.anomalies.max_names_per_address,
            merge_suggestion_threshold=self.scoring.merge_suggestion_threshold,
        )

    def seed_identities(self) -> tuple[KnownIdentity, ...]:
        return tuple(
            KnownIdentity(
                identity=s.identity,
                network_address=s.network_address,
                display_name=s.display_name,
                manufacturer=s.manufacturer,
            )
            for s in self.scoring.seed
        )


# ---------------------------------------------------------------------------
# Deep merge helper
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "NESTSCOUT_"


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _collect_env_overrides() -> dict[str, Any]:
    """Collect NESTSCOUT_* env vars and build a nested dict.

    Double-underscore separates nesting levels; comma-separated values
    become lists.
    Example: NESTSCOUT_DISCOVERY__MAX_CONCURRENCY=20
    becomes  {"discovery": {"max_concurrency": 20}}
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        if "," in value:
            final_value: Any = [_coerce(v.strip()) for v in value.split(",") if v.strip()]
        else:
            final_value = _coerce(value)
        current[parts[-1]] = final_value
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = (
    pathlib.Path(__file__).resolve().parents[3] / "config" / "discovery_defaults.yaml"
)


def load_settings(
    config_path: pathlib.Path | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None`` or the file does not exist,
        built-in defaults are used.
    """
    # Layer 1: built-in defaults (always loaded from the model defaults)
    base: dict[str, Any] = {}

    # Layer 2: YAML config file
    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            file_data = yaml.safe_load(fh)
        if isinstance(file_data, dict):
            base = _deep_merge(base, file_data)
    elif config_path is not None:
        logger.warning("Config file %s not found, using defaults", config_path)

    # Layer 3: environment variable overrides
    env_overrides = _collect_env_overrides()
    if env_overrides:
        base = _deep_merge(base, env_overrides)

    return Settings(**base)
